"""
Operation classifier tests - tier precedence and verb mapping.
"""
import pytest

from api_db_analyzer import (
    AnalyzerConfig,
    ApiDbAnalyzer,
    ClassificationKind,
    OperationType,
    ResolutionTier,
    operation_for_call_name,
)

from conftest import BASE_PACKAGE, call_in, unit_for


def classify(analyzer, layer, type_name, method_name, call_name):
    unit = unit_for(analyzer.tree, layer, type_name)
    call = call_in(unit, method_name, call_name)
    return analyzer.classify_call(call, unit, analyzer.build_scope_index(unit))


class TestVerbMapping:
    """Tests for call name -> operation."""

    @pytest.mark.parametrize("name,expected", [
        ("save", OperationType.INSERT),
        ("insertAll", OperationType.INSERT),
        ("saveAndDelete", OperationType.INSERT),
        ("deleteById", OperationType.DELETE),
        ("updateTitle", OperationType.UPDATE),
        ("findAll", OperationType.SELECT),
        ("getOne", OperationType.SELECT),
        ("FINDBYNAME", OperationType.SELECT),
        ("process", None),
        ("count", None),
    ])
    def test_first_matching_verb_wins(self, name, expected):
        assert operation_for_call_name(name) is expected


class TestClassifier:
    """Tests for the three-tier classification."""

    def test_query_tag_outranks_verb(self, analyzer):
        result = classify(analyzer, "serviceimpl", "BookServiceImpl", "active", "findActive")
        assert result.kind is ClassificationKind.OPERATION
        assert result.tier is ResolutionTier.QUERY_TAG
        assert result.operation.to_dict() == {
            "operation": "QUERY",
            "query": "SELECT b FROM Book b WHERE b.active = true",
            "methodCall": "bookRepository.findActive()",
        }

    def test_native_query_pair_value(self, analyzer):
        result = classify(analyzer, "serviceimpl", "OrderServiceImpl", "recent", "findRecent")
        assert result.operation.query == "SELECT * FROM orders WHERE created > now()"

    def test_direct_resolution(self, analyzer):
        result = classify(analyzer, "serviceimpl", "BookServiceImpl", "byTitle", "findByTitle")
        assert result.tier is ResolutionTier.DIRECT
        assert result.operation.operation is OperationType.SELECT
        assert result.operation.table == "Book"

    def test_scope_fallback_for_inherited_repository_method(self, analyzer):
        result = classify(analyzer, "serviceimpl", "BookServiceImpl", "create", "save")
        assert result.tier is ResolutionTier.SCOPE
        assert result.operation.to_dict() == {
            "operation": "INSERT",
            "table": "Book",
            "methodCall": "bookRepository.save(book)",
        }

    def test_scope_fallback_strips_this(self, analyzer):
        result = classify(analyzer, "serviceimpl", "BookServiceImpl", "rename", "save")
        assert result.tier is ResolutionTier.SCOPE
        assert result.operation.method_call == "this.bookRepository.save(book)"

    def test_argument_fallback_without_verb_is_non_terminal(self, analyzer):
        result = classify(analyzer, "serviceimpl", "OrderServiceImpl", "place", "process")
        assert result.kind is ClassificationKind.NON_TERMINAL
        assert result.tier is ResolutionTier.ARGUMENT
        assert result.entity == "Order"
        assert not result.is_terminal

    def test_argument_fallback_with_verb(self, analyzer):
        result = classify(analyzer, "serviceimpl", "OrderServiceImpl", "place", "saveOrder")
        assert result.tier is ResolutionTier.ARGUMENT
        assert result.operation.operation is OperationType.INSERT
        assert result.operation.table == "Order"

    def test_table_naming_mode(self, bookstore):
        config = AnalyzerConfig(source_root=str(bookstore), base_package=BASE_PACKAGE, table_naming="table")
        analyzer = ApiDbAnalyzer(config)
        result = classify(analyzer, "serviceimpl", "OrderServiceImpl", "place", "saveOrder")
        assert result.operation.table == "orders"

    def test_no_entity_is_unresolved(self, analyzer):
        result = classify(analyzer, "serviceimpl", "BookServiceImpl", "rename", "orElseThrow")
        assert result.kind is ClassificationKind.UNRESOLVED
        assert result.operation is None

    def test_service_call_is_unresolved(self, analyzer):
        # binds to the service interface, which has no repository entity
        result = classify(analyzer, "controllers", "BookController", "list", "getAll")
        assert result.kind is ClassificationKind.UNRESOLVED

    def test_entity_argument_on_service_call(self, analyzer):
        result = classify(analyzer, "controllers", "BookController", "create", "create")
        assert result.tier is ResolutionTier.ARGUMENT
        assert result.kind is ClassificationKind.NON_TERMINAL


class TestDiagnosticFlags:
    """Tests for the analyzer's debug / progress switches."""

    def test_debug_names_declaring_type(self, config, capsys):
        analyzer = ApiDbAnalyzer(config, debug=True)
        result = classify(analyzer, "controllers", "BookController", "list", "getAll")
        assert result.kind is ClassificationKind.UNRESOLVED
        out = capsys.readouterr().out
        assert f"bound to {BASE_PACKAGE}.services.BookService, no entity" in out

    def test_debug_off_by_default(self, analyzer, capsys):
        classify(analyzer, "controllers", "BookController", "list", "getAll")
        assert "[DEBUG]" not in capsys.readouterr().out

    def test_progress_can_be_disabled(self, config, capsys):
        ApiDbAnalyzer(config).analyze()
        assert "[progress]" in capsys.readouterr().out
        ApiDbAnalyzer(config, progress=False).analyze()
        assert "[progress]" not in capsys.readouterr().out
