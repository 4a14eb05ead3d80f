#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
API -> DB operation analyzer for layered Spring-style Java sources.

For every REST endpoint (controller method carrying a routing annotation) the
tool follows the endpoint's outbound call through the service layer into the
repositories and lists the store operations it can trigger:

1. Build the entity -> table index from @Entity / @Table declarations
2. Find controller methods with @GetMapping / @PostMapping / ...
3. Trace the first call of each endpoint across service -> serviceimpl ->
   repository files, classifying every call on the way
4. Print the endpoint -> operations mapping as JSON

Classification of one call (first tier that applies wins):
  - direct:   the call binds to a declaration; a repository method tagged
              @Query / @NativeQuery is a QUERY, otherwise the declaring
              repository's entity is used
  - scope:    the receiver is a repository field of the current file
  - argument: the first argument whose static type is an entity
Then the call name decides the verb: save/insert, delete, update, find/get.
Calls without a verb are traced further.

Usage:
    api-db-analyzer
    api-db-analyzer api-db-analyzer.yml -o api_db_operations.json --summary
    api-db-analyzer api-db-analyzer.yml --xlsx crud_matrix.xlsx -v
"""

from __future__ import annotations

import argparse
import contextlib
import json
import os
import sys
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, TextIO, Tuple

import yaml

from java_source_model import (
    SourceModelError,
    SourceRootUnreadable,
    SourceTree,
    SourceUnit,
    TagExtractionFailure,
    simple_type_name,
)


NOTFOUND = "NOTFOUND"
UNKNOWN_SERVICE_CALL = "unknownServiceCall"
DEFAULT_CONFIG_FILE = "api-db-analyzer.yml"

ROUTE_TAGS = ("GetMapping", "PostMapping", "PutMapping", "DeleteMapping", "RequestMapping")


# ---------- Configuration ----------

@dataclass
class AnalyzerConfig:
    """Where the layers live and which annotations mark them."""
    source_root: str = "src/main/java"
    base_package: str = ""
    entity_dir: str = "entities"
    repository_dir: str = "repository"
    service_dir: str = "services"
    service_impl_dir: str = "serviceimpl"
    controller_dir: str = "controllers"
    impl_suffix: str = "Impl"
    entity_tag: str = "Entity"
    table_tag: str = "Table"
    controller_tags: List[str] = field(default_factory=lambda: ["RestController"])
    route_tags: List[str] = field(default_factory=lambda: list(ROUTE_TAGS))
    query_tags: List[str] = field(default_factory=lambda: ["Query", "NativeQuery"])
    table_naming: str = "entity"  # entity | table

    def __post_init__(self):
        if self.table_naming not in ("entity", "table"):
            raise ValueError(f"table_naming must be 'entity' or 'table', got {self.table_naming!r}")

    @property
    def base_path(self) -> Path:
        base = Path(self.source_root)
        return base / self.base_package.replace(".", "/") if self.base_package else base

    def layer_package(self, layer_dir: str) -> str:
        return f"{self.base_package}.{layer_dir}" if self.base_package else layer_dir

    def layer_path(self, layer_dir: str) -> Path:
        return self.base_path / layer_dir

    def in_layer(self, qualified_name: str, layer_dir: str) -> bool:
        return qualified_name.startswith(self.layer_package(layer_dir) + ".")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "AnalyzerConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        config = cls(**data)
        # relative source roots are relative to the config file
        if base_dir is not None and not Path(config.source_root).is_absolute():
            config.source_root = str(base_dir / config.source_root)
        return config

    @classmethod
    def load(cls, path: Path) -> "AnalyzerConfig":
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        return cls.from_dict(data, base_dir=Path(path).parent)


# ---------- Data structures ----------

class OperationType(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    QUERY = "QUERY"


@dataclass(frozen=True)
class DbOperation:
    """One store operation found while tracing an endpoint."""
    operation: OperationType
    method_call: str                 # source text of the originating call
    table: Optional[str] = None      # SELECT/INSERT/UPDATE/DELETE
    query: Optional[str] = None      # QUERY

    def to_dict(self) -> Dict[str, str]:
        out = {"operation": self.operation.value}
        if self.operation is OperationType.QUERY:
            out["query"] = self.query or ""
        else:
            out["table"] = self.table or ""
        out["methodCall"] = self.method_call
        return out


@dataclass
class EndpointResult:
    key: str                         # routing annotation as written
    service_method: str              # name of the representative call
    operations: List[DbOperation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serviceMethod": self.service_method,
            "dbOperations": [op.to_dict() for op in self.operations],
        }


class FinalReport:
    """Endpoint results in scan order, keyed by routing annotation text."""

    def __init__(self):
        self._results: Dict[str, EndpointResult] = {}

    def add(self, result: EndpointResult) -> None:
        self._results[result.key] = result

    def __iter__(self) -> Iterator[EndpointResult]:
        return iter(self._results.values())

    def __len__(self) -> int:
        return len(self._results)

    def __getitem__(self, key: str) -> EndpointResult:
        return self._results[key]

    def __contains__(self, key: object) -> bool:
        return key in self._results

    def keys(self) -> List[str]:
        return list(self._results)

    def to_dict(self) -> Dict[str, Any]:
        return {key: result.to_dict() for key, result in self._results.items()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


class ResolutionTier(str, Enum):
    QUERY_TAG = "query_tag"
    DIRECT = "direct"
    SCOPE = "scope"
    ARGUMENT = "argument"
    NONE = "none"


class ClassificationKind(str, Enum):
    OPERATION = "operation"
    NON_TERMINAL = "non_terminal"
    UNRESOLVED = "unresolved"


@dataclass
class DirectResolution:
    """Outcome of binding a call to its declaration (tier 1)."""
    resolved: bool
    declaring_type: Optional[str] = None
    entity: str = NOTFOUND
    query: Optional[str] = None
    reason: str = ""


@dataclass
class Classification:
    kind: ClassificationKind
    tier: ResolutionTier = ResolutionTier.NONE
    entity: Optional[str] = None
    operation: Optional[DbOperation] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is ClassificationKind.OPERATION


# verb -> operation, checked in this order
VERB_RULES: Tuple[Tuple[Tuple[str, ...], OperationType], ...] = (
    (("save", "insert"), OperationType.INSERT),
    (("delete",), OperationType.DELETE),
    (("update",), OperationType.UPDATE),
    (("find", "get"), OperationType.SELECT),
)


def operation_for_call_name(name: str) -> Optional[OperationType]:
    lowered = name.lower()
    for verbs, op in VERB_RULES:
        if any(v in lowered for v in verbs):
            return op
    return None


# ---------- Diagnostics ----------

@contextlib.contextmanager
def suppress_diagnostics(sink: Optional[TextIO] = None):
    """Keep scan diagnostics (printed to stdout) away from the report channel.

    With a sink the lines are forwarded there, otherwise they are discarded.
    stdout is restored however the block exits.
    """
    if sink is not None:
        with contextlib.redirect_stdout(sink):
            yield
        return
    with open(os.devnull, "w", encoding="utf-8") as devnull, contextlib.redirect_stdout(devnull):
        yield


# ---------- Entity -> table index ----------

def table_name_for(unit: SourceUnit, type_node, config: AnalyzerConfig) -> str:
    """Lower-cased type name unless @Table names the table."""
    entity = unit.type_name(type_node)
    table = entity.lower()
    tag = unit.find_annotation(type_node, (config.table_tag,))
    if tag is None:
        return table
    try:
        if tag.pair_nodes:
            if "name" in tag.pair_nodes:
                table = tag.string_value("name") or table
        elif tag.value_node is not None:
            table = tag.string_value() or table
    except TagExtractionFailure as e:
        print(f"[WARN] {entity}: ignoring {tag.text}: {e}", file=sys.stderr)
    return table


def build_entity_table_index(tree: SourceTree, config: AnalyzerConfig) -> Mapping[str, str]:
    tables: Dict[str, str] = {}
    entity_dir = config.layer_path(config.entity_dir)
    files = tree.iter_java_files(entity_dir)
    if not files:
        print(f"[WARN] no entity sources under {entity_dir}", file=sys.stderr)
    for path in files:
        try:
            unit = tree.parse_file(path)
        except (SourceModelError, OSError) as e:
            print(f"[WARN] skip entity file {path}: {e}", file=sys.stderr)
            continue
        for type_node in unit.type_declarations():
            if unit.find_annotation(type_node, (config.entity_tag,)) is None:
                continue
            tables[unit.type_name(type_node)] = table_name_for(unit, type_node, config)
    return MappingProxyType(tables)


# ---------- Tracing ----------

@dataclass
class _TraceFrame:
    """One expanded method set: the calls still to visit in one file."""
    signature: str
    unit: SourceUnit
    scope_index: Dict[str, str]
    calls: Iterator


class ApiDbAnalyzer:
    """Endpoint -> DB operation tracer over one source tree."""

    def __init__(self, config: AnalyzerConfig, tree: Optional[SourceTree] = None,
                 entity_tables: Optional[Mapping[str, str]] = None,
                 debug: bool = False, progress: bool = True):
        self.config = config
        self.tree = tree or SourceTree(config.source_root)
        self._entity_tables = MappingProxyType(dict(entity_tables)) if entity_tables is not None else None

        self._debug_enabled: bool = debug
        self._progress_enabled: bool = progress

    def _debug(self, msg: str):
        if getattr(self, "_debug_enabled", False):
            print(msg)

    def _progress(self, msg: str):
        if getattr(self, "_progress_enabled", True):
            print(msg)

    @property
    def entity_tables(self) -> Mapping[str, str]:
        if self._entity_tables is None:
            self._entity_tables = build_entity_table_index(self.tree, self.config)
        return self._entity_tables

    def _table_label(self, entity: str) -> str:
        if self.config.table_naming == "table":
            return self.entity_tables.get(entity, entity)
        return entity

    # -- repository resolver --

    def resolve_repository_entity(self, repository_name: str) -> str:
        """Entity a repository interface is parameterized over, or NOTFOUND."""
        unit = self.tree.load(repository_name)
        types = unit.type_declarations()
        if not types:
            return NOTFOUND
        supertypes = unit.supertype_nodes(types[0])
        if not supertypes:
            return NOTFOUND
        args = unit.type_arguments(supertypes[0])
        if not args:
            return NOTFOUND
        generic = unit.text(args[0])
        self._debug(f"[DEBUG] repository {repository_name} -> generic {generic}")
        return generic if generic in self.entity_tables else NOTFOUND

    # -- scope index --

    def build_scope_index(self, unit: SourceUnit) -> Dict[str, str]:
        """Repository-typed fields of one file -> entity (or NOTFOUND)."""
        index: Dict[str, str] = {}
        for type_node in unit.type_declarations():
            for field_node in unit.fields(type_node):
                try:
                    qualified = self.tree.qualify_type(unit.field_type_text(field_node), unit)
                except SourceModelError as e:
                    self._debug(f"[DEBUG] Failed to resolve field type in {unit.path.name}: {e}")
                    continue
                if not self.config.in_layer(qualified, self.config.repository_dir):
                    continue
                try:
                    entity = self.resolve_repository_entity(qualified)
                except (SourceModelError, OSError) as e:
                    print(f"[WARN] Failed to analyze repository: {qualified} due to: {e}", file=sys.stderr)
                    entity = NOTFOUND
                for name in unit.field_names(field_node):
                    index[name] = entity
        self._debug(f"[DEBUG] repositories in {unit.path.name}: {index}")
        return index

    # -- classifier --

    def _find_query(self, declaring_type: str, method_name: str) -> Optional[str]:
        unit, _type_node = self.tree.find_type(declaring_type)
        for method in unit.methods_named(method_name):
            for tag in unit.annotations(method):
                if tag.name not in self.config.query_tags:
                    continue
                try:
                    query = tag.string_value("value") if tag.pair_nodes else tag.string_value()
                except TagExtractionFailure as e:
                    self._debug(f"[DEBUG] {declaring_type}.{method_name}: unreadable {tag.text}: {e}")
                    continue
                if query:
                    return query
        return None

    def resolve_direct(self, call, unit: SourceUnit) -> DirectResolution:
        try:
            method = self.tree.resolve_method(call, unit)
        except SourceModelError as e:
            return DirectResolution(resolved=False, reason=str(e))

        entity = NOTFOUND
        try:
            entity = self.resolve_repository_entity(method.declaring_type)
        except (SourceModelError, OSError) as e:
            self._debug(f"[DEBUG] no repository entity for {method.declaring_type}: {e}")

        query = None
        if self.config.in_layer(method.declaring_type, self.config.repository_dir):
            try:
                query = self._find_query(method.declaring_type, method.name)
            except (SourceModelError, OSError) as e:
                self._debug(f"[DEBUG] Failed to extract query from call: {method.name} due to: {e}")
        return DirectResolution(resolved=True, declaring_type=method.declaring_type, entity=entity, query=query)

    def entity_from_scope(self, call, unit: SourceUnit, scope_index: Mapping[str, str]) -> Optional[str]:
        receiver = unit.call_receiver_text(call)
        if not receiver:
            return None
        candidates = [receiver]
        if receiver.startswith("this."):
            candidates.append(receiver[len("this."):])
        for candidate in candidates:
            entity = scope_index.get(candidate)
            if entity is not None and entity in self.entity_tables:
                return entity
        return None

    def entity_from_arguments(self, call, unit: SourceUnit) -> Optional[str]:
        for arg in unit.call_arguments(call):
            try:
                type_name = self.tree.expression_type(arg, unit)
            except SourceModelError as e:
                self._debug(f"[DEBUG] Failed to resolve argument type for: {unit.call_text(arg)} due to: {e}")
                continue
            simple = simple_type_name(type_name)
            if simple in self.entity_tables:
                return simple
        return None

    def classify_call(self, call, unit: SourceUnit, scope_index: Mapping[str, str]) -> Classification:
        name = unit.call_name(call)
        call_text = unit.call_text(call)
        entity: Optional[str] = None
        tier = ResolutionTier.NONE

        direct = self.resolve_direct(call, unit)
        if direct.resolved:
            if direct.query:
                return Classification(
                    kind=ClassificationKind.OPERATION,
                    tier=ResolutionTier.QUERY_TAG,
                    operation=DbOperation(OperationType.QUERY, method_call=call_text, query=direct.query),
                )
            if direct.entity in self.entity_tables:
                entity, tier = direct.entity, ResolutionTier.DIRECT
            else:
                self._debug(f"[DEBUG] {call_text}: bound to {direct.declaring_type}, no entity")
        else:
            self._debug(f"[DEBUG] {call_text}: direct resolution failed ({direct.reason})")
            entity = self.entity_from_scope(call, unit, scope_index)
            if entity is not None:
                tier = ResolutionTier.SCOPE

        if entity is None:
            entity = self.entity_from_arguments(call, unit)
            if entity is not None:
                tier = ResolutionTier.ARGUMENT

        if entity is None:
            return Classification(kind=ClassificationKind.UNRESOLVED)

        op = operation_for_call_name(name)
        if op is None:
            return Classification(kind=ClassificationKind.NON_TERMINAL, tier=tier, entity=entity)
        return Classification(
            kind=ClassificationKind.OPERATION,
            tier=tier,
            entity=entity,
            operation=DbOperation(op, method_call=call_text, table=self._table_label(entity)),
        )

    # -- call graph tracer --

    def implementation_path(self, declaring_type: str) -> Path:
        """serviceimpl/<Name>Impl.java for service interfaces when present, else the type's own file."""
        cfg = self.config
        if cfg.in_layer(declaring_type, cfg.service_dir):
            relative = declaring_type[len(cfg.layer_package(cfg.service_dir)):]
            impl_name = cfg.layer_package(cfg.service_impl_dir) + relative + cfg.impl_suffix
            impl_path = self.tree.path_for(impl_name)
            if impl_path.is_file():
                return impl_path
        try:
            return self.tree.find_type(declaring_type)[0].path
        except SourceModelError:
            return self.tree.path_for(declaring_type)

    def _open_frame(self, call, unit: SourceUnit, visited: Set[str]) -> Optional[_TraceFrame]:
        try:
            method = self.tree.resolve_method(call, unit)
        except SourceModelError as e:
            print(f"[WARN] Failed to resolve method: {unit.call_text(call)} due to: {e}", file=sys.stderr)
            return None
        signature = method.qualified_signature
        if signature in visited:
            return None
        visited.add(signature)

        target = self.implementation_path(method.declaring_type)
        try:
            target_unit = self.tree.parse_file(target)
        except (SourceModelError, OSError) as e:
            print(f"[WARN] Failed to load {signature} from {target}: {e}", file=sys.stderr)
            return None

        self._debug(f"[DEBUG] expand {signature} in {target.name}")
        scope_index = self.build_scope_index(target_unit)
        matching = target_unit.methods_named(method.name)
        calls = (c for m in matching for c in target_unit.iter_calls(m))
        return _TraceFrame(signature=signature, unit=target_unit, scope_index=scope_index, calls=calls)

    def trace(self, call, unit: SourceUnit) -> List[DbOperation]:
        """All operations reachable from one entry call, in discovery order."""
        operations: List[DbOperation] = []
        visited: Set[str] = set()
        stack: List[_TraceFrame] = []

        root = self._open_frame(call, unit, visited)
        if root is not None:
            stack.append(root)

        while stack:
            frame = stack[-1]
            nested = next(frame.calls, None)
            if nested is None:
                stack.pop()
                continue
            try:
                result = self.classify_call(nested, frame.unit, frame.scope_index)
                self._debug(f"[DEBUG] {frame.unit.call_text(nested)} -> {result.kind.value}/{result.tier.value}")
                if result.is_terminal:
                    operations.append(result.operation)
                    continue
                child = self._open_frame(nested, frame.unit, visited)
            except (SourceModelError, OSError) as e:
                print(f"[WARN] Nested call failed: {frame.unit.call_text(nested)} due to: {e}", file=sys.stderr)
                continue
            if child is not None:
                stack.append(child)
        return operations

    # -- endpoint scanner --

    def _check_source_root(self) -> None:
        base = self.config.base_path
        try:
            next(base.iterdir(), None)
        except OSError as e:
            raise SourceRootUnreadable(f"cannot read source root {base}: {e}") from e

    def iter_endpoints(self) -> Iterator[Tuple[str, SourceUnit, Any]]:
        cfg = self.config
        controller_dir = cfg.layer_path(cfg.controller_dir)
        files = self.tree.iter_java_files(controller_dir)
        if not files:
            print(f"[WARN] no controller sources under {controller_dir}", file=sys.stderr)
        for path in files:
            try:
                unit = self.tree.parse_file(path)
            except (SourceModelError, OSError) as e:
                print(f"[WARN] skip controller file {path}: {e}", file=sys.stderr)
                continue
            for type_node in unit.type_declarations():
                if unit.find_annotation(type_node, cfg.controller_tags) is None:
                    continue
                for method in unit.methods(type_node):
                    mapping = unit.find_annotation(method, cfg.route_tags)
                    if mapping is not None:
                        yield mapping.text, unit, method

    def analyze(self) -> FinalReport:
        self._check_source_root()
        started = time.monotonic()
        print(f"[INFO] entities: {dict(self.entity_tables)}")

        report = FinalReport()
        for key, unit, method in self.iter_endpoints():
            call = unit.first_call(method)
            if call is None:
                report.add(EndpointResult(key=key, service_method=UNKNOWN_SERVICE_CALL))
                continue
            operations = self.trace(call, unit)
            report.add(EndpointResult(key=key, service_method=unit.call_name(call), operations=operations))
            self._progress(f"[progress] {key} -> {unit.call_name(call)}: {len(operations)} operation(s)")

        print(f"[INFO] endpoints={len(report)} elapsed={time.monotonic() - started:.1f}s")
        return report


# ---------- CLI entry point ----------

def load_config(path: Optional[str]) -> AnalyzerConfig:
    if path:
        config_path = Path(path)
        if not config_path.is_file():
            raise SystemExit(f"[ERROR] config file not found: {config_path}")
        return AnalyzerConfig.load(config_path)
    default = Path(DEFAULT_CONFIG_FILE)
    if default.is_file():
        return AnalyzerConfig.load(default)
    return AnalyzerConfig()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Trace REST endpoints of a layered Java application to the DB operations they trigger"
    )
    parser.add_argument("config", nargs="?", default=None,
                        help=f"YAML config (default: ./{DEFAULT_CONFIG_FILE} if present)")
    parser.add_argument("-o", "--output", default="",
                        help="Write the JSON report to this file instead of stdout")
    parser.add_argument("--xlsx", default="", help="Also write a CRUD matrix workbook")
    parser.add_argument("--summary", action="store_true",
                        help="Print a table x endpoint CRUD summary to stderr")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Show scan diagnostics on stderr")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        raise SystemExit(f"[ERROR] invalid config: {e}")

    analyzer = ApiDbAnalyzer(config, debug=args.verbose)

    try:
        with suppress_diagnostics(sys.stderr if args.verbose else None):
            report = analyzer.analyze()
    except SourceRootUnreadable as e:
        raise SystemExit(f"[ERROR] {e}")

    text = report.to_json()
    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text + "\n", encoding="utf-8")
        print(f"[INFO] report written: {output_path}", file=sys.stderr)
    else:
        print(text)

    if args.summary or args.xlsx:
        from crud_matrix_report import build_crud_matrix, print_crud_summary, save_crud_workbook

        report_dict = report.to_dict()
        matrix = build_crud_matrix(report_dict)
        if args.summary:
            print_crud_summary(report_dict, matrix, file=sys.stderr)
        if args.xlsx:
            save_crud_workbook(Path(args.xlsx), report_dict, matrix)
            print(f"[INFO] workbook written: {args.xlsx}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
