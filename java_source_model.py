#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Java source model built on tree-sitter-java.

Parses the files of one source tree on demand and answers the questions the
API/DB analyzer asks about them:

- declared types, fields, methods and their annotations
- method invocations (pre-order, receiver / arguments)
- cross-reference resolution: the static type of an expression and the
  declaration a method invocation binds to

Resolution is static and partial. Whenever a symbol cannot be
determined from the sources under the root (library types, ``var`` locals,
lambdas, generics, ...) an ``UnresolvedSymbol`` is raised instead of guessing.
"""

from __future__ import annotations

import re
import textwrap
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from tree_sitter import Language, Parser
import tree_sitter_java as tsjava


# ---------- Tree-sitter init ----------

JAVA_LANGUAGE = Language(tsjava.language())


def create_parser() -> Parser:
    parser = Parser()
    parser.language = JAVA_LANGUAGE
    return parser


# ---------- Errors ----------

class SourceModelError(Exception):
    """Base class for everything the source model can fail with."""


class UnresolvedSymbol(SourceModelError):
    """A type, variable or method could not be determined statically."""


class SourceNotFound(SourceModelError):
    """No source file at the expected path."""


class ParseFailure(SourceModelError):
    """tree-sitter reported syntax errors for the file."""


class TagExtractionFailure(SourceModelError):
    """An annotation value is missing or not a string constant."""


class SourceRootUnreadable(SourceModelError):
    """The configured source root does not exist or cannot be listed."""


# ---------- Constants ----------

TYPE_DECLARATIONS = (
    "class_declaration",
    "interface_declaration",
    "enum_declaration",
    "record_declaration",
    "annotation_type_declaration",
)

PRIMITIVE_TYPES = {
    "void", "boolean", "byte", "char", "short", "int", "long", "float", "double",
}

# java.lang is implicitly imported
JAVA_LANG_TYPES = {
    "Object", "String", "StringBuilder", "CharSequence", "Boolean", "Byte", "Character",
    "Short", "Integer", "Long", "Float", "Double", "Number", "Math", "System",
    "Iterable", "Enum", "Record", "Class", "Void", "Thread", "Runnable",
    "Exception", "RuntimeException", "Error", "Throwable",
    "IllegalArgumentException", "IllegalStateException",
}

LITERAL_TYPES = {
    "string_literal": "java.lang.String",
    "character_literal": "char",
    "decimal_integer_literal": "int",
    "hex_integer_literal": "int",
    "octal_integer_literal": "int",
    "binary_integer_literal": "int",
    "decimal_floating_point_literal": "double",
    "hex_floating_point_literal": "double",
    "true": "boolean",
    "false": "boolean",
}

_GENERIC_ARGS_RE = re.compile(r"<[^<>]*>")
_TYPE_ANNOTATION_RE = re.compile(r"@[\w.]+(?:\([^)]*\))?\s*")


# ---------- Utilities ----------

def node_text(source_code: bytes, node) -> str:
    return source_code[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def strip_type_arguments(type_text: str) -> str:
    """Reduce a declared type to its raw name.

    Examples:
      - "List<Book>" -> "List"
      - "Map<String, List<Book>>" -> "Map"
      - "com.acme.Book[]" -> "com.acme.Book"
      - "@NonNull Book" -> "Book"
    """
    t = _TYPE_ANNOTATION_RE.sub("", type_text or "")
    previous = None
    while previous != t:
        previous = t
        t = _GENERIC_ARGS_RE.sub("", t)
    t = t.replace("...", "").replace("[]", "")
    return "".join(t.split())


def simple_type_name(type_name: str) -> str:
    raw = strip_type_arguments(type_name)
    return raw.rsplit(".", 1)[-1]


def walk(node) -> Iterator:
    """Pre-order traversal (document order), without recursion."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def _is_comment(node) -> bool:
    return node.type in ("line_comment", "block_comment")


def _named(node) -> List:
    return [c for c in node.named_children if not _is_comment(c)]


def string_constant(source_code: bytes, node) -> str:
    """Evaluate a compile-time string expression (literal, text block, '+' concatenation)."""
    if node.type == "string_literal":
        text = node_text(source_code, node)
        if text.startswith('"""'):
            body = text[3:-3]
            if body.startswith("\n"):
                body = body[1:]
            return textwrap.dedent(body).strip()
        return text[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    if node.type == "binary_expression":
        operator = node.child_by_field_name("operator")
        if operator is not None and node_text(source_code, operator) == "+":
            left = node.child_by_field_name("left")
            right = node.child_by_field_name("right")
            return string_constant(source_code, left) + string_constant(source_code, right)
    if node.type in ("parenthesized_expression", "element_value"):
        inner = _named(node)
        if inner:
            return string_constant(source_code, inner[0])
    raise TagExtractionFailure(f"not a string constant: {node_text(source_code, node)}")


# ---------- Data structures ----------

@dataclass
class ImportInfo:
    full_path: str
    simple_name: str
    is_static: bool = False
    is_wildcard: bool = False


@dataclass
class Annotation:
    """One annotation as written on a declaration."""
    name: str                                   # simple name, e.g. "Table"
    text: str                                   # literal source text, e.g. '@Table(name = "books")'
    value_node: Optional[object] = field(default=None, repr=False)
    pair_nodes: Dict[str, object] = field(default_factory=dict, repr=False)
    source: bytes = field(default=b"", repr=False)

    @property
    def pairs(self) -> Dict[str, str]:
        return {k: node_text(self.source, v) for k, v in self.pair_nodes.items()}

    def string_value(self, key: Optional[str] = None) -> str:
        node = self.value_node if key is None else self.pair_nodes.get(key)
        if node is None:
            raise TagExtractionFailure(f"{self.text}: no '{key or 'value'}' element")
        return string_constant(self.source, node)


@dataclass
class ResolvedMethod:
    declaring_type: str
    name: str
    parameter_types: List[str]
    return_type: Optional[str]
    unit: "SourceUnit" = field(repr=False)
    node: object = field(repr=False)

    @property
    def qualified_signature(self) -> str:
        return f"{self.declaring_type}.{self.name}({', '.join(self.parameter_types)})"


# ---------- Parsed file ----------

class SourceUnit:
    """A parsed compilation unit plus the accessors the analyzer needs."""

    def __init__(self, path: Path, source: bytes, root):
        self.path = path
        self.source = source
        self.root = root
        self.package = self._read_package()
        self.imports = self._read_imports()

    def text(self, node) -> str:
        return node_text(self.source, node)

    def _read_package(self) -> str:
        for child in self.root.children:
            if child.type == "package_declaration":
                for c in child.children:
                    if c.type in ("scoped_identifier", "identifier"):
                        return self.text(c)
        return ""

    def _read_imports(self) -> List[ImportInfo]:
        imports = []
        for child in self.root.children:
            if child.type != "import_declaration":
                continue
            is_static = any(c.type == "static" for c in child.children)
            is_wildcard = any(c.type == "asterisk" for c in child.children)
            for c in child.children:
                if c.type in ("scoped_identifier", "identifier"):
                    full_path = self.text(c)
                    imports.append(ImportInfo(
                        full_path=full_path,
                        simple_name=full_path.rsplit(".", 1)[-1],
                        is_static=is_static,
                        is_wildcard=is_wildcard,
                    ))
                    break
        return imports

    # -- types --

    def type_declarations(self) -> List:
        """All type declarations of the file, nested ones included, in document order."""
        return [n for n in walk(self.root) if n.type in TYPE_DECLARATIONS]

    def type_name(self, type_node) -> str:
        name = type_node.child_by_field_name("name")
        return self.text(name) if name is not None else "<anonymous>"

    def qualified_name(self, type_node) -> str:
        names = []
        current = type_node
        while current is not None:
            if current.type in TYPE_DECLARATIONS:
                names.append(self.type_name(current))
            current = current.parent
        names.reverse()
        if self.package:
            names.insert(0, self.package)
        return ".".join(names)

    def type_by_qualified_name(self, qualified_name: str):
        for node in self.type_declarations():
            if self.qualified_name(node) == qualified_name:
                return node
        return None

    def enclosing_type(self, node):
        current = node.parent
        while current is not None:
            if current.type in TYPE_DECLARATIONS:
                return current
            current = current.parent
        return None

    def supertype_nodes(self, type_node) -> List:
        """Declared supertypes in source order: superclass first, then interfaces."""
        out = []
        for child in type_node.children:
            if child.type == "superclass":
                out.extend(_named(child))
            elif child.type in ("super_interfaces", "extends_interfaces"):
                for type_list in _named(child):
                    if type_list.type == "type_list":
                        out.extend(_named(type_list))
        return out

    def type_arguments(self, type_node) -> List:
        for child in type_node.children:
            if child.type == "type_arguments":
                return _named(child)
        return []

    def _members(self, type_node) -> List:
        body = type_node.child_by_field_name("body")
        if body is None:
            return []
        members = []
        for child in _named(body):
            if child.type == "enum_body_declarations":
                members.extend(_named(child))
            else:
                members.append(child)
        return members

    # -- annotations --

    def annotations(self, node) -> List[Annotation]:
        out = []
        for child in node.children:
            if child.type != "modifiers":
                continue
            for mod in child.children:
                if mod.type in ("marker_annotation", "annotation"):
                    out.append(self._read_annotation(mod))
        return out

    def _read_annotation(self, node) -> Annotation:
        name_node = node.child_by_field_name("name")
        name = self.text(name_node).rsplit(".", 1)[-1] if name_node is not None else ""
        value_node = None
        pair_nodes: Dict[str, object] = {}
        args = node.child_by_field_name("arguments")
        if args is not None:
            for arg in _named(args):
                if arg.type == "element_value_pair":
                    key = arg.child_by_field_name("key")
                    value = arg.child_by_field_name("value")
                    if key is not None and value is not None:
                        pair_nodes[self.text(key)] = value
                elif value_node is None:
                    value_node = arg
        return Annotation(
            name=name,
            text=normalize_whitespace(self.text(node)),
            value_node=value_node,
            pair_nodes=pair_nodes,
            source=self.source,
        )

    def find_annotation(self, node, names) -> Optional[Annotation]:
        for ann in self.annotations(node):
            if ann.name in names:
                return ann
        return None

    # -- fields --

    def fields(self, type_node) -> List:
        return [m for m in self._members(type_node) if m.type == "field_declaration"]

    def field_type_text(self, field_node) -> str:
        type_node = field_node.child_by_field_name("type")
        return self.text(type_node) if type_node is not None else ""

    def field_names(self, field_node) -> List[str]:
        names = []
        for declarator in field_node.children_by_field_name("declarator"):
            name = declarator.child_by_field_name("name")
            if name is not None:
                names.append(self.text(name))
        return names

    # -- methods --

    def declared_methods(self, type_node) -> List:
        """Methods declared directly in the type body."""
        return [m for m in self._members(type_node) if m.type == "method_declaration"]

    def methods(self, node=None) -> List:
        """Every method declaration below ``node`` (whole file by default), pre-order."""
        start = self.root if node is None else node
        return [n for n in walk(start) if n.type == "method_declaration"]

    def method_name(self, method_node) -> str:
        return self.text(method_node.child_by_field_name("name"))

    def methods_named(self, name: str) -> List:
        return [m for m in self.methods() if self.method_name(m) == name]

    def parameter_nodes(self, method_node) -> List:
        params = method_node.child_by_field_name("parameters")
        if params is None:
            return []
        return [p for p in _named(params) if p.type in ("formal_parameter", "spread_parameter")]

    def parameter_types(self, method_node) -> List[str]:
        out = []
        for p in self.parameter_nodes(method_node):
            if p.type == "spread_parameter":
                type_nodes = [c for c in _named(p) if c.type not in ("modifiers", "variable_declarator")]
                out.append(normalize_whitespace(self.text(type_nodes[0])) + "..." if type_nodes else "?...")
            else:
                out.append(normalize_whitespace(self.text(p.child_by_field_name("type"))))
        return out

    def return_type(self, method_node) -> Optional[str]:
        type_node = method_node.child_by_field_name("type")
        return normalize_whitespace(self.text(type_node)) if type_node is not None else None

    def accepts_arity(self, method_node, arg_count: int) -> bool:
        params = self.parameter_nodes(method_node)
        if any(p.type == "spread_parameter" for p in params):
            return arg_count >= len(params) - 1
        return arg_count == len(params)

    # -- calls --

    def iter_calls(self, node) -> Iterator:
        """Method invocations below ``node`` in pre-order (outer call before its nested calls)."""
        for n in walk(node):
            if n.type == "method_invocation":
                yield n

    def first_call(self, node):
        return next(self.iter_calls(node), None)

    def call_name(self, call) -> str:
        return self.text(call.child_by_field_name("name"))

    def call_receiver(self, call):
        return call.child_by_field_name("object")

    def call_receiver_text(self, call) -> Optional[str]:
        receiver = self.call_receiver(call)
        return normalize_whitespace(self.text(receiver)) if receiver is not None else None

    def call_arguments(self, call) -> List:
        args = call.child_by_field_name("arguments")
        return _named(args) if args is not None else []

    def call_text(self, call) -> str:
        return normalize_whitespace(self.text(call))


# ---------- Source tree / cross references ----------

class SourceTree:
    """All Java sources below one root, parsed lazily and memoized for the run."""

    def __init__(self, source_root):
        self.source_root = Path(source_root)
        self._parser = create_parser()
        self._units: Dict[Path, SourceUnit] = {}

    def path_for(self, qualified_name: str) -> Path:
        return self.source_root / (qualified_name.replace(".", "/") + ".java")

    def has_source(self, qualified_name: str) -> bool:
        return self.path_for(qualified_name).is_file()

    @staticmethod
    def iter_java_files(directory: Path) -> List[Path]:
        directory = Path(directory)
        if not directory.is_dir():
            return []
        return sorted(directory.rglob("*.java"))

    def parse_file(self, path) -> SourceUnit:
        path = Path(path)
        unit = self._units.get(path)
        if unit is not None:
            return unit
        if not path.is_file():
            raise SourceNotFound(f"source not found: {path}")
        source = path.read_bytes()
        tree = self._parser.parse(source)
        if tree.root_node.has_error:
            raise ParseFailure(f"failed to parse: {path}")
        unit = SourceUnit(path, source, tree.root_node)
        self._units[path] = unit
        return unit

    def load(self, qualified_name: str) -> SourceUnit:
        return self.parse_file(self.path_for(qualified_name))

    def find_type(self, qualified_name: str) -> Tuple[SourceUnit, object]:
        """Locate a (possibly nested) type declaration by qualified name."""
        parts = qualified_name.split(".")
        for cut in range(len(parts), 0, -1):
            path = self.path_for(".".join(parts[:cut]))
            if path.is_file():
                unit = self.parse_file(path)
                node = unit.type_by_qualified_name(qualified_name)
                if node is not None:
                    return unit, node
                break
        raise UnresolvedSymbol(f"type not in source tree: {qualified_name}")

    # -- types --

    def qualify_type(self, type_text: str, unit: SourceUnit) -> str:
        name = strip_type_arguments(type_text)
        if not name:
            raise UnresolvedSymbol(f"empty type in {unit.path}")
        if name in PRIMITIVE_TYPES:
            return name
        if name == "var":
            raise UnresolvedSymbol("'var' declaration has no declared type")
        head, _, rest = name.partition(".")
        if rest and head[:1].islower():
            return name
        qualified_head = self._qualify_simple(head, unit)
        return f"{qualified_head}.{rest}" if rest else qualified_head

    def _qualify_simple(self, name: str, unit: SourceUnit) -> str:
        for node in unit.type_declarations():
            if unit.type_name(node) == name:
                return unit.qualified_name(node)
        for imp in unit.imports:
            if not imp.is_static and not imp.is_wildcard and imp.simple_name == name:
                return imp.full_path
        same_package = f"{unit.package}.{name}" if unit.package else name
        if self.has_source(same_package):
            return same_package
        for imp in unit.imports:
            if imp.is_wildcard and not imp.is_static:
                candidate = f"{imp.full_path}.{name}"
                if self.has_source(candidate):
                    return candidate
        if name in JAVA_LANG_TYPES:
            return f"java.lang.{name}"
        raise UnresolvedSymbol(f"cannot resolve type '{name}' in {unit.path.name}")

    def _hierarchy(self, qualified_name: str) -> Iterator[Tuple[str, SourceUnit, object]]:
        """Breadth-first walk over a type and its supertypes that exist in the source tree."""
        seen: Set[str] = set()
        queue = deque([qualified_name])
        while queue:
            qn = queue.popleft()
            if qn in seen:
                continue
            seen.add(qn)
            try:
                unit, type_node = self.find_type(qn)
            except UnresolvedSymbol:
                continue
            yield qn, unit, type_node
            for st in unit.supertype_nodes(type_node):
                try:
                    queue.append(self.qualify_type(unit.text(st), unit))
                except UnresolvedSymbol:
                    continue

    def find_method(self, owner: str, name: str, arg_count: int) -> ResolvedMethod:
        """First declaration of ``name`` accepting ``arg_count`` arguments in ``owner``'s hierarchy."""
        for qn, unit, type_node in self._hierarchy(owner):
            for m in unit.declared_methods(type_node):
                if unit.method_name(m) == name and unit.accepts_arity(m, arg_count):
                    return ResolvedMethod(
                        declaring_type=qn,
                        name=name,
                        parameter_types=unit.parameter_types(m),
                        return_type=unit.return_type(m),
                        unit=unit,
                        node=m,
                    )
        raise UnresolvedSymbol(f"cannot resolve method {owner}.{name}/{arg_count}")

    def find_field(self, owner: str, name: str) -> Tuple[str, SourceUnit]:
        for _qn, unit, type_node in self._hierarchy(owner):
            for f in unit.fields(type_node):
                if name in unit.field_names(f):
                    return unit.field_type_text(f), unit
        raise UnresolvedSymbol(f"cannot resolve field {owner}.{name}")

    # -- expressions --

    def resolve_method(self, call, unit: SourceUnit) -> ResolvedMethod:
        """Bind a method_invocation to its declaration."""
        name = unit.call_name(call)
        arg_count = len(unit.call_arguments(call))
        receiver = unit.call_receiver(call)

        if receiver is None or receiver.type == "this":
            enclosing = unit.enclosing_type(call)
            last_error: Optional[UnresolvedSymbol] = None
            while enclosing is not None:
                try:
                    return self.find_method(unit.qualified_name(enclosing), name, arg_count)
                except UnresolvedSymbol as e:
                    last_error = e
                if receiver is not None:
                    break
                enclosing = unit.enclosing_type(enclosing)
            raise last_error or UnresolvedSymbol(f"no enclosing type for call {name}")

        if receiver.type == "super":
            enclosing = unit.enclosing_type(call)
            supertypes = unit.supertype_nodes(enclosing) if enclosing is not None else []
            if not supertypes:
                raise UnresolvedSymbol(f"no superclass for super.{name}")
            owner = self.qualify_type(unit.text(supertypes[0]), unit)
            return self.find_method(owner, name, arg_count)

        owner = self.expression_type(receiver, unit)
        return self.find_method(owner, name, arg_count)

    def expression_type(self, expr, unit: SourceUnit) -> str:
        """Qualified static type of an expression."""
        kind = expr.type
        if kind == "identifier":
            name = unit.text(expr)
            declared = self._lookup_variable(name, expr, unit)
            if declared is not None:
                type_text, owner_unit = declared
                return self.qualify_type(type_text, owner_unit)
            if name[:1].isupper():
                return self.qualify_type(name, unit)
            raise UnresolvedSymbol(f"cannot resolve symbol '{name}'")
        if kind == "this":
            enclosing = unit.enclosing_type(expr)
            if enclosing is None:
                raise UnresolvedSymbol("'this' outside of a type")
            return unit.qualified_name(enclosing)
        if kind == "field_access":
            owner = self.expression_type(expr.child_by_field_name("object"), unit)
            type_text, owner_unit = self.find_field(owner, unit.text(expr.child_by_field_name("field")))
            return self.qualify_type(type_text, owner_unit)
        if kind in ("object_creation_expression", "cast_expression"):
            return self.qualify_type(unit.text(expr.child_by_field_name("type")), unit)
        if kind == "parenthesized_expression":
            inner = _named(expr)
            if inner:
                return self.expression_type(inner[0], unit)
        if kind == "method_invocation":
            method = self.resolve_method(expr, unit)
            if not method.return_type or method.return_type == "void":
                raise UnresolvedSymbol(f"{method.qualified_signature} has no value")
            return self.qualify_type(method.return_type, method.unit)
        if kind in LITERAL_TYPES:
            literal = LITERAL_TYPES[kind]
            text = unit.text(expr)
            if literal == "int" and text[-1:] in ("l", "L"):
                return "long"
            if literal == "double" and text[-1:] in ("f", "F"):
                return "float"
            return literal
        raise UnresolvedSymbol(f"cannot determine type of {kind}: {unit.call_text(expr)}")

    def _lookup_variable(self, name: str, at_node, unit: SourceUnit) -> Optional[Tuple[str, SourceUnit]]:
        """Find the declared type text of a local, parameter or field visible at ``at_node``."""
        current = at_node.parent
        while current is not None:
            kind = current.type
            if kind in ("method_declaration", "constructor_declaration", "lambda_expression"):
                found = self._match_parameters(name, current, unit)
                if found is not None:
                    return found, unit
            elif kind in ("block", "constructor_body", "switch_block_statement_group"):
                for stmt in _named(current):
                    # locals are visible only after their declaration
                    if stmt.end_byte > at_node.start_byte:
                        break
                    if stmt.type == "local_variable_declaration":
                        found = self._match_declarators(name, stmt, unit)
                        if found is not None:
                            return found, unit
            elif kind == "for_statement":
                for init in current.children_by_field_name("init"):
                    if init.type == "local_variable_declaration":
                        found = self._match_declarators(name, init, unit)
                        if found is not None:
                            return found, unit
            elif kind == "enhanced_for_statement":
                var = current.child_by_field_name("name")
                if var is not None and unit.text(var) == name:
                    return unit.text(current.child_by_field_name("type")), unit
            elif kind == "catch_clause":
                for param in _named(current):
                    if param.type == "catch_formal_parameter":
                        var = param.child_by_field_name("name")
                        if var is not None and unit.text(var) == name:
                            catch_type = next((c for c in _named(param) if c.type == "catch_type"), None)
                            if catch_type is not None:
                                return unit.text(_named(catch_type)[0]), unit
            elif kind == "try_with_resources_statement":
                resources = current.child_by_field_name("resources")
                for res in _named(resources) if resources is not None else []:
                    var = res.child_by_field_name("name")
                    res_type = res.child_by_field_name("type")
                    if var is not None and res_type is not None and unit.text(var) == name:
                        return unit.text(res_type), unit
            elif kind in TYPE_DECLARATIONS:
                for f in unit.fields(current):
                    if name in unit.field_names(f):
                        return unit.field_type_text(f), unit
                try:
                    return self.find_field(unit.qualified_name(current), name)
                except UnresolvedSymbol:
                    pass
            current = current.parent
        return None

    def _match_parameters(self, name: str, owner, unit: SourceUnit) -> Optional[str]:
        params = owner.child_by_field_name("parameters")
        if params is None:
            return None
        if params.type in ("identifier", "inferred_parameters"):
            names = [params] if params.type == "identifier" else _named(params)
            if any(unit.text(n) == name for n in names):
                raise UnresolvedSymbol(f"lambda parameter '{name}' has no declared type")
            return None
        for p in _named(params):
            if p.type == "formal_parameter":
                var = p.child_by_field_name("name")
                if var is not None and unit.text(var) == name:
                    return unit.text(p.child_by_field_name("type"))
            elif p.type == "spread_parameter":
                declarator = next((c for c in _named(p) if c.type == "variable_declarator"), None)
                var = declarator.child_by_field_name("name") if declarator is not None else None
                if var is not None and unit.text(var) == name:
                    type_node = next(c for c in _named(p) if c.type not in ("modifiers", "variable_declarator"))
                    return unit.text(type_node) + "[]"
        return None

    def _match_declarators(self, name: str, declaration, unit: SourceUnit) -> Optional[str]:
        for declarator in declaration.children_by_field_name("declarator"):
            var = declarator.child_by_field_name("name")
            if var is not None and unit.text(var) == name:
                return unit.text(declaration.child_by_field_name("type"))
        return None
