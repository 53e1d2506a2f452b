#!/usr/bin/env python3
"""
cwalk - naming and loop-increment checks for C/C++

High-level goals:
- Parse C/C++ (via libclang) into a small immutable syntax tree
- Walk the tree depth-first and offer every node to the registered rules
- Report function names that are not snake_case and counted loops whose
  iterator is never advanced
- Emit diagnostics as compiler-style text or JSON for CI / IDEs

Like the tools it grew out of, everything lives in one module.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Iterable, Iterator, List, Optional, Sequence, TextIO, Tuple, Type
import argparse
from concurrent.futures import ThreadPoolExecutor
import json
import os
import shlex
import sys
import threading

from clang import cindex
import yaml

__version__ = "0.1.0"


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class CwalkError(Exception):
    """Base class for every error cwalk raises on purpose."""


class ConfigError(CwalkError):
    """The invocation or rule configuration could not be established."""


class FrontEndError(CwalkError):
    """A source unit could not be turned into a syntax tree."""


# ============================================================
# ================= SOURCE LOCATION & IDENTITY ===============
# ============================================================

@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class VariableIdentity:
    """
    Opaque handle for a declared variable. Two references denote the same
    variable iff their identities compare equal. Only the front-end builds these.
    """
    key: Tuple[Any, ...]


# ============================================================
# ======================= SYNTAX TREE ========================
# ============================================================

class Node:
    """
    Base of the node variant. Subclasses are frozen dataclasses that declare a
    class-level ``kind`` tag and return their children, in source order, from
    ``children()``.
    """
    kind: ClassVar[str] = ""

    def children(self) -> Tuple["Node", ...]:
        return ()


# ---- declarations ----

@dataclass(frozen=True)
class FunctionDecl(Node):
    kind: ClassVar[str] = "function_decl"

    name: str
    location: SourceLocation
    implicit: bool = False
    parts: Tuple[Node, ...] = ()

    def children(self) -> Tuple[Node, ...]:
        return self.parts


@dataclass(frozen=True)
class VariableDecl(Node):
    kind: ClassVar[str] = "variable_decl"

    name: str
    location: SourceLocation
    identity: VariableIdentity
    parts: Tuple[Node, ...] = ()

    def children(self) -> Tuple[Node, ...]:
        return self.parts


# ---- statements ----

@dataclass(frozen=True)
class DeclStmt(Node):
    """A declaration group such as ``int i = 0, j = 0;``."""
    kind: ClassVar[str] = "decl_stmt"

    location: SourceLocation
    declarations: Tuple[Node, ...] = ()

    def children(self) -> Tuple[Node, ...]:
        return self.declarations


@dataclass(frozen=True)
class CountedLoop(Node):
    kind: ClassVar[str] = "counted_loop"

    location: SourceLocation
    init: Optional[Node] = None
    condition: Optional[Node] = None
    increment: Optional[Node] = None
    body: Optional[Node] = None

    def children(self) -> Tuple[Node, ...]:
        slots = (self.init, self.condition, self.increment, self.body)
        return tuple(child for child in slots if child is not None)


@dataclass(frozen=True)
class CompoundBlock(Node):
    kind: ClassVar[str] = "compound_block"

    location: SourceLocation
    statements: Tuple[Node, ...] = ()

    def children(self) -> Tuple[Node, ...]:
        return self.statements


@dataclass(frozen=True)
class OtherStmt(Node):
    """Any statement or declaration the rules do not look into directly."""
    kind: ClassVar[str] = "other_stmt"

    location: SourceLocation
    label: str = ""
    parts: Tuple[Node, ...] = ()

    def children(self) -> Tuple[Node, ...]:
        return self.parts


# ---- expressions ----

@dataclass(frozen=True)
class UnaryOp(Node):
    kind: ClassVar[str] = "unary_op"

    location: SourceLocation
    operator: str
    operand: Node
    postfix: bool = False

    def children(self) -> Tuple[Node, ...]:
        return (self.operand,)


@dataclass(frozen=True)
class BinaryOp(Node):
    """Binary and compound-assignment operators; ``operator`` is the spelling."""
    kind: ClassVar[str] = "binary_op"

    location: SourceLocation
    operator: str
    lhs: Node
    rhs: Node

    def children(self) -> Tuple[Node, ...]:
        return (self.lhs, self.rhs)


@dataclass(frozen=True)
class VariableReference(Node):
    kind: ClassVar[str] = "variable_reference"

    name: str
    location: SourceLocation
    identity: VariableIdentity


@dataclass(frozen=True)
class OtherExpr(Node):
    kind: ClassVar[str] = "other_expr"

    location: SourceLocation
    label: str = ""
    parts: Tuple[Node, ...] = ()

    def children(self) -> Tuple[Node, ...]:
        return self.parts


NODE_TYPES: Tuple[Type[Node], ...] = (
    FunctionDecl,
    VariableDecl,
    DeclStmt,
    CountedLoop,
    CompoundBlock,
    OtherStmt,
    UnaryOp,
    BinaryOp,
    VariableReference,
    OtherExpr,
)


@dataclass(frozen=True)
class SyntaxTree:
    """
    One parsed source unit. Built once by the front-end and read-only for the
    whole analysis pass. ``unchecked_loops`` holds the ``for`` statements whose
    header could not be read (it comes out of a macro), which the tree only
    carries as OtherStmt.
    """
    path: str
    root: Node
    unchecked_loops: Tuple[SourceLocation, ...] = ()


# ============================================================
# ======================= DIAGNOSTICS ========================
# ============================================================

SEVERITY_WARNING = "warning"


@dataclass(frozen=True)
class Diagnostic:
    rule_id: str
    severity: str
    message: str
    location: SourceLocation


def diagnostic_to_json_obj(d: Diagnostic) -> Dict[str, Any]:
    """
    Convert a Diagnostic into a JSON-friendly dict.
    Kept explicit so the field order stays stable.
    """
    return {
        "rule_id": d.rule_id,
        "severity": d.severity,
        "message": d.message,
        "location": {
            "file": d.location.file,
            "line": d.location.line,
            "column": d.location.column,
        },
        "tool": "cwalk",
        "version": __version__,
    }


class DiagnosticSink:
    """Receives diagnostics in the order the rules produce them."""

    def report(self, diagnostic: Diagnostic) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class CollectingSink(DiagnosticSink):
    def __init__(self) -> None:
        self.diagnostics: List[Diagnostic] = []

    def report(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)


class TextSink(DiagnosticSink):
    """Compiler-style ``file:line:col: warning: message [rule-id]`` lines."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream if stream is not None else sys.stdout

    def report(self, diagnostic: Diagnostic) -> None:
        self.stream.write(
            f"{diagnostic.location}: {diagnostic.severity}: {diagnostic.message} [{diagnostic.rule_id}]\n"
        )


class JsonSink(DiagnosticSink):
    """
    Buffers diagnostics and serializes them as one JSON list on close(),
    either to ``out`` or to stdout.
    """

    def __init__(self, out: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
        self.out = out
        self.stream = stream
        self.diagnostics: List[Diagnostic] = []

    def report(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def close(self) -> None:
        as_json = [diagnostic_to_json_obj(d) for d in self.diagnostics]
        text = json.dumps(as_json, indent=2, sort_keys=False)
        if self.out:
            try:
                with open(self.out, "w", encoding="utf-8") as f:
                    f.write(text + "\n")
            except OSError as exc:
                raise ConfigError(f"could not write output file {self.out}: {exc}")
        else:
            (self.stream if self.stream is not None else sys.stdout).write(text + "\n")


class LockedSink(DiagnosticSink):
    """Serializes report() so several worker threads can share one sink."""

    def __init__(self, inner: DiagnosticSink) -> None:
        self.inner = inner
        self._lock = threading.Lock()

    def report(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self.inner.report(diagnostic)

    def close(self) -> None:
        with self._lock:
            self.inner.close()


# ============================================================
# ======================= TREE WALKER ========================
# ============================================================

def iter_preorder(root: Node) -> Iterator[Node]:
    """
    Yield every node under ``root`` (root included) depth-first, pre-order,
    children left to right.
    """
    stack: List[Node] = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children()))


def walk(root: Node, rules: Sequence["Rule"], sink: DiagnosticSink) -> None:
    """
    Offer each node to every rule, in rule order, before descending into its
    children. Diagnostics go to the sink as soon as a rule returns them.
    """
    for node in iter_preorder(root):
        for rule in rules:
            for diagnostic in rule.visit(node):
                sink.report(diagnostic)


# ============================================================
# ========================== RULES ===========================
# ============================================================

class Rule:
    """
    Base rule. ``visit`` dispatches on ``node.kind`` to ``visit_<kind>``;
    every kind has a no-op handler here so a rule only overrides the ones it
    cares about.
    """
    rule_id: ClassVar[str] = ""
    description: ClassVar[str] = ""

    def visit(self, node: Node) -> List[Diagnostic]:
        handler: Callable[[Any], Iterable[Diagnostic]] = getattr(self, "visit_" + node.kind)
        return list(handler(node))

    def warning(self, message: str, location: SourceLocation) -> Diagnostic:
        return Diagnostic(
            rule_id=self.rule_id,
            severity=SEVERITY_WARNING,
            message=message,
            location=location,
        )

    def visit_function_decl(self, node: FunctionDecl) -> Iterable[Diagnostic]:
        return ()

    def visit_variable_decl(self, node: VariableDecl) -> Iterable[Diagnostic]:
        return ()

    def visit_decl_stmt(self, node: DeclStmt) -> Iterable[Diagnostic]:
        return ()

    def visit_counted_loop(self, node: CountedLoop) -> Iterable[Diagnostic]:
        return ()

    def visit_compound_block(self, node: CompoundBlock) -> Iterable[Diagnostic]:
        return ()

    def visit_other_stmt(self, node: OtherStmt) -> Iterable[Diagnostic]:
        return ()

    def visit_unary_op(self, node: UnaryOp) -> Iterable[Diagnostic]:
        return ()

    def visit_binary_op(self, node: BinaryOp) -> Iterable[Diagnostic]:
        return ()

    def visit_variable_reference(self, node: VariableReference) -> Iterable[Diagnostic]:
        return ()

    def visit_other_expr(self, node: OtherExpr) -> Iterable[Diagnostic]:
        return ()


# ---- naming ----

ENTRY_POINT_NAME = "main"
NAMING_MESSAGE = "function name '{name}' does not follow snake_case convention"


def is_snake_case_compliant(name: str) -> bool:
    """
    Loose snake_case check: a name complies iff it has no uppercase letter.
    Underscores and digit placement are not looked at.
    """
    return not any(ch.isupper() for ch in name)


class NamingRule(Rule):
    rule_id = "naming-convention"
    description = "Check function naming conventions (snake_case)"

    def visit_function_decl(self, node: FunctionDecl) -> Iterable[Diagnostic]:
        # Skip compiler-generated functions and main
        if node.implicit or node.name == ENTRY_POINT_NAME:
            return ()
        if is_snake_case_compliant(node.name):
            return ()
        return (self.warning(NAMING_MESSAGE.format(name=node.name), node.location),)


# ---- loop increments ----

INCREMENT_CLAUSE_MESSAGE = "increment statement does not increment the iterator"
BODY_SCAN_MESSAGE = "no increment operation found for iterator in loop body"


def _refers_to(node: Optional[Node], iterator: VariableIdentity) -> bool:
    return isinstance(node, VariableReference) and node.identity == iterator


def is_unary_increment(node: Optional[Node], iterator: VariableIdentity) -> bool:
    """``++i`` or ``i++``."""
    return isinstance(node, UnaryOp) and node.operator == "++" and _refers_to(node.operand, iterator)


def is_add_assign(node: Optional[Node], iterator: VariableIdentity) -> bool:
    """``i += <anything>``."""
    return isinstance(node, BinaryOp) and node.operator == "+=" and _refers_to(node.lhs, iterator)


def is_self_add_assign(node: Optional[Node], iterator: VariableIdentity) -> bool:
    """``i = i + <anything>``; ``i = 1 + i`` does not count."""
    if not (isinstance(node, BinaryOp) and node.operator == "=" and _refers_to(node.lhs, iterator)):
        return False
    rhs = node.rhs
    return isinstance(rhs, BinaryOp) and rhs.operator == "+" and _refers_to(rhs.lhs, iterator)


INCREMENT_SHAPES: Tuple[Tuple[str, Callable[[Optional[Node], VariableIdentity], bool]], ...] = (
    ("unary_increment", is_unary_increment),
    ("add_assign", is_add_assign),
    ("self_add_assign", is_self_add_assign),
)


def classify_increment(node: Optional[Node], iterator: VariableIdentity) -> Optional[str]:
    """Name of the first increment shape ``node`` matches, or None."""
    for shape, predicate in INCREMENT_SHAPES:
        if predicate(node, iterator):
            return shape
    return None


def extract_iterator(loop: CountedLoop) -> Optional[VariableIdentity]:
    """
    The loop's iterator: the one variable declared by its init clause.
    None when init is missing, is not a declaration, or declares zero or
    several names.
    """
    init = loop.init
    if not isinstance(init, DeclStmt) or len(init.declarations) != 1:
        return None
    declaration = init.declarations[0]
    if not isinstance(declaration, VariableDecl):
        return None
    return declaration.identity


def body_increments_iterator(body: Optional[Node], iterator: VariableIdentity) -> bool:
    if body is None:
        return False
    return any(classify_increment(node, iterator) is not None for node in iter_preorder(body))


class IncrementConsistencyRule(Rule):
    rule_id = "for-loop-iterator"
    description = "Check that for-loops increment their iterator in the increment clause and the body"

    def visit_counted_loop(self, node: CountedLoop) -> Iterable[Diagnostic]:
        iterator = extract_iterator(node)
        if iterator is None:
            return ()

        diagnostics: List[Diagnostic] = []
        if classify_increment(node.increment, iterator) is None:
            diagnostics.append(self.warning(INCREMENT_CLAUSE_MESSAGE, node.location))
        if not body_increments_iterator(node.body, iterator):
            diagnostics.append(self.warning(BODY_SCAN_MESSAGE, node.location))
        return diagnostics


# ============================================================
# ====================== RULE REGISTRY =======================
# ============================================================

RULE_REGISTRY: Dict[str, Type[Rule]] = {
    NamingRule.rule_id: NamingRule,
    IncrementConsistencyRule.rule_id: IncrementConsistencyRule,
}


def build_rules(rule_ids: Optional[Iterable[str]] = None) -> List[Rule]:
    """
    Instantiate the selected rules in registry order. ``None`` selects every
    registered rule.
    """
    if rule_ids is None:
        return [rule_cls() for rule_cls in RULE_REGISTRY.values()]

    selected = set(rule_ids)
    unknown = sorted(selected - set(RULE_REGISTRY))
    if unknown:
        raise ConfigError(f"unknown rule id(s): {', '.join(unknown)}")
    return [rule_cls() for rule_id, rule_cls in RULE_REGISTRY.items() if rule_id in selected]


def load_rule_selection(yaml_path: str) -> List[str]:
    """
    Read the ids of the enabled rules from a YAML file.

    Each document is either a list of entries or a mapping with a ``rules``
    list. An entry is a rule id, or a mapping with ``id`` and an optional
    boolean ``enabled`` flag (default true). Entries apply in file order.

    A file that enables at least one rule is an allowlist: only the rules it
    enables run. A file made only of ``enabled: false`` entries starts from
    the whole registry and switches those rules off. The result is in
    registry order. Every problem is a ConfigError.
    """
    try:
        with open(yaml_path, "r", encoding="utf-8") as handle:
            documents = list(yaml.safe_load_all(handle))
    except FileNotFoundError:
        raise ConfigError(f"rule file not found: {yaml_path}")
    except OSError as exc:
        raise ConfigError(f"could not read rule file {yaml_path}: {exc}")
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in rule file {yaml_path}: {exc}")

    def _entries(doc: Any, origin: str) -> List[Any]:
        if doc is None:
            return []
        if isinstance(doc, list):
            return doc
        if isinstance(doc, dict) and isinstance(doc.get("rules"), list):
            return doc["rules"]
        raise ConfigError(f"{origin}: expected a list of rules or a mapping with a 'rules' list")

    toggles: List[Tuple[str, bool]] = []
    for doc_index, doc in enumerate(documents):
        origin = f"{yaml_path}#doc{doc_index + 1}"
        for entry in _entries(doc, origin):
            if isinstance(entry, str):
                rule_id, is_enabled = entry, True
            elif isinstance(entry, dict) and entry.get("id"):
                rule_id, is_enabled = str(entry["id"]), entry.get("enabled", True)
                if not isinstance(is_enabled, bool):
                    raise ConfigError(
                        f"{origin}: 'enabled' for rule '{rule_id}' must be true or false, got {is_enabled!r}"
                    )
            else:
                raise ConfigError(f"{origin}: invalid rule entry {entry!r}")
            if rule_id not in RULE_REGISTRY:
                raise ConfigError(f"{origin}: unknown rule id '{rule_id}'")
            toggles.append((rule_id, is_enabled))

    allowlist = any(is_enabled for _, is_enabled in toggles)
    enabled = set() if allowlist else set(RULE_REGISTRY)
    for rule_id, is_enabled in toggles:
        if is_enabled:
            enabled.add(rule_id)
        else:
            enabled.discard(rule_id)
    return [rule_id for rule_id in RULE_REGISTRY if rule_id in enabled]


# ============================================================
# ================== LIBCLANG FRONT-END ======================
# ============================================================

_CXX_EXTENSIONS = {".cc", ".cpp", ".cxx", ".c++", ".hh", ".hpp", ".hxx"}

_FUNCTION_KINDS = {
    cindex.CursorKind.FUNCTION_DECL,
    cindex.CursorKind.CXX_METHOD,
    cindex.CursorKind.CONSTRUCTOR,
    cindex.CursorKind.DESTRUCTOR,
    cindex.CursorKind.CONVERSION_FUNCTION,
    cindex.CursorKind.FUNCTION_TEMPLATE,
}

_VARIABLE_KINDS = {
    cindex.CursorKind.VAR_DECL,
    cindex.CursorKind.PARM_DECL,
}

_BINARY_KINDS = {
    cindex.CursorKind.BINARY_OPERATOR,
    cindex.CursorKind.COMPOUND_ASSIGNMENT_OPERATOR,
}


def default_clang_args(path: str) -> List[str]:
    """
    Language flags picked from the file extension. Users can append extra
    flags via the CWALK_CLANG_ARGS environment variable.
    """
    if os.path.splitext(path)[1].lower() in _CXX_EXTENSIONS:
        base = ["-x", "c++", "-std=c++17"]
    else:
        base = ["-x", "c", "-std=c11"]
    extra = os.environ.get("CWALK_CLANG_ARGS")
    if extra:
        base.extend(shlex.split(extra))
    return base


def load_compilation_database(build_dir: str) -> "cindex.CompilationDatabase":
    try:
        return cindex.CompilationDatabase.fromDirectory(build_dir)
    except cindex.CompilationDatabaseError:
        raise ConfigError(f"could not load compilation database from '{build_dir}'")


def compile_args_from_database(db: "cindex.CompilationDatabase", path: str) -> Optional[List[str]]:
    """
    The recorded compile command for ``path``, reduced to the flags libclang
    needs: the compiler, ``-c``, ``-o <file>`` and the source itself are
    dropped and the command's directory becomes ``-working-directory``.
    None when the database has no entry for the file.
    """
    commands = db.getCompileCommands(os.path.abspath(path))
    if commands is None:
        return None
    for command in commands:
        arguments = list(command.arguments)[1:]
        directory = command.directory
        source = os.path.abspath(os.path.join(directory, command.filename))
        args: List[str] = []
        skip_next = False
        for arg in arguments:
            if skip_next:
                skip_next = False
                continue
            if arg == "-o":
                skip_next = True
                continue
            if arg == "-c" or arg == "--":
                continue
            if os.path.abspath(os.path.join(directory, arg)) == source:
                continue
            args.append(arg)
        return ["-working-directory", directory] + args
    return None


def parse_translation_unit(
    path: str,
    *,
    args: Optional[List[str]] = None,
    source_text: Optional[str] = None,
) -> SyntaxTree:
    """
    Parse one source unit with libclang and translate it into a SyntaxTree.
    Raises FrontEndError when the file is missing, libclang cannot load it,
    or clang reports an error.
    """
    canonical_path = os.path.abspath(path)

    if source_text is None and not os.path.exists(canonical_path):
        raise FrontEndError(f"input file not found: {path}")

    unsaved_files = [(canonical_path, source_text)] if source_text is not None else None
    index = cindex.Index.create()
    try:
        clang_tu = index.parse(
            canonical_path,
            args=args if args is not None else default_clang_args(path),
            unsaved_files=unsaved_files,
            options=cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD,
        )
    except cindex.TranslationUnitLoadError as exc:
        raise FrontEndError(f"libclang could not parse '{path}': {exc}")

    errors = [d for d in clang_tu.diagnostics if d.severity >= cindex.Diagnostic.Error]
    if errors:
        for diag in errors:
            sys.stderr.write(f"[cwalk] {_format_clang_diagnostic(diag, path)}\n")
        raise FrontEndError(f"{len(errors)} error(s) while parsing '{path}'")

    unit = _Translation(canonical_main=canonical_path, display_path=path)
    for cursor in clang_tu.cursor.get_children():
        if cursor.kind == cindex.CursorKind.MACRO_DEFINITION:
            unit.macro_cursors[cursor.spelling] = cursor

    root = OtherStmt(
        location=SourceLocation(file=path, line=1, column=1),
        label="TRANSLATION_UNIT",
        parts=_translate_children(clang_tu.cursor, unit),
    )
    return SyntaxTree(path=path, root=root, unchecked_loops=tuple(unit.unchecked_loops))


@dataclass(frozen=True)
class _MacroDefinition:
    # None for object-like macros
    params: Optional[Tuple[str, ...]]
    body: Tuple[str, ...]


@dataclass
class _Translation:
    """
    State shared by the cursor translation of one unit: which file is in
    scope, how to print it, the macros the preprocessor saw, and the loops
    that had to be left unchecked.
    """
    canonical_main: str
    display_path: str
    macro_cursors: Dict[str, "cindex.Cursor"] = field(default_factory=dict)
    unchecked_loops: List[SourceLocation] = field(default_factory=list)
    _macros: Dict[str, Optional[_MacroDefinition]] = field(default_factory=dict, repr=False)

    def macro(self, name: str) -> Optional[_MacroDefinition]:
        if name not in self._macros:
            cursor = self.macro_cursors.get(name)
            self._macros[name] = _macro_definition(cursor) if cursor is not None else None
        return self._macros[name]

    def mentions_macro(self, tokens: Sequence["cindex.Token"]) -> bool:
        return any(
            token.kind == cindex.TokenKind.IDENTIFIER and self.macro(token.spelling) is not None
            for token in tokens
        )

    def expand(self, tokens: Sequence["cindex.Token"]) -> List[str]:
        return _expand_macros([token.spelling for token in tokens], self.macro)


def _format_clang_diagnostic(diag: "cindex.Diagnostic", fallback_path: str) -> str:
    location = diag.location
    file_name = location.file.name if location.file is not None else fallback_path
    return f"{file_name}:{location.line}:{location.column}: error: {diag.spelling}"


def _cursor_in_scope(cursor: "cindex.Cursor", canonical_main: str) -> bool:
    """Cursors from the main file, plus synthesized ones that have no file."""
    loc = cursor.location
    if loc is None or loc.file is None:
        return True
    return os.path.abspath(loc.file.name) == canonical_main


def _make_source_location(location: "cindex.SourceLocation", display_path: str) -> SourceLocation:
    file_name = location.file.name if location.file is not None else display_path
    return SourceLocation(file=file_name, line=location.line, column=location.column)


def _variable_identity(decl: "cindex.Cursor") -> VariableIdentity:
    canonical = decl.canonical
    loc = canonical.location
    file_name = os.path.abspath(loc.file.name) if loc.file is not None else ""
    return VariableIdentity((file_name, loc.offset, canonical.spelling))


def _scoped_children(cursor: "cindex.Cursor", unit: _Translation) -> List["cindex.Cursor"]:
    # macro definitions and expansions only feed the macro table
    return [
        child for child in cursor.get_children()
        if not child.kind.is_preprocessing() and _cursor_in_scope(child, unit.canonical_main)
    ]


def _translate_children(cursor: "cindex.Cursor", unit: _Translation) -> Tuple[Node, ...]:
    return tuple(_translate_cursor(child, unit) for child in _scoped_children(cursor, unit))


def _translate_cursor(
    cursor: "cindex.Cursor",
    unit: _Translation,
    expansion: Optional[List[str]] = None,
) -> Node:
    """
    ``expansion`` is the macro-expanded spelling of ``cursor`` when its
    parent already worked it out. Inside a macro call every subexpression
    has the extent of the whole call, so operands get their slice of the
    parent's expansion instead of re-reading the call.
    """
    kind = cursor.kind
    location = _make_source_location(cursor.location, unit.display_path)
    raw_children = _scoped_children(cursor, unit)

    if kind == cindex.CursorKind.UNEXPOSED_EXPR and len(raw_children) == 1:
        # implicit casts
        return _translate_cursor(raw_children[0], unit, expansion)

    if kind in _OPERATOR_KINDS and expansion is None:
        expansion = _macro_expansion(cursor, unit)
    split: Optional[_SplitExpansion] = None
    if expansion is not None:
        split = _split_expansion(kind, _strip_parens(expansion), len(raw_children))

    child_expansions = split.operands if split is not None else [None] * len(raw_children)
    children = tuple(
        _translate_cursor(child, unit, child_expansion)
        for child, child_expansion in zip(raw_children, child_expansions)
    )

    if kind in _FUNCTION_KINDS:
        return FunctionDecl(
            name=cursor.spelling,
            location=location,
            implicit=cursor.location.file is None,
            parts=children,
        )
    if kind in _VARIABLE_KINDS:
        return VariableDecl(
            name=cursor.spelling,
            location=location,
            identity=_variable_identity(cursor),
            parts=children,
        )
    if kind == cindex.CursorKind.DECL_STMT:
        return DeclStmt(location=location, declarations=children)
    if kind == cindex.CursorKind.FOR_STMT:
        loop = _counted_loop_from_cursor(cursor, location, raw_children, children)
        if loop is not None:
            return loop
        unit.unchecked_loops.append(location)
    if kind == cindex.CursorKind.COMPOUND_STMT:
        return CompoundBlock(location=location, statements=children)
    if kind == cindex.CursorKind.UNARY_OPERATOR and len(children) == 1:
        if split is not None:
            operator, postfix = split.operator, split.postfix
        else:
            operator, postfix = _unary_operator(cursor, raw_children[0])
        return UnaryOp(location=location, operator=operator, operand=children[0], postfix=postfix)
    if kind in _BINARY_KINDS and len(children) == 2:
        return BinaryOp(
            location=location,
            operator=split.operator if split is not None else _binary_operator(cursor, raw_children[0]),
            lhs=children[0],
            rhs=children[1],
        )
    if kind == cindex.CursorKind.DECL_REF_EXPR:
        referenced = cursor.referenced
        if referenced is not None and referenced.kind in _VARIABLE_KINDS:
            return VariableReference(
                name=cursor.spelling,
                location=location,
                identity=_variable_identity(referenced),
            )

    if kind.is_expression():
        return OtherExpr(location=location, label=kind.name, parts=children)
    return OtherStmt(location=location, label=kind.name, parts=children)


def _counted_loop_from_cursor(
    cursor: "cindex.Cursor",
    location: SourceLocation,
    raw_children: List["cindex.Cursor"],
    children: Tuple[Node, ...],
) -> Optional[CountedLoop]:
    """
    libclang leaves absent for-clauses out of the child list, so each child is
    placed by where it starts relative to the header's semicolons and closing
    parenthesis.
    """
    header = _for_header_offsets(cursor)
    if header is None:
        return None
    first_semi, second_semi, close_paren = header

    slots: Dict[str, Optional[Node]] = {"init": None, "condition": None, "increment": None, "body": None}
    for raw, node in zip(raw_children, children):
        offset = raw.extent.start.offset
        if offset < first_semi:
            slots["init"] = node
        elif offset < second_semi:
            slots["condition"] = node
        elif offset < close_paren:
            slots["increment"] = node
        else:
            slots["body"] = node
    return CountedLoop(location=location, **slots)


def _for_header_offsets(cursor: "cindex.Cursor") -> Optional[Tuple[int, int, int]]:
    """None when the header is not spelled out in the file, e.g. built by a macro."""
    semicolons: List[int] = []
    depth = 0
    for token in cursor.get_tokens():
        spelling = token.spelling
        if spelling in ("(", "[", "{"):
            depth += 1
        elif spelling in (")", "]", "}"):
            depth -= 1
            if depth == 0:
                if len(semicolons) != 2:
                    return None
                return semicolons[0], semicolons[1], token.extent.start.offset
        elif spelling == ";" and depth == 1:
            semicolons.append(token.extent.start.offset)
    return None


# ----- operators -----

_OPERATOR_KINDS = {
    cindex.CursorKind.UNARY_OPERATOR,
    cindex.CursorKind.PAREN_EXPR,
} | _BINARY_KINDS

_PREFIX_OPERATORS = {"++", "--", "+", "-", "!", "~", "*", "&"}

# Lower binds looser.
_BINARY_PRECEDENCE: Dict[str, int] = {
    ",": 0,
    "=": 1, "+=": 1, "-=": 1, "*=": 1, "/=": 1, "%=": 1,
    "<<=": 1, ">>=": 1, "&=": 1, "^=": 1, "|=": 1,
    "||": 3,
    "&&": 4,
    "|": 5,
    "^": 6,
    "&": 7,
    "==": 8, "!=": 8,
    "<": 9, ">": 9, "<=": 9, ">=": 9,
    "<<": 10, ">>": 10,
    "+": 11, "-": 11,
    "*": 12, "/": 12, "%": 12,
    ".*": 13, "->*": 13,
}
_ASSIGNMENT_PRECEDENCE = 1


def _unary_operator(cursor: "cindex.Cursor", operand: "cindex.Cursor") -> Tuple[str, bool]:
    """(spelling, postfix) read from the tokens around the operand."""
    tokens = list(cursor.get_tokens())
    if not tokens:
        return "", False
    if operand.extent.start.offset > cursor.extent.start.offset:
        return tokens[0].spelling, False
    operand_end = operand.extent.end.offset
    for token in tokens:
        if token.extent.start.offset >= operand_end:
            return token.spelling, True
    return "", True


def _binary_operator(cursor: "cindex.Cursor", lhs: "cindex.Cursor") -> str:
    """The first token after the left operand."""
    lhs_end = lhs.extent.end.offset
    for token in cursor.get_tokens():
        if token.extent.start.offset >= lhs_end:
            return token.spelling
    return ""


def _macro_expansion(cursor: "cindex.Cursor", unit: _Translation) -> Optional[List[str]]:
    """The expanded spelling of ``cursor``, or None when no macro is involved."""
    tokens = list(cursor.get_tokens())
    if not unit.mentions_macro(tokens):
        return None
    return unit.expand(tokens)


@dataclass(frozen=True)
class _SplitExpansion:
    operator: str
    postfix: bool
    # one entry per child cursor; None means the child reads its own tokens
    operands: List[Optional[List[str]]]


def _split_expansion(kind: "cindex.CursorKind", spellings: List[str], arity: int) -> _SplitExpansion:
    """Find the operator of an expanded expression and cut out its operands."""
    if kind == cindex.CursorKind.UNARY_OPERATOR and arity == 1:
        if spellings and spellings[0] in _PREFIX_OPERATORS:
            return _SplitExpansion(spellings[0], False, [spellings[1:]])
        if spellings and spellings[-1] in ("++", "--"):
            return _SplitExpansion(spellings[-1], True, [spellings[:-1]])
        return _SplitExpansion("", False, [None])
    if kind in _BINARY_KINDS and arity == 2:
        index = _top_level_binary_index(spellings)
        if index is None:
            return _SplitExpansion("", False, [None, None])
        return _SplitExpansion(spellings[index], False, [spellings[:index], spellings[index + 1:]])
    if kind == cindex.CursorKind.PAREN_EXPR and arity == 1:
        # the parentheses were already stripped
        return _SplitExpansion("", False, [spellings])
    return _SplitExpansion("", False, [None] * arity)


def _top_level_binary_index(spellings: Sequence[str]) -> Optional[int]:
    """
    Position of the loosest-binding binary operator outside any brackets.
    Assignments group right to left, so the leftmost one wins; every other
    level groups left to right and the rightmost one wins.
    """
    best: Optional[int] = None
    best_precedence = 0
    depth = 0
    for index, spelling in enumerate(spellings):
        if spelling in ("(", "[", "{"):
            depth += 1
            continue
        if spelling in (")", "]", "}"):
            depth -= 1
            continue
        precedence = _BINARY_PRECEDENCE.get(spelling)
        if depth or precedence is None or index == 0 or not _ends_operand(spellings[index - 1]):
            continue
        if (
            best is None
            or precedence < best_precedence
            or (precedence == best_precedence and precedence != _ASSIGNMENT_PRECEDENCE)
        ):
            best, best_precedence = index, precedence
    return best


def _ends_operand(spelling: str) -> bool:
    # a binary operator needs a complete operand on its left
    return spelling in (")", "]", "++", "--") or spelling[0].isalnum() or spelling[0] in "_'\""


def _strip_parens(spellings: List[str]) -> List[str]:
    """Drop parentheses that wrap the whole token list."""
    while len(spellings) >= 2 and spellings[0] == "(" and spellings[-1] == ")":
        depth = 0
        for index, spelling in enumerate(spellings):
            if spelling == "(":
                depth += 1
            elif spelling == ")":
                depth -= 1
                if depth == 0 and index != len(spellings) - 1:
                    return spellings
        spellings = spellings[1:-1]
    return spellings


# ----- macro expansion -----

def _macro_definition(cursor: "cindex.Cursor") -> Optional[_MacroDefinition]:
    """Parameters and replacement list of a MACRO_DEFINITION cursor."""
    tokens = list(cursor.get_tokens())
    if len(tokens) >= 2 and tokens[0].spelling == "#" and tokens[1].spelling == "define":
        tokens = tokens[2:]
    if not tokens or tokens[0].spelling != cursor.spelling:
        # builtin, or an extent libclang could not tokenize
        return None
    name_end = tokens[0].extent.end.offset
    if len(tokens) > 1 and tokens[1].spelling == "(" and tokens[1].extent.start.offset == name_end:
        params: List[str] = []
        index = 2
        while index < len(tokens) and tokens[index].spelling != ")":
            spelling = tokens[index].spelling
            if spelling != ",":
                params.append("__VA_ARGS__" if spelling == "..." else spelling)
            index += 1
        return _MacroDefinition(tuple(params), tuple(t.spelling for t in tokens[index + 1:]))
    return _MacroDefinition(None, tuple(t.spelling for t in tokens[1:]))


def _expand_macros(
    spellings: Sequence[str],
    lookup: Callable[[str], Optional[_MacroDefinition]],
    active: frozenset = frozenset(),
) -> List[str]:
    """
    Token-level macro replacement, enough to recover an operator: arguments
    are substituted and the result rescanned. ``active`` holds the macros
    being expanded, which are not expanded again.
    """
    out: List[str] = []
    index = 0
    while index < len(spellings):
        name = spellings[index]
        macro = lookup(name) if name not in active else None
        if macro is None:
            out.append(name)
            index += 1
            continue
        if macro.params is None:
            out.extend(_expand_macros(macro.body, lookup, active | {name}))
            index += 1
            continue
        if index + 1 >= len(spellings) or spellings[index + 1] != "(":
            # a function-like macro name without a call is just a name
            out.append(name)
            index += 1
            continue
        args, index = _macro_arguments(spellings, index + 2)
        bindings = _bind_macro_arguments(macro.params, args)
        substituted: List[str] = []
        for spelling in macro.body:
            substituted.extend(bindings.get(spelling, [spelling]))
        out.extend(_expand_macros(substituted, lookup, active | {name}))
    return out


def _macro_arguments(spellings: Sequence[str], start: int) -> Tuple[List[List[str]], int]:
    """Split a call's arguments on top-level commas. Returns them and the index after ')'."""
    args: List[List[str]] = [[]]
    depth = 0
    index = start
    while index < len(spellings):
        spelling = spellings[index]
        index += 1
        if spelling == ")" and depth == 0:
            break
        if spelling == "," and depth == 0:
            args.append([])
            continue
        if spelling in ("(", "[", "{"):
            depth += 1
        elif spelling in (")", "]", "}"):
            depth -= 1
        args[-1].append(spelling)
    if args == [[]]:
        args = []
    return args, index


def _bind_macro_arguments(params: Sequence[str], args: List[List[str]]) -> Dict[str, List[str]]:
    if params and params[-1] == "__VA_ARGS__":
        fixed = len(params) - 1
        rest: List[str] = []
        for position, arg in enumerate(args[fixed:]):
            if position:
                rest.append(",")
            rest.extend(arg)
        args = args[:fixed] + [rest]
    return dict(zip(params, args))


# ============================================================
# ==================== ANALYSIS DRIVER =======================
# ============================================================

def analyze_tree(tree: SyntaxTree, rules: Sequence[Rule], sink: DiagnosticSink) -> None:
    walk(tree.root, rules, sink)


# a unit's diagnostics and the loops it could not check
_UnitResult = Tuple[List[Diagnostic], Tuple[SourceLocation, ...]]


def _analyze_unit(
    path: str,
    rule_ids: Optional[List[str]],
    args: Optional[List[str]],
) -> _UnitResult:
    tree = parse_translation_unit(path, args=args)
    collector = CollectingSink()
    analyze_tree(tree, build_rules(rule_ids), collector)
    return collector.diagnostics, tree.unchecked_loops


def analyze_paths(
    paths: Sequence[str],
    rule_ids: Optional[List[str]],
    sink: DiagnosticSink,
    *,
    compile_db: Optional["cindex.CompilationDatabase"] = None,
    extra_args: Sequence[str] = (),
    jobs: int = 1,
    verbose: bool = False,
) -> int:
    """
    Parse and analyze every unit, then replay each unit's diagnostics into
    ``sink`` in input order. A unit that fails in the front-end is reported
    on stderr and skipped. With ``verbose``, progress, loops left unchecked
    and a summary also go to stderr. Returns the number of failed units.
    """
    unit_args: List[List[str]] = []
    for path in paths:
        args = compile_args_from_database(compile_db, path) if compile_db is not None else None
        if args is None:
            args = default_clang_args(path)
        unit_args.append(args + list(extra_args))

    def run(index: int) -> Tuple[Optional[_UnitResult], Optional[FrontEndError]]:
        if verbose:
            sys.stderr.write(f"[cwalk] analyzing {paths[index]}\n")
        try:
            return _analyze_unit(paths[index], rule_ids, unit_args[index]), None
        except FrontEndError as exc:
            return None, exc

    if jobs > 1:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            results = list(pool.map(run, range(len(paths))))
    else:
        results = [run(i) for i in range(len(paths))]

    failures = 0
    total = 0
    for path, (result, error) in zip(paths, results):
        if error is not None or result is None:
            sys.stderr.write(f"[cwalk] skipping {path}: {error}\n")
            failures += 1
            continue
        diagnostics, unchecked_loops = result
        if verbose:
            for location in unchecked_loops:
                sys.stderr.write(f"[cwalk] {location}: for-loop header comes from a macro; loop not checked\n")
        for diagnostic in diagnostics:
            sink.report(diagnostic)
        total += len(diagnostics)

    if verbose:
        sys.stderr.write(
            f"[cwalk] {total} diagnostic(s) in {len(paths) - failures} unit(s), {failures} failed\n"
        )
    return failures


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _selected_rule_ids(rules_file: Optional[str], disabled: Sequence[str]) -> List[str]:
    rule_ids = load_rule_selection(rules_file) if rules_file else list(RULE_REGISTRY)
    unknown = sorted(set(disabled) - set(RULE_REGISTRY))
    if unknown:
        raise ConfigError(f"unknown rule id(s): {', '.join(unknown)}")
    return [rule_id for rule_id in rule_ids if rule_id not in disabled]


def _open_output(path: str) -> TextIO:
    try:
        return open(path, "w", encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"could not open output file {path}: {exc}")


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for cwalk.
    Intended usage:
      cwalk analyze [--rules rules.yaml] [-p build/] src/file1.c src/file2.cpp ...

    Exit status is 0 whatever the number of warnings, 1 when the
    configuration cannot be established or a unit fails to parse.
    """
    parser = argparse.ArgumentParser(
        prog="cwalk",
        description="cwalk: naming and loop-increment checks for C/C++"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Analyze one or more C/C++ source files and report warnings."
    )
    analyze_p.add_argument(
        "--rules",
        metavar="RULE_FILE",
        help="YAML file selecting the rules to run (default: all).",
        required=False,
    )
    analyze_p.add_argument(
        "--disable",
        action="append",
        default=[],
        metavar="RULE_ID",
        help="Do not run this rule. May be repeated.",
    )
    analyze_p.add_argument(
        "-p",
        dest="build_path",
        metavar="BUILD_PATH",
        help="Directory containing compile_commands.json.",
        required=False,
    )
    analyze_p.add_argument(
        "--extra-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="Additional clang argument. May be repeated.",
    )
    analyze_p.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default: text).",
    )
    analyze_p.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write diagnostics to this file instead of stdout.",
        required=False,
    )
    analyze_p.add_argument(
        "--jobs",
        type=int,
        default=1,
        metavar="N",
        help="Analyze up to N files in parallel.",
    )
    analyze_p.add_argument(
        "--verbose",
        action="store_true",
        help="Report progress on stderr.",
    )
    analyze_p.add_argument(
        "files",
        nargs="+",
        help="Source files to analyze."
    )

    subparsers.add_parser(
        "list-rules",
        help="List the available rules."
    )

    args = parser.parse_args(argv)

    if args.command == "list-rules":
        for rule_id, rule_cls in RULE_REGISTRY.items():
            print(f"{rule_id}\t{rule_cls.description}")
        return 0

    if args.command == "analyze":
        # 1. Establish configuration before touching any source
        try:
            rule_ids = _selected_rule_ids(args.rules, args.disable)
            compile_db = load_compilation_database(args.build_path) if args.build_path else None
            out_handle = _open_output(args.out) if args.out else None
        except ConfigError as exc:
            sys.stderr.write(f"[cwalk] {exc}\n")
            return 1

        # 2. Pick the sink
        if args.format == "json":
            sink: DiagnosticSink = JsonSink(stream=out_handle)
        else:
            sink = TextSink(out_handle)

        # 3. Analyze and flush
        try:
            failures = analyze_paths(
                args.files,
                rule_ids,
                sink,
                compile_db=compile_db,
                extra_args=args.extra_arg,
                jobs=max(1, args.jobs),
                verbose=args.verbose,
            )
            sink.close()
        finally:
            if out_handle is not None:
                out_handle.close()
        return 1 if failures else 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
