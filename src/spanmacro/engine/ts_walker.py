# src/spanmacro/engine/ts_walker.py
from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple

from .registry import MacroError, Span
from .walker import (
    ImportSpecifier,
    Language,
    NodeKind,
    SyntaxNode,
    TreeWalker,
    WalkerInfo,
    WalkEvent,
    WalkEventKind,
)

# -----------------------------------------------------------------------------
# Optional deps & grammar loaders
# -----------------------------------------------------------------------------

_TS_IMPORT_ERROR: Optional[Exception] = None
try:
    from tree_sitter import Parser as TSParser  # type: ignore
except Exception as e:  # pragma: no cover
    _TS_IMPORT_ERROR = e
    TSParser = None  # type: ignore


def _load_language(name: str):
    """
    Try to obtain a tree-sitter Language object flexibly:
    1) tree_sitter_languages.get_language(name)
    2) language modules (tree_sitter_javascript / tree_sitter_typescript)
    Returns (language_obj, grammar_name, version_string) or None.
    """
    # 1) Aggregator package
    try:
        tsl = importlib.import_module("tree_sitter_languages")
        get_language = getattr(tsl, "get_language")
        lang_obj = get_language(name)
        version = getattr(tsl, "__version__", "unknown")
        return lang_obj, f"tree-sitter-{name}", version
    except Exception:
        pass

    # 2) Individual grammar wheels
    if name == "javascript":
        try:
            mod = importlib.import_module("tree_sitter_javascript")
            lang_obj = getattr(mod, "language")()  # type: ignore[attr-defined]
            version = getattr(mod, "__version__", "unknown")
            return lang_obj, "tree-sitter-javascript", version
        except Exception:
            pass

    if name in ("typescript", "tsx"):
        try:
            mod = importlib.import_module("tree_sitter_typescript")
            lang_obj = getattr(mod, f"language_{name}")()  # type: ignore[attr-defined]
            version = getattr(mod, "__version__", "unknown")
            return lang_obj, f"tree-sitter-{name}", version
        except Exception:
            pass

    return None


# -----------------------------------------------------------------------------
# Byte→char index (tree-sitter speaks UTF-8 bytes, spans are str indices)
# -----------------------------------------------------------------------------

@dataclass
class _CharIndex:
    """Maps UTF-8 byte offsets back to character offsets. Identity for ASCII text."""
    byte_to_char: Optional[List[int]]

    @classmethod
    def build(cls, code: str, raw: bytes) -> "_CharIndex":
        if len(raw) == len(code):
            return cls(byte_to_char=None)
        table: List[int] = [0] * (len(raw) + 1)
        b = 0
        for i, ch in enumerate(code):
            width = len(ch.encode("utf-8", errors="surrogatepass"))
            for k in range(width):
                table[b + k] = i
            b += width
        table[b] = len(code)
        return cls(byte_to_char=table)

    def to_char(self, b: int) -> int:
        table = self.byte_to_char
        if table is None:
            return b
        if b <= 0:
            return 0
        if b >= len(table):
            return table[-1]
        return table[b]


# -----------------------------------------------------------------------------
# Node classification
# -----------------------------------------------------------------------------

_IDENTIFIER_TYPES = frozenset({"identifier", "shorthand_property_identifier"})

# Parents whose `name` field declares (rather than references) an identifier
_NAME_DECLARING_PARENTS = frozenset({
    "variable_declarator",
    "function_declaration",
    "generator_function_declaration",
    "function",
    "function_expression",
    "generator_function",
    "class_declaration",
    "class",
    "method_definition",
})

_PATTERN_PARENTS = frozenset({"formal_parameters", "rest_pattern", "array_pattern"})

_ASSIGNING_PARENTS = frozenset({
    "assignment_pattern",
    "assignment_expression",
    "augmented_assignment_expression",
    "for_in_statement",
})


def _is_binding(field_name: Optional[str], parent_type: Optional[str]) -> bool:
    if parent_type is None:
        return False
    if field_name == "name" and parent_type in _NAME_DECLARING_PARENTS:
        return True
    if parent_type in _PATTERN_PARENTS:
        return True
    if field_name == "parameter" and parent_type in ("arrow_function", "catch_clause"):
        return True
    if field_name == "left" and parent_type in _ASSIGNING_PARENTS:
        return True
    # Destructuring: `const { a: local } = o`
    if field_name == "value" and parent_type == "pair_pattern":
        return True
    # TypeScript parameters wrap the identifier
    if field_name == "pattern" and parent_type in ("required_parameter", "optional_parameter"):
        return True
    return False


def _kind_of(node) -> NodeKind:
    t = node.type
    if t == "program":
        return NodeKind.PROGRAM
    if t == "import_statement":
        return NodeKind.IMPORT
    if t == "call_expression":
        args = node.child_by_field_name("arguments")
        if args is not None and args.type == "template_string":
            return NodeKind.TAGGED_TEMPLATE
        return NodeKind.CALL
    if t == "member_expression":
        return NodeKind.MEMBER
    if t in _IDENTIFIER_TYPES:
        return NodeKind.IDENTIFIER
    return NodeKind.OTHER


# -----------------------------------------------------------------------------
# JS/TS walker (Tree-sitter)
# -----------------------------------------------------------------------------

class TSTreeSitterWalker(TreeWalker):
    """
    Tree-sitter walker for JavaScript/TypeScript (JS/TS/JSX/TSX).

    Guarantees:
      - Depth-first traversal in source order via TreeCursor; import_statement
        subtrees are reported once and never descended into.
      - Character-accurate spans (UTF-8 byte offsets mapped back through _CharIndex).
      - Trees containing ERROR/MISSING nodes are rejected with
        MacroError("SYNTAX_ERRORS") before any event is produced.
      - Lazy parser initialization so import/setup errors surface via info()/walk().
    """

    def __init__(self, lang: Language = Language.JS) -> None:
        if lang is Language.PY:
            raise MacroError(code="UNSUPPORTED_LANGUAGE", message="Tree-sitter walker does not handle Python")
        self._lang = lang
        self._init_error: Optional[MacroError] = None
        self._parser: Optional[TSParser] = None  # type: ignore[type-arg]
        self._info: Optional[WalkerInfo] = None

        if _TS_IMPORT_ERROR is not None or TSParser is None:
            self._init_error = MacroError(
                code="LIB_DEP_MISSING",
                message="tree_sitter import failed",
                detail=repr(_TS_IMPORT_ERROR),
            )

    # ---- public API -----------------------------------------------------------

    def info(self) -> WalkerInfo:
        if self._init_error:
            raise self._init_error
        if self._info is None:
            self._setup_parser()
        return self._info  # type: ignore[return-value]

    def walk(self, code: str, tree: Any = None) -> Iterator[WalkEvent]:
        raw = code.encode("utf-8", errors="surrogatepass")
        if tree is None:
            self.info()
            try:
                tree = self._parser.parse(raw)  # type: ignore[union-attr]
            except Exception as e:
                raise MacroError(code="PARSE_ERROR", message="Tree-sitter parse failed", detail=str(e))

        root = getattr(tree, "root_node", tree)
        cidx = _CharIndex.build(code, raw)

        errors = _collect_syntax_errors(root)
        if errors:
            details = "; ".join([f"bytes {s}-{e}: {msg}" for s, e, msg in errors[:5]])
            first = errors[0]
            raise MacroError(
                code="SYNTAX_ERRORS",
                message=f"Found {len(errors)} syntax errors",
                span=Span(cidx.to_char(first[0]), cidx.to_char(first[1])),
                detail=details,
            )

        return self._events(code, root, cidx)

    # ---- traversal ------------------------------------------------------------

    def _events(self, code: str, root, cidx: _CharIndex) -> Iterator[WalkEvent]:
        def to_syntax(n) -> SyntaxNode:
            return SyntaxNode(
                type=n.type,
                kind=_kind_of(n),
                start=cidx.to_char(n.start_byte),
                end=cidx.to_char(n.end_byte),
                raw=n,
            )

        def text_of(n) -> str:
            return code[cidx.to_char(n.start_byte):cidx.to_char(n.end_byte)]

        ancestors: List[SyntaxNode] = []
        cursor = root.walk()

        while True:
            node = cursor.node
            ntype = node.type
            descend = True

            if ntype == "import_statement":
                yield self._import_event(node, text_of, cidx)
                descend = False
            elif ntype in _IDENTIFIER_TYPES:
                parent_type = ancestors[-1].type if ancestors else None
                ident = to_syntax(node)
                yield WalkEvent(
                    kind=WalkEventKind.IDENTIFIER,
                    name=text_of(node),
                    start=ident.start,
                    end=ident.end,
                    node=ident,
                    ancestors=tuple(ancestors),
                    binding=_is_binding(cursor.field_name, parent_type),
                )
                descend = False

            if descend and cursor.goto_first_child():
                ancestors.append(to_syntax(node))
                continue

            # Leaf or skipped subtree: move to the next sibling, bubbling up as needed
            while not cursor.goto_next_sibling():
                if not cursor.goto_parent():
                    return
                ancestors.pop()

    @staticmethod
    def _import_event(node, text_of, cidx: _CharIndex) -> WalkEvent:
        source_node = node.child_by_field_name("source")
        source = _unquote(text_of(source_node)) if source_node is not None else ""

        specifiers: List[ImportSpecifier] = []
        for child in node.children:
            if child.type != "import_clause":
                continue
            for part in child.children:
                if part.type == "identifier":
                    specifiers.append(ImportSpecifier(imported="default", local=text_of(part)))
                elif part.type == "namespace_import":
                    for ns in part.children:
                        if ns.type == "identifier":
                            specifiers.append(ImportSpecifier(imported="*", local=text_of(ns)))
                elif part.type == "named_imports":
                    for spec in part.children:
                        if spec.type != "import_specifier":
                            continue
                        name_node = spec.child_by_field_name("name")
                        alias_node = spec.child_by_field_name("alias")
                        if name_node is None:
                            continue
                        imported = _unquote(text_of(name_node))
                        local = text_of(alias_node) if alias_node is not None else imported
                        specifiers.append(ImportSpecifier(imported=imported, local=local))

        return WalkEvent(
            kind=WalkEventKind.IMPORT,
            name=source,
            start=cidx.to_char(node.start_byte),
            end=cidx.to_char(node.end_byte),
            specifiers=tuple(specifiers),
        )

    # ---- internals ------------------------------------------------------------

    def _setup_parser(self) -> None:
        """Lazy initialization of parser and walker info."""
        primary_name = self._select_grammar_name(self._lang)
        loaded = _load_language(primary_name)
        if loaded is None and self._lang is Language.TSX:
            loaded = _load_language("typescript")
        if loaded is None:
            raise MacroError(
                code="GRAMMAR_LOAD_FAILED",
                message=f"Could not load grammar: {primary_name}",
                detail="Tried aggregator (tree_sitter_languages) and individual wheels; none matched",
            )

        lang_obj, grammar_name, version = loaded
        # Some wheels expose grammars as PyCapsule; wrap into tree_sitter.Language if needed.
        try:
            import tree_sitter as _ts  # type: ignore
            if not isinstance(lang_obj, _ts.Language):
                lang_obj = _ts.Language(lang_obj)  # type: ignore[arg-type]
        except Exception as e:
            raise MacroError(
                code="PARSER_INIT_FAILED",
                message="Could not wrap grammar into tree_sitter.Language",
                detail=str(e),
            )

        parser = TSParser()  # type: ignore[call-arg]
        try:
            # Support both modern and legacy APIs:
            #  - Modern: parser.language = Language
            #  - Legacy: set_language(Language)
            set_lang = getattr(parser, "set_language", None)
            if callable(set_lang):
                set_lang(lang_obj)
            else:
                parser.language = lang_obj
            parser.parse(b"")
        except Exception as e:
            raise MacroError(
                code="PARSER_INIT_FAILED",
                message="Failed to configure Tree-sitter language",
                detail=str(e),
            )

        self._parser = parser
        self._info = WalkerInfo(language=self._lang, grammar_name=grammar_name, version=version)

    @staticmethod
    def _select_grammar_name(lang: Language) -> str:
        grammar_map = {
            Language.JS: "javascript",
            Language.JSX: "javascript",  # JS grammar handles JSX
            Language.TS: "typescript",
            Language.TSX: "tsx",
        }
        return grammar_map.get(lang, "javascript")


# -----------------------------------------------------------------------------
# helpers
# -----------------------------------------------------------------------------

def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def _collect_syntax_errors(root) -> List[Tuple[int, int, str]]:
    """Collect (start_byte, end_byte, message) for ERROR/MISSING nodes, source order."""
    if not getattr(root, "has_error", False):
        return []
    found: List[Tuple[int, int, str]] = []
    stack = [root]
    while stack:
        n = stack.pop()
        if n.type == "ERROR":
            found.append((n.start_byte, n.end_byte, "Parse error in source"))
        elif getattr(n, "is_missing", False):
            found.append((n.start_byte, n.end_byte, "Missing required syntax"))
        if n.has_error:
            stack.extend(reversed(n.children))
    found.sort()
    return found
