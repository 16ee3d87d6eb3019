# src/spanmacro/engine/python_walker.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple

from .registry import MacroError
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

# Third-party (lossless Python CST)
try:
    import libcst as cst
    from libcst.helpers import get_full_name_for_node
    from libcst.metadata import CodeRange, MetadataWrapper, PositionProvider
except Exception as e:  # pragma: no cover - exercised in integration
    _LIBCST_IMPORT_ERROR = e
else:
    _LIBCST_IMPORT_ERROR = None


_NEWLINE_RE = re.compile(r"\r\n|\r|\n")


# -----------------------------------------------------------------------------
# (line, column) → character offset indexer (O(1) lookups)
# -----------------------------------------------------------------------------

@dataclass
class _CharOffsetIndexer:
    """
    Maps (1-based line, 0-based character column) → absolute character offset.
    Line breaks follow libcst: "\\r\\n", "\\r" and "\\n".
    """
    line_starts: List[int]
    total_chars: int

    @classmethod
    def build(cls, text: str) -> "_CharOffsetIndexer":
        starts = [0]
        for m in _NEWLINE_RE.finditer(text):
            starts.append(m.end())
        return cls(line_starts=starts, total_chars=len(text))

    def to_offset(self, line_1based: int, col_0based: int) -> int:
        line_index = min(max(line_1based, 1), len(self.line_starts)) - 1
        offset = self.line_starts[line_index] + max(col_0based, 0)
        return min(offset, self.total_chars)


# -----------------------------------------------------------------------------
# Node classification
# -----------------------------------------------------------------------------

def _kind_of(node: "cst.CSTNode") -> NodeKind:
    if isinstance(node, cst.Module):
        return NodeKind.PROGRAM
    if isinstance(node, (cst.Import, cst.ImportFrom)):
        return NodeKind.IMPORT
    if isinstance(node, cst.Call):
        return NodeKind.CALL
    if isinstance(node, cst.Attribute):
        return NodeKind.MEMBER
    if isinstance(node, cst.Name):
        return NodeKind.IDENTIFIER
    return NodeKind.OTHER


def _name_role(name: "cst.Name", parent: Optional["cst.CSTNode"]) -> Optional[bool]:
    """
    None  → not an identifier occurrence at all (attribute names, keyword labels)
    True  → declaration position
    False → reference
    """
    if parent is None:
        return False
    if isinstance(parent, cst.Attribute) and parent.attr is name:
        return None
    if isinstance(parent, cst.Arg) and parent.keyword is name:
        return None
    if isinstance(parent, (cst.FunctionDef, cst.ClassDef, cst.Param)) and parent.name is name:
        return True
    if isinstance(parent, (cst.AssignTarget, cst.For, cst.CompFor)) and parent.target is name:
        return True
    if isinstance(parent, cst.AnnAssign) and parent.target is name:
        return True
    if isinstance(parent, (cst.AsName, cst.NameItem)):
        return True
    return False


# -----------------------------------------------------------------------------
# Python walker
# -----------------------------------------------------------------------------

class PythonLibCstWalker(TreeWalker):
    """
    Python walker using libcst for a lossless Concrete Syntax Tree with precise
    positions. Emits WalkEvents in source order.

    Import prologue rule: an accepted `from x.macro import y` statement is removed
    together with trailing blanks and `;`. If nothing else follows on the line the
    line break goes too, so no blank line is left behind. A statement that imports
    macro and non-macro modules at once is rejected (MIXED_IMPORT).
    """

    def __init__(self) -> None:
        self._info = WalkerInfo(language=Language.PY, grammar_name="libcst-python", version=self._libcst_version())

    def info(self) -> WalkerInfo:
        if _LIBCST_IMPORT_ERROR is not None:
            raise MacroError(
                code="LIB_DEP_MISSING",
                message="libcst import failed",
                detail=repr(_LIBCST_IMPORT_ERROR),
            )
        return self._info

    def walk(self, code: str, tree: Any = None) -> Iterator[WalkEvent]:
        self.info()
        try:
            parsed_module = tree if tree is not None else cst.parse_module(code)
            wrapper = MetadataWrapper(parsed_module, unsafe_skip_copy=True)
            positions = wrapper.resolve(PositionProvider)
        except cst.ParserSyntaxError as e:
            raise MacroError(code="SYNTAX_ERRORS", message="libcst could not parse the module", detail=str(e))
        except Exception as e:
            raise MacroError(code="PARSE_ERROR", message="libcst.parse_module failed", detail=str(e))

        return self._events(code, wrapper.module, positions, _CharOffsetIndexer.build(code))

    # ---- traversal ------------------------------------------------------------

    def _events(self, code: str, module: "cst.Module", positions, indexer: _CharOffsetIndexer) -> Iterator[WalkEvent]:
        def span_of(n: "cst.CSTNode") -> Tuple[int, int]:
            try:
                rng: CodeRange = positions[n]
            except KeyError:
                return 0, len(code)
            start = indexer.to_offset(rng.start.line, rng.start.column)
            end = indexer.to_offset(rng.end.line, rng.end.column)
            return start, max(start, end)

        def to_syntax(n: "cst.CSTNode") -> SyntaxNode:
            start, end = span_of(n)
            return SyntaxNode(type=type(n).__name__, kind=_kind_of(n), start=start, end=end, raw=n)

        def ordered_children(n: "cst.CSTNode") -> List["cst.CSTNode"]:
            # Key by position when available; nodes without one keep their original order
            keyed: List[Tuple[Tuple[int, int], "cst.CSTNode"]] = []
            for idx, ch in enumerate(n.children):
                try:
                    cr: CodeRange = positions[ch]
                    key = (indexer.to_offset(cr.start.line, cr.start.column), idx)
                except KeyError:
                    key = (len(code) + 1, idx)
                keyed.append((key, ch))
            keyed.sort(key=lambda t: t[0])
            return [ch for _, ch in keyed]

        ancestors: List[SyntaxNode] = []
        # (node, exiting) pairs; EXIT entries pop the ancestor chain
        stack: List[Tuple["cst.CSTNode", bool]] = [(module, False)]

        while stack:
            node, exiting = stack.pop()
            if exiting:
                ancestors.pop()
                continue

            if isinstance(node, (cst.Import, cst.ImportFrom)):
                start, end = span_of(node)
                yield from self._import_events(node, code, start, end)
                continue

            if isinstance(node, cst.Name):
                parent = ancestors[-1].raw if ancestors else None
                role = _name_role(node, parent)
                if role is not None:
                    ident = to_syntax(node)
                    yield WalkEvent(
                        kind=WalkEventKind.IDENTIFIER,
                        name=node.value,
                        start=ident.start,
                        end=ident.end,
                        node=ident,
                        ancestors=tuple(ancestors),
                        binding=role,
                    )
                continue

            ancestors.append(to_syntax(node))
            stack.append((node, True))
            for ch in reversed(ordered_children(node)):
                stack.append((ch, False))

    @staticmethod
    def _import_events(node, code: str, start: int, end: int) -> Iterator[WalkEvent]:
        if isinstance(node, cst.ImportFrom):
            dotted = get_full_name_for_node(node.module) if node.module is not None else ""
            source = "." * len(node.relative) + (dotted or "")
            specifiers: List[ImportSpecifier] = []
            if isinstance(node.names, cst.ImportStar):
                specifiers.append(ImportSpecifier(imported="*", local="*"))
            else:
                for alias in node.names:
                    imported = get_full_name_for_node(alias.name) or ""
                    local = imported
                    if alias.asname is not None:
                        local = get_full_name_for_node(alias.asname.name) or imported
                    specifiers.append(ImportSpecifier(imported=imported, local=local))
            yield WalkEvent(
                kind=WalkEventKind.IMPORT,
                name=source,
                start=start,
                end=_extend_over_line_end(code, end),
                specifiers=tuple(specifiers),
            )
            return

        # `import a.b as c` binds the whole module: reported as a namespace import
        for alias in node.names:
            source = get_full_name_for_node(alias.name) or ""
            local = source
            if alias.asname is not None:
                local = get_full_name_for_node(alias.asname.name) or source
            yield WalkEvent(
                kind=WalkEventKind.IMPORT,
                name=source,
                start=start,
                end=_extend_over_line_end(code, end),
                specifiers=(ImportSpecifier(imported="*", local=local),),
            )

    @staticmethod
    def _libcst_version() -> str:
        try:
            import libcst
            return getattr(libcst, "__version__", "unknown")
        except Exception:
            return "unknown"


def _extend_over_line_end(code: str, end: int) -> int:
    """
    Swallow trailing blanks and an optional ';', then the line break if the line
    ends there. After a ';' the next statement on the line starts the output.
    """
    i = end
    n = len(code)
    while i < n and code[i] in " \t":
        i += 1
    semicolon = i < n and code[i] == ";"
    if semicolon:
        i += 1
        while i < n and code[i] in " \t":
            i += 1
    if i >= n:
        return n
    if code.startswith("\r\n", i):
        return i + 2
    if code[i] in "\r\n":
        return i + 1
    return i if semicolon else end
