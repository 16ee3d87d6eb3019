# src/spanmacro/engine/walker.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional, Tuple

# ==============================================================================
# Languages & node model (language-agnostic; spans only)
# ==============================================================================


class Language(Enum):
    PY = "py"
    JS = "js"
    TS = "ts"
    JSX = "jsx"
    TSX = "tsx"


class NodeKind(str, Enum):
    """Coarse node classification shared by every walker, so plugins stay grammar-agnostic."""
    PROGRAM = "program"
    IMPORT = "import"
    CALL = "call"
    TAGGED_TEMPLATE = "tagged_template"
    MEMBER = "member"
    IDENTIFIER = "identifier"
    OTHER = "other"


@dataclass(frozen=True)
class SyntaxNode:
    """
    One node on an ancestor chain.

    Invariants:
      - 0 <= start <= end, character offsets into the walked text
      - `type` is the grammar's own node type (e.g. "call_expression", "Call")
    """
    type: str
    kind: NodeKind
    start: int
    end: int
    raw: Any = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"{self.type} [{self.start},{self.end})"


# ==============================================================================
# Walk events
# ==============================================================================


class WalkEventKind(str, Enum):
    IMPORT = "import"
    IDENTIFIER = "identifier"


@dataclass(frozen=True)
class ImportSpecifier:
    imported: str   # name exported by the source ("default" / "*" for default & namespace imports)
    local: str      # name bound in the walked module


@dataclass(frozen=True)
class WalkEvent:
    """
    A walker emission, in source order.

    IMPORT:      name = import source, specifiers populated, [start, end) = the
                 range removed from the output if the import is accepted.
    IDENTIFIER:  name = identifier text, node = the identifier itself, ancestors =
                 root .. parent; binding=True for declaration positions (parameters,
                 declared names, assignment targets) which never resolve to a macro.
    """
    kind: WalkEventKind
    name: str
    start: int
    end: int
    specifiers: Tuple[ImportSpecifier, ...] = ()
    node: Optional[SyntaxNode] = None
    ancestors: Tuple[SyntaxNode, ...] = ()
    binding: bool = False


# ==============================================================================
# Walker contract
# ==============================================================================


@dataclass(frozen=True)
class WalkerInfo:
    language: Language
    grammar_name: str
    version: str


class TreeWalker:
    """
    Language-specific walker interface.

    Implementations MUST:
      - parse eagerly inside walk() (so parse errors surface before any hook runs),
        then return an iterator of WalkEvent in source order;
      - never descend into import declarations;
      - raise MacroError rather than yielding partial, misleading streams.
    """

    def info(self) -> WalkerInfo:
        raise NotImplementedError

    def walk(self, code: str, tree: Any = None) -> Iterator[WalkEvent]:
        raise NotImplementedError
