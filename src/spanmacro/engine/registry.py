# src/spanmacro/engine/registry.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:  # pragma: no cover
    from .walker import SyntaxNode

# ==============================================================================
# Identity & span model
# ==============================================================================


@dataclass(frozen=True)
class MacroIden:
    """Identifies a macro through the local name it was imported under."""
    identifier: str
    source: str
    specifier: str

    @property
    def label(self) -> str:
        return f"{self.source}:{self.specifier}"


@dataclass(frozen=True)
class Span:
    """
    Half-open interval [start, end) over the original text (character offsets).
    """
    start: int
    end: int

    def contains(self, other: "Span") -> bool:
        """Strict containment as used by the open stack: other starts later, ends no later."""
        return other.start > self.start and other.end <= self.end

    def __str__(self) -> str:
        return f"[{self.start},{self.end})"


@dataclass(frozen=True)
class RangeQuery:
    """
    Input of a range function.

    `ancestors` runs from the root down to (excluding) `node`, the identifier occurrence.
    """
    iden: MacroIden
    node: "SyntaxNode"
    ancestors: Tuple["SyntaxNode", ...]

    @property
    def parent(self) -> Optional["SyntaxNode"]:
        return self.ancestors[-1] if self.ancestors else None


@dataclass(frozen=True)
class MacroCall:
    """Input of a replace function: who is being replaced and where it sat originally."""
    iden: MacroIden
    start: int
    end: int

    @property
    def span(self) -> Span:
        return Span(self.start, self.end)


RangeResult = Union[Span, Tuple[int, int], Mapping[str, int], object]
RangeFn = Callable[[RangeQuery], RangeResult]
ReplaceFn = Callable[[MacroCall, str], Union[str, Awaitable[str]]]
Hook = Callable[[str], None]


@dataclass(frozen=True)
class SpecifierImpl:
    # Determines the [start, end) of the macro expression to replace. Nested macros
    # are replaced before replace_fn runs.
    range_fn: RangeFn
    # Receives the expression with nested macros already replaced, so its length may
    # not match the range. Must return code (a string), sync or async.
    replace_fn: ReplaceFn


@dataclass(frozen=True)
class MacroDefinition:
    import_source: str
    import_specifiers: Mapping[str, SpecifierImpl]
    hook_pre: Optional[Hook] = None
    hook_post: Optional[Hook] = None


# ==============================================================================
# Typed error
# ==============================================================================


class MacroError(Exception):
    """
    Rich engine error. Every fatal condition of a run surfaces as one of these.
    """
    def __init__(
        self,
        code: str,
        message: str,
        *,
        source: Optional[str] = None,
        specifier: Optional[str] = None,
        span: Optional[Span] = None,
        snippet: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.source = source
        self.specifier = specifier
        self.span = span
        self.snippet = snippet
        self.detail = detail or ""

    @property
    def macro(self) -> str:
        if self.source is None:
            return ""
        return f"{self.source}:{self.specifier or ''}"


# ==============================================================================
# Registry
# ==============================================================================


class MacroRegistry:
    """
    Owns import source → MacroDefinition bindings for one run.
    """

    def __init__(self, macros: Sequence[MacroDefinition]) -> None:
        self._macros: Dict[str, MacroDefinition] = {}
        self._index: Dict[str, int] = {}
        self._hooks_pre: List[Hook] = []
        self._hooks_post: List[Hook] = []
        for i, macro in enumerate(macros):
            name = macro.import_source
            if name in self._index:
                raise MacroError(
                    code="DUPLICATE_MACRO",
                    message=f'Duplicate macro "{name}" at indices {self._index[name]} and {i}',
                    source=name,
                )
            self._index[name] = i
            self._macros[name] = macro
            if macro.hook_pre is not None:
                self._hooks_pre.append(macro.hook_pre)
            if macro.hook_post is not None:
                self._hooks_post.append(macro.hook_post)

    # ---- lookups -------------------------------------------------------------

    def __contains__(self, source: object) -> bool:
        return source in self._macros

    def __len__(self) -> int:
        return len(self._macros)

    def specifiers(self, source: str) -> Mapping[str, SpecifierImpl]:
        return self._macros[source].import_specifiers

    def impl(self, iden: MacroIden) -> SpecifierImpl:
        return self._macros[iden.source].import_specifiers[iden.specifier]

    # ---- hooks ---------------------------------------------------------------

    def run_hooks_pre(self, code: str) -> None:
        _run_hooks(self._hooks_pre, code, "hook_pre")

    def run_hooks_post(self, code: str) -> None:
        _run_hooks(self._hooks_post, code, "hook_post")


def _run_hooks(hooks: Sequence[Hook], code: str, label: str) -> None:
    for hook in hooks:
        try:
            hook(code)
        except MacroError:
            raise
        except Exception as e:
            name = getattr(hook, "__qualname__", repr(hook))
            raise MacroError(
                code="HOOK_FAILED",
                message=f"{label} {name} failed: {e}",
                detail=f"{type(e).__name__}: {e}",
            ) from e
