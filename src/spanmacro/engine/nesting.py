# src/spanmacro/engine/nesting.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .registry import MacroError, MacroIden, Span


@dataclass(eq=False)
class Patch:
    """
    Resolution state of one span.

    `replacement` is assigned exactly once: a completed future for import
    declarations, the scheduler's task for macro invocations. `children` is final
    by the time the patch is closed.
    """
    start: int
    end: int
    iden: Optional[MacroIden] = None
    children: List["Patch"] = field(default_factory=list)
    replacement: Optional[asyncio.Future] = None
    depth: int = 0

    @property
    def span(self) -> Span:
        return Span(self.start, self.end)

    def contains(self, other: "Patch") -> bool:
        return other.start > self.start and other.end <= self.end


class NestingResolver:
    """
    Turns the left-to-right stream of discovered spans into a forest.

    Open stack invariants: every entry strictly contains the entries above it and
    starts are non-decreasing bottom to top. A patch is closed (handed to
    `on_close`) once a later span proves it cannot contain anything else, which
    is always after all of its children were closed.
    """

    def __init__(self, on_close: Callable[[Patch], None]) -> None:
        self._on_close = on_close
        self._open: List[Patch] = []
        self._closed: List[Patch] = []

    def push(self, patch: Patch) -> None:
        while self._open and not self._open[-1].contains(patch):
            self._close_top(patch)
        patch.depth = len(self._open)
        self._open.append(patch)

    def drain(self) -> List[Patch]:
        """Close everything still open; returns the closed (top-level) list."""
        while self._open:
            self._close_top(None)
        return list(self._closed)

    @property
    def closed(self) -> List[Patch]:
        return list(self._closed)

    @property
    def open_depth(self) -> int:
        return len(self._open)

    # ---- internals ------------------------------------------------------------

    def _close_top(self, incoming: Optional[Patch]) -> None:
        popped = self._open.pop()
        if incoming is not None and incoming.start < popped.end:
            raise _overlap(popped, incoming)

        self._on_close(popped)

        if self._open:
            self._open[-1].children.append(popped)
            return
        if self._closed and popped.start < self._closed[-1].end:
            raise _overlap(self._closed[-1], popped)
        self._closed.append(popped)


def _overlap(first: Patch, second: Patch) -> MacroError:
    def name(p: Patch) -> str:
        return p.iden.label if p.iden is not None else "?"

    return MacroError(
        code="SPAN_OVERLAP",
        message=f"Span {second.span} of {name(second)} overlaps {first.span} of {name(first)}",
        source=second.iden.source if second.iden else None,
        specifier=second.iden.specifier if second.iden else None,
        span=second.span,
    )
