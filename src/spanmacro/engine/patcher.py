# src/spanmacro/engine/patcher.py
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Sequence

from .registry import MacroError, Span

if TYPE_CHECKING:  # pragma: no cover
    from .nesting import Patch


def splice(code: str, start: int, end: int, patches: Sequence["Patch"], texts: Sequence[str]) -> str:
    """
    Text of code[start:end] with every patch span replaced by its text.

    Patches must be ascending, non-overlapping and inside [start, end). Offsets are
    original-source offsets; the output is assembled from untouched slices between
    patches, so replacement lengths never shift later offsets.
    """
    if len(patches) != len(texts):
        raise ValueError("patches and texts must have the same length")

    pieces: List[str] = []
    cursor = start
    for patch, text in zip(patches, texts):
        if patch.start < cursor or patch.end > end:
            raise MacroError(
                code="SPAN_OVERLAP",
                message=f"Patch {patch.span} does not fit in {Span(cursor, end)}",
                span=patch.span,
            )
        pieces.append(code[cursor:patch.start])
        pieces.append(text)
        cursor = patch.end
    pieces.append(code[cursor:end])
    return "".join(pieces)


async def apply_patches(code: str, start: int, end: int, patches: Sequence["Patch"]) -> str:
    """Wait for every patch's replacement, then splice them into code[start:end]."""
    texts = await asyncio.gather(*(p.replacement for p in patches))
    return splice(code, start, end, patches, texts)
