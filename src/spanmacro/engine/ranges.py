# src/spanmacro/engine/ranges.py
from __future__ import annotations

from typing import Mapping, Tuple

from .registry import MacroError, MacroIden, MacroRegistry, RangeQuery, RangeResult, Span
from .walker import WalkEvent


class RangeResolver:
    """
    Asks a macro's range function which span an identifier occurrence owns, and
    validates the answer against the source and the import prologue.
    """

    def __init__(self, registry: MacroRegistry, code_length: int) -> None:
        self._registry = registry
        self._code_length = code_length

    def resolve(self, iden: MacroIden, event: WalkEvent, prologue_end: int) -> Span:
        impl = self._registry.impl(iden)
        query = RangeQuery(iden=iden, node=event.node, ancestors=tuple(event.ancestors))
        try:
            raw = impl.range_fn(query)
        except MacroError:
            raise
        except Exception as e:
            raise MacroError(
                code="RANGE_FAILED",
                message=f"Macro {iden.label} rejected identifier {iden.identifier} at [{event.start},{event.end}): {e}",
                source=iden.source,
                specifier=iden.specifier,
                span=Span(event.start, event.end),
                detail=f"{type(e).__name__}: {e}",
            ) from e

        start, end = _coerce_bounds(raw, iden)
        span = Span(start, end)
        if end < start:
            raise MacroError(
                code="MALFORMED_RANGE",
                message=f"Range end before start: {span} from {iden.label}",
                source=iden.source,
                specifier=iden.specifier,
                span=span,
            )
        if start < 0 or end > self._code_length:
            raise MacroError(
                code="MALFORMED_RANGE",
                message=f"Range {span} from {iden.label} is outside the source [0,{self._code_length})",
                source=iden.source,
                specifier=iden.specifier,
                span=span,
            )
        if start < prologue_end:
            raise MacroError(
                code="RANGE_OVERLAPS_IMPORT",
                message=f"Range {span} from {iden.label} overlaps the import statements ending at {prologue_end}",
                source=iden.source,
                specifier=iden.specifier,
                span=span,
            )
        return span


def _coerce_bounds(raw: RangeResult, iden: MacroIden) -> Tuple[object, object]:
    if isinstance(raw, Span):
        start, end = raw.start, raw.end
    elif isinstance(raw, Mapping):
        start, end = raw.get("start"), raw.get("end")
    elif isinstance(raw, (tuple, list)) and len(raw) == 2:
        start, end = raw
    else:
        start, end = getattr(raw, "start", None), getattr(raw, "end", None)

    for bound in (start, end):
        if not isinstance(bound, int) or isinstance(bound, bool):
            raise MacroError(
                code="MALFORMED_RANGE",
                message=f"Range bounds from {iden.label} must be integers, got {raw!r}",
                source=iden.source,
                specifier=iden.specifier,
            )
    return start, end
