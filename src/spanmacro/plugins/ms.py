# src/spanmacro/plugins/ms.py
"""Build-time duration strings: ms('2 days') → 172800000."""
from __future__ import annotations

import re

from ..engine.registry import MacroCall, MacroDefinition, RangeQuery, Span, SpecifierImpl
from ._literals import callee_range, string_argument, to_js_string

IMPORT_SOURCE = "ms.macro"

_S = 1000
_M = _S * 60
_H = _M * 60
_D = _H * 24
_W = _D * 7
_Y = _D * 365.25
_CONV = {"s": _S, "m": _M, "h": _H, "d": _D, "w": _W, "y": _Y}

_FORMAT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(\w+)?$")


def ms(time: str) -> str:
    """
    Milliseconds in a duration string, as a number literal.

    Units are matched on their first letter (s, m, h, d, w, y; "5 minutes" works),
    except "ms" which is milliseconds. No unit means seconds.
    """
    match = _FORMAT_RE.match(time.strip())
    if not match:
        raise ValueError(f'Format "{time}" isn\'t a valid time for {IMPORT_SOURCE}')
    amount, unit = match.group(1), (match.group(2) or "s").lower()
    if unit in ("ms", "msec", "msecs", "millisecond", "milliseconds"):
        factor = 1
    else:
        factor = _CONV.get(unit[0])
        if factor is None:
            raise ValueError(f'Unknown unit "{unit}" in "{time}" for {IMPORT_SOURCE}')
    return to_js_string(float(amount) * factor)


def _range(query: RangeQuery) -> Span:
    return callee_range(query, "ms")


def _replace(call: MacroCall, expr: str) -> str:
    return ms(string_argument(expr))


def ms_macro() -> MacroDefinition:
    return MacroDefinition(
        import_source=IMPORT_SOURCE,
        import_specifiers={"ms": SpecifierImpl(range_fn=_range, replace_fn=_replace)},
    )
