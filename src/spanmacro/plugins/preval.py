# src/spanmacro/plugins/preval.py
"""
Build-time evaluation: preval("return 6 * 7") → 42.

The argument is the body of an async Python function; its return value is
emitted as JSON (strings, numbers, lists and objects read the same in JavaScript
and Python output).
The code runs with full host access: only use it on trusted sources.
"""
from __future__ import annotations

import json
import textwrap
from typing import Any, Dict, Optional

from ..engine.registry import MacroCall, MacroDefinition, RangeQuery, Span, SpecifierImpl
from ._literals import callee_range, string_argument

IMPORT_SOURCE = "preval.macro"

_FN_NAME = "__preval__"


async def preval(code: str, namespace: Optional[Dict[str, Any]] = None) -> str:
    body = textwrap.dedent(code).strip("\n") or "pass"
    source = f"async def {_FN_NAME}():\n" + textwrap.indent(body, "    ")
    scope: Dict[str, Any] = dict(namespace or {})
    exec(compile(source, "<preval>", "exec"), scope)
    result = await scope[_FN_NAME]()
    return json.dumps(result)


def _range(query: RangeQuery) -> Span:
    return callee_range(query, "preval")


async def _replace(call: MacroCall, expr: str) -> str:
    return await preval(string_argument(expr))


def preval_macro() -> MacroDefinition:
    return MacroDefinition(
        import_source=IMPORT_SOURCE,
        import_specifiers={"preval": SpecifierImpl(range_fn=_range, replace_fn=_replace)},
    )
