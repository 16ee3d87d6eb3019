# src/spanmacro/plugins/_literals.py
"""
Helpers shared by the bundled macros: range functions for the usual call shapes
and readers for the literal arguments of an (already nested-replaced) invocation.
"""
from __future__ import annotations

import ast
import json
import re
from typing import Any, List, Tuple

from ..engine.registry import RangeQuery, Span
from ..engine.walker import NodeKind

_CALLEE_RE = re.compile(r"\s*[A-Za-z_$][\w$]*(?:\s*\.\s*[A-Za-z_$][\w$]*)*\s*")


# -----------------------------------------------------------------------------
# Range functions
# -----------------------------------------------------------------------------

def callee_range(query: RangeQuery, macro: str, kinds=(NodeKind.CALL, NodeKind.TAGGED_TEMPLATE)) -> Span:
    """Span of the call / tagged template the identifier is the callee of."""
    parent = query.parent
    ptype = parent.type if parent is not None else "nothing"
    if parent is None or parent.kind not in kinds or parent.start != query.node.start:
        raise ValueError(
            f"Macro {macro} must be called as either a function or a tagged template expression not {ptype}"
        )
    return Span(parent.start, parent.end)


def member_chain_range(query: RangeQuery) -> Span:
    """Span of the outermost member access chain rooted at the identifier: `x.y.z`."""
    top = None
    for node in reversed(query.ancestors):
        if node.kind is not NodeKind.MEMBER or node.start != query.node.start:
            break
        top = node
    if top is None:
        name = query.iden.identifier
        raise ValueError(f"Import object {query.iden.specifier} must be accessed as an object: {name}.x.y.z")
    return Span(top.start, top.end)


# -----------------------------------------------------------------------------
# Invocation readers
# -----------------------------------------------------------------------------

def split_invocation(expr: str) -> Tuple[str, str, str]:
    """
    Split `callee(args)` / callee`template` into (callee, kind, body) where kind is
    "call" or "template" and body excludes the delimiters.
    """
    m = _CALLEE_RE.match(expr)
    if m is None or m.end() >= len(expr):
        raise ValueError(f"Not a macro invocation: {expr!r}")
    callee = re.sub(r"\s+", "", m.group(0))
    rest = expr[m.end():].rstrip()
    if rest.startswith("(") and rest.endswith(")"):
        return callee, "call", rest[1:-1]
    if rest.startswith("`") and rest.endswith("`") and len(rest) >= 2:
        return callee, "template", rest[1:-1]
    raise ValueError(f"Not a call or tagged template: {expr!r}")


def template_parts(body: str) -> Tuple[List[str], List[str]]:
    """
    Split a template literal body into (quasis, expressions); len(quasis) == len(expressions) + 1.
    Braces inside string literals of an interpolation are skipped.
    """
    quasis: List[str] = []
    expressions: List[str] = []
    buf: List[str] = []
    i, n = 0, len(body)
    while i < n:
        ch = body[i]
        if ch == "\\" and i + 1 < n:
            buf.append(body[i:i + 2])
            i += 2
            continue
        if body.startswith("${", i):
            end = _matching_brace(body, i + 2)
            quasis.append("".join(buf))
            buf = []
            expressions.append(body[i + 2:end].strip())
            i = end + 1
            continue
        buf.append(ch)
        i += 1
    quasis.append("".join(buf))
    return quasis, expressions


def literal_value(text: str) -> Any:
    """Value of a JS/Python literal: quoted strings, plain templates, numbers, booleans, null/None."""
    t = text.strip()
    if not t:
        raise ValueError("Empty literal")
    if t[0] == "`" and t[-1] == "`" and len(t) >= 2:
        quasis, expressions = template_parts(t[1:-1])
        values = [to_js_string(literal_value(e)) for e in expressions]
        return interleave(quasis, values)
    if t in ("true", "false", "null"):
        return json.loads(t)
    try:
        return ast.literal_eval(t)
    except (ValueError, SyntaxError) as e:
        raise ValueError(f"Expected a literal, got {t!r}") from e


def string_argument(expr: str) -> str:
    """
    The string a macro was invoked with: `m("x")`, `m('x')`, m`x ${"y"}`.
    Template interpolations must already be literals (nested macros resolved).
    """
    _, kind, body = split_invocation(expr)
    if kind == "template":
        quasis, expressions = template_parts(body)
        return interleave(quasis, [to_js_string(literal_value(e)) for e in expressions])
    value = literal_value(body)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return to_js_string(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected a single string argument, got {body.strip()!r}")
    return value


def interleave(quasis: List[str], values: List[str]) -> str:
    out = [quasis[0]]
    for value, quasi in zip(values, quasis[1:]):
        out.append(value)
        out.append(quasi)
    return "".join(out)


def to_js_string(value: Any) -> str:
    """String(value) the way JavaScript prints it."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _matching_brace(text: str, i: int) -> int:
    depth = 1
    quote = ""
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = ""
        elif ch in ("'", '"', "`"):
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ValueError("Unterminated ${ in template literal")
