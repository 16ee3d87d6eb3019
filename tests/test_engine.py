import asyncio
import sys
from pathlib import Path
from typing import List, Sequence, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from spanmacro.core.config import EngineConfig
from spanmacro.engine.anomalies import AnomalyKind, AnomalySink, Severity
from spanmacro.engine.api import replace_macros, replace_macros_sync
from spanmacro.engine.registry import MacroDefinition, MacroError, Span, SpecifierImpl
from spanmacro.engine.walker import (
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
# Hand-built event streams (no parser involved)
# -----------------------------------------------------------------------------

class ListWalker(TreeWalker):
    def __init__(self, events: Sequence[WalkEvent]) -> None:
        self._events = list(events)

    def info(self) -> WalkerInfo:
        return WalkerInfo(language=Language.JS, grammar_name="list", version="0")

    def walk(self, code, tree=None):
        return iter(self._events)


def _program(code: str) -> SyntaxNode:
    return SyntaxNode(type="program", kind=NodeKind.PROGRAM, start=0, end=len(code))


def _call(code: str, text: str, occurrence: int = 0) -> SyntaxNode:
    start = -1
    for _ in range(occurrence + 1):
        start = code.index(text, start + 1)
    return SyntaxNode(type="call_expression", kind=NodeKind.CALL, start=start, end=start + len(text))


def _import(code: str, statement: str, source: str, names: Sequence[Tuple[str, str]]) -> WalkEvent:
    start = code.index(statement)
    return WalkEvent(
        kind=WalkEventKind.IMPORT,
        name=source,
        start=start,
        end=start + len(statement),
        specifiers=tuple(ImportSpecifier(imported=i, local=l) for i, l in names),
    )


def _ident(name: str, start: int, ancestors: Sequence[SyntaxNode], binding: bool = False) -> WalkEvent:
    node = SyntaxNode(type="identifier", kind=NodeKind.IDENTIFIER, start=start, end=start + len(name))
    return WalkEvent(
        kind=WalkEventKind.IDENTIFIER,
        name=name,
        start=node.start,
        end=node.end,
        node=node,
        ancestors=tuple(ancestors),
        binding=binding,
    )


def _call_ident(code: str, call: SyntaxNode, ancestors: Sequence[SyntaxNode]) -> WalkEvent:
    name = code[call.start:code.index("(", call.start)]
    return _ident(name, call.start, list(ancestors) + [call])


def _parent_range(query):
    return Span(query.parent.start, query.parent.end)


def _run(code: str, macros, events, **kwargs) -> str:
    return replace_macros_sync(code, macros, walker=ListWalker(events), **kwargs)


# -----------------------------------------------------------------------------
# Scenarios
# -----------------------------------------------------------------------------

def test_round_trip_removes_import_and_replaces_call():
    code = "import { x } from 'm'; x(1+1);"
    program = _program(code)
    events = [
        _import(code, "import { x } from 'm';", "m", [("x", "x")]),
        _call_ident(code, _call(code, "x(1+1)"), [program]),
    ]
    macro = MacroDefinition(
        import_source="m",
        import_specifiers={"x": SpecifierImpl(range_fn=_parent_range, replace_fn=lambda call, expr: "2")},
    )
    out = _run(code, [macro], events, cfg=EngineConfig(import_source_pattern=r"^m$"))
    assert out == " 2;"


def test_nested_macros_resolve_children_first_and_out_of_order():
    code = "import { f, g } from 'fg.macro';\nf(g(1), g(2));"
    program = _program(code)
    f_call = _call(code, "f(g(1), g(2))")
    events = [
        _import(code, "import { f, g } from 'fg.macro';", "fg.macro", [("f", "f"), ("g", "g")]),
        _call_ident(code, f_call, [program]),
        _call_ident(code, _call(code, "g(1)"), [program, f_call]),
        _call_ident(code, _call(code, "g(2)"), [program, f_call]),
    ]

    timeline: List[str] = []
    f_inputs: List[str] = []

    async def replace_g(call, expr):
        arg = expr[2:-1]
        # g(1) finishes last
        await asyncio.sleep(0.02 if arg == "1" else 0)
        timeline.append(f"g{arg}")
        return f"RESULT_{arg}"

    def replace_f(call, expr):
        timeline.append("f")
        f_inputs.append(expr)
        return "F"

    macro = MacroDefinition(
        import_source="fg.macro",
        import_specifiers={
            "f": SpecifierImpl(range_fn=_parent_range, replace_fn=replace_f),
            "g": SpecifierImpl(range_fn=_parent_range, replace_fn=replace_g),
        },
    )
    out = _run(code, [macro], events)

    assert out == "\nF;"
    assert f_inputs == ["f(RESULT_1, RESULT_2)"]
    assert timeline == ["g2", "g1", "f"]


def test_flat_macros_are_replaced_in_place():
    code = "import { m } from 'a.macro';\nm(1) + m(22) + m(333);"
    program = _program(code)
    events = [_import(code, "import { m } from 'a.macro';", "a.macro", [("m", "m")])]
    for text in ("m(1)", "m(22)", "m(333)"):
        events.append(_call_ident(code, _call(code, text), [program]))
    macro = MacroDefinition(
        import_source="a.macro",
        import_specifiers={"m": SpecifierImpl(range_fn=_parent_range, replace_fn=lambda c, e: e[2:-1] * 2)},
    )
    assert _run(code, [macro], events) == "\n11 + 2222 + 333333;"


def test_no_registered_macros_is_identity():
    code = "import React from 'react';\nimport { x } from 'x.macro';\nx(1);"
    program = _program(code)
    events = [
        _import(code, "import React from 'react';", "react", [("default", "React")]),
        _import(code, "import { x } from 'x.macro';", "x.macro", [("x", "x")]),
        _call_ident(code, _call(code, "x(1)"), [program]),
    ]
    sink = AnomalySink()
    assert _run(code, [], events, sink=sink) == code
    skipped = [a for a in sink.items() if a.kind == AnomalyKind.MACRO_SKIPPED]
    assert len(skipped) == 1 and "x.macro" in skipped[0].detail


def test_binding_positions_never_resolve():
    code = "import { f } from 'f.macro';\nfunction g(f) { return f; }"
    program = _program(code)
    calls: List[str] = []

    def range_fn(query):
        calls.append(query.iden.identifier)
        return Span(query.node.start, query.node.end)

    param = code.index("(f)") + 1
    events = [
        _import(code, "import { f } from 'f.macro';", "f.macro", [("f", "f")]),
        _ident("g", code.index("g("), [program], binding=True),
        _ident("f", param, [program], binding=True),
        _ident("f", code.index("f;"), [program]),
    ]
    macro = MacroDefinition(
        import_source="f.macro",
        import_specifiers={"f": SpecifierImpl(range_fn=range_fn, replace_fn=lambda c, e: "F")},
    )
    assert _run(code, [macro], events) == "\nfunction g(f) { return F; }"
    assert calls == ["f"]


def test_duplicate_import_of_same_binding_is_idempotent():
    code = "import { m } from 'a.macro';\nimport { m } from 'a.macro';\nm(1);"
    program = _program(code)
    first = "import { m } from 'a.macro';"
    second_start = code.index(first, 1)
    events = [
        _import(code, first, "a.macro", [("m", "m")]),
        WalkEvent(
            kind=WalkEventKind.IMPORT,
            name="a.macro",
            start=second_start,
            end=second_start + len(first),
            specifiers=(ImportSpecifier(imported="m", local="m"),),
        ),
        _call_ident(code, _call(code, "m(1)"), [program]),
    ]
    macro = MacroDefinition(
        import_source="a.macro",
        import_specifiers={"m": SpecifierImpl(range_fn=_parent_range, replace_fn=lambda c, e: "one")},
    )
    assert _run(code, [macro], events) == "\n\none;"


def test_hooks_see_original_and_final_text():
    code = "import { m } from 'a.macro';\nm(1);"
    program = _program(code)
    seen = {}
    macro = MacroDefinition(
        import_source="a.macro",
        import_specifiers={"m": SpecifierImpl(range_fn=_parent_range, replace_fn=lambda c, e: "1")},
        hook_pre=lambda text: seen.setdefault("pre", text),
        hook_post=lambda text: seen.setdefault("post", text),
    )
    events = [
        _import(code, "import { m } from 'a.macro';", "a.macro", [("m", "m")]),
        _call_ident(code, _call(code, "m(1)"), [program]),
    ]
    out = _run(code, [macro], events)
    assert seen == {"pre": code, "post": out}
    assert out == "\n1;"


def test_replace_receives_original_span():
    code = "import { m } from 'a.macro';\nvar a = m(1);"
    program = _program(code)
    calls = []

    def replace(call, expr):
        calls.append((call.iden.identifier, call.iden.source, call.iden.specifier, call.start, call.end))
        return "0"

    macro = MacroDefinition(
        import_source="a.macro",
        import_specifiers={"m": SpecifierImpl(range_fn=_parent_range, replace_fn=replace)},
    )
    m_call = _call(code, "m(1)")
    events = [
        _import(code, "import { m } from 'a.macro';", "a.macro", [("m", "m")]),
        _call_ident(code, m_call, [program]),
    ]
    assert _run(code, [macro], events) == "\nvar a = 0;"
    assert calls == [("m", "a.macro", "m", m_call.start, m_call.end)]


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------

def _simple_macro(range_fn=_parent_range, replace_fn=lambda c, e: "R", source="a.macro", name="m"):
    return MacroDefinition(
        import_source=source,
        import_specifiers={name: SpecifierImpl(range_fn=range_fn, replace_fn=replace_fn)},
    )


def _simple_events(code: str, calls: Sequence[str], source: str = "a.macro"):
    program = _program(code)
    statement = code[:code.index(";") + 1]
    events = [_import(code, statement, source, [("m", "m")])]
    seen = {}
    for text in calls:
        occurrence = seen.get(text, 0)
        seen[text] = occurrence + 1
        events.append(_call_ident(code, _call(code, text, occurrence), [program]))
    return events


def test_malformed_range_aborts_before_any_replacement():
    code = "import { m } from 'a.macro';\nm(1); m(2); m(3);"
    replaced: List[str] = []

    def range_fn(query):
        if query.parent.start == code.index("m(3)"):
            return {"start": 5, "end": 2}
        return Span(query.parent.start, query.parent.end)

    def replace(call, expr):
        replaced.append(expr)
        return "R"

    macro = _simple_macro(range_fn=range_fn, replace_fn=replace)
    with pytest.raises(MacroError) as exc:
        _run(code, [macro], _simple_events(code, ["m(1)", "m(2)", "m(3)"]))
    assert exc.value.code == "MALFORMED_RANGE"
    assert "Range end before start" in str(exc.value)
    assert replaced == []


@pytest.mark.parametrize("bad", [(1.5, 40), (True, 40), {"start": "30"}, None])
def test_non_integer_range_is_malformed(bad):
    code = "import { m } from 'a.macro';\nm(1);"
    macro = _simple_macro(range_fn=lambda q: bad)
    with pytest.raises(MacroError) as exc:
        _run(code, [macro], _simple_events(code, ["m(1)"]))
    assert exc.value.code == "MALFORMED_RANGE"


def test_range_outside_source_is_malformed():
    code = "import { m } from 'a.macro';\nm(1);"
    macro = _simple_macro(range_fn=lambda q: (30, len(code) + 5))
    with pytest.raises(MacroError) as exc:
        _run(code, [macro], _simple_events(code, ["m(1)"]))
    assert exc.value.code == "MALFORMED_RANGE"


def test_range_overlapping_imports_is_rejected():
    code = "import { m } from 'a.macro';\nm(1);"
    macro = _simple_macro(range_fn=lambda q: Span(0, q.parent.end))
    with pytest.raises(MacroError) as exc:
        _run(code, [macro], _simple_events(code, ["m(1)"]))
    assert exc.value.code == "RANGE_OVERLAPS_IMPORT"


def test_overlapping_spans_never_produce_output():
    code = "import { m } from 'a.macro';\nm(1); m(2);"
    first = code.index("m(1)")

    def range_fn(query):
        if query.parent.start == first:
            return Span(first, first + 8)   # runs into m(2)
        return Span(query.parent.start, query.parent.end)

    sink = AnomalySink()
    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro(range_fn=range_fn)], _simple_events(code, ["m(1)", "m(2)"]), sink=sink)
    assert exc.value.code == "SPAN_OVERLAP"
    failures = [a for a in sink.items() if a.kind == AnomalyKind.RUN_FAILED]
    assert failures and failures[0].severity == Severity.ERROR
    assert failures[0].detail.startswith("SPAN_OVERLAP")


def test_range_function_errors_are_wrapped_with_context():
    code = "import { m } from 'a.macro';\nm(1);"

    def range_fn(query):
        raise ValueError("unsupported position")

    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro(range_fn=range_fn)], _simple_events(code, ["m(1)"]))
    err = exc.value
    assert err.code == "RANGE_FAILED"
    assert (err.source, err.specifier) == ("a.macro", "m")
    assert isinstance(err.__cause__, ValueError)
    assert "unsupported position" in err.message


def test_replace_errors_are_wrapped_with_snippet():
    code = "import { m } from 'a.macro';\nm(1);"

    def replace(call, expr):
        raise RuntimeError("boom")

    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro(replace_fn=replace)], _simple_events(code, ["m(1)"]))
    err = exc.value
    assert err.code == "REPLACE_FAILED"
    assert err.snippet == "m(1)"
    assert err.span == Span(code.index("m(1)"), code.index("m(1)") + 4)
    assert isinstance(err.__cause__, RuntimeError)


def test_non_string_replacement_is_rejected():
    code = "import { m } from 'a.macro';\nm(1);"
    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro(replace_fn=lambda c, e: 42)], _simple_events(code, ["m(1)"]))
    assert exc.value.code == "BAD_RETURN_TYPE"
    assert "int" in exc.value.message


def test_child_failure_fails_the_parent_without_running_it():
    code = "import { f, g } from 'fg.macro';\nf(g(1));"
    program = _program(code)
    f_call = _call(code, "f(g(1))")
    events = [
        _import(code, "import { f, g } from 'fg.macro';", "fg.macro", [("f", "f"), ("g", "g")]),
        _call_ident(code, f_call, [program]),
        _call_ident(code, _call(code, "g(1)"), [program, f_call]),
    ]
    f_calls: List[str] = []

    async def replace_g(call, expr):
        raise ValueError("bad g")

    macro = MacroDefinition(
        import_source="fg.macro",
        import_specifiers={
            "f": SpecifierImpl(range_fn=_parent_range, replace_fn=lambda c, e: f_calls.append(e) or "F"),
            "g": SpecifierImpl(range_fn=_parent_range, replace_fn=replace_g),
        },
    )
    with pytest.raises(MacroError) as exc:
        _run(code, [macro], events)
    assert exc.value.code == "REPLACE_FAILED"
    assert exc.value.specifier == "g"
    assert f_calls == []


def test_import_after_identifier_is_rejected():
    code = "foo();\nimport { m } from 'a.macro';"
    program = _program(code)
    events = [
        _ident("foo", 0, [program, _call(code, "foo()")]),
        _import(code, "import { m } from 'a.macro';", "a.macro", [("m", "m")]),
    ]
    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro()], events)
    assert exc.value.code == "IMPORT_AFTER_IDENTIFIER"


def test_unknown_specifier_is_rejected():
    code = "import { nope } from 'a.macro';"
    events = [_import(code, code, "a.macro", [("nope", "nope")])]
    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro()], events)
    assert exc.value.code == "UNKNOWN_SPECIFIER"
    assert exc.value.message == "Import specifier nope is not part of a.macro"


def test_rebinding_a_local_to_another_macro_is_rejected():
    code = "import { m as h } from 'a.macro';\nimport { m as h } from 'b.macro';"
    events = [
        _import(code, "import { m as h } from 'a.macro';", "a.macro", [("m", "h")]),
        _import(code, "import { m as h } from 'b.macro';", "b.macro", [("m", "h")]),
    ]
    macros = [_simple_macro(source="a.macro"), _simple_macro(source="b.macro")]
    with pytest.raises(MacroError) as exc:
        _run(code, macros, events)
    assert exc.value.code == "REBOUND_IDENTIFIER"


def test_duplicate_registration_is_rejected():
    with pytest.raises(MacroError) as exc:
        _run("", [_simple_macro(), _simple_macro()], [])
    assert exc.value.code == "DUPLICATE_MACRO"
    assert "indices 0 and 1" in exc.value.message


def test_hook_failures_are_wrapped():
    def hook(text):
        raise OSError("disk full")

    macro = MacroDefinition(import_source="a.macro", import_specifiers={}, hook_post=hook)
    with pytest.raises(MacroError) as exc:
        _run("1;", [macro], [])
    assert exc.value.code == "HOOK_FAILED"


def test_total_timeout_guard():
    code = "import { m } from 'a.macro';\nm(1);"

    async def slow(call, expr):
        await asyncio.sleep(5)
        return "never"

    with pytest.raises(MacroError) as exc:
        _run(code, [_simple_macro(replace_fn=slow)], _simple_events(code, ["m(1)"]), cfg=EngineConfig(timeout_s=0.05))
    assert exc.value.code == "TIMEOUT"


def test_source_size_guard():
    with pytest.raises(MacroError) as exc:
        _run("x" * 11, [], [], cfg=EngineConfig(max_source_chars=10))
    assert exc.value.code == "SOURCE_TOO_LARGE"


def test_async_entry_point_and_observability():
    code = "import { m } from 'a.macro';\nm(1); m(2);"
    sink = AnomalySink()

    async def main():
        return await replace_macros(
            code,
            [_simple_macro()],
            walker=ListWalker(_simple_events(code, ["m(1)", "m(2)"])),
            sink=sink,
            cfg=EngineConfig(trace_ancestors=True),
        )

    assert asyncio.run(main()) == "\nR; R;"
    matched = [a for a in sink.items() if a.kind == AnomalyKind.MACRO_MATCHED]
    assert [a.macro for a in matched] == ["a.macro:m", "a.macro:m"]
    assert "program [0," in matched[0].detail
    timers = sink.timer_histograms()
    assert timers["replace_seconds"]["replace_seconds::count"] == 2
    assert "run_seconds" in timers and "walk_seconds" in timers


def test_plain_import_after_identifier_is_left_alone():
    code = "import { m } from 'a.macro';\nm(1);\nimport os from 'os';"
    events = _simple_events(code, ["m(1)"])
    events.append(_import(code, "import os from 'os';", "os", [("default", "os")]))
    assert _run(code, [_simple_macro()], events) == "\nR;\nimport os from 'os';"


def test_one_statement_importing_macro_and_plain_modules_is_rejected():
    code = "import os, a.macro as m\nm(1)\n"
    statement = "import os, a.macro as m"
    events = [
        _import(code, statement, "os", [("*", "os")]),
        _import(code, statement, "a.macro", [("*", "m")]),
    ]
    macro = MacroDefinition(
        import_source="a.macro",
        import_specifiers={"*": SpecifierImpl(range_fn=_parent_range, replace_fn=lambda c, e: "R")},
    )
    with pytest.raises(MacroError) as exc:
        _run(code, [macro], events)
    assert exc.value.code == "MIXED_IMPORT"
    assert exc.value.span == Span(0, len(statement))
