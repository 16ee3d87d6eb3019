# src/spanmacro/engine/api.py
from __future__ import annotations

import asyncio
import time
from typing import Any, List, Optional, Sequence

from ..core.config import EngineConfig
from .anomalies import Anomaly, AnomalyKind, AnomalySink, Severity
from .bindings import BindingTable
from .ledger import PatchLedger
from .nesting import NestingResolver, Patch
from .python_walker import PythonLibCstWalker as PythonWalker
from .ranges import RangeResolver
from .registry import MacroDefinition, MacroError, MacroRegistry
from .scheduler import TaskScheduler
from .ts_walker import TSTreeSitterWalker as TsWalker
from .walker import Language, TreeWalker, WalkEvent, WalkEventKind


def select_walker(lang: Language) -> TreeWalker:
    if lang == Language.PY:
        return PythonWalker()
    if lang in (Language.JS, Language.TS, Language.JSX, Language.TSX):
        return TsWalker(lang)
    raise MacroError(code="UNSUPPORTED_LANGUAGE", message=f"No walker for {lang}")


async def replace_macros(
    code: str,
    macros: Sequence[MacroDefinition],
    tree: Any = None,
    *,
    lang: Language = Language.JS,
    cfg: Optional[EngineConfig] = None,
    sink: Optional[AnomalySink] = None,
    ledger: Optional[PatchLedger] = None,
    walker: Optional[TreeWalker] = None,
    path: str = "",
) -> str:
    """
    Replace every macro invocation in `code` and return the transformed text.

    Pipeline: registry → parse → hook_pre → single walk (imports feed the binding
    table, matched identifiers go through the range resolver into the nesting
    resolver, closed patches are scheduled) → join → hook_post.

    Raises MacroError on the first fatal condition; no partial output is returned.
    """
    cfg = cfg or EngineConfig()
    t_run = time.perf_counter()

    if len(code) > cfg.max_source_chars:
        raise MacroError(
            code="SOURCE_TOO_LARGE",
            message=f"Source exceeds maximum size ({cfg.max_source_chars} chars)",
            detail=f"Source size: {len(code)} chars",
        )

    registry = MacroRegistry(macros)
    walker = walker or select_walker(lang)
    scheduler = TaskScheduler(code, registry, sink=sink, ledger=ledger, path=path)

    try:
        events = walker.walk(code, tree)
        registry.run_hooks_pre(code)

        t_walk = time.perf_counter()
        prologue, closed = _walk(code, events, registry, scheduler, cfg, sink, path)
        if sink is not None:
            sink.observe_duration("walk_seconds", path, time.perf_counter() - t_walk)

        result = await scheduler.join(prologue + closed, cfg.timeout_s)
        registry.run_hooks_post(result)
    except MacroError as e:
        await scheduler.abort()
        if sink is not None:
            sink.emit(
                Anomaly(
                    path=path,
                    kind=AnomalyKind.RUN_FAILED,
                    severity=Severity.ERROR,
                    detail=f"{e.code}: {e.message}",
                    macro=e.macro,
                    span=(e.span.start, e.span.end) if e.span is not None else None,
                )
            )
        raise
    except BaseException:
        await scheduler.abort()
        raise

    if sink is not None:
        sink.observe_duration("run_seconds", path, time.perf_counter() - t_run)
    return result


def replace_macros_sync(code: str, macros: Sequence[MacroDefinition], tree: Any = None, **kwargs: Any) -> str:
    """Blocking wrapper for callers without an event loop."""
    return asyncio.run(replace_macros(code, macros, tree, **kwargs))


# ----------------------------- helpers ----------------------------------------

def _walk(
    code: str,
    events,
    registry: MacroRegistry,
    scheduler: TaskScheduler,
    cfg: EngineConfig,
    sink: Optional[AnomalySink],
    path: str,
):
    bindings = BindingTable(registry, cfg.import_source_pattern, sink=sink, path=path)
    ranges = RangeResolver(registry, len(code))
    nesting = NestingResolver(on_close=scheduler.schedule)
    prologue: List[Patch] = []
    loop = asyncio.get_running_loop()

    ev: WalkEvent
    for ev in events:
        if ev.kind == WalkEventKind.IMPORT:
            if bindings.accept_import(ev):
                span = bindings.prologue[-1]
                if prologue and prologue[-1].span == span:
                    continue
                done = loop.create_future()
                done.set_result("")
                prologue.append(Patch(start=span.start, end=span.end, replacement=done))
            continue

        bindings.note_identifier()
        if ev.binding:
            continue
        iden = bindings.lookup(ev.name)
        if iden is None:
            continue

        span = ranges.resolve(iden, ev, bindings.prologue_end)
        if sink is not None:
            detail = f"{ev.name} → {span}"
            if cfg.trace_ancestors:
                detail += " | " + " > ".join(str(a) for a in ev.ancestors)
            sink.emit(
                Anomaly(
                    path=path,
                    kind=AnomalyKind.MACRO_MATCHED,
                    severity=Severity.INFO,
                    detail=detail,
                    macro=iden.label,
                    span=(span.start, span.end),
                )
            )
        nesting.push(Patch(start=span.start, end=span.end, iden=iden))

    return prologue, nesting.drain()
