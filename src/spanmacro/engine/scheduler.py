# src/spanmacro/engine/scheduler.py
from __future__ import annotations

import asyncio
import inspect
import time
from typing import TYPE_CHECKING, List, Optional, Sequence, Set

from .anomalies import AnomalySink
from .nesting import Patch
from .patcher import apply_patches
from .registry import MacroCall, MacroError, MacroRegistry

if TYPE_CHECKING:  # pragma: no cover
    from .ledger import PatchLedger


class TaskScheduler:
    """
    One asyncio task per closed patch.

    schedule() never suspends: tasks are created while the walk runs and start
    once the caller yields to the event loop (the final join). A task waits for
    its children, assembles the macro expression, runs replace_fn and resolves
    the patch. Siblings run concurrently and may finish in any order.
    """

    def __init__(
        self,
        code: str,
        registry: MacroRegistry,
        *,
        sink: Optional[AnomalySink] = None,
        ledger: Optional["PatchLedger"] = None,
        path: str = "",
    ) -> None:
        self._code = code
        self._registry = registry
        self._sink = sink
        self._ledger = ledger
        self._path = path
        self._tasks: List[asyncio.Task] = []
        self._outstanding: Set[asyncio.Task] = set()

    # ---- public API -----------------------------------------------------------

    def schedule(self, patch: Patch) -> None:
        if patch.replacement is not None:
            raise RuntimeError(f"Patch {patch.span} was already scheduled")
        iden = patch.iden
        task = asyncio.get_running_loop().create_task(
            self._run(patch),
            name=f"macro:{iden.label if iden else '?'}:{patch.span}",
        )
        patch.replacement = task
        self._tasks.append(task)
        self._outstanding.add(task)
        task.add_done_callback(self._outstanding.discard)

    async def join(self, patches: Sequence[Patch], timeout_s: Optional[float] = None) -> str:
        """Assemble the whole text once every top-level patch (and so every task) resolved."""
        final = apply_patches(self._code, 0, len(self._code), patches)
        if timeout_s is None:
            return await final
        try:
            return await asyncio.wait_for(final, timeout_s)
        except asyncio.TimeoutError as e:
            raise MacroError(
                code="TIMEOUT",
                message=f"Macro replacement did not finish within {timeout_s}s",
                detail=f"{len(self._outstanding)} task(s) still pending",
            ) from e

    async def abort(self) -> None:
        """Cancel unfinished tasks and collect every outcome so nothing is left pending."""
        for task in list(self._outstanding):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def scheduled(self) -> int:
        return len(self._tasks)

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    # ---- internals ------------------------------------------------------------

    async def _run(self, patch: Patch) -> str:
        iden = patch.iden
        impl = self._registry.impl(iden)
        expr = await apply_patches(self._code, patch.start, patch.end, patch.children)

        call = MacroCall(iden=iden, start=patch.start, end=patch.end)
        t0 = time.perf_counter()
        try:
            result = impl.replace_fn(call, expr)
            if inspect.isawaitable(result):
                result = await result
        except MacroError:
            raise
        except Exception as e:
            raise MacroError(
                code="REPLACE_FAILED",
                message=f"Macro {iden.label} failed to replace {patch.span}: {e}\nMacro eval for:\n{expr}",
                source=iden.source,
                specifier=iden.specifier,
                span=patch.span,
                snippet=expr,
                detail=f"{type(e).__name__}: {e}",
            ) from e
        finally:
            if self._sink is not None:
                self._sink.observe_duration("replace_seconds", iden.label, time.perf_counter() - t0)

        if not isinstance(result, str):
            raise MacroError(
                code="BAD_RETURN_TYPE",
                message=f"Macro eval returned {type(result).__name__} instead of a string",
                source=iden.source,
                specifier=iden.specifier,
                span=patch.span,
                snippet=expr,
            )
        if self._ledger is not None:
            self._ledger.record(patch, result, path=self._path)
        return result
