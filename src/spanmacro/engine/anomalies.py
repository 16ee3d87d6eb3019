# src/spanmacro/engine/anomalies.py
from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


class Severity(str, enum.Enum):
    INFO = "INFO"
    ERROR = "ERROR"


class AnomalyKind(str, enum.Enum):
    # Import prologue
    MACRO_SKIPPED = "MACRO_SKIPPED"        # source looks like a macro but is not registered
    # Identifier resolution
    MACRO_MATCHED = "MACRO_MATCHED"
    # Failures (recorded right before the MacroError propagates)
    RUN_FAILED = "RUN_FAILED"
    # Batch runner
    FILE_SKIPPED = "FILE_SKIPPED"


@dataclass(frozen=True)
class Anomaly:
    """
    Immutable record. Serialized into run receipts via to_dict().
    """
    path: str
    kind: AnomalyKind
    severity: Severity
    detail: str = ""
    macro: str = ""                           # "source:specifier" when known
    span: Optional[Tuple[int, int]] = None    # (start, end) character offsets
    ts_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict:
        s0, s1 = (None, None)
        if self.span and len(self.span) == 2:
            s0, s1 = int(self.span[0]), int(self.span[1])
        return {
            "path": self.path,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "detail": self.detail,
            "macro": self.macro,
            "span_start": int(s0 or 0),
            "span_end": int(s1 or 0),
            "ts_ms": int(self.ts_ms),
        }


class AnomalySink:
    """
    Thread-safe anomaly collector + lightweight observability.

    - emit(): add an anomaly, update counters
    - items(): snapshot of buffered anomalies
    - counters(): snapshot of counters (for receipts)
    - observe_duration(): record timing histograms (walk, replace_fn, whole run)
    """

    __slots__ = ("_lock", "_buffer", "_counts", "_timers")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buffer: List[Anomaly] = []
        self._counts: Dict[str, int] = {
            "total": 0,
        }
        # Timers: name -> bucket -> count
        self._timers: Dict[str, Dict[str, int]] = {}

    # ----------------------------- public API ---------------------------------

    def emit(self, anomaly: Anomaly) -> None:
        with self._lock:
            self._buffer.append(anomaly)
            for key in ("total", f"kind:{anomaly.kind.value}", f"sev:{anomaly.severity.value}"):
                self._counts[key] = self._counts.get(key, 0) + 1

    def items(self) -> Tuple[Anomaly, ...]:
        with self._lock:
            return tuple(self._buffer)

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def observe_duration(self, name: str, key: str, seconds: float) -> None:
        """
        Record a single observation into log-scale buckets.
        Example: observe_duration("replace_seconds", "ms.macro:ms", dt)
        """
        bucket = _duration_bucket(seconds)
        with self._lock:
            buckets = self._timers.setdefault(name, {})
            buckets[bucket] = buckets.get(bucket, 0) + 1
            total_key = f"{name}::count"
            buckets[total_key] = buckets.get(total_key, 0) + 1
            if key:
                keyed = f"{name}::{key}"
                buckets[keyed] = buckets.get(keyed, 0) + 1

    def timer_histograms(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {k: dict(v) for k, v in self._timers.items()}


# ----------------------------- helpers ----------------------------------------

def _duration_bucket(seconds: float) -> str:
    """
    Log-ish buckets from microseconds to minutes.
    """
    s = max(0.0, float(seconds))
    if s < 1e-6:
        return "<1µs"
    if s < 1e-3:
        return "<1ms"
    if s < 1e-2:
        return "<10ms"
    if s < 1e-1:
        return "<100ms"
    if s < 1.0:
        return "<1s"
    if s < 10.0:
        return "<10s"
    if s < 60.0:
        return "<60s"
    return ">=60s"
