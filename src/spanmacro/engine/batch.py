# src/spanmacro/engine/batch.py
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.config import EngineConfig
from .anomalies import Anomaly, AnomalyKind, AnomalySink, Severity
from .api import replace_macros_sync
from .ledger import PatchLedger
from .registry import MacroDefinition, MacroError
from .walker import Language

MacroFactory = Callable[[], Sequence[MacroDefinition]]


# Codecs that consume the BOM themselves
_BOMS: Tuple[Tuple[bytes, str], ...] = (
    (b"\xef\xbb\xbf", "utf-8-sig"),
    (b"\xff\xfe\x00\x00", "utf-32"),
    (b"\x00\x00\xfe\xff", "utf-32"),
    (b"\xff\xfe", "utf-16"),
    (b"\xfe\xff", "utf-16"),
)


def _detect_bom(data: bytes) -> Optional[str]:
    for sig, name in _BOMS:
        if data.startswith(sig):
            return name
    return None


def language_for_path(path: str) -> Optional[Language]:
    p = path.lower()
    if p.endswith(".py"):
        return Language.PY
    if p.endswith(".cjs") or p.endswith(".mjs") or p.endswith(".js"):
        return Language.JS
    if p.endswith(".ts") and not p.endswith(".d.ts"):
        return Language.TS
    if p.endswith(".tsx"):
        return Language.TSX
    if p.endswith(".jsx"):
        return Language.JSX
    return None


def read_source(path: Path) -> str:
    """Decode a source file: BOM first, then strict UTF-8."""
    try:
        raw = Path(path).read_bytes()
    except FileNotFoundError as e:
        raise MacroError(code="IO_ERROR", message="File not found", detail=str(e))
    except PermissionError as e:
        raise MacroError(code="PERMISSION_DENIED", message="Permission denied", detail=str(e))
    except OSError as e:
        raise MacroError(code="IO_ERROR", message="Read failed", detail=str(e))

    enc = _detect_bom(raw) or "utf-8"
    try:
        return raw.decode(enc, errors="strict")
    except UnicodeDecodeError as e:
        raise MacroError(code="DECODE_FAILED", message=f"Could not decode with {enc}", detail=str(e))


def run_on_paths(
    paths: Iterable[Path],
    *,
    root: Path,
    out_dir: Path,
    macros: MacroFactory,
    cfg: Optional[EngineConfig] = None,
    write_ledger: bool = False,
) -> Dict[str, Any]:
    """
    Replace macros in every file and mirror the results under out_dir.

    - `macros` is called once per file so plugin state never leaks between files.
    - A failing file is recorded (receipt + anomalies) and skipped; its output is
      not written.
    - Returns a JSON-serializable dict; the same data lands in out_dir/run_receipt.json.
    """
    root = Path(root)
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    sink = AnomalySink()
    ledger = PatchLedger(out_dir / "ledger") if write_ledger else None

    t0 = time.perf_counter()
    files: List[Dict[str, Any]] = []
    for path in paths:
        path = Path(path)
        rel = path.resolve().relative_to(root.resolve()).as_posix()
        lang = language_for_path(rel)
        if lang is None:
            sink.emit(
                Anomaly(
                    path=rel,
                    kind=AnomalyKind.FILE_SKIPPED,
                    severity=Severity.INFO,
                    detail="No walker for this file extension",
                )
            )
            files.append({"path": rel, "ok": False, "error": "no-walker"})
            continue

        try:
            code = read_source(path)
            result = replace_macros_sync(
                code,
                macros(),
                lang=lang,
                cfg=cfg,
                sink=sink,
                ledger=ledger,
                path=rel,
            )
        except MacroError as e:
            files.append({"path": rel, "ok": False, "error": f"{e.code}: {e.message}"})
            continue

        target = out_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(result, encoding="utf-8")
        files.append({"path": rel, "ok": True, "out": str(target), "changed": result != code})

    receipt: Dict[str, Any] = {
        "files_total": len(files),
        "files_ok": sum(1 for f in files if f["ok"]),
        "files": files,
        "counters": sink.counters(),
        "timers": sink.timer_histograms(),
        "anomalies": [a.to_dict() for a in sink.items()],
        "wall_ms": int((time.perf_counter() - t0) * 1000),
    }
    if ledger is not None:
        receipt["ledger"] = str(ledger.finalize(receipt={"files_total": len(files)}))

    receipt_path = out_dir / "run_receipt.json"
    receipt_path.write_text(json.dumps(receipt, indent=2, sort_keys=True), encoding="utf-8")
    receipt["receipt_path"] = str(receipt_path)
    return receipt


def load_receipt(out_dir: Path) -> Dict[str, Any]:
    """Re-read the receipt of a previous run ({} when absent or unreadable)."""
    receipt_path = Path(out_dir) / "run_receipt.json"
    if not receipt_path.exists():
        return {}
    try:
        return json.loads(receipt_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
