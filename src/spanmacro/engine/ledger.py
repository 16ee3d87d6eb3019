# src/spanmacro/engine/ledger.py
from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

# Parquet / Arrow
try:
    import pyarrow as pa
    import pyarrow.parquet as pq
except Exception as e:  # pragma: no cover
    _PA_IMPORT_ERROR = e
else:
    _PA_IMPORT_ERROR = None

from .nesting import Patch


SCHEMA_VERSION = "1.0"


def _patch_schema() -> "pa.Schema":
    return pa.schema(
        [
            pa.field("path", pa.string()),
            pa.field("source", pa.string()),
            pa.field("specifier", pa.string()),
            pa.field("identifier", pa.string()),
            pa.field("span_start", pa.int64()),
            pa.field("span_end", pa.int64()),
            pa.field("depth", pa.int32()),
            pa.field("children", pa.int32()),
            pa.field("replacement_len", pa.int64()),
            pa.field("replacement_sha", pa.string()),
            pa.field("resolved_ms", pa.int64()),
        ],
        metadata={"schema_version": SCHEMA_VERSION},
    )


class PatchLedger:
    """
    Audit trail of resolved macro patches, one row per replace_fn result.

      - rows buffered in memory while tasks resolve (any order)
      - finalize() writes one ZSTD Parquet file atomically (tmp → rename),
        reads it back to verify the row count, and writes ledger.json
    """

    def __init__(self, out_dir: Path, *, zstd_level: int = 7, file_name: str = "patches.parquet") -> None:
        if _PA_IMPORT_ERROR is not None:
            raise RuntimeError(f"pyarrow is required: {_PA_IMPORT_ERROR}")
        self.out_dir = Path(out_dir)
        self.zstd_level = int(zstd_level)
        self.file_name = file_name
        self._lock = threading.Lock()
        self._rows: List[Dict] = []
        self._schema = _patch_schema()

    def record(self, patch: Patch, replacement: str, *, path: str = "") -> None:
        iden = patch.iden
        row = {
            "path": path,
            "source": iden.source if iden else "",
            "specifier": iden.specifier if iden else "",
            "identifier": iden.identifier if iden else "",
            "span_start": int(patch.start),
            "span_end": int(patch.end),
            "depth": int(patch.depth),
            "children": len(patch.children),
            "replacement_len": len(replacement),
            "replacement_sha": hashlib.blake2b(replacement.encode("utf-8", errors="surrogatepass"), digest_size=20).hexdigest(),
            "resolved_ms": int(time.time() * 1000),
        }
        with self._lock:
            self._rows.append(row)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def rows(self) -> List[Dict]:
        """Rows ordered by (path, span_start), independent of task completion order."""
        with self._lock:
            return sorted(self._rows, key=lambda r: (r["path"], r["span_start"], -r["span_end"]))

    def finalize(self, receipt: Optional[Dict] = None) -> Path:
        rows = self.rows()
        self.out_dir.mkdir(parents=True, exist_ok=True)
        target = self.out_dir / self.file_name
        tmp = self.out_dir / (self.file_name + ".tmp")

        table = pa.Table.from_pylist(rows, schema=self._schema)
        pq.write_table(table, tmp, compression="zstd", compression_level=self.zstd_level)

        # Verified flush: read back row count before publishing
        written = pq.read_metadata(tmp).num_rows
        if written != len(rows):
            tmp.unlink(missing_ok=True)
            raise RuntimeError(f"Ledger verification failed: wrote {written} rows, expected {len(rows)}")
        os.replace(tmp, target)

        summary = {
            "schema_version": SCHEMA_VERSION,
            "rows": len(rows),
            "file": target.name,
            "receipt": receipt or {},
        }
        (self.out_dir / "ledger.json").write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
        return target
