# src/spanmacro/engine/ledger_reader.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

# DuckDB scans the Parquet ledger without loading it whole
try:
    import duckdb
except Exception as e:  # pragma: no cover
    _DUCKDB_IMPORT_ERROR = e
else:
    _DUCKDB_IMPORT_ERROR = None


@dataclass(frozen=True)
class PatchRecord:
    path: str
    source: str
    specifier: str
    identifier: str
    span_start: int
    span_end: int
    depth: int
    children: int
    replacement_len: int
    replacement_sha: str
    resolved_ms: int

    @property
    def macro(self) -> str:
        return f"{self.source}:{self.specifier}"


def _require_duckdb():
    if _DUCKDB_IMPORT_ERROR is not None:
        raise RuntimeError(
            "duckdb is required for ledger queries. "
            f"Import failed with: {_DUCKDB_IMPORT_ERROR}"
        )


_COLUMNS = (
    "path, source, specifier, identifier, span_start, span_end, depth, children, "
    "replacement_len, replacement_sha, resolved_ms"
)


class LedgerReader:
    """
    Read-side API over a finalized patch ledger directory (patches.parquet).

    Rows stream in document order: (path, span_start ASC, span_end DESC), so a
    parent patch always comes before the patches nested inside it.
    """

    def __init__(self, ledger_dir: Path, *, file_name: str = "patches.parquet") -> None:
        _require_duckdb()
        self.ledger_dir = Path(ledger_dir)
        parquet = self.ledger_dir / file_name
        if not parquet.exists():
            raise FileNotFoundError(f"Ledger file is missing: {parquet}")
        self.con = duckdb.connect(database=":memory:")
        self.parquet = parquet.as_posix()

    def close(self) -> None:
        self.con.close()

    def iter_patches(
        self,
        *,
        path: Optional[str] = None,
        sources: Optional[Iterable[str]] = None,
        min_depth: Optional[int] = None,
        batch_size: int = 50_000,
    ) -> Iterator[PatchRecord]:
        where = []
        params: List[object] = []
        if path:
            where.append("path = ?")
            params.append(path)
        if sources:
            ss = list(sources)
            where.append(f"source IN ({','.join(['?'] * len(ss))})")
            params.extend(ss)
        if min_depth is not None:
            where.append("depth >= ?")
            params.append(int(min_depth))

        where_sql = ("WHERE " + " AND ".join(where)) if where else ""
        sql = f"""
            SELECT {_COLUMNS}
            FROM read_parquet('{self.parquet}')
            {where_sql}
            ORDER BY path ASC, span_start ASC, span_end DESC
        """
        reader = self.con.execute(sql, params).fetch_record_batch(batch_size)
        while True:
            try:
                batch = reader.read_next_batch()
            except StopIteration:
                break
            for r in batch.to_pylist():
                yield PatchRecord(**r)

    def macro_counts(self) -> Dict[Tuple[str, str], int]:
        """(source, specifier) → number of resolved invocations."""
        rows = self.con.execute(
            f"""
            SELECT source, specifier, COUNT(*) AS n
            FROM read_parquet('{self.parquet}')
            GROUP BY source, specifier
            ORDER BY source, specifier
            """
        ).fetchall()
        return {(source, specifier): int(n) for source, specifier, n in rows}

    def nested_within(self, parent: PatchRecord) -> List[PatchRecord]:
        """Patches strictly inside `parent` in the same file."""
        return [
            p
            for p in self.iter_patches(path=parent.path)
            if p.span_start > parent.span_start and p.span_end <= parent.span_end
        ]
