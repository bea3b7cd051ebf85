"""Vector store over a single LanceDB table.

Rows are ``(id, vector, text, file_path, metadata, seq)``. Writes that
replace a file's documents go through one ``merge_insert`` so readers see
either the old rows or the new rows for that file, never a mix.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Sequence

import lancedb
import numpy as np
import pyarrow as pa

from ..errors import StorageFailure
from ..schema import get_vector_record_model

logger = logging.getLogger(__name__)

TABLE_NAME = "documents"
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_GET_ALL_LIMIT = 10_000
# Extra rows fetched beyond ``limit`` so equal scores at the cut-off can be
# ordered by insertion sequence.
TIE_SLACK = 32


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _in_clause(column: str, values: Iterable[str]) -> str:
    return f"{column} IN ({', '.join(_quote(v) for v in values)})"


def _normalize(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    vec = np.asarray(vector, dtype="float32")
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


@dataclass
class VectorRecord:
    id: str
    vector: np.ndarray
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def file_path(self) -> str:
        return str(self.metadata.get("path", ""))


@dataclass
class SearchResult:
    id: str
    score: float
    text: str
    metadata: dict[str, Any]


class VectorStore:
    """LanceDB-backed store of document vectors for one repository."""

    def __init__(self, path: Path, dimension: int | None = None):
        self.path = Path(path)
        self.dimension = dimension
        self._db: Any = None
        self._table: Any = None
        self._closed = False
        self._seq = time.time_ns()

    # -- lifecycle -----------------------------------------------------

    def open(self) -> "VectorStore":
        self.path.mkdir(parents=True, exist_ok=True)
        try:
            self._db = lancedb.connect(str(self.path))
            if TABLE_NAME in set(self._db.table_names()):
                self._table = self._db.open_table(TABLE_NAME)
                self._sync_dimension()
        except Exception as exc:
            logger.exception("Failed to open vector store at %s", self.path)
            raise StorageFailure(f"cannot open vector store at {self.path}: {exc}") from exc
        self._closed = False
        return self

    def close(self) -> None:
        if self._closed:
            return
        self._table = None
        self._db = None
        self._closed = True

    @property
    def is_open(self) -> bool:
        return self._db is not None and not self._closed

    def _sync_dimension(self) -> None:
        try:
            stored = self._table.schema.field("vector").type.list_size
        except (KeyError, AttributeError):
            logger.debug("Vector column missing list size", exc_info=True)
            return
        if self.dimension is not None and self.dimension != stored:
            logger.warning(
                "Vector store at %s has dimension %s but %s was requested; "
                "using the stored dimension",
                self.path,
                stored,
                self.dimension,
            )
        self.dimension = int(stored)

    def _require_db(self) -> Any:
        if not self.is_open:
            raise StorageFailure("vector store is not open")
        return self._db

    def _ensure_table(self, dimension: int) -> Any:
        if self._table is not None:
            return self._table
        db = self._require_db()
        self.dimension = dimension
        model = get_vector_record_model(dimension)
        self._table = db.create_table(TABLE_NAME, schema=model, mode="create", exist_ok=True)
        try:
            self._table.create_scalar_index("id")
        except Exception:
            logger.debug("Scalar index on id not created", exc_info=True)
        return self._table

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _to_arrow(self, table: Any, records: Sequence[VectorRecord]) -> pa.Table:
        # One row per id; the last record for an id wins.
        unique = {record.id: record for record in records}
        rows = []
        for record in unique.values():
            vec = _normalize(record.vector)
            if self.dimension is not None and vec.shape != (self.dimension,):
                raise StorageFailure(
                    f"vector for {record.id} has shape {vec.shape}, expected ({self.dimension},)"
                )
            rows.append(
                {
                    "id": record.id,
                    "vector": vec.tolist(),
                    "text": record.text,
                    "file_path": record.file_path,
                    "metadata": json.dumps(record.metadata, sort_keys=True),
                    "seq": self._next_seq(),
                }
            )
        return pa.Table.from_pylist(rows, schema=table.schema)

    # -- writes --------------------------------------------------------

    def add(self, records: Sequence[VectorRecord]) -> None:
        """Insert records, overwriting any existing rows with the same id."""
        if not records:
            return
        self._require_db()
        try:
            table = self._ensure_table(len(records[0].vector))
            data = self._to_arrow(table, records)
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
        except StorageFailure:
            raise
        except Exception as exc:
            logger.exception("Failed to upsert %s vector records", len(records))
            raise StorageFailure(f"vector upsert failed: {exc}") from exc

    def replace_files(self, file_paths: Sequence[str], records: Sequence[VectorRecord]) -> None:
        """Make ``records`` the complete set of rows for ``file_paths``.

        Rows of those files whose ids are absent from ``records`` are removed
        in the same commit.
        """
        if not file_paths:
            return
        if not records:
            self.delete_files(file_paths)
            return
        self._require_db()
        try:
            table = self._ensure_table(len(records[0].vector))
            data = self._to_arrow(table, records)
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .when_not_matched_by_source_delete(_in_clause("file_path", file_paths))
                .execute(data)
            )
        except StorageFailure:
            raise
        except Exception as exc:
            logger.exception("Failed to replace vectors for %s files", len(file_paths))
            raise StorageFailure(f"vector replace failed: {exc}") from exc

    def delete(self, ids: Sequence[str]) -> None:
        if not ids or self._table is None:
            return
        try:
            self._table.delete(_in_clause("id", ids))
        except Exception as exc:
            logger.exception("Failed to delete %s vector records", len(ids))
            raise StorageFailure(f"vector delete failed: {exc}") from exc

    def delete_files(self, file_paths: Sequence[str]) -> None:
        if not file_paths or self._table is None:
            return
        try:
            self._table.delete(_in_clause("file_path", file_paths))
        except Exception as exc:
            logger.exception("Failed to delete vectors for %s files", len(file_paths))
            raise StorageFailure(f"vector delete failed: {exc}") from exc

    def retain_files(self, file_paths: Sequence[str]) -> None:
        """Delete every row whose file is not in ``file_paths``."""
        if self._table is None:
            return
        if not file_paths:
            self.clear()
            return
        try:
            self._table.delete(f"NOT ({_in_clause('file_path', file_paths)})")
        except Exception as exc:
            logger.exception("Failed to prune vectors outside %s files", len(file_paths))
            raise StorageFailure(f"vector prune failed: {exc}") from exc

    def clear(self) -> None:
        """Drop every row and the table itself."""
        db = self._require_db()
        if self._table is None and TABLE_NAME not in set(db.table_names()):
            return
        try:
            db.drop_table(TABLE_NAME)
        except Exception as exc:
            logger.exception("Failed to drop vector table")
            raise StorageFailure(f"vector clear failed: {exc}") from exc
        self._table = None

    def optimize(self, cleanup_older_than: timedelta | None = None) -> None:
        """Compact fragments and prune superseded versions.

        Logical content and query results are unchanged.
        """
        if self._table is None:
            return
        started = time.perf_counter()
        try:
            if cleanup_older_than is None:
                self._table.optimize()
            else:
                self._table.optimize(cleanup_older_than=cleanup_older_than)
        except Exception as exc:
            logger.exception("Vector store optimize failed")
            raise StorageFailure(f"vector optimize failed: {exc}") from exc
        logger.info(
            "Optimized vector store at %s in %.2fs", self.path, time.perf_counter() - started
        )

    # -- reads ---------------------------------------------------------

    @staticmethod
    def _row_to_result(row: dict[str, Any], score: float) -> SearchResult:
        try:
            metadata = json.loads(row.get("metadata") or "{}")
        except ValueError:
            metadata = {}
        return SearchResult(
            id=row["id"], score=score, text=row.get("text", ""), metadata=metadata
        )

    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        limit: int = DEFAULT_SEARCH_LIMIT,
        score_threshold: float = 0.0,
    ) -> list[SearchResult]:
        """Nearest neighbours by cosine similarity.

        Results have ``score >= score_threshold`` and are ordered by score
        descending, then by insertion order.
        """
        if self._table is None or limit <= 0:
            return []
        query = _normalize(vector)
        try:
            rows = (
                self._table.search(query)
                .distance_type("cosine")
                .limit(limit + TIE_SLACK)
                .to_list()
            )
        except Exception as exc:
            logger.exception("Vector search failed")
            raise StorageFailure(f"vector search failed: {exc}") from exc

        scored = []
        for row in rows:
            distance = row.get("_distance")
            score = 1.0 - float(distance) if distance is not None else 0.0
            if score < score_threshold:
                continue
            scored.append((score, int(row.get("seq", 0)), row))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [self._row_to_result(row, score) for score, _seq, row in scored[:limit]]

    def get(self, record_id: str) -> VectorRecord | None:
        if self._table is None:
            return None
        try:
            rows = (
                self._table.search()
                .where(f"id = {_quote(record_id)}")
                .limit(1)
                .to_list()
            )
        except Exception as exc:
            logger.exception("Vector lookup failed for %s", record_id)
            raise StorageFailure(f"vector lookup failed: {exc}") from exc
        if not rows:
            return None
        row = rows[0]
        result = self._row_to_result(row, 1.0)
        return VectorRecord(
            id=result.id,
            vector=np.asarray(row["vector"], dtype="float32"),
            text=result.text,
            metadata=result.metadata,
        )

    def search_by_document_id(
        self,
        record_id: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        score_threshold: float = 0.0,
    ) -> list[SearchResult]:
        """Search using the stored vector of ``record_id``; the document itself is included."""
        record = self.get(record_id)
        if record is None:
            return []
        return self.search(record.vector, limit=limit, score_threshold=score_threshold)

    def get_all(self, limit: int = DEFAULT_GET_ALL_LIMIT) -> list[SearchResult]:
        """List stored documents without ranking, capped at ``limit`` rows."""
        if self._table is None or limit <= 0:
            return []
        try:
            rows = self._table.head(limit).to_pylist()
        except Exception as exc:
            logger.exception("Vector listing failed")
            raise StorageFailure(f"vector listing failed: {exc}") from exc
        rows.sort(key=lambda r: int(r.get("seq", 0)))
        return [self._row_to_result(row, 1.0) for row in rows]

    def count(self) -> int:
        if self._table is None:
            return 0
        try:
            return int(self._table.count_rows())
        except Exception as exc:
            logger.exception("Failed to count rows on vector table")
            raise StorageFailure(f"vector count failed: {exc}") from exc

    def get_stats(self) -> dict[str, Any]:
        return {
            "documents": self.count(),
            "dimension": self.dimension,
            "storage_bytes": _dir_size(self.path),
        }


def _dir_size(path: Path) -> int:
    total = 0
    if not path.exists():
        return 0
    for p in path.rglob("*"):
        try:
            if p.is_file():
                total += p.stat().st_size
        except OSError:
            continue
    return total
