"""SQLite store for index-run snapshots and per-file code metadata.

Snapshots are append-only. Each snapshot owns the ``code_metadata`` rows
recorded with it; deleting a snapshot (retention pruning) cascades to them.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from ..errors import StorageFailure

logger = logging.getLogger(__name__)

MAX_SNAPSHOT_QUERY_LIMIT = 1000
DEFAULT_SNAPSHOT_QUERY_LIMIT = 100
DEFAULT_RETENTION_DAYS = 90
TRIGGERS = ("index", "update")

_METADATA_ORDER = {
    "risk": "risk_score DESC, file_path ASC",
    "commits": "commit_count DESC, file_path ASC",
    "lines": "lines_of_code DESC, file_path ASC",
    "ownership": "author_count ASC, commit_count DESC, file_path ASC",
    "path": "file_path ASC",
}
_METADATA_FILTER = {
    "risk": "risk_score IS NOT NULL",
    "commits": "commit_count IS NOT NULL",
    "ownership": "author_count IS NOT NULL",
}


def compute_risk_score(
    commit_count: int | None, lines_of_code: int, author_count: int | None
) -> float | None:
    """``commits * lines / max(authors, 1)``; None without commit history."""
    if commit_count is None:
        return None
    return float(commit_count) * float(lines_of_code) / max(author_count or 0, 1)


def _to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


@dataclass
class SnapshotStats:
    total_files: int = 0
    total_documents: int = 0
    total_vectors: int = 0
    duration_ms: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Snapshot:
    id: str
    timestamp: datetime
    repository_path: str
    trigger: str
    stats: SnapshotStats


@dataclass
class CodeMetadata:
    file_path: str
    lines_of_code: int
    num_functions: int = 0
    num_imports: int = 0
    commit_count: int | None = None
    author_count: int | None = None
    last_modified: datetime | None = None
    risk_score: float | None = None

    def __post_init__(self) -> None:
        if self.risk_score is None:
            self.risk_score = compute_risk_score(
                self.commit_count, self.lines_of_code, self.author_count
            )


class MetricsStore:
    def __init__(self, db_path: Path, *, timeout: float = 60.0):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=timeout)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self._closed = False
        self._init_schema()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
                id TEXT PRIMARY KEY,
                timestamp INTEGER NOT NULL,
                repository_path TEXT NOT NULL,
                trigger TEXT NOT NULL CHECK (trigger IN ('index', 'update')),
                total_files INTEGER NOT NULL,
                total_documents INTEGER NOT NULL,
                total_vectors INTEGER NOT NULL,
                duration_ms INTEGER NOT NULL,
                stats TEXT NOT NULL,
                created_at INTEGER NOT NULL
            )
        """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(timestamp DESC)"
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_snapshots_repo_timestamp
            ON snapshots(repository_path, timestamp DESC)
        """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_snapshots_trigger_timestamp
            ON snapshots(trigger, timestamp DESC)
        """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS code_metadata (
                snapshot_id TEXT NOT NULL REFERENCES snapshots(id) ON DELETE CASCADE,
                file_path TEXT NOT NULL,
                commit_count INTEGER,
                last_modified INTEGER,
                author_count INTEGER,
                lines_of_code INTEGER NOT NULL,
                num_functions INTEGER NOT NULL,
                num_imports INTEGER NOT NULL,
                risk_score REAL,
                PRIMARY KEY (snapshot_id, file_path)
            )
        """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_code_metadata_risk
            ON code_metadata(snapshot_id, risk_score DESC)
        """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_code_metadata_file
            ON code_metadata(file_path, snapshot_id)
        """
        )
        self.conn.commit()

    def close(self) -> None:
        if self._closed:
            return
        try:
            self.conn.close()
        except sqlite3.Error:
            logger.debug("Error closing metrics database", exc_info=True)
        self._closed = True

    # -- writes --------------------------------------------------------

    def record_snapshot(
        self,
        stats: SnapshotStats,
        repository_path: str,
        trigger: str,
        code_metadata: Iterable[CodeMetadata] = (),
        *,
        timestamp: datetime | None = None,
    ) -> str:
        """Persist a snapshot and its per-file metadata in one transaction."""
        if trigger not in TRIGGERS:
            raise ValueError(f"trigger must be one of {TRIGGERS}, got {trigger!r}")
        snapshot_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        ts = timestamp or now
        rows = [
            (
                snapshot_id,
                m.file_path,
                m.commit_count,
                _to_ms(m.last_modified) if m.last_modified else None,
                m.author_count,
                m.lines_of_code,
                m.num_functions,
                m.num_imports,
                m.risk_score,
            )
            for m in code_metadata
        ]
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO snapshots (
                        id, timestamp, repository_path, trigger, total_files,
                        total_documents, total_vectors, duration_ms, stats, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot_id,
                        _to_ms(ts),
                        repository_path,
                        trigger,
                        stats.total_files,
                        stats.total_documents,
                        stats.total_vectors,
                        stats.duration_ms,
                        json.dumps(stats.extra, sort_keys=True, default=str),
                        _to_ms(now),
                    ),
                )
                if rows:
                    self.conn.executemany(
                        """
                        INSERT INTO code_metadata (
                            snapshot_id, file_path, commit_count, last_modified,
                            author_count, lines_of_code, num_functions, num_imports,
                            risk_score
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        rows,
                    )
        except sqlite3.Error as exc:
            logger.exception("Failed to record metrics snapshot for %s", repository_path)
            raise StorageFailure(f"metrics snapshot write failed: {exc}") from exc
        logger.debug(
            "Recorded snapshot %s (%s files of code metadata)", snapshot_id, len(rows)
        )
        return snapshot_id

    def prune_old_snapshots(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete snapshots older than ``retention_days``; returns the number removed."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        try:
            with self.conn:
                cur = self.conn.execute(
                    "DELETE FROM snapshots WHERE timestamp < ?", (_to_ms(cutoff),)
                )
        except sqlite3.Error as exc:
            raise StorageFailure(f"snapshot pruning failed: {exc}") from exc
        if cur.rowcount:
            logger.info(
                "Pruned %s snapshots older than %s days", cur.rowcount, retention_days
            )
        return cur.rowcount

    # -- snapshot queries ----------------------------------------------

    @staticmethod
    def _row_to_snapshot(row: Sequence[Any]) -> Snapshot:
        try:
            extra = json.loads(row[8]) if row[8] else {}
        except ValueError:
            extra = {}
        return Snapshot(
            id=row[0],
            timestamp=_from_ms(row[1]),  # type: ignore[arg-type]
            repository_path=row[2],
            trigger=row[3],
            stats=SnapshotStats(
                total_files=row[4],
                total_documents=row[5],
                total_vectors=row[6],
                duration_ms=row[7],
                extra=extra,
            ),
        )

    _SNAPSHOT_COLUMNS = (
        "id, timestamp, repository_path, trigger, total_files, total_documents, "
        "total_vectors, duration_ms, stats"
    )

    def get_snapshots(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = DEFAULT_SNAPSHOT_QUERY_LIMIT,
        repository_path: str | None = None,
        trigger: str | None = None,
    ) -> list[Snapshot]:
        """Snapshots newest first, filtered by time window, repository and trigger."""
        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_to_ms(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(_to_ms(until))
        if repository_path is not None:
            clauses.append("repository_path = ?")
            params.append(repository_path)
        if trigger is not None:
            clauses.append("trigger = ?")
            params.append(trigger)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit = max(1, min(int(limit), MAX_SNAPSHOT_QUERY_LIMIT))
        cur = self.conn.execute(
            f"SELECT {self._SNAPSHOT_COLUMNS} FROM snapshots {where} "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (*params, limit),
        )
        return [self._row_to_snapshot(row) for row in cur.fetchall()]

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        cur = self.conn.execute(
            f"SELECT {self._SNAPSHOT_COLUMNS} FROM snapshots WHERE id = ?", (snapshot_id,)
        )
        row = cur.fetchone()
        return self._row_to_snapshot(row) if row else None

    def get_latest_snapshot(self, repository_path: str | None = None) -> Snapshot | None:
        snapshots = self.get_snapshots(limit=1, repository_path=repository_path)
        return snapshots[0] if snapshots else None

    def get_count(self, repository_path: str | None = None) -> int:
        if repository_path is None:
            cur = self.conn.execute("SELECT COUNT(*) FROM snapshots")
        else:
            cur = self.conn.execute(
                "SELECT COUNT(*) FROM snapshots WHERE repository_path = ?", (repository_path,)
            )
        return int(cur.fetchone()[0])

    # -- code metadata queries -----------------------------------------

    @staticmethod
    def _row_to_metadata(row: Sequence[Any]) -> CodeMetadata:
        return CodeMetadata(
            file_path=row[0],
            commit_count=row[1],
            last_modified=_from_ms(row[2]),
            author_count=row[3],
            lines_of_code=row[4],
            num_functions=row[5],
            num_imports=row[6],
            risk_score=row[7],
        )

    _METADATA_COLUMNS = (
        "file_path, commit_count, last_modified, author_count, lines_of_code, "
        "num_functions, num_imports, risk_score"
    )

    def get_code_metadata(
        self,
        snapshot_id: str,
        *,
        sort_by: str = "path",
        limit: int | None = None,
        max_author_count: int | None = None,
    ) -> list[CodeMetadata]:
        """Per-file metadata of one snapshot.

        ``sort_by`` is one of ``risk``, ``commits``, ``lines``, ``ownership``
        or ``path``; rankings over change-frequency fields skip files without
        commit history.
        """
        if sort_by not in _METADATA_ORDER:
            raise ValueError(f"unknown sort key {sort_by!r}")
        clauses = ["snapshot_id = ?"]
        params: list[Any] = [snapshot_id]
        if sort_by in _METADATA_FILTER:
            clauses.append(_METADATA_FILTER[sort_by])
        if max_author_count is not None:
            clauses.append("author_count IS NOT NULL AND author_count <= ?")
            params.append(max_author_count)
        sql = (
            f"SELECT {self._METADATA_COLUMNS} FROM code_metadata "
            f"WHERE {' AND '.join(clauses)} ORDER BY {_METADATA_ORDER[sort_by]}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        cur = self.conn.execute(sql, params)
        return [self._row_to_metadata(row) for row in cur.fetchall()]

    def get_hotspots(self, snapshot_id: str, limit: int = 10) -> list[CodeMetadata]:
        return self.get_code_metadata(snapshot_id, sort_by="risk", limit=limit)

    def get_file_history(
        self, file_path: str, *, repository_path: str | None = None, limit: int = 10
    ) -> list[tuple[Snapshot, CodeMetadata]]:
        """Metadata for one file across snapshots, newest first."""
        sql = (
            f"SELECT s.id, s.timestamp, s.repository_path, s.trigger, s.total_files, "
            f"s.total_documents, s.total_vectors, s.duration_ms, s.stats, "
            f"c.{self._METADATA_COLUMNS.replace(', ', ', c.')} "
            "FROM code_metadata c JOIN snapshots s ON s.id = c.snapshot_id "
            "WHERE c.file_path = ?"
        )
        params: list[Any] = [file_path]
        if repository_path is not None:
            sql += " AND s.repository_path = ?"
            params.append(repository_path)
        sql += " ORDER BY s.timestamp DESC, s.rowid DESC LIMIT ?"
        params.append(max(1, int(limit)))
        cur = self.conn.execute(sql, params)
        return [
            (self._row_to_snapshot(row[:9]), self._row_to_metadata(row[9:]))
            for row in cur.fetchall()
        ]
