"""Persisted indexer state (``indexer-state.json``).

The state records, per indexed file, the fingerprint that was embedded and
the document ids it produced. It is replaced atomically: a new version is
written to a temporary file beside the target and moved into place, so a
crash mid-write leaves the previous state intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_VERSION = "1.0.0"


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class FileRecord:
    """Fingerprint and index output for one file."""

    path: str
    hash: str
    size: int
    mtime_ns: int
    language: str
    document_ids: list[str] = field(default_factory=list)
    component_counts: dict[str, int] = field(default_factory=dict)
    imports: list[str] = field(default_factory=list)
    lines: int = 0
    last_indexed: datetime | None = None

    @property
    def num_functions(self) -> int:
        return self.component_counts.get("function", 0) + self.component_counts.get("method", 0)

    def matches_stat(self, size: int, mtime_ns: int) -> bool:
        return self.size == size and self.mtime_ns == mtime_ns

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_indexed"] = _iso(self.last_indexed)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        return cls(
            path=data["path"],
            hash=data["hash"],
            size=int(data.get("size", 0)),
            mtime_ns=int(data.get("mtime_ns", 0)),
            language=data.get("language", "unknown"),
            document_ids=list(data.get("document_ids", [])),
            component_counts=dict(data.get("component_counts", {})),
            imports=list(data.get("imports", [])),
            lines=int(data.get("lines", 0)),
            last_indexed=_parse_dt(data.get("last_indexed")),
        )


@dataclass
class LanguageStats:
    files: int = 0
    components: int = 0
    lines: int = 0


@dataclass
class StateStats:
    total_files: int = 0
    total_documents: int = 0
    total_vectors: int = 0
    by_language: dict[str, LanguageStats] = field(default_factory=dict)
    by_component_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateStats":
        return cls(
            total_files=int(data.get("total_files", 0)),
            total_documents=int(data.get("total_documents", 0)),
            total_vectors=int(data.get("total_vectors", 0)),
            by_language={
                lang: LanguageStats(**values)
                for lang, values in (data.get("by_language") or {}).items()
            },
            by_component_type=dict(data.get("by_component_type") or {}),
        )


@dataclass
class IndexerState:
    repository_path: str
    embedding_model: str
    embedding_dimension: int
    version: str = STATE_VERSION
    last_index_time: datetime | None = None
    last_update: datetime | None = None
    incremental_updates_since: int = 0
    files: dict[str, FileRecord] = field(default_factory=dict)
    stats: StateStats = field(default_factory=StateStats)

    def document_ids(self) -> set[str]:
        ids: set[str] = set()
        for record in self.files.values():
            ids.update(record.document_ids)
        return ids

    def recompute_stats(self, total_vectors: int | None = None) -> StateStats:
        """Rebuild aggregate statistics from the per-file records."""
        by_language: dict[str, LanguageStats] = {}
        by_type: Counter[str] = Counter()
        total_documents = 0
        for record in self.files.values():
            lang = by_language.setdefault(record.language, LanguageStats())
            lang.files += 1
            lang.components += len(record.document_ids)
            lang.lines += record.lines
            by_type.update(record.component_counts)
            total_documents += len(record.document_ids)
        self.stats = StateStats(
            total_files=len(self.files),
            total_documents=total_documents,
            total_vectors=total_documents if total_vectors is None else total_vectors,
            by_language=dict(sorted(by_language.items())),
            by_component_type=dict(sorted(by_type.items())),
        )
        return self.stats

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "repository_path": self.repository_path,
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.embedding_dimension,
            "last_index_time": _iso(self.last_index_time),
            "last_update": _iso(self.last_update),
            "incremental_updates_since": self.incremental_updates_since,
            "files": {path: rec.to_dict() for path, rec in sorted(self.files.items())},
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexerState":
        return cls(
            version=data.get("version", STATE_VERSION),
            repository_path=data["repository_path"],
            embedding_model=data.get("embedding_model", ""),
            embedding_dimension=int(data.get("embedding_dimension", 0)),
            last_index_time=_parse_dt(data.get("last_index_time")),
            last_update=_parse_dt(data.get("last_update")),
            incremental_updates_since=int(data.get("incremental_updates_since", 0)),
            files={
                path: FileRecord.from_dict(rec) for path, rec in (data.get("files") or {}).items()
            },
            stats=StateStats.from_dict(data.get("stats") or {}),
        )


def load_state(path: Path) -> IndexerState | None:
    """Load state from ``path``; returns None when absent or unreadable."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        state = IndexerState.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError):
        logger.warning("Ignoring unreadable indexer state at %s", path, exc_info=True)
        return None
    if state.version != STATE_VERSION:
        logger.warning(
            "Indexer state version %s differs from %s; a full re-index is recommended",
            state.version,
            STATE_VERSION,
        )
    return state


def save_state(path: Path, state: IndexerState) -> None:
    """Atomically replace the state file at ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".indexer-state.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            logger.debug("Failed to remove temporary state file %s", tmp_name, exc_info=True)
        raise


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
