"""Analytical queries over recorded snapshots.

Every query takes either an explicit ``snapshot_id`` or a
``repository_path``, in which case the newest snapshot of that repository
is used. When no snapshot resolves, queries return empty results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..storage.metrics import CodeMetadata, MetricsStore, Snapshot

DEFAULT_LIMIT = 10


def classify_activity(commit_count: int | None) -> str:
    count = commit_count or 0
    if count >= 100:
        return "very-high"
    if count >= 50:
        return "high"
    if count >= 20:
        return "medium"
    if count >= 5:
        return "low"
    return "minimal"


def classify_size(lines_of_code: int) -> str:
    if lines_of_code >= 2000:
        return "very-large"
    if lines_of_code >= 1000:
        return "large"
    if lines_of_code >= 500:
        return "medium"
    if lines_of_code >= 100:
        return "small"
    return "tiny"


def classify_ownership(author_count: int | None) -> str:
    count = author_count or 0
    if count <= 1:
        return "single"
    if count == 2:
        return "pair"
    if count <= 5:
        return "small-team"
    return "shared"


@dataclass
class FileMetrics:
    """Code metadata with human-readable classifications."""

    metadata: CodeMetadata
    activity: str
    size: str
    ownership: str

    @property
    def file_path(self) -> str:
        return self.metadata.file_path

    @classmethod
    def from_metadata(cls, metadata: CodeMetadata) -> "FileMetrics":
        return cls(
            metadata=metadata,
            activity=classify_activity(metadata.commit_count),
            size=classify_size(metadata.lines_of_code),
            ownership=classify_ownership(metadata.author_count),
        )


@dataclass
class Hotspot:
    file_path: str
    risk_score: float
    commit_count: int
    author_count: int
    lines_of_code: int
    num_functions: int
    last_modified: datetime | None
    reason: str


@dataclass
class FileTrendPoint:
    snapshot_id: str
    timestamp: datetime
    metadata: CodeMetadata


@dataclass
class SnapshotSummary:
    snapshot: Snapshot
    total_files: int
    total_lines: int
    total_functions: int
    total_commits: int
    avg_lines_per_file: float
    avg_commits_per_file: float
    files_with_history: int
    activity_distribution: dict[str, float]
    size_distribution: dict[str, float]
    ownership_distribution: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot.id,
            "timestamp": self.snapshot.timestamp.isoformat(),
            "total_files": self.total_files,
            "total_lines": self.total_lines,
            "total_functions": self.total_functions,
            "total_commits": self.total_commits,
            "avg_lines_per_file": self.avg_lines_per_file,
            "avg_commits_per_file": self.avg_commits_per_file,
            "files_with_history": self.files_with_history,
            "activity_distribution": self.activity_distribution,
            "size_distribution": self.size_distribution,
            "ownership_distribution": self.ownership_distribution,
        }


def resolve_snapshot_id(
    store: MetricsStore, snapshot_id: str | None = None, repository_path: str | None = None
) -> str | None:
    if snapshot_id:
        return snapshot_id
    latest = store.get_latest_snapshot(repository_path)
    return latest.id if latest else None


def get_most_active(
    store: MetricsStore,
    *,
    snapshot_id: str | None = None,
    repository_path: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[FileMetrics]:
    """Files with the most commits."""
    sid = resolve_snapshot_id(store, snapshot_id, repository_path)
    if sid is None:
        return []
    rows = store.get_code_metadata(sid, sort_by="commits", limit=limit)
    return [FileMetrics.from_metadata(m) for m in rows]


def get_largest_files(
    store: MetricsStore,
    *,
    snapshot_id: str | None = None,
    repository_path: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[FileMetrics]:
    sid = resolve_snapshot_id(store, snapshot_id, repository_path)
    if sid is None:
        return []
    rows = store.get_code_metadata(sid, sort_by="lines", limit=limit)
    return [FileMetrics.from_metadata(m) for m in rows]


def get_concentrated_ownership(
    store: MetricsStore,
    *,
    snapshot_id: str | None = None,
    repository_path: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[FileMetrics]:
    """Files owned by one or two authors, fewest authors then most commits first."""
    sid = resolve_snapshot_id(store, snapshot_id, repository_path)
    if sid is None:
        return []
    rows = store.get_code_metadata(sid, sort_by="ownership", limit=limit, max_author_count=2)
    return [FileMetrics.from_metadata(m) for m in rows]


def _hotspot_reason(m: CodeMetadata) -> str:
    authors = m.author_count or 0
    author_label = "author" if authors == 1 else "authors"
    return (
        f"{m.commit_count} commits by {authors} {author_label} "
        f"across {m.lines_of_code} lines ({classify_activity(m.commit_count)} activity, "
        f"{classify_size(m.lines_of_code)} file, {classify_ownership(m.author_count)} ownership)"
    )


def get_hotspots(
    store: MetricsStore,
    *,
    snapshot_id: str | None = None,
    repository_path: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[Hotspot]:
    """Files ranked by ``commits * lines / max(authors, 1)``."""
    sid = resolve_snapshot_id(store, snapshot_id, repository_path)
    if sid is None:
        return []
    return [
        Hotspot(
            file_path=m.file_path,
            risk_score=float(m.risk_score or 0.0),
            commit_count=m.commit_count or 0,
            author_count=m.author_count or 0,
            lines_of_code=m.lines_of_code,
            num_functions=m.num_functions,
            last_modified=m.last_modified,
            reason=_hotspot_reason(m),
        )
        for m in store.get_hotspots(sid, limit=limit)
    ]


def get_file_trend(
    store: MetricsStore,
    file_path: str,
    *,
    repository_path: str | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[FileTrendPoint]:
    """Metadata for one file across snapshots, oldest first."""
    history = store.get_file_history(file_path, repository_path=repository_path, limit=limit)
    points = [
        FileTrendPoint(snapshot_id=s.id, timestamp=s.timestamp, metadata=m) for s, m in history
    ]
    points.reverse()
    return points


def _distribution(labels: list[str], buckets: tuple[str, ...]) -> dict[str, float]:
    total = len(labels)
    return {
        b: (round(100.0 * labels.count(b) / total, 2) if total else 0.0) for b in buckets
    }


def get_snapshot_summary(
    store: MetricsStore,
    *,
    snapshot_id: str | None = None,
    repository_path: str | None = None,
) -> SnapshotSummary | None:
    sid = resolve_snapshot_id(store, snapshot_id, repository_path)
    if sid is None:
        return None
    snapshot = store.get_snapshot(sid)
    if snapshot is None:
        return None
    rows = store.get_code_metadata(sid)
    metrics = [FileMetrics.from_metadata(m) for m in rows]
    total_files = len(rows)
    total_lines = sum(m.lines_of_code for m in rows)
    with_history = [m for m in rows if m.commit_count is not None]
    total_commits = sum(m.commit_count or 0 for m in with_history)
    return SnapshotSummary(
        snapshot=snapshot,
        total_files=total_files,
        total_lines=total_lines,
        total_functions=sum(m.num_functions for m in rows),
        total_commits=total_commits,
        avg_lines_per_file=(total_lines / total_files) if total_files else 0.0,
        avg_commits_per_file=(total_commits / len(with_history)) if with_history else 0.0,
        files_with_history=len(with_history),
        activity_distribution=_distribution(
            [m.activity for m in metrics], ("very-high", "high", "medium", "low", "minimal")
        ),
        size_distribution=_distribution(
            [m.size for m in metrics], ("very-large", "large", "medium", "small", "tiny")
        ),
        ownership_distribution=_distribution(
            [m.ownership for m in metrics], ("single", "pair", "small-team", "shared")
        ),
    )
