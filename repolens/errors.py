"""Error taxonomy for indexing, storage and analytics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping


class RepoLensError(Exception):
    """Base class for all repolens errors."""


class NotIndexed(RepoLensError):
    """The repository has no persisted index state."""

    def __init__(self, repository_path: str):
        super().__init__(
            f"Repository {repository_path} has not been indexed; run index() first"
        )
        self.repository_path = repository_path


class IndexerStateError(RepoLensError):
    """An operation was called in a lifecycle state that does not allow it."""


class EmbedderUnavailable(RepoLensError):
    """The indexer was initialized without an embedder."""


class PartialScanFailure(RepoLensError):
    """A single file could not be read or parsed."""

    def __init__(self, file_path: str, message: str):
        super().__init__(f"{file_path}: {message}")
        self.file_path = file_path


class EmbeddingFailure(RepoLensError):
    """The embedder failed or timed out for a batch of texts."""


class VCSUnavailable(RepoLensError):
    """Version-control history could not be read."""


class _ProgressError(RepoLensError):
    def __init__(self, message: str, progress: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.progress: dict[str, Any] = dict(progress or {})

    def __str__(self) -> str:
        base = super().__str__()
        if not self.progress:
            return base
        counts = ", ".join(f"{k}={v}" for k, v in self.progress.items())
        return f"{base} (progress: {counts})"


class StorageFailure(_ProgressError):
    """A vector or metrics store write failed; the run is aborted."""


class IndexingCancelled(_ProgressError):
    """The run was cancelled between file batches."""


@dataclass
class RunError:
    """A non-fatal error absorbed into run statistics."""

    kind: str
    message: str
    file: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "file": self.file,
            "timestamp": self.timestamp.isoformat(),
        }
