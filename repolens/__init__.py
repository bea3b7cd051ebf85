"""Incremental semantic code index with commit-history hotspot analytics."""

from .errors import (EmbedderUnavailable, EmbeddingFailure, IndexerStateError,
                     IndexingCancelled, NotIndexed, PartialScanFailure,
                     RepoLensError, StorageFailure, VCSUnavailable)
from .indexer import (IndexerStatus, IndexOptions, IndexProgress, IndexStats,
                      RepositoryIndexer, RepositoryStats)

__version__ = "0.1.0"

__all__ = [
    "EmbedderUnavailable",
    "EmbeddingFailure",
    "IndexOptions",
    "IndexProgress",
    "IndexStats",
    "IndexerStateError",
    "IndexerStatus",
    "IndexingCancelled",
    "NotIndexed",
    "PartialScanFailure",
    "RepoLensError",
    "RepositoryIndexer",
    "RepositoryStats",
    "StorageFailure",
    "VCSUnavailable",
]
