# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Incremental repository indexer.

Scans a repository, embeds the documents of new and changed files, keeps the
vector store in step with the persisted indexer state, and records a metrics
snapshot per run. Unchanged files are detected by stat fingerprint (size and
mtime) with a content hash as confirmation, so they are never re-embedded.
"""

import copy
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from time import perf_counter
from typing import Any

from .analysis.change_frequency import (ChangeFrequencyAnalyzer,
                                        ChangeFrequencySummary,
                                        aggregate_change_frequency)
from .analysis.chunking import format_embedding_text
from .analysis.git import get_remote_url
from .analysis.scanner import ScannedFile, Scanner, SourceFile
from .concurrency import get_optimal_concurrency
from .config import Config, get_config
from .embeddings import Embedder, EmbeddingFn, embed_fn_from_config
from .errors import (EmbedderUnavailable, IndexerStateError,
                     IndexingCancelled, NotIndexed, RunError, StorageFailure)
from .metrics.collector import build_code_metadata
from .storage.metadata import update_repository_metadata
from .storage.metrics import MetricsStore, SnapshotStats
from .storage.paths import StoragePaths, resolve_repository_root
from .storage.state import (FileRecord, IndexerState, LanguageStats,
                            load_state, save_state, utcnow)
from .storage.vector import SearchResult, VectorRecord, VectorStore

logger = logging.getLogger(__name__)


class IndexerStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    INDEXING = "indexing"
    CLOSED = "closed"


@dataclass
class IndexProgress:
    phase: str
    files_total: int
    files_processed: int
    documents_indexed: int

    @property
    def percent(self) -> float:
        if not self.files_total:
            return 100.0
        return round(100.0 * self.files_processed / self.files_total, 1)


@dataclass
class IndexOptions:
    """Per-run options.

    ``languages``, ``include_patterns`` and ``exclude_patterns`` narrow the
    configured filters for this run only. ``should_cancel`` is polled between
    file batches.
    """

    force: bool = False
    languages: Sequence[str] | None = None
    include_patterns: Sequence[str] | None = None
    exclude_patterns: Sequence[str] | None = None
    on_progress: Callable[[IndexProgress], None] | None = None
    should_cancel: Callable[[], bool] | None = None

    @property
    def narrows_scope(self) -> bool:
        return bool(self.languages or self.include_patterns or self.exclude_patterns)


@dataclass
class IndexStats:
    trigger: str
    started_at: datetime = field(default_factory=utcnow)
    files_scanned: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_deleted: int = 0
    files_failed: int = 0
    documents_extracted: int = 0
    documents_indexed: int = 0
    documents_failed: int = 0
    documents_deleted: int = 0
    vectors_stored: int = 0
    duration_ms: int = 0
    state_written: bool = False
    snapshot_id: str | None = None
    errors: list[RunError] = field(default_factory=list)

    def progress(self) -> dict[str, int]:
        return {
            "files_scanned": self.files_scanned,
            "files_indexed": self.files_indexed,
            "files_deleted": self.files_deleted,
            "documents_indexed": self.documents_indexed,
        }


@dataclass
class RepositoryStats:
    repository_path: str
    storage_path: str
    embedding_model: str
    embedding_dimension: int
    total_files: int
    total_documents: int
    total_vectors: int
    by_language: dict[str, LanguageStats]
    by_component_type: dict[str, int]
    last_index_time: datetime | None
    last_update: datetime | None
    incremental_updates_since: int
    change_frequency: ChangeFrequencySummary | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "repository_path": self.repository_path,
            "storage_path": self.storage_path,
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.embedding_dimension,
            "total_files": self.total_files,
            "total_documents": self.total_documents,
            "total_vectors": self.total_vectors,
            "by_language": {k: vars(v) for k, v in self.by_language.items()},
            "by_component_type": dict(self.by_component_type),
            "last_index_time": self.last_index_time.isoformat() if self.last_index_time else None,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "incremental_updates_since": self.incremental_updates_since,
        }
        if self.change_frequency is not None:
            cf = self.change_frequency
            data["change_frequency"] = {
                "total_commits": cf.total_commits,
                "avg_commits_per_file": cf.avg_commits_per_file,
                "last_modified": cf.last_modified.isoformat() if cf.last_modified else None,
            }
        return data


class RepositoryIndexer:
    """Incremental semantic index for one repository."""

    def __init__(
        self,
        repository_path: Path,
        *,
        config: Config | None = None,
        embed_fn: EmbeddingFn | None = None,
        embed_model: str | None = None,
        storage_root: Path | None = None,
    ):
        self.config = config or get_config()
        self.repository_path = resolve_repository_root(Path(repository_path))
        self.storage_root = Path(storage_root) if storage_root else self.config.storage_root
        self._embed_fn = embed_fn
        if embed_model:
            self.embed_model = embed_model
        elif embed_fn is not None:
            self.embed_model = "custom"
        else:
            self.embed_model = f"{self.config.embeddings_provider}:{self.config.embeddings_model}"

        self.status = IndexerStatus.UNINITIALIZED
        self.paths: StoragePaths | None = None
        self.state: IndexerState | None = None
        self.vector_store: VectorStore | None = None
        self.metrics_store: MetricsStore | None = None
        self.embedder: Embedder | None = None
        self._remote: str | None = None
        self._lock = threading.RLock()

    # -- lifecycle -----------------------------------------------------

    def initialize(self, skip_embedder: bool = False, require_state: bool = False) -> None:
        """Open storage and load prior state.

        Args:
            skip_embedder: Never construct the embedder; ``search``, ``index``
                and ``update`` then raise ``EmbedderUnavailable``.
            require_state: Raise ``NotIndexed`` when no prior state exists.
        """
        with self._lock:
            if self.status is not IndexerStatus.UNINITIALIZED:
                raise IndexerStateError(f"cannot initialize from state {self.status.value}")
            self.status = IndexerStatus.INITIALIZING
            try:
                self._remote = get_remote_url(self.repository_path)
                self.paths = StoragePaths.for_repository(
                    self.repository_path, self.storage_root, self._remote
                )
                self.state = load_state(self.paths.state)
                if self.state is None and require_state:
                    raise NotIndexed(str(self.repository_path))
                self.paths.ensure()
                self.vector_store = VectorStore(
                    self.paths.vectors, dimension=self.config.embeddings_dimension
                ).open()
                if self.config.metrics_enabled:
                    self.metrics_store = MetricsStore(self.paths.metrics)
                if not skip_embedder:
                    self.embedder = self._create_embedder()
            except BaseException:
                self._release()
                self.status = IndexerStatus.UNINITIALIZED
                raise
            self.status = IndexerStatus.READY

        if self.state is not None and self.embedder is not None:
            expected = self.embedder.dimension
            if expected and self.state.embedding_dimension and expected != self.state.embedding_dimension:
                logger.warning(
                    "Index for %s was built with dimension %s but embedder produces %s; "
                    "run index(force=True) to rebuild",
                    self.repository_path,
                    self.state.embedding_dimension,
                    expected,
                )
        logger.info(
            "Initialized indexer for %s (storage=%s, state=%s, embedder=%s)",
            self.repository_path,
            self.paths.root if self.paths else None,
            "loaded" if self.state else "none",
            self.embed_model if self.embedder else "skipped",
        )

    def _create_embedder(self) -> Embedder:
        cfg = self.config
        embed_fn = self._embed_fn
        dimension: int | None = None
        if embed_fn is None:
            try:
                embed_fn, self.embed_model = embed_fn_from_config(cfg)
            except (ImportError, ValueError) as exc:
                raise EmbedderUnavailable(
                    f"embedding provider {cfg.embeddings_provider!r} unavailable: {exc}"
                ) from exc
            dimension = cfg.embeddings_dimension
        return Embedder(
            embed_fn,
            model_name=self.embed_model,
            dimension=dimension,
            batch_size=cfg.embeddings_batch_size,
            timeout_seconds=cfg.embeddings_timeout_seconds,
            max_workers=get_optimal_concurrency("indexer", cfg.index_concurrency),
        )

    def _release(self) -> None:
        if self.embedder is not None:
            self.embedder.close()
            self.embedder = None
        if self.vector_store is not None:
            self.vector_store.close()
            self.vector_store = None
        if self.metrics_store is not None:
            self.metrics_store.close()
            self.metrics_store = None

    def close(self) -> None:
        """Release the stores and embedder. Safe to call repeatedly."""
        with self._lock:
            if self.status is IndexerStatus.CLOSED:
                return
            if self.status is IndexerStatus.INDEXING:
                raise IndexerStateError("cannot close while indexing")
            self._release()
            self.status = IndexerStatus.CLOSED

    def __enter__(self) -> "RepositoryIndexer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _require_ready(self) -> None:
        if self.status is not IndexerStatus.READY:
            raise IndexerStateError(
                f"operation requires a ready indexer (current: {self.status.value})"
            )

    def _require_readable(self) -> None:
        if self.status not in (IndexerStatus.READY, IndexerStatus.INDEXING):
            raise IndexerStateError(
                f"operation requires an initialized indexer (current: {self.status.value})"
            )

    def _require_embedder(self) -> Embedder:
        if self.embedder is None:
            raise EmbedderUnavailable(
                "indexer was initialized with skip_embedder=True; embedding is unavailable"
            )
        return self.embedder

    @property
    def _store(self) -> VectorStore:
        assert self.vector_store is not None
        return self.vector_store

    # -- indexing ------------------------------------------------------

    def index(self, options: IndexOptions | None = None, *, force: bool = False) -> IndexStats:
        """Bring the index up to date, building it from scratch when no state exists."""
        opts = copy.copy(options) if options else IndexOptions()
        opts.force = opts.force or force
        return self._run("index", opts)

    def update(self, options: IndexOptions | None = None) -> IndexStats:
        """Apply changes since the last run.

        Raises:
            NotIndexed: no prior state exists.
        """
        self._require_ready()
        if self.state is None:
            raise NotIndexed(str(self.repository_path))
        return self._run("update", options or IndexOptions())

    def _run(self, trigger: str, opts: IndexOptions) -> IndexStats:
        with self._lock:
            self._require_ready()
            self._require_embedder()
            self.status = IndexerStatus.INDEXING
        stats = IndexStats(trigger=trigger)
        started = perf_counter()
        logger.info(
            "Starting %s of %s (force=%s)", trigger, self.repository_path, opts.force
        )
        try:
            self._execute(trigger, opts, stats)
        finally:
            stats.duration_ms = int((perf_counter() - started) * 1000)
            with self._lock:
                if self.status is IndexerStatus.INDEXING:
                    self.status = IndexerStatus.READY

        self._record_metrics(trigger, stats)
        logger.info(
            "%s of %s finished in %.1fs: indexed=%s unchanged=%s deleted=%s failed=%s "
            "documents=%s vectors=%s",
            trigger.capitalize(),
            self.repository_path,
            stats.duration_ms / 1000.0,
            stats.files_indexed,
            stats.files_unchanged,
            stats.files_deleted,
            stats.files_failed,
            stats.documents_indexed,
            stats.vectors_stored,
        )
        return stats

    def _make_scanner(self, opts: IndexOptions) -> Scanner:
        cfg = self.config
        languages = list(opts.languages) if opts.languages else cfg.languages
        include = list(opts.include_patterns) if opts.include_patterns else cfg.include_patterns
        exclude = cfg.exclude_patterns + list(opts.exclude_patterns or [])
        return Scanner(
            self.repository_path,
            include_patterns=include,
            exclude_patterns=exclude,
            languages=languages,
            max_file_bytes=cfg.max_file_bytes,
            max_document_chars=cfg.embeddings_max_chars,
        )

    def _working_state(self, previous: IndexerState | None) -> IndexerState:
        if previous is not None:
            return copy.deepcopy(previous)
        return IndexerState(
            repository_path=str(self.repository_path),
            embedding_model=self.embed_model,
            embedding_dimension=self.config.embeddings_dimension,
        )

    def _emit(self, opts: IndexOptions, progress: IndexProgress) -> None:
        if opts.on_progress is None:
            return
        try:
            opts.on_progress(progress)
        except Exception:
            logger.debug("Progress callback raised", exc_info=True)

    def _removed_files(
        self,
        working: IndexerState,
        discovered: dict[str, SourceFile],
        opts: IndexOptions,
        unreadable: set[str] | None = None,
    ) -> list[str]:
        removed = []
        for path in sorted(working.files):
            if path in discovered:
                continue
            # Files that failed to stat keep their prior records.
            if unreadable and path in unreadable:
                continue
            # A narrowed run only drops files that are actually gone.
            if opts.narrows_scope and (self.repository_path / path).exists():
                continue
            removed.append(path)
        return removed

    def _execute(self, trigger: str, opts: IndexOptions, stats: IndexStats) -> None:
        store = self._store
        scanner = self._make_scanner(opts)
        working = self._working_state(self.state)

        self._emit(opts, IndexProgress("scanning", 0, 0, 0))
        sources, discover_errors = scanner.discover()
        stats.errors.extend(discover_errors)
        stats.files_scanned = len(sources)
        discovered = {s.path: s for s in sources}

        unreadable = {e.file for e in discover_errors if e.file}
        removed = self._removed_files(working, discovered, opts, unreadable)
        if removed:
            try:
                store.delete_files(removed)
            except StorageFailure as exc:
                raise StorageFailure(f"removing deleted files failed: {exc}", stats.progress()) from exc
            for path in removed:
                stats.documents_deleted += len(working.files.pop(path).document_ids)
            stats.files_deleted = len(removed)
            logger.info("Removed %s deleted files from the index", len(removed))

        candidates: list[SourceFile] = []
        for source in sources:
            previous = working.files.get(source.path)
            if (
                not opts.force
                and previous is not None
                and previous.matches_stat(source.size, source.mtime_ns)
            ):
                stats.files_unchanged += 1
            else:
                candidates.append(source)

        dirty = bool(removed) or opts.force or self.state is None
        batch_size = self.config.file_batch_size
        total = len(candidates)
        logger.info(
            "Index diff for %s: candidates=%s unchanged=%s removed=%s",
            self.repository_path,
            total,
            stats.files_unchanged,
            len(removed),
        )

        for start in range(0, total, batch_size):
            batch = candidates[start : start + batch_size]
            if self._process_batch(scanner, batch, working, stats, opts):
                dirty = True
            processed = min(start + batch_size, total)
            self._emit(
                opts, IndexProgress("storing", total, processed, stats.documents_indexed)
            )
            if processed < total and opts.should_cancel is not None and opts.should_cancel():
                logger.warning(
                    "Indexing cancelled after %s of %s files; saving committed batches",
                    processed,
                    total,
                )
                if dirty:
                    self._commit_state(working, trigger, stats)
                raise IndexingCancelled(
                    f"{trigger} cancelled after {processed} of {total} files", stats.progress()
                )

        if opts.force:
            try:
                store.retain_files(list(working.files))
            except StorageFailure as exc:
                raise StorageFailure(f"pruning orphaned vectors failed: {exc}", stats.progress()) from exc

        if dirty:
            self._commit_state(working, trigger, stats)
        else:
            logger.info("No changes detected for %s; state left untouched", self.repository_path)
            stats.vectors_stored = store.count()
        self._emit(opts, IndexProgress("complete", total, total, stats.documents_indexed))

    def _process_batch(
        self,
        scanner: Scanner,
        batch: list[SourceFile],
        working: IndexerState,
        stats: IndexStats,
        opts: IndexOptions,
    ) -> bool:
        """Scan, embed and commit one batch. Returns whether ``working`` changed."""
        embedder = self._require_embedder()
        changed_state = False
        scan = scanner.scan_files(batch)
        stats.errors.extend(scan.errors)
        stats.files_failed += len(scan.errors)

        changed: list[ScannedFile] = []
        for scanned in scan.files:
            previous = working.files.get(scanned.path)
            if not opts.force and previous is not None and previous.hash == scanned.hash:
                # Touched but identical: refresh the stat fingerprint only.
                previous.size = scanned.source.size
                previous.mtime_ns = scanned.source.mtime_ns
                stats.files_unchanged += 1
                changed_state = True
                continue
            changed.append(scanned)
        if not changed:
            return changed_state

        max_chars = self.config.embeddings_max_chars
        texts = []
        for scanned in changed:
            stats.documents_extracted += len(scanned.documents)
            for doc in scanned.documents:
                texts.append(
                    format_embedding_text(doc.metadata.type, doc.metadata.name, doc.text, max_chars)
                )
        self._emit(opts, IndexProgress("embedding", len(batch), 0, stats.documents_indexed))
        embedded = embedder.embed_documents(texts)

        ready: list[ScannedFile] = []
        records: list[VectorRecord] = []
        offset = 0
        for scanned in changed:
            count = len(scanned.documents)
            failed = [i for i in range(offset, offset + count) if i in embedded.failures]
            vectors = embedded.vectors[offset : offset + count]
            offset += count
            if failed:
                stats.files_failed += 1
                stats.documents_failed += len(failed)
                stats.errors.append(
                    RunError(kind="embedding", message=embedded.failures[failed[0]], file=scanned.path)
                )
                continue
            ready.append(scanned)
            by_id: dict[str, VectorRecord] = {}
            for doc, vector in zip(scanned.documents, vectors):
                by_id[doc.id] = VectorRecord(
                    id=doc.id, vector=vector, text=doc.text, metadata=doc.metadata.to_dict()
                )
            records.extend(by_id.values())

        if not ready:
            return changed_state

        try:
            self._store.replace_files([f.path for f in ready], records)
        except StorageFailure as exc:
            raise StorageFailure(f"storing batch failed: {exc}", stats.progress()) from exc

        now = utcnow()
        for scanned in ready:
            counts: dict[str, int] = {}
            for doc in scanned.documents:
                counts[doc.metadata.type] = counts.get(doc.metadata.type, 0) + 1
            working.files[scanned.path] = FileRecord(
                path=scanned.path,
                hash=scanned.hash,
                size=scanned.source.size,
                mtime_ns=scanned.source.mtime_ns,
                language=scanned.language,
                document_ids=sorted({doc.id for doc in scanned.documents}),
                component_counts=counts,
                imports=list(scanned.imports),
                lines=scanned.lines,
                last_indexed=now,
            )
        stats.files_indexed += len(ready)
        stats.documents_indexed += len(records)
        return True

    def _commit_state(self, working: IndexerState, trigger: str, stats: IndexStats) -> None:
        assert self.paths is not None
        now = utcnow()
        if trigger == "index":
            working.last_index_time = now
            working.incremental_updates_since = 0
        else:
            working.last_update = now
            working.incremental_updates_since += 1
        embedder = self._require_embedder()
        working.embedding_model = embedder.model_name
        working.embedding_dimension = int(
            embedder.dimension or self._store.dimension or working.embedding_dimension
        )
        stats.vectors_stored = self._store.count()
        working.recompute_stats(total_vectors=stats.vectors_stored)
        try:
            save_state(self.paths.state, working)
        except OSError as exc:
            raise StorageFailure(f"writing indexer state failed: {exc}", stats.progress()) from exc
        self.state = working
        stats.state_written = True

        try:
            update_repository_metadata(
                self.paths.metadata,
                self.repository_path,
                remote=self._remote,
                files=working.stats.total_files,
                components=working.stats.total_documents,
                size=sum(r.size for r in working.files.values()),
            )
        except Exception:
            # State is already committed; metadata never fails the run.
            logger.warning("Failed to write repository metadata", exc_info=True)

    def _record_metrics(self, trigger: str, stats: IndexStats) -> None:
        if self.metrics_store is None or self.state is None:
            return
        cfg = self.config
        frequencies = ChangeFrequencyAnalyzer(
            self.repository_path,
            max_commits=cfg.vcs_max_commits,
            timeout=cfg.vcs_timeout_seconds,
        ).analyze()
        code_metadata = build_code_metadata(
            self.repository_path,
            self.state.files,
            frequencies,
            batch_size=cfg.metrics_read_batch_size,
            max_workers=get_optimal_concurrency("reader"),
        )
        snapshot_stats = SnapshotStats(
            total_files=self.state.stats.total_files,
            total_documents=self.state.stats.total_documents,
            total_vectors=stats.vectors_stored,
            duration_ms=stats.duration_ms,
            extra={
                "files_scanned": stats.files_scanned,
                "files_indexed": stats.files_indexed,
                "files_unchanged": stats.files_unchanged,
                "files_deleted": stats.files_deleted,
                "files_failed": stats.files_failed,
                "documents_extracted": stats.documents_extracted,
                "documents_indexed": stats.documents_indexed,
                "by_language": {k: vars(v) for k, v in self.state.stats.by_language.items()},
                "by_component_type": dict(self.state.stats.by_component_type),
                "errors": len(stats.errors),
            },
        )
        try:
            stats.snapshot_id = self.metrics_store.record_snapshot(
                snapshot_stats,
                repository_path=str(self.repository_path),
                trigger=trigger,
                code_metadata=code_metadata,
            )
            self.metrics_store.prune_old_snapshots(cfg.metrics_retention_days)
        except StorageFailure as exc:
            logger.warning("Metrics snapshot not recorded: %s", exc)
            stats.errors.append(RunError(kind="metrics", message=str(exc)))

    # -- queries -------------------------------------------------------

    def search(
        self, query: str, limit: int = 10, score_threshold: float = 0.0
    ) -> list[SearchResult]:
        """Embed ``query`` and return the most similar documents."""
        self._require_readable()
        embedder = self._require_embedder()
        vector = embedder.embed(query)
        return self._store.search(vector, limit=limit, score_threshold=score_threshold)

    def search_by_document_id(
        self, document_id: str, limit: int = 10, score_threshold: float = 0.0
    ) -> list[SearchResult]:
        """Documents similar to an indexed one; needs no embedder."""
        self._require_readable()
        return self._store.search_by_document_id(
            document_id, limit=limit, score_threshold=score_threshold
        )

    def get_all(self, limit: int = 10_000) -> list[SearchResult]:
        self._require_readable()
        return self._store.get_all(limit=limit)

    def get_basic_stats(self) -> RepositoryStats | None:
        """Statistics already known from state; makes no VCS calls."""
        self._require_readable()
        if self.state is None:
            return None
        state = self.state
        return RepositoryStats(
            repository_path=str(self.repository_path),
            storage_path=str(self.paths.root) if self.paths else "",
            embedding_model=state.embedding_model,
            embedding_dimension=state.embedding_dimension,
            total_files=state.stats.total_files,
            total_documents=state.stats.total_documents,
            total_vectors=state.stats.total_vectors,
            by_language=dict(state.stats.by_language),
            by_component_type=dict(state.stats.by_component_type),
            last_index_time=state.last_index_time,
            last_update=state.last_update,
            incremental_updates_since=state.incremental_updates_since,
        )

    def get_stats(self) -> RepositoryStats | None:
        """Basic statistics enriched with change frequency of the indexed files."""
        stats = self.get_basic_stats()
        if stats is None or self.state is None:
            return stats
        frequencies = ChangeFrequencyAnalyzer(
            self.repository_path,
            max_commits=self.config.vcs_max_commits,
            timeout=self.config.vcs_timeout_seconds,
        ).analyze()
        if frequencies:
            indexed = {p: f for p, f in frequencies.items() if p in self.state.files}
            stats.change_frequency = aggregate_change_frequency(indexed)
        return stats

    def optimize(self) -> None:
        """Compact the vector store. Callers serialize this against indexing."""
        self._require_ready()
        seconds = self.config.vectors_cleanup_older_than_seconds
        self._store.optimize(
            cleanup_older_than=timedelta(seconds=seconds) if seconds is not None else None
        )
