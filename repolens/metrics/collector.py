"""Join indexer output with change frequency into per-file ``CodeMetadata``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

from ..analysis.change_frequency import FileChangeFrequency
from ..concurrency import bounded_map
from ..storage.metrics import CodeMetadata
from ..storage.state import FileRecord

logger = logging.getLogger(__name__)

DEFAULT_READ_BATCH_SIZE = 50


def count_file_lines(path: Path) -> int:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return sum(1 for _ in f)


def build_code_metadata(
    repository_root: Path,
    files: Mapping[str, FileRecord],
    change_frequency: Mapping[str, FileChangeFrequency] | None = None,
    *,
    batch_size: int = DEFAULT_READ_BATCH_SIZE,
    max_workers: int = 8,
) -> list[CodeMetadata]:
    """One ``CodeMetadata`` per indexed file, sorted by path.

    Lines of code come from reading each file in full, ``batch_size`` files
    at a time. Files that can no longer be read are left out.
    """
    change_frequency = change_frequency or {}
    paths = sorted(files)
    results: list[CodeMetadata] = []

    for rel_path, lines, error in bounded_map(
        lambda p: count_file_lines(repository_root / p),
        paths,
        max_workers=max_workers,
        batch_size=batch_size,
    ):
        if error is not None:
            logger.debug("Skipping metrics for %s: %s", rel_path, error)
            continue
        record = files[rel_path]
        freq = change_frequency.get(rel_path)
        results.append(
            CodeMetadata(
                file_path=rel_path,
                lines_of_code=int(lines or 0),
                num_functions=record.num_functions,
                num_imports=len(set(record.imports)),
                commit_count=freq.commit_count if freq else None,
                author_count=freq.author_count if freq else None,
                last_modified=freq.last_modified if freq else None,
            )
        )
    return results
