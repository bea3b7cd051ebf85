"""Worker-pool sizing and bounded parallel mapping."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Sequence, TypeVar

import psutil

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ENV_PREFIX = "REPOLENS"
MAX_CONCURRENCY = 50
_GB = 1024**3

# (memory < 4GB, memory < 8GB, cpu >= 8, otherwise)
_ADAPTIVE_TABLE = {
    "indexer": (2, 3, 5, 4),
    "reader": (5, 15, 30, 20),
}


def _env_override(context: str) -> int | None:
    for name in (f"{ENV_PREFIX}_{context.upper()}_CONCURRENCY", f"{ENV_PREFIX}_CONCURRENCY"):
        raw = os.getenv(name)
        if not raw:
            continue
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", name, raw)
            continue
        if 1 <= value <= 100:
            return min(value, MAX_CONCURRENCY)
        logger.warning("Ignoring out-of-range %s=%s (expected 1-100)", name, value)
    return None


def get_optimal_concurrency(context: str = "indexer", configured: int | None = None) -> int:
    """Pool size for ``context``: env override, then config, then CPU/memory heuristics."""
    override = _env_override(context)
    if override is not None:
        return override
    if configured:
        return max(1, min(int(configured), MAX_CONCURRENCY))

    low_mem, mid_mem, many_cpus, default = _ADAPTIVE_TABLE.get(context, _ADAPTIVE_TABLE["indexer"])
    try:
        total_memory = psutil.virtual_memory().total
    except (OSError, RuntimeError):
        logger.debug("Memory detection failed; assuming 8GB", exc_info=True)
        total_memory = 8 * _GB
    cpus = os.cpu_count() or 2

    if total_memory < 4 * _GB:
        return low_mem
    if total_memory < 8 * _GB:
        return mid_mem
    if cpus >= 8:
        return many_cpus
    return default


def bounded_map(
    fn: Callable[[T], R],
    items: Sequence[T],
    *,
    max_workers: int,
    batch_size: int | None = None,
) -> Iterable[tuple[T, R | None, BaseException | None]]:
    """Apply ``fn`` to ``items`` with at most ``max_workers`` threads.

    Items are processed in batches of ``batch_size`` (default: all at once);
    each batch completes before the next starts. Yields ``(item, result,
    error)`` in input order; exceptions are returned, not raised.
    """
    if not items:
        return
    size = batch_size or len(items)
    workers = max(1, min(max_workers, size))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="repolens") as executor:
        for start in range(0, len(items), size):
            batch = items[start : start + size]
            futures = [executor.submit(fn, item) for item in batch]
            for item, fut in zip(batch, futures):
                try:
                    yield item, fut.result(), None
                except Exception as exc:
                    yield item, None, exc
