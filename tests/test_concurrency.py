# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import threading
import time
from types import SimpleNamespace

import repolens.concurrency as concurrency
from repolens.concurrency import bounded_map, get_optimal_concurrency

_GB = 1024**3


def _clear_env(monkeypatch):
    for name in ("REPOLENS_CONCURRENCY", "REPOLENS_INDEXER_CONCURRENCY", "REPOLENS_READER_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)


def test_env_override_wins(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("REPOLENS_CONCURRENCY", "7")
    assert get_optimal_concurrency("indexer", configured=3) == 7
    monkeypatch.setenv("REPOLENS_READER_CONCURRENCY", "9")
    assert get_optimal_concurrency("reader") == 9


def test_env_override_clamped_and_validated(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("REPOLENS_CONCURRENCY", "80")
    assert get_optimal_concurrency() == 50
    monkeypatch.setenv("REPOLENS_CONCURRENCY", "500")
    assert get_optimal_concurrency(configured=3) == 3
    monkeypatch.setenv("REPOLENS_CONCURRENCY", "lots")
    assert get_optimal_concurrency(configured=4) == 4


def test_adaptive_sizing(monkeypatch):
    _clear_env(monkeypatch)

    def with_memory(total, cpus):
        monkeypatch.setattr(concurrency.psutil, "virtual_memory", lambda: SimpleNamespace(total=total))
        monkeypatch.setattr(concurrency.os, "cpu_count", lambda: cpus)

    with_memory(2 * _GB, 16)
    assert get_optimal_concurrency("indexer") == 2
    with_memory(6 * _GB, 16)
    assert get_optimal_concurrency("reader") == 15
    with_memory(32 * _GB, 16)
    assert get_optimal_concurrency("indexer") == 5
    with_memory(32 * _GB, 4)
    assert get_optimal_concurrency("reader") == 20


def test_bounded_map_order_and_errors():
    def work(n):
        if n == 3:
            raise ValueError("three")
        time.sleep(0.01 * (5 - n))
        return n * n

    out = list(bounded_map(work, [1, 2, 3, 4], max_workers=4, batch_size=2))

    assert [item for item, _res, _err in out] == [1, 2, 3, 4]
    assert [res for _item, res, _err in out] == [1, 4, None, 16]
    assert isinstance(out[2][2], ValueError)


def test_bounded_map_respects_worker_limit():
    active = 0
    peak = 0
    lock = threading.Lock()

    def work(n):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return n

    list(bounded_map(work, list(range(12)), max_workers=3))
    assert peak <= 3


def test_bounded_map_empty():
    assert list(bounded_map(str, [], max_workers=2)) == []
