# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Tests for the snapshot/code-metadata store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from repolens.storage.metrics import (MAX_SNAPSHOT_QUERY_LIMIT, CodeMetadata,
                                      MetricsStore, SnapshotStats,
                                      compute_risk_score)


@pytest.fixture
def metrics_store(tmp_path):
    store = MetricsStore(tmp_path / "metrics.db")
    yield store
    store.close()


def _stats(files=3):
    return SnapshotStats(total_files=files, total_documents=files * 2, total_vectors=files * 2, duration_ms=12)


class TestRiskScore:
    """Risk is commits times lines, spread over authors."""

    def test_basic(self):
        assert compute_risk_score(20, 500, 2) == 5000

    def test_zero_authors_counts_as_one(self):
        assert compute_risk_score(20, 500, 0) == 10000
        assert compute_risk_score(20, 500, None) == 10000

    def test_no_history(self):
        assert compute_risk_score(None, 500, None) is None

    def test_code_metadata_derives_risk(self):
        meta = CodeMetadata(file_path="a.py", lines_of_code=500, commit_count=20, author_count=2)
        assert meta.risk_score == 5000


class TestSnapshots:
    """Snapshot writes and ordered reads."""

    def test_record_and_read_back(self, metrics_store):
        sid = metrics_store.record_snapshot(
            SnapshotStats(total_files=1, total_documents=2, total_vectors=2, duration_ms=5, extra={"k": 1}),
            "/repo",
            "index",
            [CodeMetadata(file_path="a.py", lines_of_code=10, num_functions=2, num_imports=1)],
        )

        snap = metrics_store.get_snapshot(sid)
        assert snap.repository_path == "/repo"
        assert snap.trigger == "index"
        assert snap.stats.total_documents == 2
        assert snap.stats.extra == {"k": 1}
        rows = metrics_store.get_code_metadata(sid)
        assert len(rows) == 1
        assert rows[0].num_functions == 2
        assert rows[0].risk_score is None

    def test_invalid_trigger(self, metrics_store):
        with pytest.raises(ValueError):
            metrics_store.record_snapshot(_stats(), "/repo", "manual")
        assert metrics_store.get_count() == 0

    def test_newest_first_with_stable_ties(self, metrics_store):
        when = datetime(2025, 1, 1, tzinfo=timezone.utc)
        first = metrics_store.record_snapshot(_stats(), "/repo", "index", timestamp=when)
        second = metrics_store.record_snapshot(_stats(), "/repo", "update", timestamp=when)
        third = metrics_store.record_snapshot(
            _stats(), "/repo", "update", timestamp=when + timedelta(minutes=1)
        )

        ids = [s.id for s in metrics_store.get_snapshots(repository_path="/repo")]
        assert ids == [third, second, first]
        assert metrics_store.get_latest_snapshot("/repo").id == third

    def test_filters(self, metrics_store):
        base = datetime.now(timezone.utc) - timedelta(days=1)
        metrics_store.record_snapshot(_stats(), "/a", "index", timestamp=base)
        metrics_store.record_snapshot(_stats(), "/a", "update", timestamp=base + timedelta(hours=1))
        metrics_store.record_snapshot(_stats(), "/b", "index", timestamp=base + timedelta(hours=2))

        assert len(metrics_store.get_snapshots(repository_path="/a")) == 2
        assert len(metrics_store.get_snapshots(trigger="index")) == 2
        assert len(metrics_store.get_snapshots(since=base + timedelta(minutes=30))) == 2
        assert len(metrics_store.get_snapshots(until=base + timedelta(minutes=30))) == 1
        assert metrics_store.get_count("/b") == 1

    def test_limit_is_clamped(self, metrics_store):
        for _ in range(3):
            metrics_store.record_snapshot(_stats(), "/repo", "index")
        assert len(metrics_store.get_snapshots(limit=0)) == 1
        assert len(metrics_store.get_snapshots(limit=MAX_SNAPSHOT_QUERY_LIMIT + 50)) == 3

    def test_missing_snapshot(self, metrics_store):
        assert metrics_store.get_snapshot("nope") is None
        assert metrics_store.get_latest_snapshot() is None


class TestRetention:
    """Retention pruning removes old snapshots and their metadata."""

    def test_prune_cascades(self, metrics_store):
        old = datetime.now(timezone.utc) - timedelta(days=120)
        old_id = metrics_store.record_snapshot(
            _stats(), "/repo", "index",
            [CodeMetadata(file_path="a.py", lines_of_code=1)],
            timestamp=old,
        )
        new_id = metrics_store.record_snapshot(
            _stats(), "/repo", "update", [CodeMetadata(file_path="a.py", lines_of_code=2)]
        )

        removed = metrics_store.prune_old_snapshots(90)

        assert removed == 1
        assert metrics_store.get_snapshot(old_id) is None
        assert metrics_store.get_code_metadata(old_id) == []
        assert len(metrics_store.get_code_metadata(new_id)) == 1
        count = metrics_store.conn.execute("SELECT COUNT(*) FROM code_metadata").fetchone()[0]
        assert count == 1


class TestCodeMetadataQueries:
    """Rankings over one snapshot's per-file metadata."""

    @pytest.fixture
    def snapshot_id(self, metrics_store):
        return metrics_store.record_snapshot(
            _stats(4),
            "/repo",
            "index",
            [
                CodeMetadata(file_path="hot.py", lines_of_code=500, commit_count=20, author_count=2),
                CodeMetadata(file_path="solo.py", lines_of_code=100, commit_count=30, author_count=1),
                CodeMetadata(file_path="big.py", lines_of_code=3000, commit_count=1, author_count=6),
                CodeMetadata(file_path="new.py", lines_of_code=50),
            ],
        )

    def test_hotspots_by_risk(self, metrics_store, snapshot_id):
        hotspots = metrics_store.get_hotspots(snapshot_id, limit=2)
        assert [h.file_path for h in hotspots] == ["hot.py", "solo.py"]
        assert hotspots[0].risk_score == 5000

    def test_files_without_history_excluded_from_rankings(self, metrics_store, snapshot_id):
        paths = [m.file_path for m in metrics_store.get_code_metadata(snapshot_id, sort_by="commits")]
        assert "new.py" not in paths
        assert paths[0] == "solo.py"

    def test_lines_and_path_include_all(self, metrics_store, snapshot_id):
        by_lines = metrics_store.get_code_metadata(snapshot_id, sort_by="lines")
        assert [m.file_path for m in by_lines] == ["big.py", "hot.py", "solo.py", "new.py"]
        by_path = metrics_store.get_code_metadata(snapshot_id)
        assert [m.file_path for m in by_path] == ["big.py", "hot.py", "new.py", "solo.py"]

    def test_ownership_filter(self, metrics_store, snapshot_id):
        owned = metrics_store.get_code_metadata(snapshot_id, sort_by="ownership", max_author_count=2)
        assert [m.file_path for m in owned] == ["solo.py", "hot.py"]

    def test_unknown_sort_key(self, metrics_store, snapshot_id):
        with pytest.raises(ValueError):
            metrics_store.get_code_metadata(snapshot_id, sort_by="size")


def test_file_history_newest_first(metrics_store):
    t0 = datetime(2025, 3, 1, tzinfo=timezone.utc)
    for i in range(3):
        metrics_store.record_snapshot(
            _stats(), "/repo", "update",
            [CodeMetadata(file_path="a.py", lines_of_code=10 * (i + 1), commit_count=i + 1, author_count=1)],
            timestamp=t0 + timedelta(days=i),
        )

    history = metrics_store.get_file_history("a.py", repository_path="/repo")
    assert [meta.lines_of_code for _snap, meta in history] == [30, 20, 10]
    assert history[0][0].timestamp > history[-1][0].timestamp


def test_close_is_idempotent(tmp_path):
    store = MetricsStore(tmp_path / "metrics.db")
    store.close()
    store.close()
