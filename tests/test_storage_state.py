# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

from datetime import datetime, timezone

import pytest

from repolens.storage.state import (FileRecord, IndexerState, load_state,
                                    save_state)


def _record(path, language="python", docs=("a:f:1",), counts=None, lines=10):
    return FileRecord(
        path=path,
        hash="h-" + path,
        size=100,
        mtime_ns=123,
        language=language,
        document_ids=list(docs),
        component_counts=counts or {"function": len(docs)},
        imports=["os"],
        lines=lines,
        last_indexed=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def test_save_and_load_preserves_files(tmp_path):
    state = IndexerState(repository_path="/repo", embedding_model="m", embedding_dimension=384)
    state.files["a.py"] = _record("a.py")
    state.recompute_stats()
    path = tmp_path / "indexer-state.json"

    save_state(path, state)
    loaded = load_state(path)

    assert loaded is not None
    assert loaded.files["a.py"] == state.files["a.py"]
    assert loaded.stats.total_files == 1
    assert loaded.stats.by_language["python"].lines == 10
    assert [p.name for p in tmp_path.iterdir()] == ["indexer-state.json"]


def test_load_missing_or_corrupt_returns_none(tmp_path):
    path = tmp_path / "indexer-state.json"
    assert load_state(path) is None
    path.write_text("{broken")
    assert load_state(path) is None


def test_failed_save_keeps_previous_file(tmp_path, monkeypatch):
    path = tmp_path / "indexer-state.json"
    state = IndexerState(repository_path="/repo", embedding_model="m", embedding_dimension=4)
    save_state(path, state)
    before = path.read_text()

    import repolens.storage.state as state_module

    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(state_module.os, "replace", boom)
    state.files["b.py"] = _record("b.py")
    with pytest.raises(OSError):
        save_state(path, state)

    assert path.read_text() == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["indexer-state.json"]


def test_recompute_stats_groups_by_language_and_type():
    state = IndexerState(repository_path="/repo", embedding_model="m", embedding_dimension=4)
    state.files["a.py"] = _record("a.py", docs=("1", "2"), counts={"function": 1, "class": 1})
    state.files["b.go"] = _record("b.go", language="go", docs=("3",), lines=5)

    stats = state.recompute_stats(total_vectors=3)

    assert stats.total_files == 2
    assert stats.total_documents == 3
    assert stats.total_vectors == 3
    assert stats.by_language["go"].files == 1
    assert stats.by_language["python"].components == 2
    assert stats.by_component_type == {"class": 1, "function": 2}
    assert state.document_ids() == {"1", "2", "3"}
