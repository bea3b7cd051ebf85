# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import numpy as np
import pytest

from repolens.errors import StorageFailure
from repolens.storage.vector import VectorRecord, VectorStore

DIM = 8


def _axis(i, dim=DIM, noise=0.0):
    vec = np.zeros(dim, dtype="float32")
    vec[i] = 1.0
    if noise:
        vec[(i + 1) % dim] = noise
    return vec


def _record(doc_id, vec, path="a.py"):
    return VectorRecord(id=doc_id, vector=vec, text=f"text {doc_id}", metadata={"path": path, "name": doc_id})


@pytest.fixture
def store(tmp_path):
    vs = VectorStore(tmp_path / "vectors.lance", dimension=DIM).open()
    yield vs
    vs.close()


def test_empty_store_queries(store):
    assert store.count() == 0
    assert store.search(_axis(0)) == []
    assert store.get_all() == []
    assert store.get("missing") is None
    assert store.search_by_document_id("missing") == []


def test_add_is_upsert(store):
    store.add([_record("a", _axis(0)), _record("b", _axis(1))])
    store.add([VectorRecord(id="a", vector=_axis(2), text="new", metadata={"path": "a.py"})])

    assert store.count() == 2
    got = store.get("a")
    assert got.text == "new"
    assert np.allclose(got.vector, _axis(2))


def test_duplicate_ids_in_one_batch_keep_last(store):
    store.add(
        [
            VectorRecord(id="a", vector=_axis(0), text="one", metadata={"path": "a.py"}),
            VectorRecord(id="a", vector=_axis(1), text="two", metadata={"path": "a.py"}),
        ]
    )

    assert store.count() == 1
    assert store.get("a").text == "two"
    assert [r.id for r in store.search(_axis(1), limit=5)] == ["a"]


def test_search_scores_and_threshold(store):
    store.add(
        [
            _record("exact", _axis(0)),
            _record("close", _axis(0, noise=0.2)),
            _record("far", _axis(3)),
        ]
    )

    results = store.search(_axis(0), limit=10)
    assert [r.id for r in results][:2] == ["exact", "close"]
    assert results[0].score == pytest.approx(1.0, abs=1e-4)
    assert all(results[i].score >= results[i + 1].score for i in range(len(results) - 1))

    filtered = store.search(_axis(0), limit=10, score_threshold=0.9)
    assert {r.id for r in filtered} == {"exact", "close"}
    assert all(r.score >= 0.9 for r in filtered)

    assert len(store.search(_axis(0), limit=1)) == 1


def test_equal_scores_follow_insertion_order(store):
    store.add([_record("first", _axis(0))])
    store.add([_record("second", _axis(0))])
    store.add([_record("third", _axis(0))])

    results = store.search(_axis(0), limit=3)
    assert [r.id for r in results] == ["first", "second", "third"]


def test_replace_files_swaps_rows_for_file(store):
    store.add(
        [
            _record("a:f:1", _axis(0), path="a.py"),
            _record("a:g:5", _axis(1), path="a.py"),
            _record("b:h:1", _axis(2), path="b.py"),
        ]
    )

    store.replace_files(["a.py"], [_record("a:k:9", _axis(3), path="a.py")])

    ids = {r.id for r in store.get_all()}
    assert ids == {"a:k:9", "b:h:1"}


def test_replace_files_without_records_deletes(store):
    store.add([_record("a:f:1", _axis(0), path="a.py"), _record("b:h:1", _axis(2), path="b.py")])
    store.replace_files(["a.py"], [])
    assert [r.id for r in store.get_all()] == ["b:h:1"]


def test_delete_and_retain(store):
    store.add(
        [
            _record("a1", _axis(0), path="a.py"),
            _record("b1", _axis(1), path="b.py"),
            _record("c1", _axis(2), path="c.py"),
        ]
    )

    store.delete(["a1"])
    assert store.get("a1") is None
    store.retain_files(["c.py"])
    assert [r.id for r in store.get_all()] == ["c1"]
    store.delete_files(["c.py"])
    assert store.count() == 0


def test_search_by_document_id_includes_itself(store):
    store.add([_record("a", _axis(0)), _record("b", _axis(0, noise=0.1)), _record("c", _axis(4))])
    results = store.search_by_document_id("a", limit=2)
    assert [r.id for r in results] == ["a", "b"]


def test_get_all_respects_limit(store):
    store.add([_record(f"id{i}", _axis(i % DIM)) for i in range(5)])
    assert len(store.get_all(limit=3)) == 3
    assert store.get_all(limit=0) == []


def test_optimize_keeps_results(store):
    for i in range(4):
        store.add([_record(f"id{i}", _axis(i))])
    before = [(r.id, round(r.score, 5)) for r in store.search(_axis(1), limit=4)]

    store.optimize()

    after = [(r.id, round(r.score, 5)) for r in store.search(_axis(1), limit=4)]
    assert before == after
    assert store.count() == 4


def test_reopen_recovers_dimension(tmp_path):
    path = tmp_path / "vectors.lance"
    vs = VectorStore(path, dimension=DIM).open()
    vs.add([_record("a", _axis(0))])
    vs.close()

    reopened = VectorStore(path).open()
    assert reopened.dimension == DIM
    assert reopened.count() == 1
    reopened.close()


def test_wrong_dimension_rejected(store):
    store.add([_record("a", _axis(0))])
    with pytest.raises(StorageFailure):
        store.add([VectorRecord(id="b", vector=np.ones(DIM + 1), text="x", metadata={"path": "b.py"})])


def test_close_is_idempotent(store):
    store.close()
    store.close()
    assert not store.is_open
    with pytest.raises(StorageFailure):
        store.add([_record("a", _axis(0))])


def test_quotes_in_paths_are_escaped(store):
    store.add([_record("it's:f:1", _axis(0), path="it's.py")])
    store.delete_files(["it's.py"])
    assert store.count() == 0
