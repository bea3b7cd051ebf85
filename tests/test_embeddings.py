# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Tests for the embedding wrapper and provider factory.
"""

import threading

import numpy as np
import pytest

from repolens.embeddings import Embedder, create_embedding_provider
from repolens.errors import EmbeddingFailure


def _const_fn(dim=4):
    def embed_fn(texts):
        return np.tile(np.arange(1, dim + 1, dtype="float32"), (len(texts), 1))

    return embed_fn


class TestEmbedder:
    """Batching, normalization and failure handling."""

    def test_vectors_are_unit_length(self):
        embedder = Embedder(_const_fn(), batch_size=2)
        try:
            vecs = embedder.embed_batch(["a", "b", "c"])
            assert vecs.shape == (3, 4)
            assert np.allclose(np.linalg.norm(vecs, axis=1), 1.0)
            assert embedder.dimension == 4
        finally:
            embedder.close()

    def test_empty_batch(self):
        embedder = Embedder(_const_fn(), dimension=4)
        assert embedder.embed_batch([]).shape == (0, 4)
        embedder.close()

    def test_zero_vector_left_alone(self):
        embedder = Embedder(lambda texts: np.zeros((len(texts), 3)))
        assert np.allclose(embedder.embed("x"), 0.0)
        embedder.close()

    def test_wrong_dimension_is_failure(self):
        embedder = Embedder(_const_fn(5), dimension=4)
        with pytest.raises(EmbeddingFailure):
            embedder.embed_batch(["a"])
        embedder.close()

    def test_wrong_row_count_is_failure(self):
        embedder = Embedder(lambda texts: np.ones((1, 4)))
        with pytest.raises(EmbeddingFailure):
            embedder.embed_batch(["a", "b"])
        embedder.close()

    def test_provider_exception_wrapped(self):
        def boom(texts):
            raise RuntimeError("model crashed")

        embedder = Embedder(boom)
        with pytest.raises(EmbeddingFailure, match="model crashed"):
            embedder.embed("x")
        embedder.close()

    def test_bad_text_isolated_from_neighbours(self):
        def picky(texts):
            if any("poison" in t for t in texts):
                raise ValueError("cannot embed poison")
            return np.ones((len(texts), 4), dtype="float32")

        embedder = Embedder(picky, batch_size=3, max_workers=2)
        result = embedder.embed_documents(["ok1", "poison", "ok2", "ok3", "ok4"])
        embedder.close()

        assert set(result.failures) == {1}
        assert result.vectors[1] is None
        assert all(result.vectors[i] is not None for i in (0, 2, 3, 4))

    def test_timeout_fails_whole_batch(self):
        release = threading.Event()

        def slow(texts):
            release.wait(5)
            return np.ones((len(texts), 4), dtype="float32")

        embedder = Embedder(slow, batch_size=2, timeout_seconds=0.05)
        try:
            result = embedder.embed_documents(["a", "b"])
        finally:
            release.set()
            embedder.close()

        assert set(result.failures) == {0, 1}
        assert "timed out" in result.failures[0]

    def test_results_keep_input_order(self):
        def by_length(texts):
            return np.asarray([[len(t), 1.0] for t in texts], dtype="float32")

        embedder = Embedder(by_length, batch_size=1, max_workers=4)
        texts = ["a" * n for n in range(1, 9)]
        result = embedder.embed_documents(texts)
        embedder.close()

        expected = [np.array([n, 1.0]) / np.linalg.norm([n, 1.0]) for n in range(1, 9)]
        for got, want in zip(result.vectors, expected):
            assert np.allclose(got, want)


def test_unknown_provider():
    with pytest.raises(ValueError):
        create_embedding_provider("word2vec", "model", 384)
