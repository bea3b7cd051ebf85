# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding providers and the batching/timeout wrapper used by the indexer.

The indexer only needs an ``EmbeddingFn``: a callable mapping a sequence of
texts to an ``(N, dim)`` float array. Providers are imported lazily so the
heavy model libraries are only loaded when actually configured.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .errors import EmbeddingFailure

logger = logging.getLogger(__name__)

# Type alias for embedding function: takes sequence of texts, returns (N, dim) array
EmbeddingFn = Callable[[Sequence[str]], np.ndarray]


@dataclass
class EmbeddingBatchResult:
    """Vectors aligned with the input texts; failed positions hold None."""

    vectors: list[np.ndarray | None]
    failures: dict[int, str] = field(default_factory=dict)


class Embedder:
    """Wraps an ``EmbeddingFn`` with batching, bounded concurrency and timeouts."""

    def __init__(
        self,
        embed_fn: EmbeddingFn,
        *,
        model_name: str = "custom",
        dimension: int | None = None,
        batch_size: int = 32,
        timeout_seconds: float | None = None,
        max_workers: int = 1,
    ):
        self.embed_fn = embed_fn
        self.model_name = model_name
        self.dimension = dimension
        self.batch_size = max(1, batch_size)
        self.timeout_seconds = timeout_seconds
        self.max_workers = max(1, max_workers)
        self._executor: ThreadPoolExecutor | None = None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="repolens-embed"
            )
        return self._executor

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _call(self, texts: list[str]) -> np.ndarray:
        arr = np.asarray(self.embed_fn(texts), dtype="float32")
        if arr.ndim != 2 or arr.shape[0] != len(texts):
            raise EmbeddingFailure(
                f"embedder returned shape {arr.shape} for {len(texts)} texts"
            )
        if self.dimension is None:
            self.dimension = int(arr.shape[1])
        elif arr.shape[1] != self.dimension:
            raise EmbeddingFailure(
                f"embedder returned dimension {arr.shape[1]}, expected {self.dimension}"
            )
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return arr / norms

    def _await(self, future: Future, count: int) -> np.ndarray:
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise EmbeddingFailure(
                f"embedding {count} texts timed out after {self.timeout_seconds}s"
            ) from exc
        except EmbeddingFailure:
            raise
        except Exception as exc:
            raise EmbeddingFailure(f"embedder error: {exc}") from exc

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """Embed ``texts`` in one call.

        Raises:
            EmbeddingFailure: the embedder raised, timed out, or returned a bad shape.
        """
        batch = list(texts)
        if not batch:
            return np.zeros((0, self.dimension or 0), dtype="float32")
        return self._await(self._pool().submit(self._call, batch), len(batch))

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_documents(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        """Embed many texts, isolating failures to individual texts.

        Batches run concurrently on the worker pool. A failed batch is retried
        one text at a time so a single bad input does not sink its neighbours;
        a timed-out batch is not retried.
        """
        items = list(texts)
        vectors: list[np.ndarray | None] = [None] * len(items)
        failures: dict[int, str] = {}
        pool = self._pool()

        pending = []
        for start in range(0, len(items), self.batch_size):
            batch = items[start : start + self.batch_size]
            pending.append((start, batch, pool.submit(self._call, batch)))

        for start, batch, future in pending:
            try:
                result = self._await(future, len(batch))
            except EmbeddingFailure as exc:
                if len(batch) == 1 or isinstance(exc.__cause__, FutureTimeout):
                    logger.warning("Embedding batch at %s failed: %s", start, exc)
                    for offset in range(len(batch)):
                        failures[start + offset] = str(exc)
                    continue
                logger.info(
                    "Embedding batch of %s failed (%s); retrying texts individually",
                    len(batch),
                    exc,
                )
                for offset, text in enumerate(batch):
                    try:
                        vectors[start + offset] = self.embed_batch([text])[0]
                    except EmbeddingFailure as single_exc:
                        failures[start + offset] = str(single_exc)
                continue
            for offset, vec in enumerate(result):
                vectors[start + offset] = vec

        if failures:
            logger.warning("%s of %s texts failed to embed", len(failures), len(items))
        return EmbeddingBatchResult(vectors=vectors, failures=failures)


class SentenceTransformerProvider:
    """Local embeddings via sentence-transformers."""

    def __init__(self, model: str, cache_dir: str | None = None, **kwargs: Any):
        from sentence_transformers import SentenceTransformer

        logger.info("Loading sentence-transformers model %s", model)
        self.model = SentenceTransformer(model, cache_folder=cache_dir, **kwargs)

    def embed_documents(self, texts: list[str]) -> np.ndarray:
        return np.asarray(
            self.model.encode(texts, convert_to_numpy=True, show_progress_bar=False),
            dtype="float32",
        )


class OpenAIProvider:
    """Remote embeddings via the OpenAI API."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        dimension: int | None = None,
        base_url: str | None = None,
    ):
        from openai import OpenAI

        self.model = model
        self.dimension = dimension
        self.client = OpenAI(api_key=api_key, base_url=base_url)

    def embed_documents(self, texts: list[str]) -> np.ndarray:
        kwargs: dict[str, Any] = {"model": self.model, "input": texts}
        if self.dimension:
            kwargs["dimensions"] = self.dimension
        response = self.client.embeddings.create(**kwargs)
        ordered = sorted(response.data, key=lambda d: d.index)
        return np.asarray([d.embedding for d in ordered], dtype="float32")


def create_embedding_provider(provider: str, model: str, dimension: int, **kwargs: Any):
    """Instantiate the named provider."""
    name = (provider or "").lower()
    if name in {"sentence-transformers", "sentence_transformers", "local"}:
        return SentenceTransformerProvider(model, **kwargs)
    if name == "openai":
        return OpenAIProvider(
            model,
            api_key=kwargs.get("api_key"),
            dimension=dimension,
            base_url=kwargs.get("base_url"),
        )
    raise ValueError(f"Unknown embedding provider: {provider}")


def embed_fn_from_config(config) -> tuple[EmbeddingFn, str]:
    """Build an ``EmbeddingFn`` and model label from configuration."""
    provider = config.embeddings_provider
    model = config.embeddings_model
    kwargs = dict(config.embeddings_kwargs)
    if provider == "openai" and config.embeddings_api_key:
        kwargs["api_key"] = config.embeddings_api_key

    impl = create_embedding_provider(
        provider=provider, model=model, dimension=config.embeddings_dimension, **kwargs
    )

    def _embed(texts: Sequence[str]) -> np.ndarray:
        return impl.embed_documents(list(texts))

    logger.info(
        "Initialized embedding provider: provider=%s model=%s dim=%s",
        provider,
        model,
        config.embeddings_dimension,
    )
    return _embed, f"{provider}:{model}"
