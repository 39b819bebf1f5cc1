"""Embedding generation, compression and similarity.

Two backends implement the same interface:

- SentenceTransformerBackend runs a local sentence-transformers model.
- HashEmbeddingBackend derives a deterministic pseudo-embedding from a hash of
  the text. It needs nothing beyond numpy and works fully offline.

`create_embedding_backend` picks one when the service is built. At runtime,
EmbeddingService still turns any ModelError from the real backend into the
hash embedding, so retrieval never fails because of the model.

Stored vectors are quantized to one sign bit per dimension (48 bytes for 384
dimensions). Similarity between dequantized vectors only compares signs. It is
a coarse proxy for the similarity of the original vectors, good enough to rank
candidates but not an exact measure.
"""

from __future__ import annotations

import asyncio
import hashlib
import importlib.util
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from typing import Any, Sequence

import numpy as np

from ..errors import ModelError

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSIONS = 384
QUANTIZED_BYTES = EMBEDDING_DIMENSIONS // 8
DEFAULT_MODEL_NAME = "all-MiniLM-L6-v2"
DEFAULT_BATCH_SIZE = 10


class EmbeddingBackend(ABC):
    """Turns texts into fixed-width float vectors."""

    name: str = "abstract"

    @property
    def dimension(self) -> int:
        return EMBEDDING_DIMENSIONS

    @property
    def loaded(self) -> bool:
        """True when embedding needs no slow load step first."""
        return True

    def load(self) -> None:
        """Prepare the backend. Safe to call more than once."""

    @abstractmethod
    def embed_sync(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts, one vector per text in the same order.

        Raises:
            ModelError: The backend cannot produce embeddings.
        """


class HashEmbeddingBackend(EmbeddingBackend):
    """Deterministic pseudo-embeddings seeded from a SHA-256 of the text.

    Identical text always gives the identical unit vector, on any machine.
    """

    name = "hash"

    def __init__(self, dimension: int = EMBEDDING_DIMENSIONS):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_one(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8", "surrogatepass")).digest()
        rng = np.random.Generator(np.random.PCG64(int.from_bytes(digest[:16], "big")))
        values = rng.uniform(-1.0, 1.0, self._dimension)
        norm = float(np.linalg.norm(values))
        if norm == 0.0:
            return values.tolist()
        return (values / norm).tolist()

    def embed_sync(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed_one(text) for text in texts]


class SentenceTransformerBackend(EmbeddingBackend):
    """Local sentence-transformers model, loaded on first use."""

    name = "sentence-transformers"

    def __init__(self, model_name: str = DEFAULT_MODEL_NAME, device: str | None = None):
        self.model_name = model_name
        self.device = device
        self._model: Any = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        if self._model is not None:
            return
        with self._load_lock:
            if self._model is not None:
                return
            logger.info(f"Loading sentence-transformers model {self.model_name}...")
            try:
                from sentence_transformers import SentenceTransformer

                model = SentenceTransformer(self.model_name, device=self.device)
            except Exception as exc:
                raise ModelError(f"Could not load {self.model_name}: {exc}") from exc

            dimension = model.get_sentence_embedding_dimension()
            if dimension != EMBEDDING_DIMENSIONS:
                raise ModelError(
                    f"{self.model_name} produces {dimension}-dim vectors, "
                    f"expected {EMBEDDING_DIMENSIONS}"
                )
            self._model = model
            logger.info(f"Loaded {self.model_name} (dim={dimension})")

    def embed_sync(self, texts: Sequence[str]) -> list[list[float]]:
        self.load()
        try:
            vectors = self._model.encode(
                list(texts), convert_to_numpy=True, normalize_embeddings=True
            )
        except Exception as exc:
            raise ModelError(f"Encoding failed: {exc}") from exc
        return [v.tolist() for v in vectors]


def sentence_transformers_available() -> bool:
    return importlib.util.find_spec("sentence_transformers") is not None


def create_embedding_backend(
    provider: str = "auto", model_name: str = DEFAULT_MODEL_NAME
) -> EmbeddingBackend:
    """Choose the embedding backend.

    Args:
        provider: "auto" uses sentence-transformers when it is installed and
            the hash backend otherwise. "sentence-transformers" and "hash"
            force one.
        model_name: Model for the sentence-transformers backend.
    """
    if provider == "hash":
        return HashEmbeddingBackend()
    if provider == "sentence-transformers":
        return SentenceTransformerBackend(model_name)
    if provider != "auto":
        raise ValueError(f"Unknown embedding provider: {provider}")
    if sentence_transformers_available():
        return SentenceTransformerBackend(model_name)
    logger.info("sentence-transformers not installed, using hash embeddings")
    return HashEmbeddingBackend()


class EmbeddingService:
    """Embeds text with a backend, falling back to hash embeddings on failure.

    Once the primary backend raises ModelError the service stays degraded and
    keeps using the fallback, so vectors within one run stay comparable.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        fallback: EmbeddingBackend | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        executor: Executor | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.backend = backend
        self.fallback = fallback or HashEmbeddingBackend()
        self.batch_size = batch_size
        self._executor = executor
        self._degraded = isinstance(backend, HashEmbeddingBackend)
        self._initialized = False
        self._init_lock = threading.Lock()
        self.last_error: str | None = None

    @property
    def active_backend(self) -> EmbeddingBackend:
        return self.fallback if self._degraded else self.backend

    @property
    def model_name(self) -> str:
        backend = self.active_backend
        return getattr(backend, "model_name", backend.name)

    @property
    def degraded(self) -> bool:
        return self._degraded and not isinstance(self.backend, HashEmbeddingBackend)

    @property
    def ready(self) -> bool:
        """True when embedding a query will not block on loading a model."""
        return self._initialized or self._degraded or self.backend.loaded

    def _degrade(self, exc: ModelError) -> None:
        if not self._degraded:
            logger.warning(f"Embedding backend {self.backend.name} unavailable, using hash fallback: {exc}")
        self._degraded = True
        self.last_error = str(exc)

    def initialize(self) -> None:
        """Load the backend once. Failures switch to the fallback."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            if not self._degraded:
                try:
                    self.backend.load()
                except ModelError as exc:
                    self._degrade(exc)
            self._initialized = True

    def _embed_chunk(self, texts: Sequence[str]) -> list[list[float]]:
        self.initialize()
        if not self._degraded:
            try:
                return self.backend.embed_sync(texts)
            except ModelError as exc:
                self._degrade(exc)
        return self.fallback.embed_sync(texts)

    def embed(self, text: str) -> list[float]:
        return self._embed_chunk([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in chunks of `batch_size`, preserving order.

        Between chunks the thread yields so other work waiting on the GIL or
        the store can run.
        """
        results: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            if start:
                time.sleep(0)
            results.extend(self._embed_chunk(texts[start:start + self.batch_size]))
        return results

    async def aembed(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.embed, text)

    async def aembed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Async form of `embed_batch`. Each chunk runs off the event loop."""
        loop = asyncio.get_running_loop()
        results: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            chunk = list(texts[start:start + self.batch_size])
            results.extend(await loop.run_in_executor(self._executor, self._embed_chunk, chunk))
            await asyncio.sleep(0)
        return results

    def info(self) -> dict[str, Any]:
        return {
            "backend": self.active_backend.name,
            "model": self.model_name,
            "dimensions": self.active_backend.dimension,
            "initialized": self._initialized,
            "ready": self.ready,
            "degraded": self.degraded,
            "last_error": self.last_error,
        }


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Normalized dot product of two vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: The vectors have different dimensions.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def quantize_embedding(vector: Sequence[float]) -> bytes:
    """Pack a 384-dim vector into 48 bytes, one sign bit per dimension.

    Bit `i % 8` of byte `i // 8` is set when `vector[i] > 0`.
    """
    arr = np.asarray(vector, dtype=np.float64)
    if arr.shape != (EMBEDDING_DIMENSIONS,):
        raise ValueError(f"Expected {EMBEDDING_DIMENSIONS} dimensions, got {arr.shape[0]}")
    return np.packbits(arr > 0, bitorder="little").tobytes()


def dequantize_embedding(data: bytes) -> list[float]:
    """Expand 48 bytes back to 384 values of +1.0 or -1.0.

    Only the sign of each dimension survives quantization.
    """
    if len(data) != QUANTIZED_BYTES:
        raise ValueError(f"Expected {QUANTIZED_BYTES} bytes, got {len(data)}")
    bits = np.unpackbits(np.frombuffer(data, dtype=np.uint8), bitorder="little")
    return np.where(bits == 1, 1.0, -1.0).tolist()


def quantized_similarity(a: bytes, b: bytes) -> float:
    """Cosine similarity of two dequantized vectors, in [-1, 1].

    Equals `1 - 2 * hamming(a, b) / 384`. A coarse proxy only.
    """
    if len(a) != QUANTIZED_BYTES or len(b) != QUANTIZED_BYTES:
        raise ValueError(f"Quantized vectors must be {QUANTIZED_BYTES} bytes")
    xor = np.bitwise_xor(np.frombuffer(a, dtype=np.uint8), np.frombuffer(b, dtype=np.uint8))
    hamming = int(np.unpackbits(xor).sum())
    return 1.0 - 2.0 * hamming / EMBEDDING_DIMENSIONS


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", "surrogatepass")).hexdigest()


__all__ = [
    "EMBEDDING_DIMENSIONS",
    "QUANTIZED_BYTES",
    "DEFAULT_MODEL_NAME",
    "DEFAULT_BATCH_SIZE",
    "EmbeddingBackend",
    "HashEmbeddingBackend",
    "SentenceTransformerBackend",
    "sentence_transformers_available",
    "create_embedding_backend",
    "EmbeddingService",
    "cosine_similarity",
    "quantize_embedding",
    "dequantize_embedding",
    "quantized_similarity",
    "content_hash",
]
