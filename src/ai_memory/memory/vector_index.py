"""In-memory index over quantized entry vectors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np

from .embeddings import EMBEDDING_DIMENSIONS, QUANTIZED_BYTES, quantize_embedding


@dataclass(frozen=True)
class VectorMatch:
    entry_id: int
    similarity: float

    @property
    def normalized(self) -> float:
        """Similarity mapped from [-1, 1] onto [0, 1]."""
        return (self.similarity + 1.0) / 2.0


@dataclass(frozen=True)
class DuplicatePair:
    first_id: int
    second_id: int
    similarity: float


class VectorIndex:
    """Brute-force sign-bit index.

    Similarities come from Hamming distance between sign bits, so they are a
    coarse proxy for the cosine similarity of the original vectors.
    """

    def __init__(self, vectors: Mapping[int, bytes] | None = None):
        self._ids: list[int] = []
        self._bits = np.zeros((0, EMBEDDING_DIMENSIONS), dtype=np.uint8)
        if vectors:
            self.add_many(vectors.items())

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, entry_id: int) -> bool:
        return entry_id in self._ids

    @staticmethod
    def _unpack(data: bytes) -> np.ndarray:
        if len(data) != QUANTIZED_BYTES:
            raise ValueError(f"Quantized vectors must be {QUANTIZED_BYTES} bytes")
        return np.unpackbits(np.frombuffer(data, dtype=np.uint8), bitorder="little")

    def add(self, entry_id: int, vector: bytes) -> None:
        self.add_many([(entry_id, vector)])

    def add_many(self, items: Iterable[tuple[int, bytes]]) -> None:
        pending: dict[int, np.ndarray] = {}
        for entry_id, vector in items:
            pending[entry_id] = self._unpack(vector)
        if not pending:
            return
        for entry_id in pending:
            self.remove(entry_id)
        self._ids.extend(pending)
        self._bits = np.vstack([self._bits, np.stack(list(pending.values()))])

    def remove(self, entry_id: int) -> bool:
        if entry_id not in self._ids:
            return False
        position = self._ids.index(entry_id)
        del self._ids[position]
        self._bits = np.delete(self._bits, position, axis=0)
        return True

    def similarities(self, query: bytes) -> dict[int, float]:
        """Similarity of `query` to every indexed vector."""
        if not self._ids:
            return {}
        q = self._unpack(query)
        hamming = np.count_nonzero(self._bits != q, axis=1)
        sims = 1.0 - 2.0 * hamming / EMBEDDING_DIMENSIONS
        return {entry_id: float(s) for entry_id, s in zip(self._ids, sims)}

    def search(
        self, query: list[float] | bytes, limit: int = 10, min_similarity: float = 0.0
    ) -> list[VectorMatch]:
        """Closest entries to `query`, best first. Ties keep insertion order."""
        packed = query if isinstance(query, (bytes, bytearray)) else quantize_embedding(query)
        scored = [
            VectorMatch(entry_id, sim)
            for entry_id, sim in self.similarities(bytes(packed)).items()
            if sim >= min_similarity
        ]
        scored.sort(key=lambda m: -m.similarity)
        return scored[:limit]

    def find_duplicates(self, threshold: float = 0.95) -> list[DuplicatePair]:
        """Pairs of entries whose similarity is at least `threshold`."""
        pairs: list[DuplicatePair] = []
        if len(self._ids) < 2:
            return pairs
        for i, first in enumerate(self._ids[:-1]):
            rest = self._bits[i + 1:]
            hamming = np.count_nonzero(rest != self._bits[i], axis=1)
            sims = 1.0 - 2.0 * hamming / EMBEDDING_DIMENSIONS
            for offset in np.nonzero(sims >= threshold)[0]:
                pairs.append(
                    DuplicatePair(first, self._ids[i + 1 + int(offset)], float(sims[offset]))
                )
        pairs.sort(key=lambda p: -p.similarity)
        return pairs


__all__ = ["VectorMatch", "DuplicatePair", "VectorIndex"]
