"""Test helpers for the embedding matcher.

Vectors are built from a handful of "directions" so tests can reason about
cosine similarity without 1536 hand-written numbers.
"""

from __future__ import annotations

import math

from ledgerlens.domain.categorization.embeddings import EMBEDDING_DIMENSIONS


def vector(*weights: float, dimensions: int = EMBEDDING_DIMENSIONS) -> list[float]:
    """A vector whose first components are ``weights`` and the rest zero."""
    values = list(weights) + [0.0] * (dimensions - len(weights))
    return values[:dimensions]


def rotated(angle_degrees: float, dimensions: int = EMBEDDING_DIMENSIONS) -> list[float]:
    """Unit vector at ``angle_degrees`` from ``vector(1.0)`` in the first plane."""
    radians = math.radians(angle_degrees)
    return vector(math.cos(radians), math.sin(radians), dimensions=dimensions)


class StubEmbeddingClient:
    """Maps normalized text to a fixed vector; unknown text raises ``error`` or KeyError."""

    def __init__(self, vectors: dict[str, list[float]], errors: dict[str, Exception] | None = None) -> None:
        self._vectors = vectors
        self._errors = errors or {}
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self._errors:
            raise self._errors[text]
        return self._vectors[text]
