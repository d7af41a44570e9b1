"""Cosine similarity and linear-scan nearest-neighbour lookup."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, TypeVar

T = TypeVar("T")

# Absorbs float rounding so a similarity computed exactly at the threshold is a hit.
_EPSILON = 1e-9

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a <= 0.0 or norm_b <= 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize_question(text: str) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""
    lowered = _PUNCTUATION_RE.sub(" ", (text or "").lower())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def meets_threshold(similarity: float, threshold: float) -> bool:
    return similarity + _EPSILON >= threshold


@dataclass(slots=True)
class Scored(Generic[T]):
    item: T
    similarity: float


class SimilarityIndex(Generic[T]):
    """Scores candidates against a query vector using a caller-supplied key."""

    def __init__(self, vector_of: Callable[[T], list[float] | None]):
        self._vector_of = vector_of

    def score(self, query: list[float], items: Iterable[T]) -> list[Scored[T]]:
        scored: list[Scored[T]] = []
        for item in items:
            vector = self._vector_of(item)
            if not vector:
                continue
            scored.append(Scored(item=item, similarity=cosine_similarity(query, vector)))
        return scored

    def best(self, query: list[float], items: Iterable[T], threshold: float) -> Scored[T] | None:
        best: Scored[T] | None = None
        for candidate in self.score(query, items):
            if not meets_threshold(candidate.similarity, threshold):
                continue
            if best is None or candidate.similarity > best.similarity:
                best = candidate
        return best

    def top_k(
        self,
        query: list[float],
        items: Iterable[T],
        k: int,
        min_similarity: float = 0.0,
    ) -> list[Scored[T]]:
        hits = [c for c in self.score(query, items) if meets_threshold(c.similarity, min_similarity)]
        hits.sort(key=lambda c: c.similarity, reverse=True)
        return hits[: max(0, k)]
