"""
Similarity Service
==================

Offline default for the injected `similarity(text_a, text_b) -> float`.

FENCE POST:
===========
This service computes token geometry, not understanding.
It returns a raw score in [0, 1] WITHOUT applying a threshold;
the aggregator owns the matching decision.

Production deployments inject an LLM-backed scorer with the same
signature. Tests inject deterministic stubs.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict
import hashlib
import re

import numpy as np

Similarity = Callable[[str, str], float]

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass
class SimilarityConfig:
    """Configuration for the token-vector similarity."""
    dimensions: int = 512
    use_bigrams: bool = True
    cache_vectors: bool = True
    max_cached_vectors: int = 4096


class TokenVectorSimilarity:
    """
    Cosine similarity over hashed token count vectors.

    Each text is tokenized into lowercase words (plus adjacent bigrams),
    hashed into a fixed-size vector and L2-normalized, so the dot product
    of two vectors is their cosine similarity.
    """

    def __init__(self, config: SimilarityConfig = None):
        self._config = config or SimilarityConfig()
        self._cache: Dict[str, np.ndarray] = {}

    def __call__(self, text_a: str, text_b: str) -> float:
        return self.compute_similarity(text_a, text_b)

    def vectorize(self, text: str) -> np.ndarray:
        if self._config.cache_vectors and text in self._cache:
            return self._cache[text]

        tokens = _TOKEN_RE.findall((text or "").lower())
        features = list(tokens)
        if self._config.use_bigrams:
            features.extend(f"{a}_{b}" for a, b in zip(tokens, tokens[1:]))

        vector = np.zeros(self._config.dimensions, dtype=np.float64)
        for feature in features:
            digest = hashlib.md5(feature.encode('utf-8')).digest()
            vector[int.from_bytes(digest[:4], 'big') % self._config.dimensions] += 1.0

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm

        if self._config.cache_vectors:
            if len(self._cache) >= self._config.max_cached_vectors:
                self._evict_oldest()
            self._cache[text] = vector
        return vector

    def _evict_oldest(self) -> None:
        if self._cache:
            del self._cache[next(iter(self._cache))]

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    def compute_similarity(self, text_a: str, text_b: str) -> float:
        """Raw cosine similarity clamped to [0, 1]."""
        vec_a = self.vectorize(text_a)
        vec_b = self.vectorize(text_b)
        if not vec_a.any() or not vec_b.any():
            return 0.0
        return float(np.clip(np.dot(vec_a, vec_b), 0.0, 1.0))


def exact_match_similarity(text_a: str, text_b: str) -> float:
    """Whitespace/case-insensitive equality. Useful as a strict baseline."""
    normalize = lambda s: " ".join((s or "").lower().split())
    return 1.0 if normalize(text_a) == normalize(text_b) else 0.0
