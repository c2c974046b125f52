"""
Vector helpers: cosine similarity and the deterministic fallback embedding.
"""

import hashlib
import math
import random
from collections import Counter
from typing import List, Optional, Sequence

FALLBACK_MODEL_ID = 'hash-fallback-v1'


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Cosine similarity of two vectors.

    Returns None when either vector is empty or all zeros, or when the
    dimensions differ, since no meaningful angle exists in those cases.
    """
    if not a or not b or len(a) != len(b):
        return None

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return None
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def rescale_cosine(cosine: float) -> float:
    """Map a cosine in [-1, 1] onto [0, 1]."""
    return max(0.0, min(1.0, (cosine + 1.0) / 2.0))


def cosine_from_rescaled(score: float) -> float:
    """Invert ``rescale_cosine``, e.g. for lucene cosinesimil k-NN scores."""
    return max(-1.0, min(1.0, 2.0 * score - 1.0))


def similarity_from_cosine(cosine: float, rescale: bool = False) -> float:
    """Similarity in [0, 1] for a raw cosine.

    Normalized text embeddings put unrelated texts near 0 and rarely below,
    so by default negative cosines clamp to 0. ``rescale`` maps the full
    [-1, 1] range instead, for embedding spaces where negative cosines carry
    meaning.
    """
    if rescale:
        return rescale_cosine(cosine)
    return max(0.0, min(1.0, cosine))


def _digest_int(text: str, start: int = 0, length: int = 8) -> int:
    digest = hashlib.sha256(text.encode('utf-8')).digest()
    return int.from_bytes(digest[start:start + length], 'big')


def fallback_embedding(text: str, dimension: int) -> List[float]:
    """Deterministic unit vector derived from the words of ``text``.

    Words longer than two characters are feature-hashed into two signed
    buckets each, weighted by log frequency, so texts sharing vocabulary land
    close together. A low-amplitude component seeded from the full text keeps
    the vector non-zero for empty or stop-word-only input.
    """
    vector = [0.0] * dimension
    words = [w for w in text.lower().split() if len(w) > 2]

    for word, freq in Counter(words).items():
        weight = math.log(freq + 1)
        for start in (0, 8):
            bucket = _digest_int(word, start) % dimension
            sign = 1.0 if _digest_int(word, start + 16, 1) & 1 else -1.0
            vector[bucket] += sign * weight

    rng = random.Random(_digest_int(text))
    for i in range(dimension):
        vector[i] += rng.uniform(-1.0, 1.0) * 0.03

    magnitude = math.sqrt(sum(v * v for v in vector))
    return [v / magnitude for v in vector]
