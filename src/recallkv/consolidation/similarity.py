"""Cosine similarity over stored embeddings."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of two vectors.

    Vectors of different lengths (embedded by different providers) are both cut
    to the shorter length, so the result is approximate across providers. A
    zero-magnitude or empty vector scores 0.0.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape[0] != vb.shape[0]:
        logger.debug("Embedding length mismatch: %d vs %d", va.shape[0], vb.shape[0])
        n = min(va.shape[0], vb.shape[0])
        va, vb = va[:n], vb[:n]
    if va.size == 0:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = float(np.dot(va, vb) / (na * nb))
    return max(-1.0, min(1.0, sim))


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine matrix; the diagonal is 1.0 for non-zero vectors."""
    n = len(vectors)
    if n == 0:
        return np.zeros((0, 0), dtype=np.float64)
    lengths = {len(v) for v in vectors}
    if len(lengths) == 1:
        mat = np.asarray(vectors, dtype=np.float64)
        norms = np.linalg.norm(mat, axis=1, keepdims=True)
        safe = np.where(norms == 0.0, 1.0, norms)
        unit = mat / safe
        out = unit @ unit.T
        zero = (norms.ravel() == 0.0)
        out[zero, :] = 0.0
        out[:, zero] = 0.0
        return np.clip(out, -1.0, 1.0)

    out = np.zeros((n, n), dtype=np.float64)
    for i in range(n):
        for j in range(i, n):
            s = cosine_similarity(vectors[i], vectors[j])
            out[i, j] = s
            out[j, i] = s
    return out
