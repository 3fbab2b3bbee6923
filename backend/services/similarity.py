"""Vector helpers for the in-process similarity fallback."""
import logging
from typing import Any, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors: dot(a, b) / (|a| * |b|).

    Returns 0.0 when either vector has zero norm or the dimensions differ.
    """
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.shape != vec_b.shape or vec_a.size == 0:
        return 0.0

    magnitude = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if magnitude == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / magnitude)


def parse_embedding(embedding: Any) -> Optional[np.ndarray]:
    """
    Parse an embedding from a chunk row.

    pgvector columns come back either as a native list or as a bracketed
    comma-separated string such as ``"[0.1,0.2,0.3]"``.

    Returns:
        Float array, or None if the value is missing or unparseable
    """
    if embedding is None:
        return None

    if isinstance(embedding, str):
        cleaned = embedding.strip().lstrip("[").rstrip("]")
        if not cleaned:
            return None
        try:
            return np.array([float(part) for part in cleaned.split(",")], dtype=np.float64)
        except ValueError as e:
            logger.error(f"Failed to parse embedding string: {e}")
            return None

    try:
        return np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError) as e:
        logger.error(f"Unsupported embedding value {type(embedding).__name__}: {e}")
        return None
