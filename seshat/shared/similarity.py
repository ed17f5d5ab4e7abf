"""Vector helpers shared by the embedder, the store client and the caches."""

from collections.abc import Sequence
import json
import math
import numbers
from typing import Any

import numpy as np

from seshat.shared.errors import ValidationError

EMBEDDING_DIMENSIONS = 768


def l2_norm(vector: Sequence[float]) -> float:
    """Return the Euclidean length of a vector."""
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))


def cosine_similarity(a: Sequence[float], b: Sequence[float], norm_a: float | None = None) -> float:
    """Cosine similarity of two vectors.

    Mismatched lengths and zero vectors score 0.0 rather than raising, so a
    malformed cached vector can never match.

    Args:
        a: First vector.
        b: Second vector.
        norm_a: Precomputed L2 norm of ``a``; skips recomputing it.

    Returns:
        Similarity in [-1, 1].
    """
    if a is None or b is None or len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    na = norm_a if norm_a is not None else float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def parse_embedding(raw: Any) -> list[float]:
    """Accept an embedding as a list or a JSON-encoded string.

    Raises:
        ValidationError: If the value is neither, or the JSON is malformed.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            msg = "Invalid embedding format (failed to parse JSON)"
            raise ValidationError(msg) from e
    if isinstance(raw, np.ndarray):
        raw = raw.tolist()
    if not isinstance(raw, (list, tuple)):
        msg = "Embedding must be an array"
        raise ValidationError(msg)
    return list(raw)


def validate_embedding(embedding: Any, dimensions: int = EMBEDDING_DIMENSIONS) -> list[float]:
    """Check that an embedding has exactly ``dimensions`` finite numbers.

    Args:
        embedding: List, tuple, array or JSON string.
        dimensions: Required length.

    Returns:
        The embedding as a list of floats.

    Raises:
        ValidationError: On wrong length, non-numeric or non-finite values.
    """
    values = parse_embedding(embedding)
    if len(values) != dimensions:
        msg = f"Invalid embedding dimensions: {len(values)} (expected {dimensions})"
        raise ValidationError(msg)
    result: list[float] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
            msg = "Embedding contains invalid values"
            raise ValidationError(msg)
        result.append(float(value))
    return result


def is_valid_embedding(embedding: Any, dimensions: int = EMBEDDING_DIMENSIONS) -> bool:
    """Boolean form of :func:`validate_embedding`."""
    try:
        validate_embedding(embedding, dimensions)
    except ValidationError:
        return False
    return True
