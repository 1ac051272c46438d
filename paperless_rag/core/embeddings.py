"""Vector encoding and similarity helpers."""

from __future__ import annotations

import math
import struct

from paperless_rag.core.errors import ValidationError

FLOAT32_SIZE = 4


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into little-endian float32 bytes."""
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_f32(data: bytes) -> list[float]:
    """Decode bytes written by serialize_f32.

    Raises:
        ValidationError: If the byte length is not a multiple of 4.
    """
    if len(data) % FLOAT32_SIZE != 0:
        raise ValidationError(
            f"malformed vector: {len(data)} bytes is not a multiple of {FLOAT32_SIZE}"
        )
    return list(struct.unpack(f"<{len(data) // FLOAT32_SIZE}f", data))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 instead of raising when the vectors differ in length or
    either one has zero magnitude.
    """
    if len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
