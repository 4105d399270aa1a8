"""Embedding blob encoding and similarity helpers.

Embeddings are persisted as raw little-endian float32 bytes. PostgREST
exchanges ``bytea`` columns as ``\\x``-prefixed hex strings, so the storage
layer converts at its boundary with :func:`to_pg_bytea` / :func:`from_pg_bytea`.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

FLOAT32_LE = np.dtype("<f4")


def encode_embedding(vector: Sequence[float]) -> bytes:
    """Pack a vector as little-endian float32 bytes."""
    return np.asarray(vector, dtype=FLOAT32_LE).tobytes()


def decode_embedding(blob: bytes) -> np.ndarray:
    """Unpack little-endian float32 bytes into a 1-D array."""
    if len(blob) % FLOAT32_LE.itemsize:
        raise ValueError(f"Embedding blob length {len(blob)} is not a multiple of 4")
    return np.frombuffer(blob, dtype=FLOAT32_LE)


def cosine_similarity(a: np.ndarray | Sequence[float], b: np.ndarray | Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is all zeros."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape} vs {vb.shape}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def to_pg_bytea(blob: bytes | None) -> str | None:
    """Render bytes in the hex form PostgREST accepts for ``bytea``."""
    if blob is None:
        return None
    return "\\x" + blob.hex()


def from_pg_bytea(value: str | bytes | None) -> bytes | None:
    """Parse a ``bytea`` value returned by PostgREST."""
    if value is None:
        return None
    if isinstance(value, bytes):
        return value
    if value.startswith("\\x"):
        return bytes.fromhex(value[2:])
    raise ValueError("Unexpected bytea encoding (expected \\x-prefixed hex)")
