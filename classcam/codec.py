# classcam/codec.py
# ------------------------------------------------------------
# Face descriptor <-> text.
# Wire form: base64 of the raw little-endian float32 bytes
# (128 floats -> 512 bytes -> 684 chars). No JSON-of-numbers:
# the bytes round-trip exactly.
# ------------------------------------------------------------

from __future__ import annotations

import base64
import binascii
import logging
from typing import Sequence, Union

import numpy as np

from .errors import DecodingError, DimensionMismatch, EncodingError

log = logging.getLogger(__name__)

WIRE_DTYPE = np.dtype("<f4")

DescriptorLike = Union[np.ndarray, Sequence[float]]


def _frozen(v: np.ndarray) -> np.ndarray:
    v.flags.writeable = False
    return v


def sanitize(values: DescriptorLike) -> np.ndarray:
    """Coerce to a read-only float32 vector, zeroing NaN/Inf elements."""
    v = np.array(values, dtype=np.float32).reshape(-1)
    bad = ~np.isfinite(v)
    if bad.any():
        log.warning("[codec] %d invalid descriptor values replaced with 0.0", int(bad.sum()))
        v[bad] = 0.0
    return _frozen(v)


def is_absent(descriptor: DescriptorLike) -> bool:
    v = np.asarray(descriptor, dtype=np.float32)
    return v.size == 0 or not np.any(v)


def encode(descriptor: DescriptorLike) -> str:
    raw = np.array(descriptor, dtype=np.float32).reshape(-1)
    if raw.size == 0:
        raise EncodingError("Invalid descriptor: empty")
    if not np.isfinite(raw).any():
        raise EncodingError("Invalid descriptor: no valid values found")
    clean = sanitize(raw)
    return base64.b64encode(clean.astype(WIRE_DTYPE).tobytes()).decode("ascii")


def decode(text: str) -> np.ndarray:
    if not isinstance(text, str) or not text:
        raise DecodingError("Failed to parse face descriptor: empty input")
    try:
        payload = base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecodingError(f"Failed to parse face descriptor: {e}") from e
    if not payload or len(payload) % WIRE_DTYPE.itemsize:
        raise DecodingError(f"Failed to parse face descriptor: {len(payload)} bytes is not a float32 vector")
    v = np.frombuffer(payload, dtype=WIRE_DTYPE).astype(np.float32)
    return _frozen(v)


def distance(a: DescriptorLike, b: DescriptorLike) -> float:
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    if a.shape != b.shape:
        raise DimensionMismatch(a.size, b.size)
    return float(np.linalg.norm(a - b))
