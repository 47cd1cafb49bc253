# classcam/stabilizer.py
from __future__ import annotations

import numpy as np


class PositionStabilizer:
    """Counts consecutive good face sightings until the position is stable."""

    def __init__(self, min_hits: int = 3, max_gap_ms: int = 2500, dim: int = 128):
        self.min_hits = min_hits      # need this many checks in a row
        self.max_gap_ms = max_gap_ms  # a stalled check breaks the streak
        self.dim = dim
        self.reset()

    def reset(self):
        self.hits = 0
        self.last_ts_ms = 0

    def valid(self, desc) -> bool:
        if desc is None:
            return False
        v = np.asarray(desc)
        return v.size == self.dim and bool(np.any(v))

    def step(self, now_ms: int, desc) -> bool:
        """Return True once the streak reaches min_hits."""
        if not self.valid(desc):
            self.reset()
            return False
        if self.last_ts_ms and (now_ms - self.last_ts_ms) > self.max_gap_ms:
            self.reset()
        self.hits += 1
        self.last_ts_ms = now_ms
        return self.hits >= self.min_hits

    @property
    def stable(self) -> bool:
        return self.hits >= self.min_hits
