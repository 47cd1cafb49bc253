# classcam/tracker.py
from __future__ import annotations

import itertools
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Tuple

from .config import TrackerConfig
from .model import Box, DetectedFace, Landmarks

DETECTING = "Detecting…"


@dataclass
class TrackedFace:
    track_id: str
    box: Box                    # smoothed, landmark-centred (what gets drawn)
    raw_box: Box                # last raw detection (used for association)
    history: Deque[Box]
    name: str = DETECTING
    student_id: Optional[str] = None
    recognized: bool = False
    accuracy: float = 0.0
    confidence: float = 0.0
    nose: Optional[Tuple[float, float]] = None
    descriptor: object = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.student_id or self.track_id

    def mark_recognized(self, student_id: str, name: str, distance: float) -> None:
        self.student_id = student_id
        self.name = name
        self.accuracy = max(0.0, min(100.0, (1.0 - distance) * 100.0))
        self.recognized = True


def landmark_box(raw: Box, landmarks: Optional[Landmarks], cfg: TrackerConfig) -> Tuple[Box, Tuple[float, float]]:
    """Tighter box centred on the nose; returns (box, nose)."""
    nose_x = raw.x + raw.width / 2.0
    nose_y = raw.y + raw.height * cfg.nose_fallback_y
    if landmarks is not None and landmarks.nose is not None:
        nose_x, nose_y = landmarks.nose

    bw = raw.width * cfg.box_scale
    bh = raw.height * cfg.box_scale
    bx = nose_x - bw / 2.0
    by = nose_y - bh * cfg.nose_from_top
    return Box(max(0.0, bx), max(0.0, by), bw, bh), (nose_x, nose_y)


def mean_box(boxes) -> Box:
    n = len(boxes)
    return Box(
        sum(b.x for b in boxes) / n,
        sum(b.y for b in boxes) / n,
        sum(b.width for b in boxes) / n,
        sum(b.height for b in boxes) / n,
    )


class FaceTracker:
    """
    Greedy nearest-centre association, one frame at a time.
    A track survives only while it keeps being detected; the association
    radius scales with each new face's own size.
    """

    def __init__(self, cfg: Optional[TrackerConfig] = None):
        self.cfg = cfg or TrackerConfig()
        self._ids = itertools.count(1)
        self.tracks: List[TrackedFace] = []

    def reset(self) -> None:
        self.tracks = []

    def _new_track(self, face: DetectedFace) -> TrackedFace:
        box, nose = landmark_box(face.box, face.landmarks, self.cfg)
        hist: Deque[Box] = deque([box], maxlen=self.cfg.history_len)
        return TrackedFace(
            track_id=f"face_{next(self._ids)}",
            box=box,
            raw_box=face.box,
            history=hist,
            confidence=face.score,
            nose=nose,
            descriptor=face.descriptor,
        )

    def update(self, faces: List[DetectedFace]) -> List[TrackedFace]:
        """Returns one TrackedFace per input face, in input order."""
        previous = self.tracks
        used = set()
        out: List[TrackedFace] = []

        for face in faces:
            cx, cy = face.box.center
            max_d = min(face.box.width, face.box.height) * self.cfg.assoc_ratio
            best_i, best_d = None, math.inf
            for i, t in enumerate(previous):
                if i in used:
                    continue
                tx, ty = t.raw_box.center
                d = math.hypot(cx - tx, cy - ty)
                if d < max_d and d < best_d:
                    best_i, best_d = i, d

            if best_i is None:
                out.append(self._new_track(face))
                continue

            t = previous[best_i]
            used.add(best_i)
            box, nose = landmark_box(face.box, face.landmarks, self.cfg)
            t.history.append(box)
            t.box = mean_box(t.history)
            t.raw_box = face.box
            t.nose = nose
            t.confidence = face.score
            t.descriptor = face.descriptor
            out.append(t)

        # unmatched tracks are dropped: no detection, no track
        self.tracks = out
        return out
