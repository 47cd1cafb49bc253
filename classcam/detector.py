# classcam/detector.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from . import codec
from .config import DetectorConfig
from .errors import DetectionTimeout
from .model import DetectedFace, FaceModel, Landmarks

log = logging.getLogger(__name__)


@dataclass
class DetectResult:
    faces: List[DetectedFace] = field(default_factory=list)
    ok: bool = True
    error: Optional[str] = None
    elapsed_ms: float = 0.0


class FrameFaceDetector:
    """
    Runs the face model on one frame and drops implausible detections.
    Never raises: a model error or timeout comes back as an empty,
    not-ok result so the caller's loop keeps going.
    """

    def __init__(self, model: FaceModel, cfg: Optional[DetectorConfig] = None):
        self.model = model
        self.cfg = cfg or DetectorConfig()

    def keep(self, face: DetectedFace) -> bool:
        c = self.cfg
        b = face.box
        if b.width <= c.min_side_px or b.height <= c.min_side_px:
            return False
        if not (c.min_aspect <= b.aspect <= c.max_aspect):
            return False
        if not (c.min_area <= b.area <= c.max_area):
            return False
        if face.score < c.min_score:
            return False
        return face.descriptor is not None and len(face.descriptor) > 0

    def filter(self, raw: List[DetectedFace]) -> List[DetectedFace]:
        out = []
        for f in raw:
            if not self.keep(f):
                continue
            out.append(DetectedFace(box=f.box, score=f.score,
                                    descriptor=codec.sanitize(f.descriptor),
                                    landmarks=f.landmarks))
        return out

    async def detect(self, frame) -> DetectResult:
        t0 = time.perf_counter()
        try:
            raw = await asyncio.wait_for(asyncio.to_thread(self.model.detect_faces, frame),
                                         timeout=self.cfg.timeout_s)
        except asyncio.TimeoutError:
            log.warning("[detect] timed out after %.1fs", self.cfg.timeout_s)
            return DetectResult(ok=False, error="timeout", elapsed_ms=(time.perf_counter() - t0) * 1000)
        except Exception as e:
            log.warning("[detect] model error, continuing without detection: %s", e)
            return DetectResult(ok=False, error=str(e), elapsed_ms=(time.perf_counter() - t0) * 1000)

        faces = self.filter(raw or [])
        ms = (time.perf_counter() - t0) * 1000
        log.debug("[detect] %d/%d faces kept in %.1fms", len(faces), len(raw or []), ms)
        return DetectResult(faces=faces, ok=True, elapsed_ms=ms)

    async def detect_single(self, frame) -> Optional[Tuple[np.ndarray, Optional[Landmarks]]]:
        """Single-face descriptor for enrollment. Raises DetectionTimeout or the model error."""
        try:
            res = await asyncio.wait_for(asyncio.to_thread(self.model.detect_single, frame),
                                         timeout=self.cfg.single_timeout_s)
        except asyncio.TimeoutError as e:
            log.info("[detect] single-face detection timed out - try again")
            raise DetectionTimeout(f"no result within {self.cfg.single_timeout_s:.1f}s") from e
        if res is None:
            return None
        desc, landmarks = res
        if desc is None or len(desc) == 0:
            return None
        return codec.sanitize(desc), landmarks
