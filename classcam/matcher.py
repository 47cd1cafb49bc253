# classcam/matcher.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np

from . import codec
from .errors import DecodingError, DimensionMismatch

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GalleryEntry:
    student_id: str
    name: str
    descriptor: np.ndarray


@dataclass(frozen=True)
class Match:
    id: str
    name: str
    distance: float


def find_best_match(probe: np.ndarray, gallery: Sequence[GalleryEntry], threshold: float) -> Optional[Match]:
    """
    Nearest neighbour over the gallery by euclidean distance.
    Accepted only if distance <= threshold (inclusive). Ties keep the
    first entry in gallery order. Empty gallery -> None.
    """
    best: Optional[Match] = None
    for entry in gallery:
        try:
            d = codec.distance(probe, entry.descriptor)
        except DimensionMismatch as e:
            log.warning("[match] skipping %s: %s", entry.name, e)
            continue
        if best is None or d < best.distance:
            best = Match(id=entry.student_id, name=entry.name, distance=d)

    if best is None:
        return None
    log.debug("[match] best %s d=%.4f thr=%.4f", best.name, best.distance, threshold)
    return best if best.distance <= threshold else None


def build_gallery(enrollments: Iterable) -> List[GalleryEntry]:
    """
    Decode the stored descriptors of a class roster.
    Students without a descriptor, with an undecodable one, or with an
    all-zero one are left out; each student appears at most once.
    """
    out: List[GalleryEntry] = []
    seen = set()
    for e in enrollments:
        s = e.student
        if s.id in seen or not s.facial_id:
            continue
        try:
            desc = codec.decode(s.facial_id)
        except DecodingError as err:
            log.warning("[gallery] bad descriptor for %s (%s): %s", s.full_name, s.id, err)
            continue
        if codec.is_absent(desc):
            log.warning("[gallery] empty descriptor for %s (%s), skipped", s.full_name, s.id)
            continue
        seen.add(s.id)
        out.append(GalleryEntry(student_id=s.id, name=s.full_name, descriptor=codec.sanitize(desc)))
    log.info("[gallery] %d students with descriptors", len(out))
    return out
