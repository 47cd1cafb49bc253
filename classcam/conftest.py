# classcam/conftest.py
# Shared fakes: a scripted face model, a frame list camera, roster seeding.
# A "frame" handed to FakeModel is the detection script itself:
#   list[DetectedFace]  -> returned as-is
#   Exception instance  -> raised
#   Slow(seconds, faces)-> sleeps in the worker thread, then returns faces

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional

import numpy as np
import pytest

from classcam import codec
from classcam.model import Box, DetectedFace, FaceModel, Landmarks, ModelResource
from classcam.store import MemoryStore

DIM = 128


def vec(*head, dim=DIM) -> np.ndarray:
    v = np.zeros(dim, np.float32)
    v[: len(head)] = head
    return v


def face(x=100.0, y=100.0, w=80.0, h=100.0, desc=None, score=0.9, nose=None) -> DetectedFace:
    lm = Landmarks(nose=nose, left_eye=(x + w * 0.65, y + h * 0.35), right_eye=(x + w * 0.35, y + h * 0.35)) if nose else None
    return DetectedFace(box=Box(x, y, w, h), score=score,
                        descriptor=vec(1.0) if desc is None else desc, landmarks=lm)


class Slow:
    def __init__(self, seconds: float, faces: List[DetectedFace]):
        self.seconds = seconds
        self.faces = faces


class FakeModel(FaceModel):
    name = "fake"

    def __init__(self, fail_loads: int = 0, load_delay: float = 0.0):
        self.fail_loads = fail_loads
        self.load_delay = load_delay
        self.loads = 0
        self.unloads = 0
        self.calls = 0

    def load(self):
        self.loads += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.fail_loads:
            self.fail_loads -= 1
            raise RuntimeError("weights missing")

    def unload(self):
        self.unloads += 1

    def detect_faces(self, frame):
        self.calls += 1
        if isinstance(frame, Exception):
            raise frame
        if isinstance(frame, Slow):
            time.sleep(frame.seconds)
            return list(frame.faces)
        return list(frame or [])


class FakeCamera:
    """Replays frames; the last one repeats forever."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.source = 0
        self.opened = 0
        self.released = 0
        self._i = 0
        self.is_open = False

    async def open(self):
        self.opened += 1
        self.is_open = True

    async def read(self):
        await asyncio.sleep(0)
        if not self.is_open:
            return None
        frame = self.frames[min(self._i, len(self.frames) - 1)]
        self._i += 1
        return frame

    def release(self):
        if self.is_open:
            self.released += 1
        self.is_open = False

    async def switch(self, source):
        self.release()
        self.source = source
        await self.open()


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


def seed_class(store: MemoryStore, students: Dict[str, Optional[np.ndarray]], name: str = "Physics 101"):
    """Create a class and enrol each student; returns (class_id, {name: Student})."""
    cls = store.create_class(name, subject="Physics", period="P1")
    out = {}
    for i, (full_name, desc) in enumerate(students.items()):
        facial = codec.encode(desc) if desc is not None else None
        s = store.create_student(f"STU{1000 + i}", full_name, facial)
        store.enroll_student(cls.id, s.id)
        out[full_name] = s
    return cls.id, out


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def resource(fake_model):
    return ModelResource(lambda: fake_model)
