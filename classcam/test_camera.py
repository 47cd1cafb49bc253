# classcam/test_camera.py
from __future__ import annotations

import asyncio
import os

import numpy as np
import pytest

from classcam import camera as camera_mod
from classcam.camera import Camera, classify_open_failure
from classcam.errors import CameraBusy, CameraNotFound, CameraPermissionDenied, CameraUnsupported


class FakeCapture:
    instances = []

    def __init__(self, source, opens=True, reads=True):
        self.source = source
        self.opens = opens
        self.reads = reads
        self.props = {}
        self.released = False
        FakeCapture.instances.append(self)

    def isOpened(self):
        return self.opens

    def set(self, prop, value):
        self.props[prop] = value

    def read(self):
        if not self.reads:
            return False, None
        frame = np.zeros((4, 6, 3), np.uint8)
        frame[:, 0] = 255
        return True, frame

    def release(self):
        self.released = True


@pytest.fixture
def fake_cv(monkeypatch):
    FakeCapture.instances = []
    behaviour = {"opens": True, "reads": True}
    monkeypatch.setattr(camera_mod.cv2, "VideoCapture",
                        lambda src: FakeCapture(src, behaviour["opens"], behaviour["reads"]))
    return behaviour


def test_open_read_release(fake_cv):
    cam = Camera(source=3)

    async def go():
        await cam.open()
        await cam.open()          # already open: no second device
        return await cam.read()

    frame = asyncio.run(go())
    assert frame.shape == (4, 6, 3)
    assert len(FakeCapture.instances) == 1
    assert camera_mod.cv2.CAP_PROP_BUFFERSIZE in FakeCapture.instances[0].props
    cam.release()
    assert FakeCapture.instances[0].released and not cam.is_open
    assert asyncio.run(cam.read()) is None


def test_mirror_flips_horizontally(fake_cv):
    cam = Camera(source=0, mirror=True)

    async def go():
        await cam.open()
        return await cam.read()

    frame = asyncio.run(go())
    assert frame[0, -1, 0] == 255 and frame[0, 0, 0] == 0


def test_open_without_frames_is_busy(fake_cv):
    fake_cv["reads"] = False
    with pytest.raises(CameraBusy):
        asyncio.run(Camera(source=0).open())
    assert FakeCapture.instances[0].released


def test_switch_releases_before_reopening(fake_cv):
    cam = Camera(source=0)

    async def go():
        await cam.open()
        await cam.switch(1)

    asyncio.run(go())
    first, second = FakeCapture.instances
    assert first.released and not second.released
    assert (first.source, second.source, cam.source) == (0, 1, 1)


def test_classify_open_failure_for_stream_urls():
    assert isinstance(classify_open_failure("rtsp://cam/stream"), CameraUnsupported)


@pytest.mark.parametrize("exists,access,expected", [
    (False, True, CameraNotFound),
    (True, False, CameraPermissionDenied),
    (True, True, CameraBusy),
])
def test_classify_open_failure_on_linux(monkeypatch, exists, access, expected):
    real_exists, real_access = os.path.exists, os.access
    monkeypatch.setattr(camera_mod.sys, "platform", "linux")
    monkeypatch.setattr(camera_mod.os.path, "exists",
                        lambda p: exists if str(p).startswith("/dev/video") else real_exists(p))
    monkeypatch.setattr(camera_mod.os, "access",
                        lambda p, mode: access if str(p).startswith("/dev/video") else real_access(p, mode))
    err = classify_open_failure(7)
    assert isinstance(err, expected)
    assert "/dev/video7" in err.detail
    assert err.message


def test_unopenable_index_raises_classified_error(fake_cv, monkeypatch):
    fake_cv["opens"] = False
    monkeypatch.setattr(camera_mod, "classify_open_failure", lambda src: CameraNotFound(f"index {src}"))
    with pytest.raises(CameraNotFound):
        asyncio.run(Camera(source=9).open())
