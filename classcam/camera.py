# classcam/camera.py
# ------------------------------------------------------------
# Exclusive camera handle. One owner at a time (scan OR enrol);
# switching devices is release-then-reacquire, never a live
# reconfiguration.
# ------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from typing import Optional, Union

import cv2

from .config import CameraConfig
from .errors import CameraBusy, CameraError, CameraNotFound, CameraPermissionDenied, CameraUnsupported

log = logging.getLogger(__name__)


def classify_open_failure(source: Union[int, str]) -> CameraError:
    """Best guess at why VideoCapture refused to open."""
    if isinstance(source, str):
        return CameraUnsupported(f"cannot open video source {source!r}")
    if sys.platform.startswith("linux"):
        dev = f"/dev/video{source}"
        if not os.path.exists(dev):
            return CameraNotFound(f"{dev} does not exist")
        if not os.access(dev, os.R_OK | os.W_OK):
            return CameraPermissionDenied(f"no read/write access to {dev}")
        return CameraBusy(f"{dev} exists but could not be opened")
    return CameraNotFound(f"camera index {source} could not be opened")


class Camera:
    def __init__(self, cfg: Optional[CameraConfig] = None, source: Union[int, str, None] = None,
                 mirror: bool = False):
        self.cfg = cfg or CameraConfig()
        self.source = self.cfg.index if source is None else source
        self.mirror = mirror
        self._cap = None
        self._io = threading.Lock()  # never release mid-read

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def _open_blocking(self):
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise classify_open_failure(self.source)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        cap.set(cv2.CAP_PROP_FPS, self.cfg.fps)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height)
        ok, _ = cap.read()
        if not ok:
            cap.release()
            raise CameraBusy(f"camera {self.source!r} opened but returned no frames")
        return cap

    async def open(self) -> None:
        if self._cap is not None:
            return
        self._cap = await asyncio.to_thread(self._open_blocking)
        log.info("[camera] opened %r", self.source)

    async def read(self):
        """Next frame, or None on a one-off read glitch."""
        cap = self._cap
        if cap is None:
            return None
        ok, frame = await asyncio.to_thread(self._read_blocking, cap)
        if not ok or frame is None:
            return None
        return cv2.flip(frame, 1) if self.mirror else frame

    def _read_blocking(self, cap):
        with self._io:
            if cap is not self._cap:
                return False, None
            return cap.read()

    def release(self) -> None:
        with self._io:
            cap, self._cap = self._cap, None
            if cap is not None:
                cap.release()
        if cap is not None:
            log.info("[camera] released %r", self.source)

    async def switch(self, source: Union[int, str]) -> None:
        self.release()
        self.source = source
        await self.open()
