# classcam/enrol.py
# ------------------------------------------------------------
# Guided enrollment: info -> position -> capture -> angles ->
# review -> complete. One encoded descriptor per student; the
# angles snapshot replaces the first capture (last write wins).
# ------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from . import codec
from .camera import Camera
from .config import DetectorConfig, EnrolConfig
from .detector import FrameFaceDetector
from .errors import (
    CameraError,
    CaptureFailed,
    ClasscamError,
    DetectionTimeout,
    EncodingError,
    IllegalTransition,
    NoFaceDetected,
    PersistenceError,
    StudentNotEnrolled,
)
from .model import ModelResource
from .stabilizer import PositionStabilizer
from .store import AttendanceStore, Enrollment, Student

log = logging.getLogger(__name__)


class EnrolStep(str, Enum):
    INFO = "info"
    POSITION = "position"
    CAPTURE = "capture"
    ANGLES = "angles"
    REVIEW = "review"
    COMPLETE = "complete"


NEXT_STEP = {
    EnrolStep.INFO: EnrolStep.POSITION,
    EnrolStep.POSITION: EnrolStep.CAPTURE,
    EnrolStep.CAPTURE: EnrolStep.ANGLES,
    EnrolStep.ANGLES: EnrolStep.REVIEW,
    EnrolStep.REVIEW: EnrolStep.COMPLETE,
}

CAMERA_STEPS = (EnrolStep.POSITION, EnrolStep.CAPTURE, EnrolStep.ANGLES)


def mint_student_code() -> str:
    return f"STU{int(time.time() * 1000)}"


class EnrollmentController:
    def __init__(self, class_id: str, store: AttendanceStore, resource: ModelResource,
                 camera: Optional[Camera] = None,
                 cfg: Optional[EnrolConfig] = None,
                 detector_cfg: Optional[DetectorConfig] = None,
                 clock_ms: Callable[[], int] = lambda: int(time.monotonic() * 1000)):
        self.class_id = class_id
        self.store = store
        self.resource = resource
        self.camera = camera
        self.cfg = cfg or EnrolConfig()
        self.detector_cfg = detector_cfg or DetectorConfig()
        self.clock_ms = clock_ms
        self.stabilizer = PositionStabilizer(self.cfg.stable_hits, self.cfg.max_gap_ms, self.cfg.descriptor_dim)
        self.detector: Optional[FrameFaceDetector] = None
        self._holds_model = False
        self._clear()

    def _clear(self) -> None:
        self.step = EnrolStep.INFO
        self.full_name = ""
        self.student_code = ""
        self.descriptor_b64: Optional[str] = None
        self.face_detected = False
        self.student: Optional[Student] = None
        self.enrollment: Optional[Enrollment] = None
        self._saving = False
        self._capturing = False
        self._epoch = getattr(self, "_epoch", 0) + 1
        self.stabilizer.reset()

    def _advance(self, target: EnrolStep) -> None:
        if NEXT_STEP.get(self.step) != target:
            raise IllegalTransition(self.step, target)
        log.info("[enrol] %s -> %s", self.step.value, target.value)
        self.step = target
        self.stabilizer.reset()
        if target not in CAMERA_STEPS:
            self._release_devices()

    def _release_devices(self) -> None:
        if self.camera is not None:
            self.camera.release()
        if self._holds_model:
            self._holds_model = False
            self.resource.release()
        self.detector = None
        self.face_detected = False

    # -------------- info --------------
    async def begin(self, full_name: str, student_code: Optional[str] = None) -> None:
        if self.step != EnrolStep.INFO:
            raise IllegalTransition(self.step, EnrolStep.POSITION)
        full_name = (full_name or "").strip()
        if not full_name:
            raise ValueError("student name is required")
        self.full_name = full_name
        self.student_code = student_code or mint_student_code()

        model = await self.resource.acquire()
        self._holds_model = True
        try:
            if self.camera is not None:
                await self.camera.open()
        except CameraError:
            self._release_devices()
            raise
        self.detector = FrameFaceDetector(model, self.detector_cfg)
        self._advance(EnrolStep.POSITION)

    # -------------- position --------------
    async def check_position(self, frame) -> bool:
        """One positioning check. True when it auto-advanced to CAPTURE."""
        if self.step != EnrolStep.POSITION or self._capturing:
            return False
        epoch = self._epoch
        try:
            res = await self.detector.detect_single(frame)
        except Exception as e:
            if epoch == self._epoch:
                log.debug("[enrol] position check failed: %s", e)
                self.face_detected = False
                self.stabilizer.reset()
            return False
        if epoch != self._epoch or self.step != EnrolStep.POSITION:
            return False

        desc = res[0] if res else None
        self.face_detected = self.stabilizer.valid(desc)
        if self.stabilizer.step(self.clock_ms(), desc):
            self._advance(EnrolStep.CAPTURE)
            return True
        return False

    async def watch_position(self) -> None:
        """Poll the camera at the positioning cadence until the face is stable."""
        while self.step == EnrolStep.POSITION and self.camera is not None:
            frame = await self.camera.read()
            if frame is not None:
                await self.check_position(frame)
            if self.step == EnrolStep.POSITION:
                await asyncio.sleep(self.cfg.position_interval_s)

    # -------------- capture / angles --------------
    async def _snapshot(self, frame) -> str:
        if self._capturing:
            raise CaptureFailed("capture already in progress")
        self._capturing = True
        try:
            try:
                res = await self.detector.detect_single(frame)
            except DetectionTimeout as e:
                raise NoFaceDetected("Face detection timed out - try again") from e
            except ClasscamError:
                raise
            except Exception as e:
                raise CaptureFailed(f"Unexpected error during face capture: {e}") from e
            if res is None:
                raise NoFaceDetected("No face detected. Please center your face and try again")
            if codec.is_absent(codec.sanitize(res[0])):
                raise CaptureFailed("Invalid face descriptor: no usable values, please try again")
            try:
                return codec.encode(res[0])
            except EncodingError as e:
                raise CaptureFailed(str(e)) from e
        finally:
            self._capturing = False

    async def capture(self, frame) -> str:
        if self.step != EnrolStep.CAPTURE:
            raise IllegalTransition(self.step, EnrolStep.ANGLES)
        epoch = self._epoch
        b64 = await self._snapshot(frame)
        if epoch != self._epoch:
            raise CaptureFailed("enrollment was restarted during capture")
        self.descriptor_b64 = b64
        log.info("[enrol] reference captured for %s", self.full_name)
        self._advance(EnrolStep.ANGLES)
        return b64

    async def capture_angle(self, frame) -> str:
        if self.step != EnrolStep.ANGLES:
            raise IllegalTransition(self.step, EnrolStep.REVIEW)
        epoch = self._epoch
        b64 = await self._snapshot(frame)
        if epoch != self._epoch:
            raise CaptureFailed("enrollment was restarted during capture")
        self.descriptor_b64 = b64
        log.info("[enrol] angle capture replaced reference for %s", self.full_name)
        self._advance(EnrolStep.REVIEW)
        return b64

    # -------------- review / persist --------------
    async def confirm(self) -> Optional[Enrollment]:
        """
        Persist student + enrollment. Ignored (returns None) while a save
        is already in flight. If the student row was written but the
        enrollment failed, StudentNotEnrolled is raised and the next
        confirm() only retries the enrollment.
        """
        if self.step != EnrolStep.REVIEW:
            raise IllegalTransition(self.step, EnrolStep.COMPLETE)
        if self._saving:
            log.debug("[enrol] save already in progress, ignoring")
            return None
        if not self.descriptor_b64:
            raise CaptureFailed("no descriptor captured")

        self._saving = True
        try:
            if self.student is None:
                self.student = await asyncio.to_thread(
                    self.store.create_student, self.student_code, self.full_name, self.descriptor_b64
                )
                log.info("[enrol] student created: %s (%s)", self.student.full_name, self.student.id)
            try:
                self.enrollment = await asyncio.to_thread(self.store.enroll_student, self.class_id, self.student.id)
            except PersistenceError as e:
                log.error("[enrol] student %s created but not enrolled: %s", self.student.id, e)
                raise StudentNotEnrolled(self.student, e) from e
        finally:
            self._saving = False

        log.info("[enrol] %s enrolled in %s", self.full_name, self.class_id)
        self._advance(EnrolStep.COMPLETE)
        return self.enrollment

    # -------------- exits --------------
    def restart(self) -> None:
        """Abandon the current enrollment and go back to INFO."""
        if self.student is not None and self.enrollment is None:
            log.warning("[enrol] abandoning %s: student row exists but is not enrolled", self.student.id)
        self._release_devices()
        self._clear()

    def enroll_another(self) -> None:
        if self.step != EnrolStep.COMPLETE:
            raise IllegalTransition(self.step, EnrolStep.INFO)
        self._release_devices()
        self._clear()
