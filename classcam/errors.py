# classcam/errors.py
from __future__ import annotations

from typing import Any, Optional


class ClasscamError(Exception):
    """Base for everything classcam raises on purpose."""


# -------------- codec --------------
class EncodingError(ClasscamError):
    pass


class DecodingError(ClasscamError):
    pass


class DimensionMismatch(ClasscamError):
    def __init__(self, a_len: int, b_len: int):
        super().__init__(f"descriptor lengths differ: {a_len} != {b_len}")
        self.a_len = a_len
        self.b_len = b_len


# -------------- model --------------
class ModelLoadError(ClasscamError):
    """The face model could not be loaded. Safe to retry."""


class DetectionTimeout(ClasscamError):
    pass


# -------------- camera --------------
class CameraError(ClasscamError):
    message = "Camera error. Please check the device and try again."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.message)
        self.detail = detail


class CameraPermissionDenied(CameraError):
    message = "Camera permission denied. Allow this user to access the video device and retry."


class CameraNotFound(CameraError):
    message = "No camera found. Connect a camera or pick another index and try again."


class CameraBusy(CameraError):
    message = "Camera is being used by another application. Close it and try again."


class CameraUnsupported(CameraError):
    message = "Camera not supported by this OpenCV build or backend."


# -------------- persistence --------------
class PersistenceError(ClasscamError):
    """A store write or read failed. The caller may retry."""


class StudentNotEnrolled(PersistenceError):
    """The student row exists but linking it to the class failed."""

    def __init__(self, student: Any, cause: Optional[BaseException] = None):
        super().__init__(
            f"student {getattr(student, 'full_name', student)!r} was created but not enrolled: {cause}"
        )
        self.student = student
        self.cause = cause


# -------------- state machines --------------
class IllegalTransition(ClasscamError):
    def __init__(self, current: Any, target: Any):
        super().__init__(f"illegal transition {current} -> {target}")
        self.current = current
        self.target = target


class NothingToComplete(ClasscamError):
    """Completion needs at least one present student."""


class SessionFailed(ClasscamError):
    """Too many consecutive loop errors; the scan must be restarted."""


class NoFaceDetected(ClasscamError):
    """Soft capture failure: center the face and retry."""


class CaptureFailed(ClasscamError):
    pass
