# classcam/scan.py
# ------------------------------------------------------------
# Live attendance scan:
#   - detection every `detect_every` frames
#   - recognition on every `recognize_every`-th detection pass
#   - nearest-centre tracker keeps identities stable between passes
#   - recognized set is the single source of truth for the count
#   - manual marks win over recognition at completion
# One asyncio task drives the loop; iterations never overlap.
# ------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from .camera import Camera
from .config import DetectorConfig, ScanConfig, TrackerConfig
from .detector import FrameFaceDetector
from .errors import CameraError, IllegalTransition, NothingToComplete, PersistenceError, SessionFailed
from .matcher import GalleryEntry, Match, build_gallery, find_best_match
from .model import ModelResource
from .store import AttendanceStore, AttendanceSummary, Enrollment, Status, summarize
from .tracker import FaceTracker, TrackedFace

log = logging.getLogger(__name__)


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETING = "completing"
    PERSISTED = "persisted"
    FAILED = "failed"


TRANSITIONS = {
    ScanState.IDLE: {ScanState.SCANNING},
    ScanState.SCANNING: {ScanState.COMPLETING, ScanState.FAILED, ScanState.IDLE},
    ScanState.COMPLETING: {ScanState.PERSISTED, ScanState.SCANNING},
    ScanState.PERSISTED: {ScanState.COMPLETING, ScanState.IDLE},
    ScanState.FAILED: {ScanState.IDLE},
}


class RecognitionStatus(str, Enum):
    IDLE = "idle"
    RECOGNIZING = "recognizing"
    SUCCESS = "success"
    FAILED = "failed"


class ManualMark(str, Enum):
    UNSET = "unset"
    PRESENT = "present"
    ABSENT = "absent"


_NEXT_MARK = {
    ManualMark.UNSET: ManualMark.PRESENT,
    ManualMark.PRESENT: ManualMark.ABSENT,
    ManualMark.ABSENT: ManualMark.UNSET,
}


def reconcile_outcomes(student_ids: Iterable[str], recognized: Set[str],
                       manual: Mapping[str, ManualMark]) -> Dict[str, Status]:
    """Manual mark first, then automatic recognition, else absent."""
    out: Dict[str, Status] = {}
    for sid in student_ids:
        mark = manual.get(sid, ManualMark.UNSET)
        if mark == ManualMark.PRESENT:
            out[sid] = Status.PRESENT
        elif mark == ManualMark.ABSENT:
            out[sid] = Status.ABSENT
        elif sid in recognized:
            out[sid] = Status.PRESENT
        else:
            out[sid] = Status.ABSENT
    return out


@dataclass
class ScanStats:
    frames: int = 0
    detections: int = 0
    recognitions: int = 0
    detection_ms: float = 0.0
    recognition_ms: float = 0.0


class ScanSession:
    def __init__(self, class_id: str, store: AttendanceStore, resource: ModelResource,
                 camera: Optional[Camera] = None,
                 cfg: Optional[ScanConfig] = None,
                 detector_cfg: Optional[DetectorConfig] = None,
                 tracker_cfg: Optional[TrackerConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_frame: Optional[Callable] = None):
        self.class_id = class_id
        self.store = store
        self.resource = resource
        self.camera = camera
        self.cfg = cfg or ScanConfig()
        self.detector_cfg = detector_cfg or DetectorConfig()
        self.tracker = FaceTracker(tracker_cfg)
        self.clock = clock
        self.on_frame = on_frame

        self.state = ScanState.IDLE
        self.enrollments: List[Enrollment] = []
        self.gallery: List[GalleryEntry] = []
        self.recognized: Set[str] = set()
        self.manual: Dict[str, ManualMark] = {}
        self.detector: Optional[FrameFaceDetector] = None
        self.stats = ScanStats()
        self.hint = ""
        self.last_summary: Optional[AttendanceSummary] = None

        self._status = RecognitionStatus.IDLE
        self._status_until = 0.0
        self._errors = 0
        self._generation = 0
        self._live = False
        self._in_flight = False
        self._holds_model = False
        self._task: Optional[asyncio.Task] = None

    # -------------- state machine --------------
    def _transition(self, target: ScanState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise IllegalTransition(self.state, target)
        log.info("[scan] %s -> %s", self.state.value, target.value)
        self.state = target

    @property
    def present_count(self) -> int:
        return len(self.recognized)

    @property
    def total_students(self) -> int:
        return len(self.enrollments)

    @property
    def tracks(self) -> List[TrackedFace]:
        return list(self.tracker.tracks)

    @property
    def recognized_faces(self) -> List[TrackedFace]:
        return [t for t in self.tracker.tracks if t.recognized]

    @property
    def status(self) -> RecognitionStatus:
        if self._status in (RecognitionStatus.SUCCESS, RecognitionStatus.FAILED) and self.clock() >= self._status_until:
            return RecognitionStatus.IDLE
        return self._status

    def _flash(self, status: RecognitionStatus, seconds: float) -> None:
        self._status = status
        self._status_until = self.clock() + seconds

    def _set_status(self, status: RecognitionStatus) -> None:
        # a pending success/failure flash is not overwritten until it expires
        if self.status in (RecognitionStatus.SUCCESS, RecognitionStatus.FAILED):
            return
        self._status = status

    # -------------- roster --------------
    async def load_roster(self) -> None:
        self.enrollments = await asyncio.to_thread(self.store.class_enrollments, self.class_id)
        self.gallery = build_gallery(self.enrollments)
        known = {e.student.id for e in self.enrollments}
        self.recognized &= known
        self.manual = {k: v for k, v in self.manual.items() if k in known}

    # -------------- lifecycle --------------
    async def _go_live(self) -> None:
        model = await self.resource.acquire()
        self._holds_model = True
        try:
            if self.camera is not None:
                await self.camera.open()
        except CameraError:
            self._drop_model()
            raise
        self.detector = FrameFaceDetector(model, self.detector_cfg)
        self._errors = 0
        self._live = True

    async def start(self) -> None:
        if self.state != ScanState.IDLE:
            raise IllegalTransition(self.state, ScanState.SCANNING)
        self.hint = "Loading class roster..."
        await self.load_roster()
        self.hint = "Loading face recognition models..."
        await self._go_live()
        self._transition(ScanState.SCANNING)
        self.hint = "Scanning for faces..."
        if not self.gallery:
            log.warning("[scan] no enrolled students with descriptors in class %s", self.class_id)

    async def resume(self) -> None:
        """Re-acquire camera and model after a failed completion."""
        if self.state == ScanState.FAILED:
            raise SessionFailed(self.hint or "scan failed; reset() and start again")
        if self.state != ScanState.SCANNING or self._live:
            return
        await self._go_live()

    def _drop_model(self) -> None:
        if self._holds_model:
            self._holds_model = False
            self.resource.release()

    def _teardown(self) -> None:
        self._generation += 1  # anything still in flight is now stale
        self._live = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if self.camera is not None:
            self.camera.release()
        self.tracker.reset()
        self._drop_model()
        self.detector = None
        self._status = RecognitionStatus.IDLE

    def stop(self) -> None:
        """Cancel the scan: stop the loop, free the camera, forget all tracks."""
        if self.state == ScanState.SCANNING:
            self._teardown()
            self._transition(ScanState.IDLE)

    def reset(self) -> None:
        if self.state == ScanState.COMPLETING:
            raise IllegalTransition(self.state, ScanState.IDLE)
        self._teardown()
        if self.state != ScanState.IDLE:
            self._transition(ScanState.IDLE)
        self.recognized.clear()
        self.manual.clear()
        self._errors = 0
        self.stats = ScanStats()
        self.hint = ""

    async def switch_camera(self, source) -> None:
        if self.camera is None:
            return
        self._generation += 1
        self.tracker.reset()
        if self._live:
            await self.camera.switch(source)
        else:
            self.camera.source = source

    # -------------- errors --------------
    def _note_error(self, what: str) -> None:
        self._errors += 1
        log.warning("[scan] %s (%d/%d)", what, self._errors, self.cfg.max_consecutive_errors)
        if self._errors >= self.cfg.max_consecutive_errors:
            log.error("[scan] too many detection errors, stopping loop")
            self._teardown()
            self._transition(ScanState.FAILED)
            self.hint = "Detection failed. Please restart the scan."
            return
        self._flash(RecognitionStatus.FAILED, 1.0)
        self.hint = "Detection error. Try again..."

    # -------------- loop --------------
    async def process_frame(self, frame) -> None:
        """One loop iteration. A call while another is in flight is a no-op."""
        if self.state != ScanState.SCANNING or not self._live or self._in_flight:
            return
        self._in_flight = True
        gen = self._generation
        try:
            await self._iterate(frame, gen)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if gen == self._generation and self.state == ScanState.SCANNING:
                log.exception("[scan] iteration failed")
                self._note_error(f"iteration error: {e}")
        finally:
            self._in_flight = False

    def _match_pending(self, pending: List[TrackedFace], gallery: List[GalleryEntry]) -> List[Optional[Match]]:
        thr = self.cfg.match_threshold
        return [find_best_match(t.descriptor, gallery, thr) for t in pending]

    async def _iterate(self, frame, gen: int) -> None:
        self.stats.frames += 1
        if self.stats.frames % self.cfg.detect_every:
            return
        self.stats.detections += 1
        recognize = self.stats.detections % self.cfg.recognize_every == 0

        res = await self.detector.detect(frame)
        if gen != self._generation:
            return
        self.stats.detection_ms = res.elapsed_ms
        if not res.ok:
            self._note_error(f"detection failed: {res.error}")
            return
        self._errors = 0

        tracks = self.tracker.update(res.faces)
        if not tracks:
            self._set_status(RecognitionStatus.IDLE)
            self.hint = "No faces detected. Try moving closer or adjusting lighting"
            return

        self._set_status(RecognitionStatus.RECOGNIZING)
        self.hint = f"{len(tracks)} face(s) detected - Processing recognition..."
        if not recognize:
            return
        gallery = self.gallery
        if not gallery:
            self._set_status(RecognitionStatus.IDLE)
            self.hint = "No enrolled students to recognize"
            return

        pending = [t for t in tracks if not t.recognized]
        if not pending:
            self._set_status(RecognitionStatus.IDLE)
            self.hint = f"{self.present_count}/{self.total_students} students recognized"
            return

        t0 = time.perf_counter()
        try:
            matches = await asyncio.wait_for(asyncio.to_thread(self._match_pending, pending, gallery),
                                             timeout=self.cfg.recognize_timeout_s)
        except asyncio.TimeoutError:
            if gen == self._generation:
                self._note_error("recognition timed out")
            return
        if gen != self._generation:
            return
        self.stats.recognitions += 1
        self.stats.recognition_ms = (time.perf_counter() - t0) * 1000

        newly = []
        for track, match in zip(pending, matches):
            if match is None:
                continue
            track.mark_recognized(match.id, match.name, match.distance)
            if self.manual.get(match.id) == ManualMark.ABSENT:
                continue
            if match.id not in self.recognized:
                self.recognized.add(match.id)
                newly.append(match)

        if newly:
            for m in newly:
                log.info("[scan] recognized %s (d=%.3f)", m.name, m.distance)
            self._flash(RecognitionStatus.SUCCESS, self.cfg.success_status_s)
            self.hint = f"{self.present_count}/{self.total_students} students recognized - {len(tracks)} faces detected"
        else:
            self._set_status(RecognitionStatus.IDLE)
            self.hint = f"{self.present_count}/{self.total_students} students recognized"

    async def run(self) -> None:
        """Pull frames from the camera until the scan leaves SCANNING or goes offline."""
        if self.camera is None:
            raise ValueError("run() needs a camera; drive process_frame() directly otherwise")
        self._task = asyncio.current_task()
        interval = 1.0 / max(1, self.cfg.target_fps)
        try:
            while self.state == ScanState.SCANNING and self._live:
                gen = self._generation
                frame = await self.camera.read()
                if gen != self._generation:
                    continue
                if frame is None:
                    self._note_error("camera read failed")
                else:
                    await self.process_frame(frame)
                    if self.on_frame is not None and gen == self._generation:
                        self.on_frame(frame, self)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            log.debug("[scan] loop cancelled")
        finally:
            if self._task is asyncio.current_task():
                self._task = None

    # -------------- manual override --------------
    def set_manual(self, student_id: str, mark: ManualMark) -> None:
        if student_id not in {e.student.id for e in self.enrollments}:
            raise KeyError(student_id)
        if self.state == ScanState.COMPLETING:
            raise IllegalTransition(self.state, self.state)
        mark = ManualMark(mark)
        self.manual[student_id] = mark
        if mark == ManualMark.PRESENT:
            self.recognized.add(student_id)
        else:
            self.recognized.discard(student_id)

    def toggle_manual(self, student_id: str) -> ManualMark:
        nxt = _NEXT_MARK[self.manual.get(student_id, ManualMark.UNSET)]
        self.set_manual(student_id, nxt)
        return nxt

    # -------------- completion --------------
    def outcomes(self) -> Dict[str, Status]:
        return reconcile_outcomes((e.student.id for e in self.enrollments), self.recognized, self.manual)

    async def complete(self, day: Optional[date] = None) -> AttendanceSummary:
        if ScanState.COMPLETING not in TRANSITIONS[self.state]:
            raise IllegalTransition(self.state, ScanState.COMPLETING)
        outcomes = self.outcomes()
        if not any(s == Status.PRESENT for s in outcomes.values()):
            raise NothingToComplete("Mark or recognize at least one student before completing")

        day = day or date.today()
        self._teardown()
        self._transition(ScanState.COMPLETING)
        summary = summarize(self.class_id, day, outcomes)
        try:
            await asyncio.to_thread(self.store.replace_attendance, self.class_id, day, outcomes, summary)
        except BaseException as e:
            # cancelled or failed: the write may or may not have landed, a retry replaces it
            if isinstance(e, PersistenceError):
                log.error("[scan] attendance completion failed: %s", e)
            else:
                log.warning("[scan] attendance completion interrupted: %r", e)
            self._transition(ScanState.SCANNING)
            self.hint = "Failed to save attendance. Please try again."
            raise
        self._transition(ScanState.PERSISTED)
        self.last_summary = summary
        self.hint = f"Attendance saved: {summary.present_count}/{summary.total_students} present"
        return summary
