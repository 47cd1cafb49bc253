# classcam/cli.py
# ------------------------------------------------------------
# classcam scan    --class-id ID   live scan, ESC quits, c completes
# classcam enrol   --class-id ID --name "Full Name"
# classcam results --class-id ID [--date YYYY-MM-DD]
# classcam classes | add-class --name N | fetch-models
# ------------------------------------------------------------

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from typing import Optional

import cv2

from . import config
from .camera import Camera
from .config import CameraConfig, ScanConfig
from .enrol import EnrollmentController, EnrolStep
from .errors import (
    CameraError,
    CaptureFailed,
    ModelLoadError,
    NoFaceDetected,
    NothingToComplete,
    PersistenceError,
    StudentNotEnrolled,
)
from .model import download_weights, get_model_resource
from .scan import ManualMark, RecognitionStatus, ScanSession, ScanState
from .store import AttendanceStore, MemoryStore, PostgresStore

log = logging.getLogger("classcam")

GREEN = (0, 220, 0)
AMBER = (0, 170, 255)
RED = (40, 40, 220)
font = cv2.FONT_HERSHEY_SIMPLEX


def make_store(args) -> AttendanceStore:
    dsn = getattr(args, "db", None) or config.DB_URI
    if dsn:
        return PostgresStore(dsn, teacher_id=getattr(args, "teacher_id", None))
    log.warning("[cli] DB_URI not set: using an in-memory store, nothing will be kept")
    return MemoryStore()


def _parse_day(s: Optional[str]) -> date:
    return date.fromisoformat(s) if s else date.today()


# -------------- scan --------------
def draw_overlay(frame, session: ScanSession) -> None:
    for t in session.recognized_faces:
        x1, y1, x2, y2 = t.box.as_xyxy()
        cv2.rectangle(frame, (x1, y1), (x2, y2), GREEN, 2)
        cv2.putText(frame, f"{t.name} {t.accuracy:.0f}%", (x1, max(20, y1 - 10)),
                    font, 0.6, GREEN, 2, cv2.LINE_AA)
    color = {RecognitionStatus.SUCCESS: GREEN, RecognitionStatus.FAILED: RED}.get(session.status, AMBER)
    head = f"{session.present_count}/{session.total_students} present | {session.hint}"
    cv2.putText(frame, head, (12, 28), font, 0.6, color, 2, cv2.LINE_AA)


async def _scan(args) -> int:
    store = make_store(args)
    cam = Camera(CameraConfig(index=args.camera), mirror=args.mirror)
    cfg = ScanConfig(match_threshold=args.threshold) if args.threshold is not None else ScanConfig()
    keys = {"complete": False, "quit": False}

    def preview(frame, s: ScanSession):
        draw_overlay(frame, s)
        cv2.imshow("classcam scan", frame)
        k = cv2.waitKey(1) & 0xFF
        if k == 27:
            keys["quit"] = True
        elif k == ord("c"):
            keys["complete"] = True

    session = ScanSession(args.class_id, store, get_model_resource(), camera=cam, cfg=cfg,
                          on_frame=preview if args.preview else None)
    try:
        await session.start()
    except CameraError as e:
        print(f"[scan] {e.message} ({e.detail})", file=sys.stderr)
        return 2
    except (ModelLoadError, PersistenceError) as e:
        print(f"[scan] {e}", file=sys.stderr)
        return 2

    loop = asyncio.get_running_loop()
    deadline = loop.time() + args.duration if args.duration else None
    task = asyncio.create_task(session.run())
    try:
        while not task.done():
            if keys["quit"] or keys["complete"]:
                break
            if deadline is not None and loop.time() >= deadline:
                keys["complete"] = True
                break
            await asyncio.sleep(0.1)
    finally:
        if args.preview:
            cv2.destroyAllWindows()

    if session.state == ScanState.FAILED:
        print(f"[scan] {session.hint}", file=sys.stderr)
        return 1
    if keys["quit"]:
        session.stop()
        print("[scan] stopped, nothing saved")
        return 0

    for sid in args.present or []:
        session.set_manual(sid, ManualMark.PRESENT)
    for sid in args.absent or []:
        session.set_manual(sid, ManualMark.ABSENT)

    day = _parse_day(args.date)
    for attempt in range(1, args.retries + 1):
        try:
            summary = await session.complete(day)
            break
        except NothingToComplete as e:
            session.stop()
            print(f"[scan] {e}", file=sys.stderr)
            return 1
        except PersistenceError as e:
            print(f"[scan] save failed (attempt {attempt}/{args.retries}): {e}", file=sys.stderr)
            await asyncio.sleep(1.0)
    else:
        return 1
    print(f"[scan] saved {summary.present_count}/{summary.total_students} present for {day}")
    return 0


# -------------- enrol --------------
async def _capture_with_retry(ctl: EnrollmentController, cam: Camera, angles: bool, tries: int) -> None:
    for attempt in range(1, tries + 1):
        frame = await cam.read()
        try:
            if angles:
                await ctl.capture_angle(frame)
            else:
                await ctl.capture(frame)
            return
        except (NoFaceDetected, CaptureFailed) as e:
            print(f"[enrol] {e} ({attempt}/{tries})")
            await asyncio.sleep(1.0)
    raise CaptureFailed("giving up after repeated capture failures")


async def _enrol(args) -> int:
    store = make_store(args)
    cam = Camera(CameraConfig(index=args.camera))
    ctl = EnrollmentController(args.class_id, store, get_model_resource(), camera=cam)
    try:
        await ctl.begin(args.name, args.code)
        print("[enrol] Position your face in front of the camera...")
        await ctl.watch_position()
        print("[enrol] Face stable, capturing reference")
        await _capture_with_retry(ctl, cam, angles=False, tries=args.tries)
        print("[enrol] Turn your head slowly left, then right, then back to center")
        await asyncio.sleep(args.angle_delay)
        await _capture_with_retry(ctl, cam, angles=True, tries=args.tries)
    except CameraError as e:
        ctl.restart()
        print(f"[enrol] {e.message} ({e.detail})", file=sys.stderr)
        return 2
    except (ModelLoadError, CaptureFailed) as e:
        ctl.restart()
        print(f"[enrol] {e}", file=sys.stderr)
        return 2

    if ctl.step != EnrolStep.REVIEW or not ctl.descriptor_b64:
        print(f"[enrol] capture did not finish (stopped at {ctl.step.value})", file=sys.stderr)
        ctl.restart()
        return 2
    print(f"[enrol] Review: {ctl.full_name} ({ctl.student_code}), descriptor {len(ctl.descriptor_b64)} chars")
    if not args.yes and input("Save this student? [y/N] ").strip().lower() != "y":
        ctl.restart()
        print("[enrol] discarded")
        return 0

    for attempt in range(1, args.retries + 1):
        try:
            await ctl.confirm()
            print(f"[enrol] {ctl.full_name} enrolled successfully")
            return 0
        except StudentNotEnrolled as e:
            print(f"[enrol] student created but NOT enrolled: {e.cause}", file=sys.stderr)
        except PersistenceError as e:
            print(f"[enrol] save failed: {e}", file=sys.stderr)
        await asyncio.sleep(1.0)
    return 1


# -------------- results / classes / models --------------
def _results(args) -> int:
    store = make_store(args)
    day = _parse_day(args.date)
    view = store.attendance_for(args.class_id, day)
    if view.summary is None and not view.present and not view.absent:
        print(f"No attendance recorded for {args.class_id} on {day}")
        return 1
    total = len(view.present) + len(view.absent)
    rate = (100.0 * len(view.present) / total) if total else 0.0
    print(f"{args.class_id} {day}: {len(view.present)}/{total} present ({rate:.0f}%)")
    for s in view.present:
        print(f"  present  {s.full_name} ({s.student_id})")
    for s in view.absent:
        print(f"  absent   {s.full_name} ({s.student_id})")
    return 0


def _classes(args) -> int:
    for c in make_store(args).list_classes():
        print(f"{c.id}  {c.name}  {c.subject or ''} {c.period or ''}".rstrip())
    return 0


def _add_class(args) -> int:
    c = make_store(args).create_class(args.name, args.subject, args.period, args.teacher_id)
    print(c.id)
    return 0


def _fetch_models(args) -> int:
    written = download_weights(models_dir=args.models_dir)
    print(f"[fetch] {len(written)} file(s) downloaded")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="classcam", description="Classroom attendance by face recognition")
    p.add_argument("--db", default=None, help="PostgreSQL DSN (default: $DB_URI)")
    p.add_argument("--teacher-id", default=None, help="teacher id written with attendance sessions")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("scan", help="scan a classroom and save attendance")
    s.add_argument("--class-id", required=True)
    s.add_argument("--camera", type=int, default=config.CAM_INDEX)
    s.add_argument("--mirror", action="store_true", help="flip frames horizontally")
    s.add_argument("--threshold", type=float, default=None, help="match distance threshold")
    s.add_argument("--duration", type=float, default=0.0, help="auto-complete after N seconds (0: wait for key)")
    s.add_argument("--no-preview", dest="preview", action="store_false")
    s.add_argument("--present", action="append", metavar="STUDENT_UUID", help="manually mark present")
    s.add_argument("--absent", action="append", metavar="STUDENT_UUID", help="manually mark absent")
    s.add_argument("--date", default=None, help="attendance date (YYYY-MM-DD, default today)")
    s.add_argument("--retries", type=int, default=3)
    s.set_defaults(func=lambda a: asyncio.run(_scan(a)))

    e = sub.add_parser("enrol", help="capture and enrol one student")
    e.add_argument("--class-id", required=True)
    e.add_argument("--name", required=True)
    e.add_argument("--code", default=None, help="student code (default: STU<epoch-ms>)")
    e.add_argument("--camera", type=int, default=config.CAM_INDEX)
    e.add_argument("--tries", type=int, default=5)
    e.add_argument("--angle-delay", type=float, default=4.0)
    e.add_argument("--retries", type=int, default=3)
    e.add_argument("-y", "--yes", action="store_true", help="save without asking")
    e.set_defaults(func=lambda a: asyncio.run(_enrol(a)))

    r = sub.add_parser("results", help="show saved attendance")
    r.add_argument("--class-id", required=True)
    r.add_argument("--date", default=None)
    r.set_defaults(func=_results)

    c = sub.add_parser("classes", help="list classes")
    c.set_defaults(func=_classes)

    a = sub.add_parser("add-class", help="create a class")
    a.add_argument("--name", required=True)
    a.add_argument("--subject", default=None)
    a.add_argument("--period", default=None)
    a.set_defaults(func=_add_class)

    m = sub.add_parser("fetch-models", help="download face model weights")
    m.add_argument("--models-dir", default=None)
    m.set_defaults(func=_fetch_models)
    return p


def main(argv=None) -> int:
    logging.basicConfig(level=config.LOG_LEVEL.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
