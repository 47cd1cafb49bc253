# classcam/store.py
# ------------------------------------------------------------
# Persistent store: classes, students, enrollments,
# attendance_records, attendance_sessions.
#   - AttendanceStore: the surface the core relies on
#   - MemoryStore: in-process (tests, offline runs)
#   - PostgresStore: psycopg2 against the hosted Postgres schema
# ------------------------------------------------------------

from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional

import psycopg2
import psycopg2.extras

from .errors import PersistenceError

log = logging.getLogger(__name__)


class Status(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


@dataclass
class ClassRecord:
    id: str
    name: str
    subject: Optional[str] = None
    period: Optional[str] = None
    teacher_id: Optional[str] = None


@dataclass
class Student:
    id: str
    student_id: str          # school-facing code, e.g. STU1699999999999
    full_name: str
    facial_id: Optional[str] = None   # encoded descriptor


@dataclass
class Enrollment:
    id: str
    class_id: str
    student: Student


@dataclass
class AttendanceSummary:
    class_id: str
    date: date
    total_students: int
    present_count: int
    absent_count: int
    teacher_id: Optional[str] = None


@dataclass
class AttendanceView:
    summary: Optional[AttendanceSummary]
    present: List[Student] = field(default_factory=list)
    absent: List[Student] = field(default_factory=list)


class AttendanceStore:
    def class_enrollments(self, class_id: str) -> List[Enrollment]:
        raise NotImplementedError

    def create_student(self, student_code: str, full_name: str, facial_id: Optional[str]) -> Student:
        raise NotImplementedError

    def enroll_student(self, class_id: str, student_id: str) -> Enrollment:
        raise NotImplementedError

    def replace_attendance(self, class_id: str, day: date, outcomes: Mapping[str, Status],
                           summary: AttendanceSummary) -> None:
        """Delete whatever exists for (class, day) and write this set instead."""
        raise NotImplementedError

    def attendance_for(self, class_id: str, day: date) -> AttendanceView:
        raise NotImplementedError

    def create_class(self, name: str, subject: Optional[str] = None, period: Optional[str] = None,
                     teacher_id: Optional[str] = None) -> ClassRecord:
        raise NotImplementedError

    def list_classes(self) -> List[ClassRecord]:
        raise NotImplementedError

    def delete_student(self, student_id: str, class_id: str) -> None:
        raise NotImplementedError


def summarize(class_id: str, day: date, outcomes: Mapping[str, Status],
              teacher_id: Optional[str] = None) -> AttendanceSummary:
    present = sum(1 for s in outcomes.values() if s == Status.PRESENT)
    return AttendanceSummary(
        class_id=class_id, date=day, total_students=len(outcomes),
        present_count=present, absent_count=len(outcomes) - present, teacher_id=teacher_id,
    )


# -------------- in-memory --------------
class MemoryStore(AttendanceStore):
    def __init__(self):
        self.classes: Dict[str, ClassRecord] = {}
        self.students: Dict[str, Student] = {}
        self.enrollments: List[Enrollment] = []
        self.records: List[dict] = []
        self.sessions: List[AttendanceSummary] = []

    @staticmethod
    def _id() -> str:
        return str(uuid.uuid4())

    def class_enrollments(self, class_id: str) -> List[Enrollment]:
        return [copy.deepcopy(e) for e in reversed(self.enrollments) if e.class_id == class_id]

    def create_student(self, student_code, full_name, facial_id):
        if any(s.student_id == student_code for s in self.students.values()):
            raise PersistenceError(f"duplicate student_id {student_code!r}")
        s = Student(id=self._id(), student_id=student_code, full_name=full_name, facial_id=facial_id)
        self.students[s.id] = s
        return copy.deepcopy(s)

    def enroll_student(self, class_id, student_id):
        if student_id not in self.students:
            raise PersistenceError(f"unknown student {student_id}")
        if any(e.class_id == class_id and e.student.id == student_id for e in self.enrollments):
            raise PersistenceError(f"student {student_id} already enrolled in {class_id}")
        e = Enrollment(id=self._id(), class_id=class_id, student=self.students[student_id])
        self.enrollments.append(e)
        return copy.deepcopy(e)

    def replace_attendance(self, class_id, day, outcomes, summary):
        self.sessions = [s for s in self.sessions if not (s.class_id == class_id and s.date == day)]
        self.records = [r for r in self.records if not (r["class_id"] == class_id and r["date"] == day)]
        self.sessions.append(summary)
        now = datetime.now(timezone.utc)
        for sid, status in outcomes.items():
            self.records.append({"class_id": class_id, "student_id": sid, "date": day,
                                 "status": Status(status).value, "recorded_at": now})

    def attendance_for(self, class_id, day):
        summary = next((s for s in self.sessions if s.class_id == class_id and s.date == day), None)
        view = AttendanceView(summary=summary)
        for r in self.records:
            if r["class_id"] != class_id or r["date"] != day:
                continue
            st = self.students.get(r["student_id"])
            if st is None:
                continue
            (view.present if r["status"] == Status.PRESENT.value else view.absent).append(copy.deepcopy(st))
        return view

    def create_class(self, name, subject=None, period=None, teacher_id=None):
        c = ClassRecord(id=self._id(), name=name, subject=subject, period=period, teacher_id=teacher_id)
        self.classes[c.id] = c
        return c

    def list_classes(self):
        return list(reversed(list(self.classes.values())))

    def delete_student(self, student_id, class_id):
        self.enrollments = [e for e in self.enrollments
                            if not (e.student.id == student_id and e.class_id == class_id)]
        self.students.pop(student_id, None)


# -------------- PostgreSQL --------------
class PostgresStore(AttendanceStore):
    def __init__(self, dsn: str, teacher_id: Optional[str] = None):
        self.dsn = dsn
        self.teacher_id = teacher_id

    def connect(self):
        try:
            return psycopg2.connect(self.dsn, cursor_factory=psycopg2.extras.DictCursor)
        except psycopg2.Error as e:
            log.error("[db] connection failed: %s", e)
            raise PersistenceError(f"DB connection failed: {e}") from e

    @contextmanager
    def _tx(self) -> Iterator["psycopg2.extensions.cursor"]:
        conn = self.connect()
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            log.error("[db] %s", e)
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _student(row) -> Student:
        return Student(id=str(row["id"]), student_id=row["student_id"],
                       full_name=row["full_name"], facial_id=row["facial_id"])

    def class_enrollments(self, class_id):
        with self._tx() as cur:
            cur.execute(
                "SELECT e.id AS enrollment_id, e.class_id, s.id, s.student_id, s.full_name, s.facial_id "
                "FROM enrollments e JOIN students s ON s.id = e.student_id "
                "WHERE e.class_id = %s ORDER BY e.enrolled_at DESC",
                (class_id,),
            )
            rows = cur.fetchall()
        return [Enrollment(id=str(r["enrollment_id"]), class_id=str(r["class_id"]), student=self._student(r))
                for r in rows]

    def create_student(self, student_code, full_name, facial_id):
        with self._tx() as cur:
            cur.execute(
                "INSERT INTO students (student_id, full_name, facial_id) VALUES (%s, %s, %s) "
                "RETURNING id, student_id, full_name, facial_id",
                (student_code, full_name, facial_id),
            )
            row = cur.fetchone()
        if row is None:
            raise PersistenceError("Student creation failed - no ID returned")
        return self._student(row)

    def enroll_student(self, class_id, student_id):
        with self._tx() as cur:
            cur.execute(
                "INSERT INTO enrollments (class_id, student_id) VALUES (%s, %s) RETURNING id",
                (class_id, student_id),
            )
            eid = cur.fetchone()["id"]
            cur.execute("SELECT id, student_id, full_name, facial_id FROM students WHERE id = %s", (student_id,))
            srow = cur.fetchone()
        return Enrollment(id=str(eid), class_id=class_id, student=self._student(srow))

    def replace_attendance(self, class_id, day, outcomes, summary):
        teacher = summary.teacher_id or self.teacher_id
        with self._tx() as cur:
            cur.execute("DELETE FROM attendance_sessions WHERE class_id = %s AND date = %s", (class_id, day))
            cur.execute(
                "INSERT INTO attendance_sessions "
                "(class_id, teacher_id, date, total_students, present_count, absent_count) "
                "SELECT c.id, COALESCE(%s, c.teacher_id), %s, %s, %s, %s FROM classes c WHERE c.id = %s",
                (teacher, day, summary.total_students, summary.present_count, summary.absent_count, class_id),
            )
            if cur.rowcount != 1:
                raise PersistenceError(f"class {class_id} not found")
            cur.execute("DELETE FROM attendance_records WHERE class_id = %s AND date = %s", (class_id, day))
            rows = [(class_id, sid, day, Status(st).value) for sid, st in outcomes.items()]
            if rows:
                cur.executemany(
                    "INSERT INTO attendance_records (class_id, student_id, date, status) VALUES (%s, %s, %s, %s)",
                    rows,
                )
        log.info("[db] attendance saved for %s on %s (%d records)", class_id, day, len(outcomes))

    def attendance_for(self, class_id, day):
        with self._tx() as cur:
            cur.execute(
                "SELECT class_id, teacher_id, date, total_students, present_count, absent_count "
                "FROM attendance_sessions WHERE class_id = %s AND date = %s",
                (class_id, day),
            )
            srow = cur.fetchone()
            cur.execute(
                "SELECT r.status, s.id, s.student_id, s.full_name, s.facial_id "
                "FROM attendance_records r JOIN students s ON s.id = r.student_id "
                "WHERE r.class_id = %s AND r.date = %s ORDER BY s.full_name",
                (class_id, day),
            )
            rows = cur.fetchall()
        summary = None
        if srow is not None:
            summary = AttendanceSummary(
                class_id=str(srow["class_id"]), date=srow["date"], total_students=srow["total_students"],
                present_count=srow["present_count"], absent_count=srow["absent_count"],
                teacher_id=str(srow["teacher_id"]) if srow["teacher_id"] else None,
            )
        view = AttendanceView(summary=summary)
        for r in rows:
            (view.present if r["status"] == Status.PRESENT.value else view.absent).append(self._student(r))
        return view

    def create_class(self, name, subject=None, period=None, teacher_id=None):
        with self._tx() as cur:
            cur.execute(
                "INSERT INTO classes (teacher_id, name, subject, period) VALUES (%s, %s, %s, %s) "
                "RETURNING id, name, subject, period, teacher_id",
                (teacher_id or self.teacher_id, name, subject, period),
            )
            r = cur.fetchone()
        return ClassRecord(id=str(r["id"]), name=r["name"], subject=r["subject"],
                           period=r["period"], teacher_id=str(r["teacher_id"]))

    def list_classes(self):
        with self._tx() as cur:
            cur.execute("SELECT id, name, subject, period, teacher_id FROM classes ORDER BY created_at DESC")
            rows = cur.fetchall()
        return [ClassRecord(id=str(r["id"]), name=r["name"], subject=r["subject"],
                            period=r["period"], teacher_id=str(r["teacher_id"])) for r in rows]

    def delete_student(self, student_id, class_id):
        with self._tx() as cur:
            cur.execute("DELETE FROM enrollments WHERE student_id = %s AND class_id = %s", (student_id, class_id))
            cur.execute("DELETE FROM students WHERE id = %s", (student_id,))
