# classcam/test_store.py
from __future__ import annotations

from datetime import date

import psycopg2
import psycopg2.extras
import pytest

from classcam.errors import PersistenceError
from classcam.store import AttendanceStore, MemoryStore, PostgresStore, Status, summarize

DAY = date(2026, 3, 9)


def test_duplicate_student_code_rejected(store):
    store.create_student("STU1", "Ann", None)
    with pytest.raises(PersistenceError):
        store.create_student("STU1", "Ann again", None)


def test_enrollment_checks(store):
    c = store.create_class("Maths")
    s = store.create_student("STU1", "Ann", None)
    with pytest.raises(PersistenceError):
        store.enroll_student(c.id, "missing")
    store.enroll_student(c.id, s.id)
    with pytest.raises(PersistenceError):
        store.enroll_student(c.id, s.id)


def test_enrollments_newest_first_and_copied(store):
    c = store.create_class("Maths")
    for i, n in enumerate(["Ann", "Ben", "Cy"]):
        store.enroll_student(c.id, store.create_student(f"STU{i}", n, None).id)
    rows = store.class_enrollments(c.id)
    assert [e.student.full_name for e in rows] == ["Cy", "Ben", "Ann"]
    rows[0].student.full_name = "changed"
    assert store.class_enrollments(c.id)[0].student.full_name == "Cy"


def test_replace_attendance_overwrites_the_day(store):
    c = store.create_class("Maths")
    a = store.create_student("STU1", "Ann", None)
    b = store.create_student("STU2", "Ben", None)
    first = {a.id: Status.PRESENT, b.id: Status.ABSENT}
    store.replace_attendance(c.id, DAY, first, summarize(c.id, DAY, first))
    second = {a.id: Status.ABSENT, b.id: Status.PRESENT}
    store.replace_attendance(c.id, DAY, second, summarize(c.id, DAY, second))
    other_day = date(2026, 3, 10)
    store.replace_attendance(c.id, other_day, first, summarize(c.id, other_day, first))

    view = store.attendance_for(c.id, DAY)
    assert [s.full_name for s in view.present] == ["Ben"]
    assert [s.full_name for s in view.absent] == ["Ann"]
    assert view.summary.present_count == 1 and view.summary.total_students == 2
    assert len(store.records) == 4
    assert len(store.sessions) == 2


def test_summarize_counts():
    s = summarize("c", DAY, {"a": Status.PRESENT, "b": Status.ABSENT, "c": Status.PRESENT}, teacher_id="t")
    assert (s.total_students, s.present_count, s.absent_count, s.teacher_id) == (3, 2, 1, "t")


def test_delete_student_unenrolls_first(store):
    c = store.create_class("Maths")
    s = store.create_student("STU1", "Ann", None)
    store.enroll_student(c.id, s.id)
    store.delete_student(s.id, c.id)
    assert store.class_enrollments(c.id) == []
    assert s.id not in store.students


def test_list_classes_newest_first(store):
    store.create_class("A")
    store.create_class("B")
    assert [c.name for c in store.list_classes()] == ["B", "A"]


# -------------- PostgresStore against a fake connection --------------
class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 1

    def execute(self, sql, params=None):
        if self.conn.fail_on and self.conn.fail_on in sql:
            raise psycopg2.OperationalError("server closed the connection unexpectedly")
        self.conn.executed.append((sql, params))
        self.rowcount = self.conn.rowcount

    def executemany(self, sql, rows):
        self.conn.batches.append((sql, list(rows)))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None


class FakeConn:
    def __init__(self, rows=None, fail_on=None, rowcount=1):
        self.rows = list(rows or [])
        self.fail_on = fail_on
        self.rowcount = rowcount
        self.executed = []
        self.batches = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


@pytest.fixture
def pg(monkeypatch):
    holder = {}

    def connect(dsn, cursor_factory=None):
        assert cursor_factory is psycopg2.extras.DictCursor
        return holder["conn"]

    monkeypatch.setattr(psycopg2, "connect", connect)
    return PostgresStore("postgresql://test"), holder


def test_pg_replace_attendance_is_one_transaction(pg):
    store, holder = pg
    holder["conn"] = conn = FakeConn()
    outcomes = {"s1": Status.PRESENT, "s2": Status.ABSENT}
    store.replace_attendance("c1", DAY, outcomes, summarize("c1", DAY, outcomes))

    verbs = [sql.split()[0] + " " + sql.split()[2] for sql, _ in conn.executed]
    assert verbs == ["DELETE attendance_sessions", "INSERT attendance_sessions", "DELETE attendance_records"]
    assert conn.batches[0][1] == [("c1", "s1", DAY, "present"), ("c1", "s2", DAY, "absent")]
    assert conn.committed and conn.closed


def test_pg_unknown_class_rolls_back(pg):
    store, holder = pg
    holder["conn"] = conn = FakeConn(rowcount=0)
    outcomes = {"s1": Status.PRESENT}
    with pytest.raises(PersistenceError):
        store.replace_attendance("nope", DAY, outcomes, summarize("nope", DAY, outcomes))
    assert conn.rolled_back and not conn.committed and conn.closed
    assert conn.batches == []


def test_pg_driver_errors_become_persistence_errors(pg):
    store, holder = pg
    holder["conn"] = conn = FakeConn(fail_on="INSERT INTO students")
    with pytest.raises(PersistenceError):
        store.create_student("STU1", "Ann", "AAAA")
    assert conn.rolled_back and conn.closed


def test_pg_create_student_maps_row(pg):
    store, holder = pg
    holder["conn"] = FakeConn(rows=[{"id": 42, "student_id": "STU1", "full_name": "Ann", "facial_id": None}])
    s = store.create_student("STU1", "Ann", None)
    assert (s.id, s.student_id, s.full_name) == ("42", "STU1", "Ann")


def test_pg_connection_failure(monkeypatch):
    def refuse(*a, **kw):
        raise psycopg2.OperationalError("could not connect to server")

    monkeypatch.setattr(psycopg2, "connect", refuse)
    with pytest.raises(PersistenceError):
        PostgresStore("postgresql://nowhere").list_classes()


def test_memory_store_is_an_attendance_store():
    assert isinstance(MemoryStore(), AttendanceStore)
