# classcam/test_matcher.py
from __future__ import annotations

from classcam import codec
from classcam.conftest import vec
from classcam.matcher import GalleryEntry, build_gallery, find_best_match
from classcam.store import Enrollment, Student


def entry(sid, desc, name=None):
    return GalleryEntry(student_id=sid, name=name or sid, descriptor=desc)


def test_empty_gallery_never_matches():
    assert find_best_match(vec(1.0), [], 10.0) is None


def test_nearest_entry_wins():
    gallery = [entry("a", vec(1.0)), entry("b", vec(0.0, 1.0)), entry("c", vec(0.75))]
    m = find_best_match(vec(0.8), gallery, 0.5)
    assert m.id == "c"
    assert m.distance == codec.distance(vec(0.8), vec(0.75))


def test_threshold_is_inclusive():
    gallery = [entry("a", vec(0.0, 0.0, 1.0))]
    probe = vec(0.5, 0.0, 1.0)   # exactly 0.5 away
    assert find_best_match(probe, gallery, 0.5).id == "a"
    assert find_best_match(probe, gallery, 0.49) is None


def test_ties_keep_first_entry():
    gallery = [entry("first", vec(1.0)), entry("second", vec(1.0))]
    assert find_best_match(vec(1.0, 0.2), gallery, 1.0).id == "first"


def test_mismatched_dimension_entries_are_skipped():
    gallery = [entry("short", vec(1.0, dim=64)), entry("ok", vec(1.0, 0.1))]
    assert find_best_match(vec(1.0), gallery, 0.5).id == "ok"


def _enrollment(i, facial):
    s = Student(id=f"s{i}", student_id=f"STU{i}", full_name=f"Student {i}", facial_id=facial)
    return Enrollment(id=f"e{i}", class_id="c1", student=s)


def test_build_gallery_skips_unusable_descriptors():
    good = codec.encode(vec(1.0))
    rows = [
        _enrollment(1, good),
        _enrollment(2, None),
        _enrollment(3, "%%%"),
        _enrollment(4, codec.encode(vec())),
        _enrollment(1, good),     # duplicate student
        _enrollment(5, codec.encode(vec(0.0, 1.0))),
    ]
    gallery = build_gallery(rows)
    assert [g.student_id for g in gallery] == ["s1", "s5"]
    assert gallery[0].name == "Student 1"
