from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Dict, Iterable, List

from .errors import BadParams, MarkbookError, NotFound
from .models import MarkSet, Student

logger = logging.getLogger(__name__)


def normalize_mask(raw: str | None, mark_set_count: int) -> str:
    """Return a '0'/'1' string of exactly ``mark_set_count`` characters.

    Unknown strings fail open to all-valid.
    """
    if mark_set_count <= 0:
        return ""
    text = (raw or "").strip().upper()
    if not text or text == "TBA" or not set(text) <= {"0", "1"}:
        return "1" * mark_set_count
    if len(text) >= mark_set_count:
        return text[:mark_set_count]
    return text + "1" * (mark_set_count - len(text))


class MembershipMask(Sequence):
    """Per-student validity bits indexed by mark set sort order."""

    def __init__(self, bits: Iterable[bool]):
        self._bits = [bool(b) for b in bits]

    @classmethod
    def from_string(cls, raw: str | None, mark_set_count: int) -> "MembershipMask":
        return cls(ch == "1" for ch in normalize_mask(raw, mark_set_count))

    def to_string(self) -> str:
        return "".join("1" if b else "0" for b in self._bits)

    def __getitem__(self, idx):
        return self._bits[idx]

    def __len__(self) -> int:
        return len(self._bits)

    def is_set(self, mark_set: MarkSet) -> bool:
        if 0 <= mark_set.sort_order < len(self._bits):
            return self._bits[mark_set.sort_order]
        return True

    def with_bit(self, idx: int, enabled: bool) -> "MembershipMask":
        bits = list(self._bits)
        if 0 <= idx < len(bits):
            bits[idx] = enabled
        return MembershipMask(bits)

    def by_mark_set(self, mark_sets: Iterable[MarkSet]) -> Dict[str, bool]:
        return {m.id: self.is_set(m) for m in mark_sets}

    def __repr__(self) -> str:
        return f"MembershipMask({self.to_string()!r})"


def is_valid_for(student: Student, mark_set: MarkSet, mark_set_count: int) -> bool:
    if not student.active:
        return False
    return MembershipMask.from_string(student.mark_set_mask, mark_set_count).is_set(mark_set)


def get_membership(store, class_id: str) -> Dict[str, Any]:
    store.get_class(class_id)
    mark_sets = store.mark_sets(class_id, include_deleted=True)
    count = len(mark_sets)
    students = []
    for student in store.students(class_id):
        mask = MembershipMask.from_string(student.mark_set_mask, count)
        students.append(
            {
                "id": student.id,
                "displayName": student.display_name,
                "active": student.active,
                "sortOrder": student.sort_order,
                "mask": mask.to_string(),
                "membership": mask.by_mark_set(mark_sets),
            }
        )
    return {
        "markSets": [{"id": m.id, "code": m.code, "sortOrder": m.sort_order} for m in mark_sets],
        "students": students,
    }


def set_membership(store, class_id: str, student_id: str, mark_set_id: str, enabled: bool) -> str:
    if not isinstance(enabled, bool):
        raise BadParams("missing enabled")
    mark_set = store.get_mark_set(mark_set_id)
    if mark_set.class_id != class_id:
        raise NotFound("mark set not found", {"markSetId": mark_set_id})
    student = store.get_student(student_id)
    if student.class_id != class_id:
        raise NotFound("student not found", {"studentId": student_id})

    mask = MembershipMask.from_string(student.mark_set_mask, store.mark_set_count(class_id))
    new_mask = mask.with_bit(mark_set.sort_order, enabled).to_string()
    store.set_mask(student_id, new_mask)
    logger.debug("membership %s/%s -> %s", student_id, mark_set_id, new_mask)
    return new_mask


def bulk_set_membership(store, class_id: str, updates: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply several membership changes; each failure is reported and skipped."""
    store.get_class(class_id)
    updated = 0
    failed: List[Dict[str, Any]] = []
    for item in updates:
        student_id = item.get("studentId")
        mark_set_id = item.get("markSetId")
        try:
            set_membership(store, class_id, student_id, mark_set_id, item.get("enabled"))
        except MarkbookError as exc:
            failed.append({"studentId": student_id, "markSetId": mark_set_id, **exc.to_dict()})
            continue
        updated += 1
    if failed:
        logger.warning("membership bulk set: %d updated, %d failed", updated, len(failed))
    return {"updated": updated, "failed": failed}
