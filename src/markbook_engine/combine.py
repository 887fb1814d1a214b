from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .calc import round_off_1_decimal

logger = logging.getLogger(__name__)


@dataclass
class MarkSetFinals:
    id: str
    weight: float
    final_by_student: Dict[str, Optional[float]]
    code: str = ""


@dataclass
class CombinedStudent:
    student_id: str
    combined_final: Optional[float]
    per_mark_set: List[Dict[str, Any]] = field(default_factory=list)
    fallback_used: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "combinedFinal": self.combined_final,
            "perMarkSet": list(self.per_mark_set),
            "fallbackUsed": self.fallback_used,
        }


@dataclass
class CombinedResult:
    per_student: List[CombinedStudent]
    fallback_used_count: int = 0

    def by_student(self) -> Dict[str, CombinedStudent]:
        return {row.student_id: row for row in self.per_student}


def _equal_mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def combine(selected: Sequence[MarkSetFinals], student_ids: Optional[Iterable[str]] = None) -> CombinedResult:
    """Combine per-mark-set final marks into one mark per student.

    Declared weights are renormalised over the mark sets where a student has
    a mark. When the selection's declared weights sum to zero, or a student's
    marks all sit in zero-weight sets, the plain mean is used instead and
    counted as a fallback.
    """
    if student_ids is None:
        seen: Dict[str, None] = {}
        for mark_set in selected:
            for student_id in mark_set.final_by_student:
                seen.setdefault(student_id)
        student_ids = list(seen)

    degenerate = sum(max(0.0, m.weight) for m in selected) <= 0
    result = CombinedResult(per_student=[])

    for student_id in student_ids:
        per_mark_set = []
        available = []
        for mark_set in selected:
            final = mark_set.final_by_student.get(student_id)
            per_mark_set.append(
                {"markSetId": mark_set.id, "code": mark_set.code, "weight": mark_set.weight, "finalMark": final}
            )
            if final is not None:
                available.append((final, max(0.0, mark_set.weight)))

        row = CombinedStudent(student_id=student_id, combined_final=None, per_mark_set=per_mark_set)
        if available:
            denom = sum(w for _, w in available)
            if degenerate or denom <= 0:
                row.combined_final = round_off_1_decimal(_equal_mean([v for v, _ in available]))
                row.fallback_used = True
                result.fallback_used_count += 1
            else:
                row.combined_final = round_off_1_decimal(sum(v * w for v, w in available) / denom)
        result.per_student.append(row)

    if result.fallback_used_count:
        logger.debug("equal-weight fallback used for %d students", result.fallback_used_count)
    return result
