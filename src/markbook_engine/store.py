from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .errors import BadParams, NotFound
from .models import (
    Assessment,
    CalcMethod,
    Category,
    ClassRecord,
    MarkSet,
    MarkSetSnapshot,
    Score,
    ScoreState,
    Student,
    WeightMethod,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class ScoreStore:
    """In-memory row store for classes, students, mark sets and scores.

    Rows are never physically removed: assessments are soft-deleted by
    zeroing their weight and mark sets by flagging them deleted.
    """

    def __init__(self):
        self._classes: Dict[str, ClassRecord] = {}
        self._students: Dict[str, Student] = {}
        self._mark_sets: Dict[str, MarkSet] = {}
        self._categories: Dict[str, Category] = {}
        self._assessments: Dict[str, Assessment] = {}
        self._scores: Dict[tuple, Score] = {}
        self._settings: Dict[str, Any] = {}

    # classes and students

    def create_class(self, code: str, name: str = "") -> ClassRecord:
        record = ClassRecord(id=_new_id(), code=code, name=name or code)
        self._classes[record.id] = record
        return record

    def get_class(self, class_id: str) -> ClassRecord:
        try:
            return self._classes[class_id]
        except KeyError:
            raise NotFound("class not found", {"classId": class_id}) from None

    def add_student(
        self,
        class_id: str,
        last_name: str,
        first_name: str = "",
        active: bool = True,
        student_no: str = "",
        mark_set_mask: str = "TBA",
    ) -> Student:
        self.get_class(class_id)
        student = Student(
            id=_new_id(),
            class_id=class_id,
            last_name=last_name,
            first_name=first_name,
            sort_order=len(self.students(class_id)),
            active=active,
            student_no=student_no,
            mark_set_mask=mark_set_mask,
        )
        self._students[student.id] = student
        return student

    def get_student(self, student_id: str) -> Student:
        try:
            return self._students[student_id]
        except KeyError:
            raise NotFound("student not found", {"studentId": student_id}) from None

    def update_student(self, student_id: str, **changes) -> Student:
        student = replace(self.get_student(student_id), **changes)
        self._students[student_id] = student
        return student

    def students(self, class_id: str) -> List[Student]:
        rows = [s for s in self._students.values() if s.class_id == class_id]
        return sorted(rows, key=lambda s: s.sort_order)

    def student_at_row(self, class_id: str, row: int) -> Optional[Student]:
        for student in self.students(class_id):
            if student.sort_order == row:
                return student
        return None

    def get_mask(self, student_id: str) -> str:
        return self.get_student(student_id).mark_set_mask

    def set_mask(self, student_id: str, mask: str) -> None:
        self.update_student(student_id, mark_set_mask=mask)

    # mark sets, categories, assessments

    def add_mark_set(
        self,
        class_id: str,
        code: str,
        description: str = "",
        weight: float = 1.0,
        weight_method: WeightMethod = WeightMethod.CATEGORY,
        calc_method: CalcMethod = CalcMethod.AVERAGE,
    ) -> MarkSet:
        self.get_class(class_id)
        mark_set = MarkSet(
            id=_new_id(),
            class_id=class_id,
            code=code,
            description=description,
            weight=float(weight),
            sort_order=self.mark_set_count(class_id),
            weight_method=WeightMethod(weight_method),
            calc_method=CalcMethod(calc_method),
        )
        self._mark_sets[mark_set.id] = mark_set
        return mark_set

    def get_mark_set(self, mark_set_id: str) -> MarkSet:
        try:
            return self._mark_sets[mark_set_id]
        except KeyError:
            raise NotFound("mark set not found", {"markSetId": mark_set_id}) from None

    def update_mark_set(self, mark_set_id: str, **changes) -> MarkSet:
        mark_set = replace(self.get_mark_set(mark_set_id), **changes)
        self._mark_sets[mark_set_id] = mark_set
        return mark_set

    def delete_mark_set(self, mark_set_id: str) -> None:
        self.update_mark_set(mark_set_id, deleted=True)

    def mark_sets(self, class_id: str, include_deleted: bool = False) -> List[MarkSet]:
        rows = [
            m for m in self._mark_sets.values()
            if m.class_id == class_id and (include_deleted or not m.deleted)
        ]
        return sorted(rows, key=lambda m: m.sort_order)

    def mark_set_count(self, class_id: str) -> int:
        # mask bits are positional, so deleted mark sets keep their slot
        return len(self.mark_sets(class_id, include_deleted=True))

    def add_category(self, mark_set_id: str, name: str, weight: float) -> Category:
        self.get_mark_set(mark_set_id)
        if any(c.name.lower() == name.lower() for c in self.categories(mark_set_id)):
            raise BadParams(f"category already exists: {name}", {"markSetId": mark_set_id})
        category = Category(
            id=_new_id(),
            mark_set_id=mark_set_id,
            name=name,
            weight=float(weight),
            sort_order=len(self.categories(mark_set_id)),
        )
        self._categories[category.id] = category
        return category

    def update_category(self, category_id: str, **changes) -> Category:
        if category_id not in self._categories:
            raise NotFound("category not found", {"categoryId": category_id})
        category = replace(self._categories[category_id], **changes)
        self._categories[category_id] = category
        return category

    def categories(self, mark_set_id: str) -> List[Category]:
        rows = [c for c in self._categories.values() if c.mark_set_id == mark_set_id]
        return sorted(rows, key=lambda c: c.sort_order)

    def add_assessment(
        self,
        mark_set_id: str,
        title: str,
        category_name: str = "",
        weight: float = 1.0,
        out_of: float = 100.0,
        term: Optional[int] = None,
        legacy_type: int = 0,
        date: str = "",
    ) -> Assessment:
        self.get_mark_set(mark_set_id)
        if out_of <= 0:
            raise BadParams("outOf must be positive", {"title": title})
        if weight < 0:
            raise BadParams("weight must not be negative", {"title": title})
        assessment = Assessment(
            id=_new_id(),
            mark_set_id=mark_set_id,
            idx=len(self.assessments(mark_set_id)),
            title=title,
            category_name=category_name,
            weight=float(weight),
            out_of=float(out_of),
            term=term,
            legacy_type=legacy_type,
            date=date,
        )
        self._assessments[assessment.id] = assessment
        return assessment

    def get_assessment(self, assessment_id: str) -> Assessment:
        try:
            return self._assessments[assessment_id]
        except KeyError:
            raise NotFound("assessment not found", {"assessmentId": assessment_id}) from None

    def update_assessment(self, assessment_id: str, **changes) -> Assessment:
        assessment = replace(self.get_assessment(assessment_id), **changes)
        self._assessments[assessment_id] = assessment
        return assessment

    def delete_assessment(self, assessment_id: str) -> None:
        self.update_assessment(assessment_id, weight=0.0)

    def assessments(self, mark_set_id: str, include_deleted: bool = True) -> List[Assessment]:
        rows = [
            a for a in self._assessments.values()
            if a.mark_set_id == mark_set_id and (include_deleted or not a.is_deleted_like)
        ]
        return sorted(rows, key=lambda a: a.idx)

    def assessment_at_col(self, mark_set_id: str, col: int) -> Optional[Assessment]:
        for assessment in self.assessments(mark_set_id):
            if assessment.idx == col:
                return assessment
        return None

    # scores

    def set_score(self, assessment_id: str, student_id: str, state: ScoreState) -> Score:
        score = Score(
            assessment_id=assessment_id,
            student_id=student_id,
            raw_value=state.raw_value,
            status=state.status,
        )
        self._scores[(assessment_id, student_id)] = score
        return score

    def get_score(self, assessment_id: str, student_id: str) -> Optional[Score]:
        return self._scores.get((assessment_id, student_id))

    def scores_for_mark_set(self, mark_set_id: str) -> Dict[tuple, Score]:
        ids = {a.id for a in self.assessments(mark_set_id)}
        return {key: score for key, score in self._scores.items() if key[0] in ids}

    # settings

    def get_setting(self, key: str) -> Any:
        return copy.deepcopy(self._settings.get(key))

    def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = copy.deepcopy(value)

    def delete_setting(self, key: str) -> None:
        self._settings.pop(key, None)

    def snapshot(self, mark_set_id: str) -> MarkSetSnapshot:
        mark_set = self.get_mark_set(mark_set_id)
        return MarkSetSnapshot(
            mark_set=mark_set,
            categories=list(self.categories(mark_set_id)),
            assessments=list(self.assessments(mark_set_id)),
            students=list(self.students(mark_set.class_id)),
            scores=self.scores_for_mark_set(mark_set_id),
            mark_set_count=self.mark_set_count(mark_set.class_id),
        )
