from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional

BONUS_CATEGORY = "BONUS"

NO_MARK = "no_mark"
ZERO = "zero"
SCORED = "scored"
SCORE_STATUSES = (SCORED, ZERO, NO_MARK)


class WeightMethod(IntEnum):
    ASSESSMENT = 0
    CATEGORY = 1
    EQUAL = 2


class CalcMethod(IntEnum):
    AVERAGE = 0
    MEDIAN = 1
    MODE = 2
    BLENDED_MODE = 3
    BLENDED_MEDIAN = 4

    @property
    def is_blended(self) -> bool:
        return self in (CalcMethod.BLENDED_MODE, CalcMethod.BLENDED_MEDIAN)


@dataclass
class ClassRecord:
    id: str
    code: str
    name: str


@dataclass
class Student:
    id: str
    class_id: str
    last_name: str
    first_name: str
    sort_order: int
    active: bool = True
    student_no: str = ""
    mark_set_mask: str = "TBA"

    @property
    def display_name(self) -> str:
        if self.first_name:
            return f"{self.last_name}, {self.first_name}"
        return self.last_name

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "sortOrder": self.sort_order,
            "active": self.active,
            "studentNo": self.student_no,
        }


@dataclass
class MarkSet:
    id: str
    class_id: str
    code: str
    description: str = ""
    weight: float = 1.0
    sort_order: int = 0
    weight_method: WeightMethod = WeightMethod.CATEGORY
    calc_method: CalcMethod = CalcMethod.AVERAGE
    deleted: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "weight": self.weight,
            "sortOrder": self.sort_order,
            "weightMethod": int(self.weight_method),
            "calcMethod": int(self.calc_method),
        }


@dataclass
class Category:
    id: str
    mark_set_id: str
    name: str
    weight: float
    sort_order: int = 0

    @property
    def is_bonus(self) -> bool:
        return self.name.strip().upper() == BONUS_CATEGORY


@dataclass
class Assessment:
    id: str
    mark_set_id: str
    idx: int
    title: str
    category_name: str = ""
    weight: float = 1.0
    out_of: float = 100.0
    term: Optional[int] = None
    legacy_type: int = 0
    date: str = ""

    @property
    def is_deleted_like(self) -> bool:
        return self.weight == 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "idx": self.idx,
            "title": self.title,
            "categoryName": self.category_name,
            "weight": self.weight,
            "outOf": self.out_of,
            "term": self.term,
            "legacyType": self.legacy_type,
            "date": self.date,
        }


@dataclass
class Score:
    assessment_id: str
    student_id: str
    raw_value: Optional[float]
    status: str = SCORED

    @property
    def effective_status(self) -> str:
        # a scored row without a value has never been entered
        if self.status == SCORED and self.raw_value is None:
            return NO_MARK
        return self.status


@dataclass
class ScoreState:
    status: str
    raw_value: Optional[float] = None

    @classmethod
    def no_mark(cls) -> "ScoreState":
        return cls(NO_MARK, None)

    @classmethod
    def zero(cls) -> "ScoreState":
        return cls(ZERO, 0.0)

    @classmethod
    def scored(cls, value: float) -> "ScoreState":
        return cls(SCORED, float(value))


@dataclass
class MarkSetSnapshot:
    """Everything the engine reads for one mark set, taken from the store at once."""

    mark_set: MarkSet
    categories: list
    assessments: list
    students: list
    scores: Dict[tuple, Score] = field(default_factory=dict)
    mark_set_count: int = 1

    def score_for(self, assessment_id: str, student_id: str) -> Optional[Score]:
        return self.scores.get((assessment_id, student_id))
