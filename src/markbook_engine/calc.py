"""Final mark computation for a single mark set.

Percentages are combined by one of three policies (average, weighted median,
mode over threshold levels) selected from the mark set's calc method. The
engine is a pure function of the rows it is given plus an explicit
``CalcConfig``.
"""
from __future__ import annotations

import logging
import math
import numbers
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from .config import CalcConfig
from .errors import BadParams
from .membership import is_valid_for
from .models import (
    NO_MARK,
    SCORED,
    ZERO,
    Assessment,
    CalcMethod,
    Category,
    MarkSet,
    MarkSetSnapshot,
    Score,
    ScoreState,
    WeightMethod,
)

logger = logging.getLogger(__name__)

# (percent, weight)
Entry = Tuple[float, float]

_EPSILON = 1e-9


def round_off_1_decimal(x: float) -> float:
    """Legacy one-decimal rounding: ``Int(10 * x + 0.5) / 10``."""
    return math.floor(10.0 * x + 0.5) / 10.0


@dataclass
class AssessmentAverage:
    avg_raw: float
    avg_percent: float
    scored_count: int
    zero_count: int
    no_mark_count: int


def assessment_average(states: Iterable[ScoreState], out_of: float) -> AssessmentAverage:
    """Class average for one assessment; zeros count, no-marks do not."""
    total = 0.0
    denom = scored = zeros = no_marks = 0
    for state in states:
        if state.status == ZERO:
            zeros += 1
            denom += 1
        elif state.status == SCORED and state.raw_value is not None:
            scored += 1
            denom += 1
            total += state.raw_value
        else:
            no_marks += 1
    avg_raw = total / denom if denom else 0.0
    avg_percent = 100.0 * avg_raw / out_of if out_of > 0 else 0.0
    return AssessmentAverage(avg_raw, avg_percent, scored, zeros, no_marks)


def _usable(entries: Iterable[Entry]) -> List[Entry]:
    return [(p, w) for p, w in entries if w > 0]


class AveragePolicy:
    name = "average"

    def combine(self, entries: Iterable[Entry]) -> Optional[float]:
        usable = _usable(entries)
        total = sum(w for _, w in usable)
        if total <= 0:
            return None
        return sum(p * w for p, w in usable) / total


def weighted_median(entries: Iterable[Entry]) -> Optional[float]:
    ordered = sorted(_usable(entries), key=lambda e: e[0])
    total = sum(w for _, w in ordered)
    if total <= 0:
        return None
    half = total / 2.0
    cumulative = 0.0
    for pos, (percent, weight) in enumerate(ordered):
        cumulative += weight
        if abs(cumulative - half) <= _EPSILON and pos + 1 < len(ordered):
            return (percent + ordered[pos + 1][0]) / 2.0
        if cumulative > half:
            return percent
    return ordered[-1][0]


class MedianPolicy:
    name = "median"

    def combine(self, entries: Iterable[Entry]) -> Optional[float]:
        return weighted_median(entries)


@dataclass(frozen=True)
class ModePolicy:
    """Weighted modal level over ascending lower-bound thresholds.

    Level ``i`` spans ``[thresholds[i], thresholds[i + 1])`` and the top
    enabled level runs to 100. Ties go to the higher level.
    """

    active_levels: int
    thresholds: Tuple[float, ...]
    roff: bool

    name = "mode"

    def level_for(self, percent: float) -> int:
        value = math.floor(percent + 0.5) if self.roff else percent
        level = 0
        for i in range(self.active_levels + 1):
            if self.thresholds[i] <= value:
                level = i
        return level

    def level_range(self, level: int) -> Tuple[float, float]:
        low = self.thresholds[level]
        high = 100.0 if level >= self.active_levels else self.thresholds[level + 1]
        return low, high

    def combine(self, entries: Iterable[Entry]) -> Optional[float]:
        usable = _usable(entries)
        if not usable:
            return None
        weight_by_level: Dict[int, float] = {}
        for percent, weight in usable:
            level = self.level_for(percent)
            weight_by_level[level] = weight_by_level.get(level, 0.0) + weight
        best = max(weight_by_level.items(), key=lambda item: (item[1], item[0]))[0]
        low, high = self.level_range(best)
        return (low + high) / 2.0


def applied_weight_method(mark_set: MarkSet) -> WeightMethod:
    """Blended methods always weight by category."""
    if CalcMethod(mark_set.calc_method).is_blended:
        return WeightMethod.CATEGORY
    return WeightMethod(mark_set.weight_method)


def policy_for(calc_method: CalcMethod, config: CalcConfig):
    if calc_method in (CalcMethod.MEDIAN, CalcMethod.BLENDED_MEDIAN):
        return MedianPolicy()
    if calc_method in (CalcMethod.MODE, CalcMethod.BLENDED_MODE):
        return ModePolicy(config.mode_active_levels, tuple(config.mode_vals), config.roff)
    return AveragePolicy()


@dataclass
class AssessmentEntry:
    assessment_id: str
    idx: int
    title: str
    category_name: str
    status: str
    raw_value: Optional[float]
    out_of: float
    percent: Optional[float]
    weight: float
    included: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "assessmentId": self.assessment_id,
            "idx": self.idx,
            "title": self.title,
            "categoryName": self.category_name,
            "status": self.status,
            "raw": self.raw_value,
            "outOf": self.out_of,
            "percent": self.percent,
            "weight": self.weight,
            "included": self.included,
        }


@dataclass
class CategoryBreakdown:
    name: str
    weight: float
    is_bonus: bool
    percent: Optional[float]
    included: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "weight": self.weight,
            "isBonus": self.is_bonus,
            "percent": self.percent,
            "included": self.included,
        }


@dataclass
class MarkBreakdown:
    final_mark: Optional[float]
    final_before_bonus: Optional[float] = None
    bonus_percent: Optional[float] = None
    valid: bool = True
    per_category: List[CategoryBreakdown] = field(default_factory=list)
    per_assessment: List[AssessmentEntry] = field(default_factory=list)
    no_mark_count: int = 0
    zero_count: int = 0
    scored_count: int = 0


def _entry_for(assessment: Assessment, score: Optional[Score], weight: float, included: bool) -> AssessmentEntry:
    status = score.effective_status if score is not None else NO_MARK
    raw = score.raw_value if score is not None else None
    if status == SCORED:
        percent = 100.0 * raw / assessment.out_of if assessment.out_of > 0 else None
    elif status == ZERO:
        percent = 0.0
    else:
        percent = None
    return AssessmentEntry(
        assessment_id=assessment.id,
        idx=assessment.idx,
        title=assessment.title,
        category_name=assessment.category_name,
        status=status,
        raw_value=raw,
        out_of=assessment.out_of,
        percent=percent,
        weight=weight,
        included=included,
    )


def _scored_entries(entries: Iterable[AssessmentEntry]) -> List[Entry]:
    return [(e.percent, e.weight) for e in entries if e.included and e.percent is not None]


def compute_final_mark(
    mark_set: MarkSet,
    categories: Sequence[Category],
    assessments: Sequence[Assessment],
    scores: Dict[str, Score],
    membership_valid: bool,
    config: CalcConfig,
) -> MarkBreakdown:
    """Compute one student's final mark for a mark set.

    ``scores`` maps assessment id to the student's score row. Weight-0
    assessments and assessments in weight-0 categories stay in the breakdown
    with ``included=False``. The bonus category is added on top of the
    combined non-bonus mark and never enters its denominator.
    """
    policy = policy_for(mark_set.calc_method, config)
    by_name = {c.name.strip().lower(): c for c in categories}
    method = applied_weight_method(mark_set)

    entries: List[AssessmentEntry] = []
    for assessment in sorted(assessments, key=lambda a: a.idx):
        category = by_name.get(assessment.category_name.strip().lower())
        included = not assessment.is_deleted_like
        if category is not None and category.weight == 0:
            included = False
        if method == WeightMethod.CATEGORY and category is None:
            included = False
        weight = 1.0 if method == WeightMethod.EQUAL else assessment.weight
        entries.append(_entry_for(assessment, scores.get(assessment.id), weight, included))

    breakdown = MarkBreakdown(final_mark=None, valid=membership_valid, per_assessment=entries)
    for entry in entries:
        if not entry.included:
            continue
        if entry.status == SCORED:
            breakdown.scored_count += 1
        elif entry.status == ZERO:
            breakdown.zero_count += 1
        else:
            breakdown.no_mark_count += 1

    bonus: Optional[Category] = None
    for category in categories:
        members = [e for e in entries if e.category_name.strip().lower() == category.name.strip().lower()]
        percent = policy.combine(_scored_entries(members))
        breakdown.per_category.append(
            CategoryBreakdown(
                name=category.name,
                weight=category.weight,
                is_bonus=category.is_bonus,
                percent=percent,
                included=category.weight > 0 and percent is not None,
            )
        )
        if category.is_bonus and bonus is None:
            bonus = category

    bonus_key = bonus.name.strip().lower() if bonus is not None else None
    regular = [e for e in entries if e.category_name.strip().lower() != bonus_key]

    if method == WeightMethod.CATEGORY:
        weighted = [
            (c.percent, c.weight)
            for c in breakdown.per_category
            if c.included and not c.is_bonus
        ]
        before_bonus = AveragePolicy().combine(weighted)
    else:
        before_bonus = policy.combine(_scored_entries(regular))

    breakdown.final_before_bonus = before_bonus
    if bonus is not None and bonus.weight > 0:
        for item in breakdown.per_category:
            if item.is_bonus and item.name == bonus.name:
                breakdown.bonus_percent = item.percent

    if not membership_valid or before_bonus is None:
        return breakdown

    final = before_bonus
    if breakdown.bonus_percent is not None:
        final += breakdown.bonus_percent * bonus.weight / 100.0
    breakdown.final_mark = round_off_1_decimal(final)
    return breakdown


@dataclass
class SummaryFilters:
    term: Optional[int] = None
    category_name: Optional[str] = None
    types_mask: Optional[int] = None

    def matches(self, assessment: Assessment) -> bool:
        if self.term is not None and assessment.term != self.term:
            return False
        if self.category_name is not None and assessment.category_name.strip().lower() != self.category_name.lower():
            return False
        if self.types_mask is not None:
            t = assessment.legacy_type
            if t < 0 or t >= 63 or not self.types_mask & (1 << t):
                return False
        return True

    def as_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "categoryName": self.category_name,
            "typesMask": self.types_mask,
        }


def parse_summary_filters(raw: Optional[Dict[str, Any]]) -> SummaryFilters:
    if raw is None:
        return SummaryFilters()
    if not isinstance(raw, dict):
        raise BadParams("filters must be an object")

    filters = SummaryFilters()
    term = raw.get("term")
    if isinstance(term, str) and term.strip().upper() == "ALL":
        term = None
    if term is not None:
        if isinstance(term, bool) or not isinstance(term, numbers.Integral):
            raise BadParams("filters.term must be an integer or ALL", {"term": term})
        filters.term = int(term)

    category = raw.get("categoryName")
    if category is not None:
        if not isinstance(category, str):
            raise BadParams("filters.categoryName must be a string", {"categoryName": category})
        text = category.strip()
        if text and text.upper() != "ALL":
            filters.category_name = text

    mask = raw.get("typesMask")
    if mask is not None:
        if isinstance(mask, bool) or not isinstance(mask, numbers.Integral):
            raise BadParams("filters.typesMask must be an integer", {"typesMask": mask})
        filters.types_mask = int(mask)
    return filters


@dataclass
class StudentFinal:
    student_id: str
    display_name: str
    sort_order: int
    active: bool
    valid: bool
    breakdown: MarkBreakdown

    @property
    def final_mark(self) -> Optional[float]:
        return self.breakdown.final_mark

    def as_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "displayName": self.display_name,
            "sortOrder": self.sort_order,
            "active": self.active,
            "valid": self.valid,
            "finalMark": self.final_mark,
            "noMarkCount": self.breakdown.no_mark_count,
            "zeroCount": self.breakdown.zero_count,
            "scoredCount": self.breakdown.scored_count,
        }


@dataclass
class AssessmentStats:
    assessment_id: str
    idx: int
    title: str
    category_name: str
    out_of: float
    weight: float
    deleted_like: bool
    avg_raw: float
    avg_percent: float
    median_percent: Optional[float]
    scored_count: int
    zero_count: int
    no_mark_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "assessmentId": self.assessment_id,
            "idx": self.idx,
            "title": self.title,
            "categoryName": self.category_name,
            "outOf": self.out_of,
            "weight": self.weight,
            "deletedLike": self.deleted_like,
            "avgRaw": round_off_1_decimal(self.avg_raw),
            "avgPercent": round_off_1_decimal(self.avg_percent),
            "medianPercent": None if self.median_percent is None else round_off_1_decimal(self.median_percent),
            "scoredCount": self.scored_count,
            "zeroCount": self.zero_count,
            "noMarkCount": self.no_mark_count,
        }


@dataclass
class CategoryStats:
    name: str
    weight: float
    is_bonus: bool
    class_average: Optional[float]
    student_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "weight": self.weight,
            "isBonus": self.is_bonus,
            "classAverage": self.class_average,
            "studentCount": self.student_count,
        }


@dataclass
class SummaryModel:
    mark_set: MarkSet
    filters: SummaryFilters
    per_student: List[StudentFinal]
    per_assessment: List[AssessmentStats]
    per_category: List[CategoryStats]
    settings_applied: Dict[str, Any]

    def student(self, student_id: str) -> Optional[StudentFinal]:
        for row in self.per_student:
            if row.student_id == student_id:
                return row
        return None

    def final_by_student(self) -> Dict[str, Optional[float]]:
        return {row.student_id: row.final_mark for row in self.per_student}


def _assessment_stats(assessment: Assessment, states: List[ScoreState]) -> AssessmentStats:
    average = assessment_average(states, assessment.out_of)
    percents = pd.Series(
        [
            0.0 if s.status == ZERO else 100.0 * s.raw_value / assessment.out_of
            for s in states
            if s.status == ZERO or (s.status == SCORED and s.raw_value is not None)
        ],
        dtype=float,
    )
    return AssessmentStats(
        assessment_id=assessment.id,
        idx=assessment.idx,
        title=assessment.title,
        category_name=assessment.category_name,
        out_of=assessment.out_of,
        weight=assessment.weight,
        deleted_like=assessment.is_deleted_like,
        avg_raw=average.avg_raw,
        avg_percent=average.avg_percent,
        median_percent=None if percents.empty else float(percents.median()),
        scored_count=average.scored_count,
        zero_count=average.zero_count,
        no_mark_count=average.no_mark_count,
    )


def compute_mark_set_summary(
    snapshot: MarkSetSnapshot,
    filters: Optional[SummaryFilters],
    config: CalcConfig,
) -> SummaryModel:
    filters = filters or SummaryFilters()
    mark_set = snapshot.mark_set
    if CalcMethod(mark_set.calc_method).is_blended and filters.category_name is not None:
        # blended methods always span every category
        filters = replace(filters, category_name=None)
    assessments = [a for a in snapshot.assessments if filters.matches(a)]

    scores_by_student: Dict[str, Dict[str, Score]] = {}
    for (assessment_id, student_id), score in snapshot.scores.items():
        scores_by_student.setdefault(student_id, {})[assessment_id] = score

    per_student: List[StudentFinal] = []
    for student in sorted(snapshot.students, key=lambda s: s.sort_order):
        valid = is_valid_for(student, mark_set, snapshot.mark_set_count)
        breakdown = compute_final_mark(
            mark_set,
            snapshot.categories,
            assessments,
            scores_by_student.get(student.id, {}),
            valid,
            config,
        )
        per_student.append(
            StudentFinal(
                student_id=student.id,
                display_name=student.display_name,
                sort_order=student.sort_order,
                active=student.active,
                valid=valid,
                breakdown=breakdown,
            )
        )

    counted = [row for row in per_student if row.active and row.valid]

    per_assessment = []
    for assessment in sorted(assessments, key=lambda a: a.idx):
        states = []
        for row in counted:
            score = scores_by_student.get(row.student_id, {}).get(assessment.id)
            if score is None:
                states.append(ScoreState.no_mark())
            else:
                states.append(ScoreState(score.effective_status, score.raw_value))
        per_assessment.append(_assessment_stats(assessment, states))

    per_category = []
    for category in snapshot.categories:
        percents = pd.Series(
            [
                c.percent
                for row in counted
                for c in row.breakdown.per_category
                if c.name == category.name and c.percent is not None
            ],
            dtype=float,
        )
        per_category.append(
            CategoryStats(
                name=category.name,
                weight=category.weight,
                is_bonus=category.is_bonus,
                class_average=None if percents.empty else round_off_1_decimal(float(percents.mean())),
                student_count=int(percents.size),
            )
        )

    settings_applied = {
        "weightMethod": int(mark_set.weight_method),
        "weightMethodApplied": int(applied_weight_method(mark_set)),
        "calcMethod": int(mark_set.calc_method),
        "roff": config.roff,
        "modeActiveLevels": config.mode_active_levels,
        "filters": filters.as_dict(),
    }
    logger.debug(
        "summary for %s: %d students, %d assessments", mark_set.id, len(per_student), len(per_assessment)
    )
    return SummaryModel(
        mark_set=mark_set,
        filters=filters,
        per_student=per_student,
        per_assessment=per_assessment,
        per_category=per_category,
        settings_applied=settings_applied,
    )
