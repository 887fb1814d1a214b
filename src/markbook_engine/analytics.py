from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from .calc import (
    StudentFinal,
    SummaryFilters,
    SummaryModel,
    compute_mark_set_summary,
    parse_summary_filters,
    round_off_1_decimal,
)
from .combine import MarkSetFinals, combine
from .config import CalcConfig, resolve_calc_config
from .errors import BadParams, NotFound
from .membership import is_valid_for

logger = logging.getLogger(__name__)

DISTRIBUTION_BINS = [
    ("0-49", 0.0, 49.9),
    ("50-59", 50.0, 59.9),
    ("60-69", 60.0, 69.9),
    ("70-79", 70.0, 79.9),
    ("80-89", 80.0, 89.9),
    ("90-100", 90.0, 100.0),
]

SORT_FIELDS = ("sortOrder", "displayName", "finalMark", "scoredCount", "zeroCount", "noMarkCount")
MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50
TOP_BOTTOM_SIZE = 5


class StudentScope(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    VALID = "valid"

    @classmethod
    def parse(cls, value: Any) -> "StudentScope":
        if value is None:
            return cls.ALL
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for scope in cls:
                if scope.value == value.strip().lower():
                    return scope
        raise BadParams("studentScope must be one of: all, active, valid", {"studentScope": value})


@dataclass
class ClassRowsQuery:
    search: Optional[str] = None
    sort_by: str = "sortOrder"
    sort_dir: str = "asc"
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    final_min: Optional[float] = None
    final_max: Optional[float] = None
    include_no_final: bool = False

    def applied_cohort(self) -> Dict[str, Any]:
        return {"finalMin": self.final_min, "finalMax": self.final_max, "includeNoFinal": self.include_no_final}


def _positive_int(value: Any, name: str, default: int, upper: Optional[int] = None) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < 1:
        raise BadParams(f"query.{name} must be a positive integer")
    if upper is not None and value > upper:
        raise BadParams(f"query.{name} must be in range 1..={upper}")
    return int(value)


def _optional_number(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise BadParams(f"query.cohort.{name} must be a number")
    return float(value)


def parse_class_rows_query(raw: Optional[Dict[str, Any]]) -> ClassRowsQuery:
    raw = raw or {}
    query = ClassRowsQuery()

    search = raw.get("search")
    if search is not None:
        if not isinstance(search, str):
            raise BadParams("query.search must be string or null")
        query.search = search.strip().lower() or None

    sort_by = raw.get("sortBy", "sortOrder")
    if sort_by not in SORT_FIELDS:
        raise BadParams(f"query.sortBy must be one of: {', '.join(SORT_FIELDS)}")
    query.sort_by = sort_by

    sort_dir = raw.get("sortDir", "asc")
    if not isinstance(sort_dir, str) or sort_dir.lower() not in ("asc", "desc"):
        raise BadParams("query.sortDir must be one of: asc, desc")
    query.sort_dir = sort_dir.lower()

    query.page = _positive_int(raw.get("page"), "page", 1)
    query.page_size = _positive_int(raw.get("pageSize"), "pageSize", DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)

    cohort = raw.get("cohort") or {}
    query.final_min = _optional_number(cohort.get("finalMin"), "finalMin")
    query.final_max = _optional_number(cohort.get("finalMax"), "finalMax")
    if query.final_min is not None and query.final_max is not None and query.final_min > query.final_max:
        raise BadParams("query.cohort.finalMin must be <= query.cohort.finalMax")
    query.include_no_final = bool(cohort.get("includeNoFinal", False))
    return query


def distribution_bins(values: Iterable[Optional[float]]) -> List[Dict[str, Any]]:
    marks = pd.Series([v for v in values if v is not None], dtype=float)
    bins = []
    for label, low, high in DISTRIBUTION_BINS:
        bins.append({"label": label, "min": low, "max": high, "count": int(marks.between(low, high).sum())})
    return bins


def _median(values: pd.Series) -> Optional[float]:
    return None if values.empty else float(values.median())


def _mean(values: pd.Series) -> Optional[float]:
    return None if values.empty else float(values.mean())


def shape_rows(frame: pd.DataFrame, query: ClassRowsQuery, mark_column: str) -> pd.DataFrame:
    """Search, cohort, sort; paging is left to the caller."""
    data = frame.assign(**{mark_column: pd.to_numeric(frame[mark_column], errors="coerce")})
    if query.search:
        data = data[data["displayName"].str.lower().str.contains(query.search, regex=False)]

    marks = data[mark_column]
    in_range = marks.notna()
    if query.final_min is not None:
        in_range &= marks >= query.final_min
    if query.final_max is not None:
        in_range &= marks <= query.final_max
    data = data[in_range | (marks.isna() & query.include_no_final)]

    sort_by = mark_column if query.sort_by == "finalMark" else query.sort_by
    ascending = query.sort_dir == "asc"
    if sort_by == "sortOrder":
        return data.sort_values(by="sortOrder", ascending=ascending, kind="mergesort")
    key = (lambda s: s.str.lower()) if sort_by == "displayName" else None
    # stable sort on sortOrder first keeps it as the tie-breaker
    data = data.sort_values(by="sortOrder", kind="mergesort")
    # desc reverses the whole ordering, so null marks come first
    na_position = "last" if ascending else "first"
    return data.sort_values(by=sort_by, ascending=ascending, kind="mergesort", na_position=na_position, key=key)


def paginate(frame: pd.DataFrame, page: int, page_size: int) -> pd.DataFrame:
    start = (page - 1) * page_size
    return frame.iloc[start:start + page_size]


def _records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    return frame.astype(object).where(frame.notna(), None).to_dict(orient="records")


def _top_bottom(rows: Sequence[Dict[str, Any]], mark_key: str) -> Dict[str, List[Dict[str, Any]]]:
    ranked = sorted(
        (r for r in rows if r[mark_key] is not None),
        key=lambda r: (-r[mark_key], r["sortOrder"]),
    )
    return {"top": ranked[:TOP_BOTTOM_SIZE], "bottom": list(reversed(ranked))[:TOP_BOTTOM_SIZE]}


def _scope_keeps(row: StudentFinal, scope: StudentScope) -> bool:
    if scope == StudentScope.ACTIVE:
        return row.active
    if scope == StudentScope.VALID:
        return row.active and row.valid
    return True


def _load_summary(store, class_id, mark_set_id, filters, config) -> SummaryModel:
    mark_set = store.get_mark_set(mark_set_id)
    if mark_set.class_id != class_id:
        raise NotFound("mark set not found", {"markSetId": mark_set_id})
    if not isinstance(filters, SummaryFilters):
        filters = parse_summary_filters(filters)
    return compute_mark_set_summary(store.snapshot(mark_set_id), filters, config)


def _scoped_frame(summary: SummaryModel, scope: StudentScope) -> pd.DataFrame:
    rows = [r.as_dict() for r in summary.per_student if _scope_keeps(r, scope)]
    columns = ["studentId", "displayName", "sortOrder", "active", "valid", "finalMark", "noMarkCount", "zeroCount", "scoredCount"]
    return pd.DataFrame(rows, columns=columns)


def class_open(
    store,
    class_id: str,
    mark_set_id: str,
    filters: Any = None,
    student_scope: Any = None,
    config: Optional[CalcConfig] = None,
) -> Dict[str, Any]:
    scope = StudentScope.parse(student_scope)
    config = config or resolve_calc_config(store)
    summary = _load_summary(store, class_id, mark_set_id, filters, config)
    frame = _scoped_frame(summary, scope)
    rows = _records(frame)

    finals = frame["finalMark"].dropna().astype(float)
    totals = frame[["noMarkCount", "zeroCount", "scoredCount"]].sum()
    total_counts = int(totals.sum())

    return {
        "class": {"id": class_id, "name": store.get_class(class_id).name},
        "markSet": summary.mark_set.as_dict(),
        "settings": summary.settings_applied,
        "filters": summary.filters.as_dict(),
        "studentScope": scope.value,
        "kpis": {
            "classAverage": _mean(finals),
            "classMedian": _median(finals),
            "studentCount": len(frame),
            "finalMarkCount": int(finals.size),
            "noMarkRate": int(totals["noMarkCount"]) / total_counts if total_counts else 0.0,
            "zeroRate": int(totals["zeroCount"]) / total_counts if total_counts else 0.0,
        },
        "distributions": {
            "bins": distribution_bins(finals.tolist()),
            "noFinalMarkCount": int(frame["finalMark"].isna().sum()),
        },
        "perAssessment": [a.as_dict() for a in summary.per_assessment],
        "perCategory": [c.as_dict() for c in summary.per_category],
        "topBottom": _top_bottom(rows, "finalMark"),
        "rows": rows,
    }


def class_rows(
    store,
    class_id: str,
    mark_set_id: str,
    query: Any = None,
    filters: Any = None,
    student_scope: Any = None,
    config: Optional[CalcConfig] = None,
) -> Dict[str, Any]:
    scope = StudentScope.parse(student_scope)
    if not isinstance(query, ClassRowsQuery):
        query = parse_class_rows_query(query)
    config = config or resolve_calc_config(store)
    summary = _load_summary(store, class_id, mark_set_id, filters, config)

    shaped = shape_rows(_scoped_frame(summary, scope), query, "finalMark")
    return {
        "rows": _records(paginate(shaped, query.page, query.page_size)),
        "totalRows": len(shaped),
        "page": query.page,
        "pageSize": query.page_size,
        "sortBy": query.sort_by,
        "sortDir": query.sort_dir,
        "appliedCohort": query.applied_cohort(),
    }


def student_open(
    store,
    class_id: str,
    mark_set_id: str,
    student_id: str,
    filters: Any = None,
    student_scope: Any = None,
    config: Optional[CalcConfig] = None,
) -> Dict[str, Any]:
    scope = StudentScope.parse(student_scope)
    config = config or resolve_calc_config(store)
    summary = _load_summary(store, class_id, mark_set_id, filters, config)
    row = summary.student(student_id)
    if row is None or not _scope_keeps(row, scope):
        raise NotFound("student not found in mark set", {"studentId": student_id})

    stats = {s.assessment_id: s for s in summary.per_assessment}
    trail = []
    for entry in row.breakdown.per_assessment:
        stat = stats.get(entry.assessment_id)
        score = 0.0 if entry.status == "zero" else (entry.raw_value if entry.status == "scored" else None)
        trail.append(
            {
                **entry.as_dict(),
                "score": score,
                "percent": None if entry.percent is None else round_off_1_decimal(entry.percent),
                "classAvgRaw": None if stat is None else round_off_1_decimal(stat.avg_raw),
                "classAvgPercent": None if stat is None else round_off_1_decimal(stat.avg_percent),
            }
        )

    return {
        "markSet": summary.mark_set.as_dict(),
        "settings": summary.settings_applied,
        "filters": summary.filters.as_dict(),
        "studentScope": scope.value,
        "student": row.as_dict(),
        "finalMark": row.final_mark,
        "finalBeforeBonus": row.breakdown.final_before_bonus,
        "bonusPercent": row.breakdown.bonus_percent,
        "counts": {
            "noMark": row.breakdown.no_mark_count,
            "zero": row.breakdown.zero_count,
            "scored": row.breakdown.scored_count,
        },
        "categoryBreakdown": [c.as_dict() for c in row.breakdown.per_category],
        "assessmentTrail": trail,
    }


def _selected_mark_sets(store, class_id: str, mark_set_ids: Sequence[str]):
    if not mark_set_ids:
        raise BadParams("markSetIds must contain at least one mark set id")
    known = {m.id: m for m in store.mark_sets(class_id, include_deleted=True)}
    missing = [i for i in mark_set_ids if i not in known]
    if missing:
        raise BadParams("markSetIds contains unknown mark set ids", {"missingMarkSetIds": missing})
    selected = [known[i] for i in dict.fromkeys(mark_set_ids)]
    deleted = [{"id": m.id, "code": m.code} for m in selected if m.deleted]
    if deleted:
        raise BadParams("markSetIds must not include deleted mark sets", {"deletedMarkSets": deleted})
    return selected


def _combined_frame(store, class_id, mark_set_ids, filters, scope, config):
    store.get_class(class_id)
    mark_sets = _selected_mark_sets(store, class_id, mark_set_ids)
    if not isinstance(filters, SummaryFilters):
        filters = parse_summary_filters(filters)

    summaries = {m.id: compute_mark_set_summary(store.snapshot(m.id), filters, config) for m in mark_sets}
    count = store.mark_set_count(class_id)
    students = store.students(class_id)

    def in_scope(student) -> bool:
        if scope == StudentScope.ACTIVE:
            return student.active
        if scope == StudentScope.VALID:
            return any(is_valid_for(student, m, count) for m in mark_sets)
        return True

    students = [s for s in students if in_scope(s)]
    combined = combine(
        [
            MarkSetFinals(id=m.id, weight=m.weight, final_by_student=summaries[m.id].final_by_student(), code=m.code)
            for m in mark_sets
        ],
        student_ids=[s.id for s in students],
    )
    by_student = combined.by_student()
    rows = []
    for student in students:
        result = by_student[student.id]
        rows.append(
            {
                "studentId": student.id,
                "displayName": student.display_name,
                "sortOrder": student.sort_order,
                "active": student.active,
                "combinedFinal": result.combined_final,
                "perMarkSet": result.per_mark_set,
            }
        )
    frame = pd.DataFrame(
        rows, columns=["studentId", "displayName", "sortOrder", "active", "combinedFinal", "perMarkSet"]
    )
    return mark_sets, filters, frame, combined.fallback_used_count


def combined_open(
    store,
    class_id: str,
    mark_set_ids: Sequence[str],
    filters: Any = None,
    student_scope: Any = None,
    config: Optional[CalcConfig] = None,
) -> Dict[str, Any]:
    scope = StudentScope.parse(student_scope)
    config = config or resolve_calc_config(store)
    mark_sets, filters, frame, fallback_used = _combined_frame(store, class_id, mark_set_ids, filters, scope, config)
    rows = _records(frame)

    finals = frame["combinedFinal"].dropna().astype(float)
    no_final = int(frame["combinedFinal"].isna().sum())

    per_mark_set = []
    for mark_set in mark_sets:
        marks = pd.Series(
            [
                entry["finalMark"]
                for row in rows
                for entry in row["perMarkSet"]
                if entry["markSetId"] == mark_set.id and entry["finalMark"] is not None
            ],
            dtype=float,
        )
        average, median = _mean(marks), _median(marks)
        per_mark_set.append(
            {
                "markSetId": mark_set.id,
                "code": mark_set.code,
                "description": mark_set.description,
                "weight": mark_set.weight,
                "finalMarkCount": int(marks.size),
                "classAverage": None if average is None else round_off_1_decimal(average),
                "classMedian": None if median is None else round_off_1_decimal(median),
            }
        )

    average, median = _mean(finals), _median(finals)
    logger.debug("combined open over %d mark sets, %d fallbacks", len(mark_sets), fallback_used)
    return {
        "class": {"id": class_id, "name": store.get_class(class_id).name},
        "markSets": [m.as_dict() for m in mark_sets],
        "filters": filters.as_dict(),
        "studentScope": scope.value,
        "settingsApplied": {"combineMethod": "weighted_markset", "fallbackUsedCount": fallback_used},
        "kpis": {
            "classAverage": None if average is None else round_off_1_decimal(average),
            "classMedian": None if median is None else round_off_1_decimal(median),
            "studentCount": len(frame),
            "finalMarkCount": int(finals.size),
            "noCombinedFinalCount": no_final,
        },
        "distributions": {"bins": distribution_bins(finals.tolist()), "noCombinedFinalCount": no_final},
        "perMarkSet": per_mark_set,
        "rows": rows,
        "topBottom": _top_bottom(rows, "combinedFinal"),
    }


def combined_rows(
    store,
    class_id: str,
    mark_set_ids: Sequence[str],
    query: Any = None,
    filters: Any = None,
    student_scope: Any = None,
    config: Optional[CalcConfig] = None,
) -> Dict[str, Any]:
    scope = StudentScope.parse(student_scope)
    if not isinstance(query, ClassRowsQuery):
        query = parse_class_rows_query(query)
    if query.sort_by in ("scoredCount", "zeroCount", "noMarkCount"):
        raise BadParams("query.sortBy must be one of: sortOrder, displayName, finalMark")
    config = config or resolve_calc_config(store)
    _, _, frame, fallback_used = _combined_frame(store, class_id, mark_set_ids, filters, scope, config)

    shaped = shape_rows(frame, query, "combinedFinal")
    return {
        "rows": _records(paginate(shaped, query.page, query.page_size)),
        "totalRows": len(shaped),
        "page": query.page,
        "pageSize": query.page_size,
        "sortBy": query.sort_by,
        "sortDir": query.sort_dir,
        "appliedCohort": query.applied_cohort(),
        "fallbackUsedCount": fallback_used,
    }
