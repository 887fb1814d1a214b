"""Report models consumed by external renderers.

These go through the same filter parsing and ``compute_mark_set_summary``
call as the analytics views, so numbers match for identical inputs.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .calc import SummaryModel, compute_mark_set_summary, parse_summary_filters
from .config import CalcConfig, resolve_calc_config
from .errors import NotFound


def _summary(store, class_id: str, mark_set_id: str, filters: Any, config: Optional[CalcConfig]) -> SummaryModel:
    mark_set = store.get_mark_set(mark_set_id)
    if mark_set.class_id != class_id:
        raise NotFound("mark set not found", {"markSetId": mark_set_id})
    return compute_mark_set_summary(
        store.snapshot(mark_set_id),
        parse_summary_filters(filters),
        config or resolve_calc_config(store),
    )


def _header(store, class_id: str, summary: SummaryModel) -> Dict[str, Any]:
    record = store.get_class(class_id)
    return {
        "class": {"id": record.id, "code": record.code, "name": record.name},
        "markSet": summary.mark_set.as_dict(),
        "settings": summary.settings_applied,
        "filters": summary.filters.as_dict(),
    }


def markset_summary_model(store, class_id: str, mark_set_id: str, filters: Any = None, config: Optional[CalcConfig] = None) -> Dict[str, Any]:
    summary = _summary(store, class_id, mark_set_id, filters, config)
    return {
        **_header(store, class_id, summary),
        "perStudent": [row.as_dict() for row in summary.per_student],
        "perAssessment": [a.as_dict() for a in summary.per_assessment],
        "perCategory": [c.as_dict() for c in summary.per_category],
    }


def category_analysis_model(store, class_id: str, mark_set_id: str, filters: Any = None, config: Optional[CalcConfig] = None) -> Dict[str, Any]:
    summary = _summary(store, class_id, mark_set_id, filters, config)
    return {
        **_header(store, class_id, summary),
        "perCategory": [c.as_dict() for c in summary.per_category],
        "perAssessment": [a.as_dict() for a in summary.per_assessment],
    }


def student_summary_model(
    store,
    class_id: str,
    mark_set_id: str,
    student_id: str,
    filters: Any = None,
    config: Optional[CalcConfig] = None,
) -> Dict[str, Any]:
    summary = _summary(store, class_id, mark_set_id, filters, config)
    row = summary.student(student_id)
    if row is None:
        raise NotFound("student not found in mark set", {"studentId": student_id})
    return {
        **_header(store, class_id, summary),
        "student": row.as_dict(),
        "categoryBreakdown": [c.as_dict() for c in row.breakdown.per_category],
        "assessments": [e.as_dict() for e in row.breakdown.per_assessment],
        "perAssessment": [a.as_dict() for a in summary.per_assessment],
    }
