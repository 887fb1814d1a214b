from __future__ import annotations

import logging
import math
import numbers
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .errors import BadParams, MarkbookError, NotFound, TooManyEdits
from .models import NO_MARK, SCORED, ZERO, Score, ScoreState

logger = logging.getLogger(__name__)

MAX_BULK_EDITS = 5000


@dataclass
class EditError:
    row: int
    col: int
    code: str
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "col": self.col, "code": self.code, "message": self.message}


@dataclass
class BulkEditResult:
    updated: int = 0
    rejected: int = 0
    limit_exceeded: bool = False
    errors: List[EditError] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"updated": self.updated, "rejected": self.rejected}
        if self.limit_exceeded:
            payload["limitExceeded"] = True
        if self.errors:
            payload["errors"] = [e.as_dict() for e in self.errors]
        return payload


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        return None
    return int(value) if value >= 0 else None


def _as_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise BadParams("value must be numeric", {"value": value})
    return float(value)


def resolve_score_state(state: Optional[str], value: Optional[float]) -> ScoreState:
    """Turn an edit's (state, value) pair into the stored score state.

    Without an explicit state, blank or 0 means no mark and a positive value
    is a score.
    """
    if value is not None and not math.isfinite(value):
        raise BadParams("value must be a finite number", {"value": value})
    if value is not None and value < 0:
        raise BadParams("negative marks are not allowed", {"value": value})

    if state is None:
        if value is not None and value > 0:
            return ScoreState.scored(value)
        return ScoreState.no_mark()

    normalized = str(state).strip().lower()
    if normalized == NO_MARK:
        return ScoreState.no_mark()
    if normalized == ZERO:
        return ScoreState.zero()
    if normalized == SCORED:
        if value is None:
            raise BadParams("scored state requires numeric value")
        if value <= 0:
            raise BadParams("scored marks must be > 0", {"value": value})
        return ScoreState.scored(value)
    raise BadParams("state must be one of: scored, zero, no_mark", {"state": state})


def apply_edit(
    store,
    mark_set_id: str,
    row: Any,
    col: Any,
    state: Optional[str] = None,
    value: Any = None,
) -> Score:
    """Validate and write one grid cell addressed by student row and assessment column."""
    row_idx = _as_index(row)
    if row_idx is None:
        raise BadParams("missing/invalid row", {"row": row})
    col_idx = _as_index(col)
    if col_idx is None:
        raise BadParams("missing/invalid col", {"col": col})

    resolved = resolve_score_state(state, _as_number(value))

    mark_set = store.get_mark_set(mark_set_id)
    student = store.student_at_row(mark_set.class_id, row_idx)
    if student is None:
        raise NotFound("student not found", {"row": row_idx})
    assessment = store.assessment_at_col(mark_set_id, col_idx)
    if assessment is None:
        raise NotFound("assessment not found", {"col": col_idx})

    if resolved.status == SCORED and resolved.raw_value > assessment.out_of:
        raise BadParams(
            f"mark exceeds outOf ({assessment.out_of:g})",
            {"value": resolved.raw_value, "outOf": assessment.out_of},
        )
    return store.set_score(assessment.id, student.id, resolved)


def bulk_apply_edits(store, mark_set_id: str, edits: Sequence[Dict[str, Any]]) -> BulkEditResult:
    if len(edits) > MAX_BULK_EDITS:
        logger.warning("bulk edit rejected: %d edits exceeds %d", len(edits), MAX_BULK_EDITS)
        exc = TooManyEdits(f"bulk payload exceeds max edits: {len(edits)} > {MAX_BULK_EDITS}")
        return BulkEditResult(
            updated=0,
            rejected=len(edits),
            limit_exceeded=True,
            errors=[EditError(row=-1, col=-1, code=exc.code, message=exc.message)],
        )

    # unknown mark set fails the whole call
    store.get_mark_set(mark_set_id)

    result = BulkEditResult()
    for i, edit in enumerate(edits):
        if not isinstance(edit, dict):
            result.errors.append(EditError(-1, -1, "bad_params", f"edit at index {i} must be an object"))
            continue
        row, col = edit.get("row"), edit.get("col")
        try:
            apply_edit(store, mark_set_id, row, col, edit.get("state"), edit.get("value"))
        except MarkbookError as exc:
            row_out = _as_index(row)
            col_out = _as_index(col) if row_out is not None else None
            result.errors.append(
                EditError(
                    row=-1 if row_out is None else row_out,
                    col=-1 if col_out is None else col_out,
                    code=exc.code,
                    message=exc.message,
                )
            )
            continue
        result.updated += 1

    result.rejected = len(result.errors)
    logger.debug("bulk edit on %s: %d updated, %d rejected", mark_set_id, result.updated, result.rejected)
    return result
