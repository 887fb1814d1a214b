from typing import Any, Dict, Optional


class MarkbookError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class BadParams(MarkbookError):
    code = "bad_params"


class NotFound(MarkbookError):
    code = "not_found"


class CollisionConflict(MarkbookError):
    code = "collision_conflict"


class ParseError(MarkbookError):
    code = "parse_error"


class TooManyEdits(MarkbookError):
    code = "too_many_edits"
