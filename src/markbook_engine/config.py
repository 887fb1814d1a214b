from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from .errors import BadParams

logger = logging.getLogger(__name__)

MODE_SLOTS = 22
BASE_KEY = "calc_config.base"
OVERRIDE_KEY = "calc_config.override"

DEFAULT_MODE_VALS: Tuple[float, ...] = (0.0, 50.0, 60.0, 70.0, 80.0) + (0.0,) * (MODE_SLOTS - 5)
DEFAULT_MODE_SYMBOLS: Tuple[str, ...] = ("R", "1", "2", "3", "4") + ("",) * (MODE_SLOTS - 5)


def _pad(values, filler, cast) -> tuple:
    items = [cast(v) for v in list(values)[:MODE_SLOTS]]
    items.extend([filler] * (MODE_SLOTS - len(items)))
    return tuple(items)


@dataclass(frozen=True)
class CalcConfig:
    """Calculation settings threaded explicitly into every mark computation.

    ``mode_vals`` holds ascending lower bounds of the mode levels; levels
    ``0..mode_active_levels`` are enabled and the top enabled level runs to 100.
    ``mode_symbols`` is display-only.
    """

    roff: bool = True
    mode_active_levels: int = 4
    mode_vals: Tuple[float, ...] = field(default=DEFAULT_MODE_VALS)
    mode_symbols: Tuple[str, ...] = field(default=DEFAULT_MODE_SYMBOLS)

    def __post_init__(self):
        object.__setattr__(self, "mode_vals", _pad(self.mode_vals, 0.0, float))
        object.__setattr__(self, "mode_symbols", _pad(self.mode_symbols, "", str))
        object.__setattr__(self, "mode_active_levels", max(0, min(MODE_SLOTS - 1, int(self.mode_active_levels))))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["CalcConfig"] = None) -> "CalcConfig":
        config = base or cls()
        changes: Dict[str, Any] = {}
        if "roff" in data:
            changes["roff"] = bool(data["roff"])
        if "modeActiveLevels" in data:
            changes["mode_active_levels"] = int(data["modeActiveLevels"])
        if "modeVals" in data:
            changes["mode_vals"] = tuple(data["modeVals"])
        if "modeSymbols" in data:
            changes["mode_symbols"] = tuple(data["modeSymbols"])
        return replace(config, **changes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "roff": self.roff,
            "modeActiveLevels": self.mode_active_levels,
            "modeVals": list(self.mode_vals),
            "modeSymbols": list(self.mode_symbols),
        }


def _validate_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == "roff":
            if not isinstance(value, bool):
                raise BadParams("roff must be a boolean")
            cleaned["roff"] = value
        elif key == "modeActiveLevels":
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < MODE_SLOTS:
                raise BadParams(f"modeActiveLevels must be an integer in 0..{MODE_SLOTS - 1}")
            cleaned[key] = value
        elif key == "modeVals":
            if not isinstance(value, (list, tuple)) or len(value) > MODE_SLOTS:
                raise BadParams(f"modeVals must be a list of at most {MODE_SLOTS} numbers")
            if any(isinstance(v, bool) or not isinstance(v, numbers.Real) for v in value):
                raise BadParams("modeVals must contain only numbers")
            cleaned[key] = [float(v) for v in value]
        elif key == "modeSymbols":
            if not isinstance(value, (list, tuple)) or len(value) > MODE_SLOTS:
                raise BadParams(f"modeSymbols must be a list of at most {MODE_SLOTS} strings")
            cleaned[key] = [str(v) for v in value]
        else:
            raise BadParams(f"unknown calc config field: {key}")
    return cleaned


def resolve_calc_config(store) -> CalcConfig:
    """Layer defaults, the imported base and the explicit override."""
    config = CalcConfig()
    base = store.get_setting(BASE_KEY)
    if base:
        config = CalcConfig.from_dict(base, config)
    override = store.get_setting(OVERRIDE_KEY)
    if override:
        config = CalcConfig.from_dict(override, config)
    return config


def calc_config_source(store) -> Dict[str, bool]:
    return {
        "basePresent": store.get_setting(BASE_KEY) is not None,
        "overridePresent": store.get_setting(OVERRIDE_KEY) is not None,
    }


def calc_config_view(store) -> Dict[str, Any]:
    payload = resolve_calc_config(store).as_dict()
    payload["source"] = calc_config_source(store)
    return payload


def set_calc_config_base(store, config: CalcConfig) -> None:
    store.set_setting(BASE_KEY, config.as_dict())


def update_calc_config(store, changes: Dict[str, Any]) -> CalcConfig:
    cleaned = _validate_changes(changes)
    override = dict(store.get_setting(OVERRIDE_KEY) or {})
    override.update(cleaned)
    store.set_setting(OVERRIDE_KEY, override)
    logger.debug("calc config override updated: %s", sorted(cleaned))
    return resolve_calc_config(store)


def clear_calc_config_override(store) -> CalcConfig:
    store.delete_setting(OVERRIDE_KEY)
    logger.debug("calc config override cleared")
    return resolve_calc_config(store)
