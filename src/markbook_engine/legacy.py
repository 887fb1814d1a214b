"""Decoders for the legacy fixed-format markbook files.

The legacy application wrote line-oriented files with bracketed section
headers and VB6-quoted values. Every decoder here is a pure function of the
file contents; nothing touches the store.
"""
from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .config import MODE_SLOTS, CalcConfig
from .errors import ParseError
from .models import ScoreState

logger = logging.getLogger(__name__)

_HEADER_PREFIXES = ("Mark File:", "This file belongs")


@dataclass
class ExportBlock:
    title: str
    out_of: float
    values: List[float]

    def student_values(self, last_student: int) -> List[float]:
        """Values aligned to students by sort order.

        A block holding ``last_student + 1`` values carries a leading
        aggregate slot, which is dropped.
        """
        if len(self.values) == last_student:
            return list(self.values)
        if len(self.values) == last_student + 1:
            return list(self.values[1:])
        raise ParseError(
            f"block '{self.title}' has {len(self.values)} values, expected {last_student} or {last_student + 1}",
            {"title": self.title, "count": len(self.values), "lastStudent": last_student},
        )


@dataclass
class ExportFile:
    last_student: int
    blocks: List[ExportBlock]


@dataclass
class UserConfig:
    mode_active_levels: int
    mode_vals: List[float]
    mode_symbols: List[str]
    roff_default: bool

    def to_calc_config(self) -> CalcConfig:
        return CalcConfig(
            roff=self.roff_default,
            mode_active_levels=self.mode_active_levels,
            mode_vals=tuple(self.mode_vals),
            mode_symbols=tuple(self.mode_symbols),
        )


@dataclass
class MiscInfo:
    full_code: str = ""
    room: str = ""
    day: str = ""
    period: str = ""
    weight_method: int = 1
    calc_method: int = 0
    legacy_serial: Optional[float] = None


@dataclass
class LegacyCategory:
    name: str
    weight: float


@dataclass
class LegacyAssessment:
    idx: int
    date: str
    category_name: str
    title: str
    term: int
    legacy_type: int
    weight: float
    out_of: float
    avg_percent: float
    avg_raw: float
    scores: List[ScoreState] = field(default_factory=list)


@dataclass
class MarkFile:
    misc: Optional[MiscInfo]
    categories: List[LegacyCategory]
    last_student: int
    assessments: List[LegacyAssessment]


@dataclass
class MarkSetDef:
    file_prefix: str
    code: str
    description: str
    weight: float
    sort_order: int


@dataclass
class LegacyStudent:
    active: bool
    last_name: str
    first_name: str
    student_no: str = ""
    mark_set_mask: Optional[str] = None


@dataclass
class ClassList:
    class_name: str
    mark_sets: List[MarkSetDef]
    students: List[LegacyStudent]


def strip_quotes(value: str) -> str:
    text = value.strip()
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1]
    return text.strip()


def _is_section(text: str) -> bool:
    return len(text) >= 2 and text.startswith("[") and text.endswith("]")


def _parse_float(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


def _to_float(value: str) -> Optional[float]:
    number = _parse_float(value)
    if number is None or not math.isfinite(number):
        return None
    return number


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value.strip())
    except ValueError:
        return None


def _csv_fields(line: str) -> List[str]:
    return [item.strip() for item in next(csv.reader([line], skipinitialspace=True), [])]


def _read_lines(path: Path) -> List[str]:
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise ParseError(f"cannot read {path}: {exc}", {"path": str(path)}) from exc
    return raw.decode("utf-8", errors="replace").splitlines()


def decode_legacy_raw(raw: float) -> ScoreState:
    """0 means no mark, negative means a counted zero, positive is a score."""
    if not math.isfinite(raw):
        raise ParseError(f"non-finite legacy score: {raw}", {"raw": str(raw)})
    if raw == 0:
        return ScoreState.no_mark()
    if raw < 0:
        return ScoreState.zero()
    return ScoreState.scored(raw)


def _find_last_student(lines: List[str]) -> int:
    for pos, line in enumerate(lines):
        if strip_quotes(line).lower() != "[laststudent]":
            continue
        for candidate in lines[pos + 1:]:
            value = strip_quotes(candidate)
            if value:
                return _to_int(value) or 0
        return 0
    return 0


def parse_export_file(path: Path) -> ExportFile:
    lines = _read_lines(path)
    last_student = _find_last_student(lines)
    if last_student <= 0:
        raise ParseError(f"missing [LastStudent] in export file {path}", {"path": str(path)})

    blocks: List[ExportBlock] = []
    cursor = 0
    while cursor < len(lines):
        line = strip_quotes(lines[cursor])
        if not line or _is_section(line) or "Folder:" in line or line.startswith(_HEADER_PREFIXES):
            cursor += 1
            continue

        title = line
        cursor += 1
        out_of = None
        while cursor < len(lines):
            candidate = strip_quotes(lines[cursor])
            cursor += 1
            if not candidate:
                continue
            if _is_section(candidate):
                break
            fields = _csv_fields(candidate)
            out_of = _to_float(fields[0]) if fields else None
            if out_of is None:
                # not a block; rescan this line as a title
                cursor -= 1
            break
        if out_of is None:
            continue

        values: List[float] = []
        while cursor < len(lines) and len(values) < last_student + 1:
            candidate = strip_quotes(lines[cursor])
            if not candidate:
                cursor += 1
                continue
            if _is_section(candidate):
                break
            number = _parse_float(candidate)
            if number is None:
                break
            if not math.isfinite(number):
                raise ParseError(
                    f"non-finite score {candidate!r} in block '{title}' of {path}",
                    {"path": str(path), "title": title},
                )
            values.append(number)
            cursor += 1

        if values:
            blocks.append(ExportBlock(title=title, out_of=out_of, values=values))

    if not blocks:
        raise ParseError(f"export file {path} is truncated: no score blocks", {"path": str(path)})
    logger.debug("parsed export %s: %d blocks, last student %d", path, len(blocks), last_student)
    return ExportFile(last_student=last_student, blocks=blocks)


def _sections(lines: List[str]) -> dict:
    """Map lower-cased section name -> list of non-empty, unquoted lines."""
    sections: dict = {}
    current = None
    for line in lines:
        text = line.strip()
        if not text:
            continue
        if _is_section(text):
            current = text[1:-1].strip().lower()
            sections.setdefault(current, [])
            continue
        if current is None:
            continue
        value = strip_quotes(text)
        if value:
            sections[current].append(value)
    return sections


def parse_user_config(path: Path) -> UserConfig:
    """Decode calculation defaults from a legacy user settings file.

    Layout::

        [RoundOff]
        1
        [Mode Levels]
        4
        0,R
        50,1
        ...

    Callers treat a ParseError as "no override available".
    """
    sections = _sections(_read_lines(path))
    if "roundoff" not in sections and "mode levels" not in sections:
        raise ParseError(f"no calculation settings in {path}", {"path": str(path)})

    roff = True
    roff_lines = sections.get("roundoff", [])
    if roff_lines:
        flag = _to_int(roff_lines[0])
        if flag is None:
            raise ParseError(f"bad [RoundOff] value: {roff_lines[0]}", {"path": str(path)})
        roff = flag != 0

    defaults = CalcConfig()
    active = defaults.mode_active_levels
    vals = list(defaults.mode_vals)
    symbols = list(defaults.mode_symbols)
    level_lines = sections.get("mode levels", [])
    if level_lines:
        parsed_active = _to_int(level_lines[0])
        if parsed_active is None or not 0 <= parsed_active < MODE_SLOTS:
            raise ParseError(f"bad mode level count: {level_lines[0]}", {"path": str(path)})
        active = parsed_active
        vals, symbols = [], []
        for line in level_lines[1:MODE_SLOTS + 1]:
            fields = _csv_fields(line)
            value = _to_float(fields[0]) if fields else None
            if value is None:
                raise ParseError(f"bad mode level line: {line}", {"path": str(path)})
            vals.append(value)
            symbols.append(fields[1] if len(fields) > 1 else "")
        vals.extend([0.0] * (MODE_SLOTS - len(vals)))
        symbols.extend([""] * (MODE_SLOTS - len(symbols)))

    return UserConfig(mode_active_levels=active, mode_vals=vals, mode_symbols=symbols, roff_default=roff)


def _section_index(lines: List[str], name: str) -> Optional[int]:
    needle = f"[{name}]".lower()
    for pos, line in enumerate(lines):
        if line.strip().lower() == needle:
            return pos
    return None


class _Cursor:
    def __init__(self, lines: List[str], start: int, path: Path):
        self.lines = lines
        self.pos = start
        self.path = path

    def next_value(self, what: str) -> str:
        while self.pos < len(self.lines):
            value = strip_quotes(self.lines[self.pos])
            self.pos += 1
            if value:
                return value
        raise ParseError(f"unexpected end of file reading {what} in {self.path}", {"path": str(self.path)})

    def next_raw(self) -> Optional[str]:
        # positional sections keep empty values
        if self.pos >= len(self.lines):
            return None
        value = strip_quotes(self.lines[self.pos])
        self.pos += 1
        return value

    def next_int(self, what: str) -> int:
        value = self.next_value(what)
        number = _to_int(value)
        if number is None:
            raise ParseError(f"bad {what}: {value}", {"path": str(self.path)})
        return number


def _parse_date(value: str) -> Optional[str]:
    parts = value.split()
    if len(parts) < 3:
        return None
    numbers = [_to_int(p) for p in parts[:3]]
    if any(n is None for n in numbers):
        return None
    year, month, day = numbers
    return f"{year:04d}-{month:02d}-{day:02d}"


def _csv_numbers(line: str, expected: int) -> Optional[List[float]]:
    parts = line.split(",")
    if len(parts) < expected:
        return None
    numbers = [_to_float(p) for p in parts[:expected]]
    if any(n is None for n in numbers):
        return None
    return numbers


def _parse_misc(lines: List[str], start: int, path: Path) -> MiscInfo:
    cur = _Cursor(lines, start, path)
    misc = MiscInfo()
    misc.full_code = cur.next_raw() or ""
    misc.room = cur.next_raw() or ""
    misc.day = cur.next_raw() or ""
    misc.period = cur.next_raw() or ""
    weight_method = _to_int(cur.next_raw() or "")
    misc.weight_method = 1 if weight_method is None else weight_method
    misc.legacy_serial = _to_float(cur.next_raw() or "")
    calc_method = _to_int(cur.next_raw() or "")
    misc.calc_method = 0 if calc_method is None else calc_method
    return misc


def parse_mark_file(path: Path) -> MarkFile:
    lines = _read_lines(path)
    misc_idx = _section_index(lines, "Misc Info")
    misc = _parse_misc(lines, misc_idx + 1, path) if misc_idx is not None else None

    indices = {}
    for name in ("Categories", "LastStudent", "Marks"):
        pos = _section_index(lines, name)
        if pos is None:
            raise ParseError(f"missing [{name}] section in {path}", {"path": str(path)})
        indices[name] = pos

    cur = _Cursor(lines, indices["Categories"] + 1, path)
    categories: List[LegacyCategory] = []
    for _ in range(cur.next_int("category count")):
        line = cur.next_value("category")
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 2:
            raise ParseError(f"bad category line: {line}", {"path": str(path)})
        categories.append(LegacyCategory(name=parts[0], weight=_to_float(parts[1]) or 0.0))

    last_student = _Cursor(lines, indices["LastStudent"] + 1, path).next_int("last student")

    cur = _Cursor(lines, indices["Marks"] + 1, path)
    assessments: List[LegacyAssessment] = []
    for idx in range(cur.next_int("marks count")):
        date_line = cur.next_value("date")
        date = _parse_date(date_line)
        if date is None:
            raise ParseError(f"bad date line: {date_line}", {"path": str(path)})
        category_name = cur.next_value("category")
        title = cur.next_value("title")
        term = _to_int(cur.next_value("term")) or 0
        summary_line = cur.next_value("summary")
        summary = _csv_numbers(summary_line, 5)
        if summary is None:
            raise ParseError(f"bad summary line: {summary_line}", {"path": str(path)})
        scores = []
        for _ in range(last_student):
            score_line = cur.next_value("student marks")
            pair = _csv_numbers(score_line, 2)
            if pair is None:
                raise ParseError(f"bad student mark line: {score_line}", {"path": str(path)})
            scores.append(decode_legacy_raw(pair[1]))
        assessments.append(
            LegacyAssessment(
                idx=idx,
                date=date,
                category_name=category_name,
                title=title,
                term=term,
                legacy_type=int(summary[0]),
                weight=summary[1],
                avg_percent=summary[2],
                out_of=summary[3],
                avg_raw=summary[4],
                scores=scores,
            )
        )

    return MarkFile(misc=misc, categories=categories, last_student=last_student, assessments=assessments)


def _parse_mask_token(token: str) -> Optional[str]:
    text = token.strip().upper()
    if not text:
        return None
    if text == "TBA" or set(text) <= {"0", "1"}:
        return text
    return None


def _parse_mark_set_def(line: str, sort_order: int) -> Optional[MarkSetDef]:
    parts = [p.strip() for p in line.split(",")]
    if len(parts) < 3:
        return None
    prefix, _, code = parts[0].partition("&")
    if not code:
        code = prefix
    return MarkSetDef(
        file_prefix=prefix.strip(),
        code=code.strip(),
        description=parts[1],
        weight=_to_float(parts[2]) or 0.0,
        sort_order=sort_order,
    )


def _parse_student_line(line: str) -> Optional[LegacyStudent]:
    parts = [p.strip() for p in line.split(",")]
    if len(parts) < 4:
        return None
    active_flag = _to_int(parts[0])
    return LegacyStudent(
        active=(1 if active_flag is None else active_flag) != 0,
        last_name=parts[1],
        first_name=parts[2],
        student_no=parts[4] if len(parts) > 4 else "",
        mark_set_mask=_parse_mask_token(parts[-1]),
    )


def parse_class_list(path: Path) -> ClassList:
    sections = _sections(_read_lines(path))
    general = sections.get("general information", [])
    class_name = general[2] if len(general) > 2 else "Imported Class"

    mark_sets: List[MarkSetDef] = []
    ms_lines = sections.get("mark sets created for this class", [])
    if ms_lines:
        expected = _to_int(ms_lines[0]) or 0
        for line in ms_lines[1:]:
            if len(mark_sets) >= expected:
                break
            definition = _parse_mark_set_def(line, len(mark_sets))
            if definition is not None:
                mark_sets.append(definition)

    students: List[LegacyStudent] = []
    student_lines = sections.get("class list", [])
    if student_lines:
        expected = _to_int(student_lines[0]) or 0
        for line in student_lines[1:]:
            if len(students) >= expected:
                break
            student = _parse_student_line(line)
            if student is not None:
                students.append(student)

    if not mark_sets and not students:
        raise ParseError(f"no class data in {path}", {"path": str(path)})
    return ClassList(class_name=class_name, mark_sets=mark_sets, students=students)


def _is_year_file(name: str) -> bool:
    upper = name.upper()
    return len(upper) >= 4 and upper[-4:-2] == ".Y" and upper[-2:].isdigit()


def find_class_list_file(folder: Path) -> Path:
    for path in sorted(Path(folder).iterdir()):
        upper = path.name.upper()
        if path.is_file() and upper.startswith("CL") and ".Y" in upper:
            return path
    raise ParseError(f"no CL*.Yxx file found in {folder}", {"path": str(folder)})


def find_mark_file(folder: Path, file_prefix: str) -> Optional[Path]:
    prefix = file_prefix.upper()
    candidates = sorted(
        path
        for path in Path(folder).iterdir()
        if path.is_file()
        and not path.name.upper().startswith("CL")
        and path.name.upper().startswith(prefix)
        and _is_year_file(path.name)
    )
    return candidates[0] if candidates else None
