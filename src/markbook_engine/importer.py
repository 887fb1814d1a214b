from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .config import set_calc_config_base
from .errors import BadParams, CollisionConflict, ParseError
from .legacy import (
    decode_legacy_raw,
    find_class_list_file,
    find_mark_file,
    parse_class_list,
    parse_export_file,
    parse_mark_file,
    parse_user_config,
)
from .models import CalcMethod, WeightMethod

logger = logging.getLogger(__name__)

COLLISION_POLICIES = ("strict", "first", "append")


@dataclass
class ImportReport:
    imported: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"imported": list(self.imported), "failed": list(self.failed)}


def _matches(store, mark_set_id: str, title: str):
    key = title.strip().lower()
    return [a for a in store.assessments(mark_set_id) if a.title.strip().lower() == key]


def import_export_file(store, mark_set_id: str, path: Path, collision_policy: str = "strict") -> Dict[str, Any]:
    """Load every block of one legacy export file into a mark set.

    Blocks are matched to assessments by title. Under ``strict`` an
    ambiguous title aborts before anything is written.
    """
    if collision_policy not in COLLISION_POLICIES:
        raise BadParams(f"collision policy must be one of: {', '.join(COLLISION_POLICIES)}")
    mark_set = store.get_mark_set(mark_set_id)
    parsed = parse_export_file(path)

    if collision_policy == "strict":
        for block in parsed.blocks:
            if len(_matches(store, mark_set_id, block.title)) > 1:
                raise CollisionConflict(
                    f"ambiguous assessment title: {block.title}",
                    {"title": block.title, "path": str(path)},
                )

    students = store.students(mark_set.class_id)
    summary = {
        "path": str(path),
        "blocksImported": 0,
        "assessmentsCreated": 0,
        "assessmentsUpdated": 0,
        "scoresWritten": 0,
        "skippedBlocks": [],
    }
    for block in parsed.blocks:
        try:
            values = block.student_values(parsed.last_student)
        except ParseError as exc:
            logger.warning("skipping block %r in %s: %s", block.title, path, exc.message)
            summary["skippedBlocks"].append({"title": block.title, **exc.to_dict()})
            continue

        existing = _matches(store, mark_set_id, block.title) if collision_policy != "append" else []
        if existing:
            assessment = store.update_assessment(existing[0].id, out_of=block.out_of)
            summary["assessmentsUpdated"] += 1
        else:
            assessment = store.add_assessment(mark_set_id, block.title, out_of=block.out_of)
            summary["assessmentsCreated"] += 1

        if len(values) > len(students):
            logger.warning("%s: block %r has %d values for %d students", path, block.title, len(values), len(students))
        for student, raw in zip(students, values):
            store.set_score(assessment.id, student.id, decode_legacy_raw(raw))
            summary["scoresWritten"] += 1
        summary["blocksImported"] += 1

    logger.info("imported %s: %d blocks", path, summary["blocksImported"])
    return summary


def import_export_files(
    store,
    mark_set_id: str,
    paths: Iterable[Path],
    collision_policy: str = "strict",
) -> ImportReport:
    """Import files one at a time; a malformed file is reported and skipped.

    Files imported before a failure are kept.
    """
    report = ImportReport()
    for path in paths:
        try:
            report.imported.append(import_export_file(store, mark_set_id, path, collision_policy))
        except ParseError as exc:
            logger.warning("export import failed for %s: %s", path, exc.message)
            report.failed.append({"path": str(path), **exc.to_dict()})
    return report


def import_user_config(store, path: Path) -> bool:
    """Store legacy calculation defaults; a bad file leaves the current config alone."""
    try:
        parsed = parse_user_config(path)
    except ParseError as exc:
        logger.warning("user config not imported from %s: %s", path, exc.message)
        return False
    set_calc_config_base(store, parsed.to_calc_config())
    logger.info("calc config defaults imported from %s", path)
    return True


def _enum_or_default(enum_cls, value: int, default):
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning("unknown %s code %s, using %s", enum_cls.__name__, value, default.name)
        return default


def _load_mark_file(store, mark_set, path: Path, students) -> int:
    parsed = parse_mark_file(path)
    if parsed.misc is not None:
        store.update_mark_set(
            mark_set.id,
            weight_method=_enum_or_default(WeightMethod, parsed.misc.weight_method, WeightMethod.CATEGORY),
            calc_method=_enum_or_default(CalcMethod, parsed.misc.calc_method, CalcMethod.AVERAGE),
        )

    seen = set()
    for category in parsed.categories:
        if category.name.lower() in seen:
            continue
        seen.add(category.name.lower())
        store.add_category(mark_set.id, category.name, category.weight)

    count = 0
    for legacy in parsed.assessments:
        if legacy.out_of <= 0:
            logger.warning("%s: assessment %r has no outOf, skipped", path, legacy.title)
            continue
        assessment = store.add_assessment(
            mark_set.id,
            legacy.title,
            category_name=legacy.category_name,
            weight=max(0.0, legacy.weight),
            out_of=legacy.out_of,
            term=legacy.term,
            legacy_type=legacy.legacy_type,
            date=legacy.date,
        )
        for student, state in zip(students, legacy.scores):
            store.set_score(assessment.id, student.id, state)
        count += 1
    return count


def import_class_folder(store, folder: Path) -> Dict[str, Any]:
    """Seed a class from a legacy class folder (CL file plus one mark file per mark set)."""
    folder = Path(folder)
    class_list = parse_class_list(find_class_list_file(folder))
    record = store.create_class(code=folder.name, name=class_list.class_name)

    students = [
        store.add_student(
            record.id,
            s.last_name,
            s.first_name,
            active=s.active,
            student_no=s.student_no,
            mark_set_mask=s.mark_set_mask or "TBA",
        )
        for s in class_list.students
    ]

    result: Dict[str, Any] = {
        "classId": record.id,
        "className": record.name,
        "students": len(students),
        "markSets": [],
        "missingMarkFiles": [],
        "failed": [],
    }
    for definition in sorted(class_list.mark_sets, key=lambda d: d.sort_order):
        mark_set = store.add_mark_set(record.id, definition.code, definition.description, weight=definition.weight)
        mark_path: Optional[Path] = find_mark_file(folder, definition.file_prefix)
        if mark_path is None:
            logger.warning("no mark file for %s in %s", definition.file_prefix, folder)
            result["missingMarkFiles"].append(definition.file_prefix)
            continue
        try:
            assessments = _load_mark_file(store, mark_set, mark_path, students)
        except ParseError as exc:
            logger.warning("mark file %s not imported: %s", mark_path, exc.message)
            result["failed"].append({"path": str(mark_path), **exc.to_dict()})
            continue
        result["markSets"].append({"id": mark_set.id, "code": mark_set.code, "assessments": assessments})

    logger.info("imported class %s with %d students", record.name, len(students))
    return result
