import pytest

from markbook_engine.analytics import class_open
from markbook_engine.config import resolve_calc_config
from markbook_engine.errors import BadParams, CollisionConflict
from markbook_engine.importer import (
    import_class_folder,
    import_export_file,
    import_export_files,
    import_user_config,
)
from markbook_engine.models import CalcMethod


@pytest.fixture()
def three_students(store):
    record = store.create_class("8D", "Grade 8 Math")
    students = [store.add_student(record.id, name) for name in ("Adams", "Baker", "Chen")]
    mark_set = store.add_mark_set(record.id, "MAT1")
    return mark_set, students


def test_import_creates_assessments_and_scores(store, three_students, export_path):
    mark_set, (adams, baker, chen) = three_students
    summary = import_export_file(store, mark_set.id, export_path)

    assert summary["blocksImported"] == 2
    assert summary["assessmentsCreated"] == 2
    assert summary["scoresWritten"] == 6
    assert summary["skippedBlocks"] == []

    group, true_false = store.assessments(mark_set.id)
    assert (group.title, group.out_of) == ("Group Report", 100.0)
    assert true_false.out_of == 9.0
    assert store.get_score(group.id, adams.id).raw_value == 80.0
    assert store.get_score(group.id, baker.id).status == "no_mark"
    assert store.get_score(group.id, chen.id).status == "zero"
    assert store.get_score(true_false.id, chen.id).raw_value == 4.0


def test_reimport_updates_matching_title(store, three_students, export_path):
    mark_set, _ = three_students
    store.add_assessment(mark_set.id, "group report", out_of=50)
    summary = import_export_file(store, mark_set.id, export_path)
    assert summary["assessmentsUpdated"] == 1
    assert summary["assessmentsCreated"] == 1
    assert store.assessments(mark_set.id)[0].out_of == 100.0


def test_strict_collision_writes_nothing(store, three_students, export_path):
    mark_set, _ = three_students
    store.add_assessment(mark_set.id, "Group Report")
    store.add_assessment(mark_set.id, "Group Report")

    with pytest.raises(CollisionConflict) as excinfo:
        import_export_file(store, mark_set.id, export_path)
    assert excinfo.value.code == "collision_conflict"
    assert len(store.assessments(mark_set.id)) == 2
    assert store.scores_for_mark_set(mark_set.id) == {}


def test_first_and_append_policies(store, three_students, export_path):
    mark_set, (adams, _, _) = three_students
    first = store.add_assessment(mark_set.id, "Group Report")
    store.add_assessment(mark_set.id, "Group Report")

    import_export_file(store, mark_set.id, export_path, collision_policy="first")
    assert len(store.assessments(mark_set.id)) == 3
    assert store.get_score(first.id, adams.id).raw_value == 80.0

    import_export_file(store, mark_set.id, export_path, collision_policy="append")
    assert len(store.assessments(mark_set.id)) == 5


def test_unknown_policy(store, three_students, export_path):
    mark_set, _ = three_students
    with pytest.raises(BadParams):
        import_export_file(store, mark_set.id, export_path, collision_policy="merge")


def test_misaligned_block_is_skipped(store, three_students, tmp_path):
    mark_set, _ = three_students
    path = tmp_path / "SHORT.13"
    path.write_text('"[LastStudent]"\n3\n"[Data]"\n"Quiz"\n10\n4\n5\n"Test"\n20\n1\n2\n3\n', encoding="utf-8")

    summary = import_export_file(store, mark_set.id, path)
    assert summary["blocksImported"] == 1
    assert [s["title"] for s in summary["skippedBlocks"]] == ["Quiz"]
    assert summary["skippedBlocks"][0]["code"] == "parse_error"
    assert [a.title for a in store.assessments(mark_set.id)] == ["Test"]


def test_import_many_keeps_going(store, three_students, export_path, tmp_path):
    mark_set, _ = three_students
    broken = tmp_path / "BROKEN.13"
    broken.write_text('"[MarkBook]"\n', encoding="utf-8")

    report = import_export_files(store, mark_set.id, [broken, export_path])
    assert [item["path"] for item in report.imported] == [str(export_path)]
    assert report.failed[0]["path"] == str(broken)
    assert report.failed[0]["code"] == "parse_error"
    assert len(store.assessments(mark_set.id)) == 2
    assert report.as_dict()["failed"] == report.failed


def test_import_user_config(store, tmp_path):
    good = tmp_path / "user.cfg"
    good.write_text("[RoundOff]\n0\n[Mode Levels]\n1\n0,R\n75,A\n", encoding="utf-8")
    bad = tmp_path / "bad.cfg"
    bad.write_text("[RoundOff]\nmaybe\n", encoding="utf-8")

    assert import_user_config(store, good) is True
    config = resolve_calc_config(store)
    assert config.roff is False
    assert config.mode_active_levels == 1
    assert config.mode_vals[1] == 75.0

    assert import_user_config(store, bad) is False
    assert resolve_calc_config(store).roff is False


def test_import_class_folder(store, tmp_path, mark_file_text, class_list_text):
    folder = tmp_path / "MB8D25"
    folder.mkdir()
    (folder / "CL8D.Y25").write_text(class_list_text, encoding="utf-8")
    (folder / "MAT1.Y25").write_text(mark_file_text, encoding="utf-8")

    result = import_class_folder(store, folder)
    assert result["className"] == "Grade 8 Math"
    assert result["students"] == 3
    assert result["missingMarkFiles"] == ["MAT2"]
    assert result["failed"] == []
    assert [(m["code"], m["assessments"]) for m in result["markSets"]] == [("MAT1", 2)]

    class_id = result["classId"]
    adams, baker, _ = store.students(class_id)
    assert adams.mark_set_mask == "10"
    assert baker.active is False

    mat1, mat2 = store.mark_sets(class_id)
    assert (mat1.weight, mat2.weight) == (60.0, 40.0)
    assert int(mat1.calc_method) == 2
    assert [c.name for c in store.categories(mat1.id)] == ["Tests", "Labs"]

    unit_test = store.assessments(mat1.id)[0]
    assert (unit_test.term, unit_test.date, unit_test.out_of) == (1, "2025-09-15", 50.0)
    assert store.get_score(unit_test.id, adams.id).raw_value == 45.0
    assert store.get_score(unit_test.id, baker.id).status == "zero"


def test_non_finite_export_fails_without_writes(store, three_students, export_path, tmp_path):
    mark_set, _ = three_students
    bad = tmp_path / "NAN.13"
    bad.write_text('"[LastStudent]"\n3\n"[Data]"\n"Quiz"\n10,0\n5\nnan\n7\n', encoding="utf-8")

    report = import_export_files(store, mark_set.id, [bad, export_path])
    assert report.failed[0]["path"] == str(bad)
    assert report.failed[0]["code"] == "parse_error"
    assert [a.title for a in store.assessments(mark_set.id)] == ["Group Report", "True / False"]


def test_blended_calc_method_survives_class_import(store, tmp_path, mark_file_text, class_list_text):
    folder = tmp_path / "MB8D25"
    folder.mkdir()
    (folder / "CL8D.Y25").write_text(class_list_text, encoding="utf-8")
    (folder / "MAT1.Y25").write_text(mark_file_text.replace("12345\n2\n", "12345\n4\n"), encoding="utf-8")

    result = import_class_folder(store, folder)
    mat1 = store.mark_sets(result["classId"])[0]
    assert mat1.calc_method == CalcMethod.BLENDED_MEDIAN

    opened = class_open(store, result["classId"], mat1.id)
    assert [r["finalMark"] for r in opened["rows"]] == [90.0, 32.0, None]
    assert opened["settings"]["weightMethodApplied"] == 1
