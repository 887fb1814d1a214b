from types import SimpleNamespace

import pytest

from markbook_engine.models import CalcMethod, ScoreState, WeightMethod
from markbook_engine.store import ScoreStore

MARK_FILE = """[Misc Info]
"MAT1 Grade 8 Math"
"101"
"1"
"2"
1
12345
2
""
[Categories]
2
"Tests,60"
"Labs,40"
[LastStudent]
2
[Marks]
2
"2025 9 15"
"Tests"
"Unit Test"
1
0,1,75,50,37.5
"1,45"
"2,-1"
"2025 9 22"
"Labs"
"Lab 1"
2
1,1,50,10,5
"1,0"
"2,8"
"""

CLASS_LIST = """[General Information]
"555-1234"
"Central School"
"Grade 8 Math"
"Ms Lee"
""
[Mark Sets created for this class]
2
"MAT1&MAT1,Term 1,60"
"MAT2&MAT2,Term 2,40"
[Class List]
3
1,Adams,Ann,F,1001,x,x,x,x,2010-01-01,10
0,Baker,Ben,M,1002,TBA
1,Chen,Cara,F,1003,
"""


@pytest.fixture()
def store():
    return ScoreStore()


@pytest.fixture()
def gradebook(store):
    """One class, four students, one category-weighted mark set.

    Finals: Adams 86.0, Baker 36.0, Chen 80.0, Diaz none.
    """
    record = store.create_class("8D", "Grade 8 Math")
    students = [
        store.add_student(record.id, last, first)
        for last, first in [("Adams", "Ann"), ("Baker", "Ben"), ("Chen", "Cara"), ("Diaz", "Dan")]
    ]
    mark_set = store.add_mark_set(
        record.id,
        "MAT1",
        "Term 1",
        weight=1.0,
        weight_method=WeightMethod.CATEGORY,
        calc_method=CalcMethod.AVERAGE,
    )
    store.add_category(mark_set.id, "Tests", 60)
    store.add_category(mark_set.id, "Labs", 40)
    test1 = store.add_assessment(mark_set.id, "Test 1", "Tests", weight=1, out_of=50, term=1, legacy_type=0)
    lab1 = store.add_assessment(mark_set.id, "Lab 1", "Labs", weight=1, out_of=10, term=2, legacy_type=1)

    adams, baker, chen, _ = students
    store.set_score(test1.id, adams.id, ScoreState.scored(45))
    store.set_score(lab1.id, adams.id, ScoreState.scored(8))
    store.set_score(test1.id, baker.id, ScoreState.scored(30))
    store.set_score(lab1.id, baker.id, ScoreState.zero())
    store.set_score(test1.id, chen.id, ScoreState.scored(40))
    store.set_score(lab1.id, chen.id, ScoreState.no_mark())

    return SimpleNamespace(
        store=store,
        class_id=record.id,
        students=students,
        mark_set=mark_set,
        assessments=[test1, lab1],
    )


@pytest.fixture()
def export_text():
    return "\n".join(
        [
            '"[MarkBook]"',
            '"Mark File: MAT18D.Y25"',
            '"This file belongs to Folder: MB8D25"',
            '"[LastStudent]"',
            "3",
            '""',
            '"[Report]"',
            '"Group Report"',
            "100,1,2",
            "55.5",
            "80",
            "0",
            "-1",
            '"True / False"',
            "9,0",
            "7",
            "9",
            "4",
            "",
        ]
    )


@pytest.fixture()
def export_path(tmp_path, export_text):
    path = tmp_path / "MAT18D.13"
    path.write_text(export_text, encoding="utf-8")
    return path


@pytest.fixture()
def mark_file_text():
    return MARK_FILE


@pytest.fixture()
def class_list_text():
    return CLASS_LIST
