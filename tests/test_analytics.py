import pytest

from markbook_engine.analytics import (
    DISTRIBUTION_BINS,
    StudentScope,
    class_open,
    class_rows,
    combined_open,
    combined_rows,
    distribution_bins,
    parse_class_rows_query,
    student_open,
)
from markbook_engine.errors import BadParams, NotFound
from markbook_engine.models import ScoreState, WeightMethod
from markbook_engine.reports import category_analysis_model, markset_summary_model, student_summary_model


def _names(rows):
    return [r["displayName"].split(",")[0] for r in rows]


@pytest.fixture()
def two_mark_sets(gradebook):
    """Adds MAT2 (weight 3) beside MAT1 (weight 1); Chen has no MAT2 mark."""
    store = gradebook.store
    mat2 = store.add_mark_set(gradebook.class_id, "MAT2", "Term 2", weight=3.0, weight_method=WeightMethod.ASSESSMENT)
    exam = store.add_assessment(mat2.id, "Exam", out_of=100)
    adams, baker, _, diaz = gradebook.students
    store.set_score(exam.id, adams.id, ScoreState.scored(70))
    store.set_score(exam.id, baker.id, ScoreState.scored(40))
    store.set_score(exam.id, diaz.id, ScoreState.scored(50))
    gradebook.mat2 = mat2
    return gradebook


def test_distribution_bins_boundaries():
    bins = distribution_bins([0, 49.9, 50, 69.9, 70, 100, None])
    assert [b["label"] for b in bins] == [label for label, _, _ in DISTRIBUTION_BINS]
    assert [b["count"] for b in bins] == [2, 1, 1, 1, 0, 1]


def test_distribution_bins_always_six():
    bins = distribution_bins([])
    assert len(bins) == 6
    assert all(b["count"] == 0 for b in bins)


def test_class_open_kpis(gradebook):
    result = class_open(gradebook.store, gradebook.class_id, gradebook.mark_set.id)
    kpis = result["kpis"]
    assert kpis["classAverage"] == pytest.approx((86 + 36 + 80) / 3)
    assert kpis["classMedian"] == 80.0
    assert kpis["studentCount"] == 4
    assert kpis["finalMarkCount"] == 3
    assert kpis["noMarkRate"] == pytest.approx(3 / 8)
    assert kpis["zeroRate"] == pytest.approx(1 / 8)

    assert result["distributions"]["noFinalMarkCount"] == 1
    assert [b["count"] for b in result["distributions"]["bins"]] == [1, 0, 0, 0, 2, 0]
    assert [r["finalMark"] for r in result["rows"]] == [86.0, 36.0, 80.0, None]
    assert _names(result["topBottom"]["top"]) == ["Adams", "Chen", "Baker"]
    assert _names(result["topBottom"]["bottom"])[0] == "Baker"

    test1 = result["perAssessment"][0]
    assert (test1["title"], test1["avgRaw"], test1["avgPercent"]) == ("Test 1", 38.3, 76.7)
    assert test1["noMarkCount"] == 1
    assert {c["name"]: c["classAverage"] for c in result["perCategory"]} == {"Tests": 76.7, "Labs": 40.0}


def test_class_open_filters(gradebook):
    result = class_open(gradebook.store, gradebook.class_id, gradebook.mark_set.id, filters={"term": 1})
    assert [r["finalMark"] for r in result["rows"]] == [90.0, 60.0, 80.0, None]
    assert result["filters"]["term"] == 1
    assert [a["title"] for a in result["perAssessment"]] == ["Test 1"]


def test_class_open_student_scope(gradebook):
    store = gradebook.store
    _, baker, chen, _ = gradebook.students
    store.update_student(baker.id, active=False)
    store.set_mask(chen.id, "0")

    everyone = class_open(store, gradebook.class_id, gradebook.mark_set.id)
    assert [r["finalMark"] for r in everyone["rows"]] == [86.0, 36.0, None, None]

    active = class_open(store, gradebook.class_id, gradebook.mark_set.id, student_scope="active")
    assert _names(active["rows"]) == ["Adams", "Chen", "Diaz"]

    valid = class_open(store, gradebook.class_id, gradebook.mark_set.id, student_scope=StudentScope.VALID)
    assert _names(valid["rows"]) == ["Adams", "Diaz"]
    # stats count only active, valid students
    assert valid["perAssessment"][0]["avgRaw"] == 45.0

    with pytest.raises(BadParams):
        class_open(store, gradebook.class_id, gradebook.mark_set.id, student_scope="some")


def test_mark_set_from_other_class_is_not_found(gradebook):
    other = gradebook.store.create_class("9A")
    with pytest.raises(NotFound):
        class_open(gradebook.store, other.id, gradebook.mark_set.id)


def test_class_rows_sorting_and_cohort(gradebook):
    args = (gradebook.store, gradebook.class_id, gradebook.mark_set.id)

    result = class_rows(*args, query={"sortBy": "finalMark", "sortDir": "desc"})
    assert _names(result["rows"]) == ["Adams", "Chen", "Baker"]
    assert result["totalRows"] == 3

    result = class_rows(*args, query={"sortBy": "finalMark", "sortDir": "desc", "cohort": {"includeNoFinal": True}})
    assert _names(result["rows"]) == ["Diaz", "Adams", "Chen", "Baker"]

    result = class_rows(*args, query={"sortBy": "finalMark", "cohort": {"includeNoFinal": True}})
    assert _names(result["rows"]) == ["Baker", "Chen", "Adams", "Diaz"]

    result = class_rows(*args, query={"cohort": {"finalMin": 50, "finalMax": 85}})
    assert _names(result["rows"]) == ["Chen"]
    assert result["appliedCohort"] == {"finalMin": 50.0, "finalMax": 85.0, "includeNoFinal": False}


def test_class_rows_ties_fall_back_to_sort_order(gradebook):
    query = {"sortBy": "scoredCount", "cohort": {"includeNoFinal": True}}
    result = class_rows(gradebook.store, gradebook.class_id, gradebook.mark_set.id, query=query)
    assert _names(result["rows"]) == ["Diaz", "Baker", "Chen", "Adams"]

    query["sortDir"] = "desc"
    result = class_rows(gradebook.store, gradebook.class_id, gradebook.mark_set.id, query=query)
    assert _names(result["rows"]) == ["Adams", "Baker", "Chen", "Diaz"]


def test_class_rows_search_and_paging(gradebook):
    args = (gradebook.store, gradebook.class_id, gradebook.mark_set.id)
    assert _names(class_rows(*args, query={"search": " BA "})["rows"]) == ["Baker"]

    result = class_rows(*args, query={"page": 2, "pageSize": 2, "sortBy": "displayName"})
    assert _names(result["rows"]) == ["Chen"]
    assert (result["page"], result["pageSize"], result["totalRows"]) == (2, 2, 3)


@pytest.mark.parametrize(
    "raw",
    [
        {"pageSize": 0},
        {"pageSize": 501},
        {"page": True},
        {"sortBy": "grade"},
        {"sortDir": "up"},
        {"search": 5},
        {"cohort": {"finalMin": 90, "finalMax": 10}},
        {"cohort": {"finalMin": "low"}},
    ],
)
def test_class_rows_query_rejects_bad_values(raw):
    with pytest.raises(BadParams):
        parse_class_rows_query(raw)


def test_student_open(gradebook):
    adams = gradebook.students[0]
    result = student_open(gradebook.store, gradebook.class_id, gradebook.mark_set.id, adams.id)
    assert result["finalMark"] == 86.0
    assert result["counts"] == {"noMark": 0, "zero": 0, "scored": 2}
    test1, lab1 = result["assessmentTrail"]
    assert (test1["score"], test1["percent"], test1["classAvgRaw"]) == (45.0, 90.0, 38.3)
    assert lab1["percent"] == 80.0
    assert [c["percent"] for c in result["categoryBreakdown"]] == [90.0, 80.0]


def test_student_open_respects_scope(gradebook):
    store = gradebook.store
    baker = gradebook.students[1]
    store.update_student(baker.id, active=False)
    assert student_open(store, gradebook.class_id, gradebook.mark_set.id, baker.id)["finalMark"] == 36.0
    with pytest.raises(NotFound):
        student_open(store, gradebook.class_id, gradebook.mark_set.id, baker.id, student_scope="active")
    with pytest.raises(NotFound):
        student_open(store, gradebook.class_id, gradebook.mark_set.id, "missing")


def test_combined_open_weights(two_mark_sets):
    gb = two_mark_sets
    result = combined_open(gb.store, gb.class_id, [gb.mark_set.id, gb.mat2.id])

    assert [r["combinedFinal"] for r in result["rows"]] == [74.0, 39.0, 80.0, 50.0]
    assert result["settingsApplied"]["fallbackUsedCount"] == 0
    assert result["kpis"]["noCombinedFinalCount"] == 0
    assert result["kpis"]["finalMarkCount"] == 4
    assert [(m["code"], m["classAverage"]) for m in result["perMarkSet"]] == [("MAT1", 67.3), ("MAT2", 53.3)]
    assert _names(result["topBottom"]["top"])[0] == "Chen"


def test_combined_open_falls_back_to_equal_weights(two_mark_sets):
    gb = two_mark_sets
    gb.store.update_mark_set(gb.mark_set.id, weight=0.0)
    gb.store.update_mark_set(gb.mat2.id, weight=0.0)

    result = combined_open(gb.store, gb.class_id, [gb.mark_set.id, gb.mat2.id])
    assert [r["combinedFinal"] for r in result["rows"]] == [78.0, 38.0, 80.0, 50.0]
    assert result["settingsApplied"]["fallbackUsedCount"] == 4


def test_combined_valid_scope_keeps_student_valid_anywhere(two_mark_sets):
    gb = two_mark_sets
    _, baker, chen, _ = gb.students
    gb.store.set_mask(baker.id, "01")
    gb.store.set_mask(chen.id, "00")

    result = combined_open(gb.store, gb.class_id, [gb.mark_set.id, gb.mat2.id], student_scope="valid")
    assert _names(result["rows"]) == ["Adams", "Baker", "Diaz"]
    assert result["rows"][1]["combinedFinal"] == 40.0


@pytest.mark.parametrize("ids", [[], ["nope"]])
def test_combined_open_rejects_bad_selection(two_mark_sets, ids):
    with pytest.raises(BadParams):
        combined_open(two_mark_sets.store, two_mark_sets.class_id, ids)


def test_combined_open_rejects_deleted_mark_set(two_mark_sets):
    gb = two_mark_sets
    gb.store.delete_mark_set(gb.mat2.id)
    with pytest.raises(BadParams) as excinfo:
        combined_open(gb.store, gb.class_id, [gb.mark_set.id, gb.mat2.id])
    assert excinfo.value.details["deletedMarkSets"] == [{"id": gb.mat2.id, "code": "MAT2"}]


def test_combined_rows(two_mark_sets):
    gb = two_mark_sets
    ids = [gb.mark_set.id, gb.mat2.id]
    result = combined_rows(gb.store, gb.class_id, ids, query={"sortBy": "finalMark", "sortDir": "desc"})
    assert _names(result["rows"]) == ["Chen", "Adams", "Diaz", "Baker"]
    assert result["fallbackUsedCount"] == 0

    with pytest.raises(BadParams):
        combined_rows(gb.store, gb.class_id, ids, query={"sortBy": "zeroCount"})


def test_reports_match_analytics(gradebook):
    args = (gradebook.store, gradebook.class_id, gradebook.mark_set.id)
    opened = class_open(*args, filters={"term": "ALL"})

    summary = markset_summary_model(*args, filters={"term": "ALL"})
    assert [r["finalMark"] for r in summary["perStudent"]] == [r["finalMark"] for r in opened["rows"]]
    assert summary["perAssessment"] == opened["perAssessment"]

    categories = category_analysis_model(*args)
    assert categories["perCategory"] == opened["perCategory"]

    adams = gradebook.students[0]
    report = student_summary_model(*args, adams.id)
    assert report["student"]["finalMark"] == student_open(*args, adams.id)["finalMark"]
    assert report["class"]["name"] == "Grade 8 Math"
