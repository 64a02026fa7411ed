"""Score conversion: raw tallies -> converted section scores -> TOEFL composite."""
from unittest.mock import MagicMock

import pytest

from engine import FINAL_SCORE_MAX, TOTAL_CONVERTED_MAX
from examengine.models import Question, RawSectionScore, Section
from examengine.scoring import (
    build_statistics_row,
    calculate_toefl_scores,
    coerce_answer,
    convert_section,
    format_score_display,
    format_score_report,
    is_correct,
    normalize_raw,
    score_exam,
    score_unit,
    tally_answers,
    update_realtime_score,
)


def _section(kind, n, correct="A"):
    questions = tuple(Question(id=f"{kind}{i}", type="multiple", prompt="?", correct_answer=correct) for i in range(n))
    return Section(id=f"sec-{kind}", kind=kind, title=kind, questions=questions)


def test_perfect_score():
    result = calculate_toefl_scores({"listening": 50, "structure": 40, "reading": 50})
    assert [s.converted for s in result.per_section.values()] == [140, 140, 140]
    assert result.total_converted == TOTAL_CONVERTED_MAX
    assert result.average == 140
    assert result.final_score == FINAL_SCORE_MAX


def test_half_marks_round_half_up():
    result = calculate_toefl_scores({"listening": 25, "structure": 20, "reading": 25})
    assert result.total_converted == 210
    assert result.average == 70
    # 210 / 420 * 677 = 338.5
    assert result.final_score == 339


def test_zero_and_missing_sections():
    result = calculate_toefl_scores({})
    assert result.total_converted == 0
    assert result.average == 0
    assert result.final_score == 0
    assert set(result.per_section) == {"listening", "structure", "reading"}


def test_raw_scores_are_clamped():
    result = calculate_toefl_scores({"listening": 60, "structure": -3, "reading": 50})
    assert result.per_section["listening"].raw == 50
    assert result.per_section["listening"].converted == 140
    assert result.per_section["structure"].raw == 0
    assert result.per_section["structure"].converted == 0


def test_intermediate_rounding_is_half_up():
    # 3 / 40 * 140 = 10.5
    assert convert_section(3, 40) == 11
    # 1 / 50 * 140 = 2.8
    assert convert_section(1, 50) == 3
    # 3 / 4 * 50 = 37.5
    assert normalize_raw(RawSectionScore(correct_count=3, total_count=4), 50) == 38


def test_average_uses_rounded_converted_scores():
    result = calculate_toefl_scores({"listening": 1})
    assert result.per_section["listening"].converted == 3
    assert result.average == 1.0


def test_scores_are_monotonic():
    previous_converted = previous_final = -1
    for raw in range(0, 51):
        result = calculate_toefl_scores({"listening": raw, "structure": 40, "reading": 50})
        assert result.per_section["listening"].converted >= previous_converted
        assert result.final_score >= previous_final
        assert 0 <= result.final_score <= FINAL_SCORE_MAX
        previous_converted = result.per_section["listening"].converted
        previous_final = result.final_score


def test_empty_sections_score_zero():
    sections = [_section("listening", 0), _section("structure", 0), _section("reading", 0)]
    result = score_exam(sections, {})
    assert result.final_score == 0
    assert normalize_raw(RawSectionScore(0, 0), 50) == 0
    assert normalize_raw(None, 50) == 0


def test_score_exam_from_answers():
    sections = [_section("listening", 4), _section("structure", 4), _section("reading", 4)]
    answers = {"listening0": "A", "listening1": "A", "structure0": "A", "structure1": "B", "reading0": "A"}
    tallies = tally_answers(sections, answers)
    assert tallies["listening"] == RawSectionScore(correct_count=2, total_count=4)
    assert tallies["structure"] == RawSectionScore(correct_count=1, total_count=4)

    result = score_exam(sections, answers)
    assert result.per_section["listening"].raw == 25
    assert result.per_section["structure"].raw == 10
    assert result.per_section["reading"].raw == 13


@pytest.mark.parametrize("value,expected", [
    (None, ""),
    ("B", "B"),
    (True, "true"),
    (False, "false"),
    (2, "2"),
    (2.0, "2"),
    (2.5, "2.5"),
    (["A", "C"], "A,C"),
])
def test_coerce_answer(value, expected):
    assert coerce_answer(value) == expected


def test_is_correct():
    assert is_correct("A", "A")
    assert is_correct(1, "1")
    assert not is_correct("a", "A")
    assert not is_correct("A", None)
    assert not is_correct(None, "A")


def test_score_unit():
    section = _section("unit", 4, correct="B")
    assert score_unit([section], {"unit0": "B", "unit1": "B", "unit2": "B", "unit3": "C"}) == (3, 75)
    assert score_unit([section], {}) == (0, 0)
    assert score_unit([_section("unit", 0)], {}) == (0, 0)


def test_statistics_row():
    composite = calculate_toefl_scores({"listening": 50, "structure": 20, "reading": 0})
    row = build_statistics_row("student-1", "exam-1", composite)
    assert row["exam_type"] == "TOEFL"
    assert (row["listening_score"], row["structure_score"], row["reading_score"]) == (50, 20, 0)
    assert row["total_score"] == composite.final_score
    assert row["status"] == "active"
    assert "completion_time" not in row

    done = build_statistics_row("student-1", "exam-1", composite, status="completed")
    assert done["completion_time"]


def test_realtime_update_survives_store_failure():
    store = MagicMock()
    store.upsert_exam_result.return_value = False
    sections = [_section("listening", 2)]
    result = update_realtime_score(store, "student-1", "exam-1", sections, {"listening0": "A"})
    assert result.per_section["listening"].raw == 25
    store.upsert_exam_result.assert_called_once()


def test_score_formatting():
    assert format_score_display(38, 106) == "38 (106)"
    report = format_score_report(calculate_toefl_scores({"listening": 50, "structure": 40, "reading": 50}))
    assert "Listening: 140/140 (Raw: 50/50)" in report
    assert "Final TOEFL Score: 677/677" in report
