import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from questions import Question, coerce_index, parse_questions  # noqa: E402
from scoring import (  # noqa: E402
    chain_graders, normalize_numeric_text, numerical_key_grader, percentage, score,
)


def _q(**raw):
    raw.setdefault("id", "q1")
    return Question.from_dict(raw)


def test_single_choice_awards_only_exact_index():
    q = _q(type="single", correctOptionIndex=2, points=3)
    assert score([q], {"q1": 2}).earned_points == 3
    assert score([q], {"q1": "2"}).earned_points == 3
    for wrong in (1, None, "two", True, 2.5, [2]):
        assert score([q], {"q1": wrong}).earned_points == 0


def test_multiple_choice_is_all_or_nothing():
    q = _q(type="multiple", correctOptionIndexes=[0, 1, 2], points=2)
    assert score([q], {"q1": [2, 0, 1]}).earned_points == 2
    assert score([q], {"q1": [0, 1, 1, 2]}).earned_points == 2
    assert score([q], {"q1": [0, 2]}).earned_points == 0
    assert score([q], {"q1": [0, 1, 2, 3]}).earned_points == 0
    assert score([q], {}).earned_points == 0


def test_empty_question_set_scores_zero_percent():
    result = score([], {"q1": 1})
    assert (result.earned_points, result.total_points, result.percentage) == (0, 0, 0)


def test_ungraded_types_count_towards_total_only():
    qs = parse_questions([
        {"id": "a", "type": "single", "correctOptionIndex": 0, "order": 1},
        {"id": "b", "type": "subjective", "order": 2, "points": 2},
        {"id": "c", "type": "match", "order": 3, "pairs": '[{"left": "x", "right": "y"}]'},
    ])
    result = score(qs, {"a": 0, "b": "an essay", "c": {"0": "y"}})
    assert result.earned_points == 1
    assert result.total_points == 4
    assert result.percentage == 25
    assert [b["gradedBy"] for b in result.breakdown] == ["local", "ungraded", "ungraded"]


def test_external_grader_is_clamped_and_failures_are_ungraded():
    q = _q(type="subjective", points=5)

    assert score([q], {"q1": "x"}, grader=lambda q, a: 99).earned_points == 5
    assert score([q], {"q1": "x"}, grader=lambda q, a: -3).earned_points == 0

    def boom(q, a):
        raise RuntimeError("grader down")

    result = score([q], {"q1": "x"}, grader=boom)
    assert result.earned_points == 0
    assert result.breakdown[0]["gradedBy"] == "ungraded"


def test_answers_keyed_by_int_ids_are_found():
    q = _q(id="7", type="single", correctOptionIndex=1)
    assert score([q], {7: 1}).earned_points == 1


@pytest.mark.parametrize("earned,total,expected", [
    (3, 4, 75), (1, 3, 33), (2, 3, 67), (1, 8, 13), (0, 5, 0), (5, 5, 100), (1, 0, 0),
])
def test_percentage_rounds_half_up(earned, total, expected):
    assert percentage(earned, total) == expected


def test_points_default_to_one_when_missing_or_invalid():
    assert _q(type="single", points=None).points == 1
    assert _q(type="single", points=0).points == 1
    assert _q(type="single", points="nan").points == 1
    assert _q(type="single", points=2.5).points == 2.5


def test_coerce_index_rejects_non_integers():
    assert coerce_index(" 3 ") == 3
    assert coerce_index(3.0) == 3
    assert coerce_index(float("inf")) is None
    assert coerce_index(False) is None


def test_numerical_key_grader():
    q = _q(type="numerical", correctText="3.50", points=2)
    assert normalize_numeric_text(" 3,5 ") == "3.5"
    assert numerical_key_grader(q, "3.5") == 2
    assert numerical_key_grader(q, "4") == 0
    assert numerical_key_grader(q, None) == 0
    assert numerical_key_grader(_q(type="subjective"), "3.5") is None

    result = score([q], {"q1": "3.500"}, grader=numerical_key_grader)
    assert result.earned_points == 2
    assert result.breakdown[0]["gradedBy"] == "external"


def test_chain_graders_first_opinion_wins():
    numeric = _q(id="n", type="numerical", correctText="10")
    essay = _q(id="e", type="subjective")
    grader = chain_graders(numerical_key_grader, lambda q, a: 1 if a == "good" else None)
    result = score([numeric, essay], {"n": "10", "e": "good"}, grader=grader)
    assert result.earned_points == 2
