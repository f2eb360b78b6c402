# scoring.py
# -----------------------------------------------------------------------------
# Pure scoring of a question set against submitted answers.
# - single / multiple are graded locally (all-or-nothing per question)
# - numerical / match / subjective only count towards total_points unless an
#   external grader is plugged in
# - unanswered or malformed answers are incorrect, never an error
# -----------------------------------------------------------------------------

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from questions import (
    MULTIPLE, NUMERICAL, SINGLE, Question, coerce_index, coerce_index_set,
)

# grader(question, answer) -> points awarded, or None when it has no opinion
Grader = Callable[[Question, Any], Optional[float]]


@dataclass
class ScoreResult:
    earned_points: float = 0
    total_points: float = 0
    breakdown: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def percentage(self) -> int:
        return percentage(self.earned_points, self.total_points)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "earnedPoints": self.earned_points,
            "totalPoints": self.total_points,
            "percentage": self.percentage,
            "breakdown": list(self.breakdown),
        }


def percentage(earned: float, total: float) -> int:
    """round(100 * earned / total), half up; 0 when there is nothing to score."""
    if not total:
        return 0
    return int(math.floor(100.0 * earned / total + 0.5))


def _answer_for(answers: Mapping[Any, Any], qid: str) -> Any:
    if qid in answers:
        return answers[qid]
    # Answer maps coming back from JSON may be keyed by int ids
    for k, v in answers.items():
        if str(k) == qid:
            return v
    return None


def _grade_locally(q: Question, answer: Any) -> Optional[bool]:
    if q.type == SINGLE and q.correct_option_index is not None:
        return coerce_index(answer) == q.correct_option_index
    if q.type == MULTIPLE and q.correct_option_indexes is not None:
        if answer is None:
            return False
        return coerce_index_set(answer) == q.correct_option_indexes
    return None


def _clamp(points: Any, max_points: float) -> float:
    try:
        p = float(points)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(p):
        return 0
    p = max(0.0, min(p, float(max_points)))
    return int(p) if p.is_integer() else round(p, 2)


def score(questions: Iterable[Question], answers: Optional[Mapping[Any, Any]],
          grader: Optional[Grader] = None) -> ScoreResult:
    answers = answers or {}
    result = ScoreResult()
    for q in questions:
        pts = q.points
        result.total_points += pts
        ans = _answer_for(answers, q.id)

        correct = _grade_locally(q, ans)
        if correct is not None:
            awarded = pts if correct else 0
            graded_by = "local"
        elif grader is not None:
            try:
                external = grader(q, ans)
            except Exception as e:
                print(f"[scoring] grader failed for question {q.id}: {e}")
                external = None
            awarded = _clamp(external, pts) if external is not None else 0
            graded_by = "external" if external is not None else "ungraded"
        else:
            awarded = 0
            graded_by = "ungraded"

        result.earned_points += awarded
        result.breakdown.append({
            "questionId": q.id,
            "type": q.type,
            "points": pts,
            "pointsAwarded": awarded,
            "gradedBy": graded_by,
        })
    return result


# ---------------------------------------------------------------------------
# Graders for the server-side final-test path
# ---------------------------------------------------------------------------
_WS = re.compile(r"\s+")


def normalize_numeric_text(value: Any) -> str:
    """'  3,50 ' -> '3.5'; non-numeric text is lower-cased with collapsed whitespace."""
    s = _WS.sub(" ", str(value if value is not None else "")).strip().lower()
    if not s:
        return ""
    candidate = s.replace(",", ".").replace(" ", "")
    try:
        f = float(candidate)
    except ValueError:
        return s
    if not math.isfinite(f):
        return s
    if f.is_integer():
        return str(int(f))
    return repr(f)


def numerical_key_grader(question: Question, answer: Any) -> Optional[float]:
    if question.type != NUMERICAL or question.correct_text is None:
        return None
    if answer is None or normalize_numeric_text(answer) == "":
        return 0
    same = normalize_numeric_text(answer) == normalize_numeric_text(question.correct_text)
    return question.points if same else 0


def chain_graders(*graders: Grader) -> Grader:
    """First grader with an opinion wins."""
    def _chained(question: Question, answer: Any) -> Optional[float]:
        for g in graders:
            pts = g(question, answer)
            if pts is not None:
                return pts
        return None
    return _chained
