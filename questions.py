# questions.py
# -----------------------------------------------------------------------------
# Typed question representation shared by chapter quizzes and the final test,
# plus the answer helpers used by both sessions.
#   single     -> answer is an option index
#   multiple   -> answer is a list of option indexes
#   numerical  -> answer is free text, compared by a grader (never locally)
#   match      -> answer is {pair_index: text}
#   subjective -> answer is free text, guidance only
# -----------------------------------------------------------------------------

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

SINGLE = "single"
MULTIPLE = "multiple"
NUMERICAL = "numerical"
MATCH = "match"
SUBJECTIVE = "subjective"

QUESTION_TYPES = (SINGLE, MULTIPLE, NUMERICAL, MATCH, SUBJECTIVE)

_TYPE_ALIASES = {
    "single_choice": SINGLE, "single-choice": SINGLE, "mcq": SINGLE, "radio": SINGLE,
    "multiple_choice": MULTIPLE, "multiple-choice": MULTIPLE, "checkbox": MULTIPLE,
    "numeric": NUMERICAL, "number": NUMERICAL,
    "matching": MATCH, "match_the_column": MATCH,
    "text": SUBJECTIVE, "essay": SUBJECTIVE, "free_form": SUBJECTIVE,
}


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return default


def normalize_type(raw_type: Any) -> str:
    t = str(raw_type or "").strip().lower()
    t = _TYPE_ALIASES.get(t, t)
    return t if t in QUESTION_TYPES else SUBJECTIVE


def coerce_index(value: Any) -> Optional[int]:
    """Numeric coercion of a submitted option index; None when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        f = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f) or not f.is_integer():
        return None
    return int(f)


def coerce_index_set(value: Any) -> FrozenSet[int]:
    """Numeric coercion plus duplicate removal; unusable entries are dropped."""
    if value is None:
        return frozenset()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        value = [value]
    out = set()
    for v in value:
        idx = coerce_index(v)
        if idx is not None:
            out.add(idx)
    return frozenset(out)


def is_answered(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) > 0
    if isinstance(value, str):
        return value != ""
    return True


def toggle_option(current: Any, option_index: int) -> List[int]:
    """Checkbox behaviour for multiple-choice answers; returns a new list."""
    selected = list(current or [])
    if option_index in selected:
        return [i for i in selected if i != option_index]
    return selected + [option_index]


def set_match_pair(current: Any, pair_index: int, value: str) -> Dict[str, str]:
    pairs = dict(current or {})
    pairs[str(pair_index)] = value
    return pairs


def _parse_pairs(raw: Any) -> List[Dict[str, str]]:
    # Pairs arrive either as a list or as a JSON-encoded string.
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    out: List[Dict[str, str]] = []
    for p in raw or []:
        if isinstance(p, dict):
            out.append({"left": str(p.get("left") or ""), "right": str(p.get("right") or "")})
    return out


@dataclass
class Question:
    id: str
    type: str
    prompt: str = ""
    points: float = 1
    order: int = 1
    options: List[str] = field(default_factory=list)
    correct_option_index: Optional[int] = None
    correct_option_indexes: Optional[FrozenSet[int]] = None
    correct_text: Optional[str] = None
    pairs: List[Dict[str, str]] = field(default_factory=list)
    sample_answer: Optional[str] = None

    @property
    def auto_graded(self) -> bool:
        if self.type == SINGLE:
            return self.correct_option_index is not None
        if self.type == MULTIPLE:
            return self.correct_option_indexes is not None
        return False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Question":
        qtype = normalize_type(_pick(raw, "type", "questionType"))
        try:
            points = float(_pick(raw, "points", default=1))
        except (TypeError, ValueError):
            points = 1.0
        if not math.isfinite(points) or points <= 0:
            points = 1.0
        if points == int(points):
            points = int(points)
        try:
            order = int(_pick(raw, "order", default=1))
        except (TypeError, ValueError):
            order = 1

        correct_index = coerce_index(_pick(raw, "correctOptionIndex", "correct_option_index"))
        raw_indexes = _pick(raw, "correctOptionIndexes", "correct_option_indexes")
        correct_indexes = coerce_index_set(raw_indexes) if isinstance(raw_indexes, (list, tuple, set, frozenset)) else None

        return cls(
            id=str(_pick(raw, "id", "questionId", default="")),
            type=qtype,
            prompt=str(_pick(raw, "prompt", "text", "question", default="")),
            points=points,
            order=order,
            options=[str(o) for o in (_pick(raw, "options", default=[]) or [])],
            correct_option_index=correct_index if qtype == SINGLE else None,
            correct_option_indexes=correct_indexes if qtype == MULTIPLE else None,
            correct_text=(None if _pick(raw, "correctText", "correct_text") is None
                          else str(_pick(raw, "correctText", "correct_text"))),
            pairs=_parse_pairs(_pick(raw, "pairs", default=[])) if qtype == MATCH else [],
            sample_answer=_pick(raw, "sampleAnswer", "sample_answer"),
        )

    def public_view(self) -> Dict[str, Any]:
        """Learner-facing shape: no answer key."""
        out: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "prompt": self.prompt,
            "points": self.points,
            "order": self.order,
            "autoGraded": self.auto_graded,
        }
        if self.type in (SINGLE, MULTIPLE):
            out["options"] = list(self.options)
        if self.type == MATCH:
            out["pairs"] = [{"left": p["left"]} for p in self.pairs]
        return out


def sort_questions(questions: Iterable[Question]) -> List[Question]:
    return sorted(questions, key=lambda q: (q.order, q.id))


def parse_questions(raw: Any) -> List[Question]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    qs = [Question.from_dict(q) for q in (raw or []) if isinstance(q, dict)]
    return sort_questions(qs)
