# models.py
# -----------------------------------------------------------------------------
# Read-only course definitions (authoring side) and the learner-owned results.
# Every type is built from the wire dicts the LMS backend returns; both
# camelCase and snake_case keys are accepted.
# -----------------------------------------------------------------------------

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from questions import Question, parse_questions

SCOPE_CHAPTER = "chapter"
SCOPE_COURSE = "course"


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return default


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _num_or_none(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return int(f) if f.is_integer() else f


def unwrap(payload: Any) -> Any:
    """Peel the `{"data": {"data": ...}}` / `{"data": ...}` envelopes the backend uses."""
    for _ in range(2):
        if isinstance(payload, dict) and "data" in payload and "id" not in payload:
            payload = payload["data"]
        else:
            break
    return payload


def unwrap_list(payload: Any, *keys: str) -> List[Any]:
    payload = unwrap(payload)
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for k in keys:
            if isinstance(payload.get(k), list):
                return payload[k]
    return []


# ---------------------------------------------------------------------------
# Course structure
# ---------------------------------------------------------------------------
@dataclass
class Chapter:
    id: str
    title: str = ""
    order: int = 0
    content: str = ""
    attachments: List[Any] = field(default_factory=list)
    has_quiz: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Chapter":
        assessments = raw.get("assessments")
        if "hasQuiz" in raw or "has_quiz" in raw:
            has_quiz = bool(_pick(raw, "hasQuiz", "has_quiz", default=False))
        else:
            has_quiz = isinstance(assessments, list) and len(assessments) > 0
        return cls(
            id=str(_pick(raw, "id", "chapterId", default="")),
            title=str(_pick(raw, "title", default="")),
            order=_int_or(_pick(raw, "order", default=0), 0),
            content=str(_pick(raw, "content", "description", default="")),
            attachments=list(_pick(raw, "attachments", default=[]) or []),
            has_quiz=has_quiz,
        )

    def content_pages(self, paragraphs_per_page: int = 3) -> List[str]:
        paras = [p.strip() for p in re.split(r"\n\n+", self.content or "") if p.strip()]
        pages = ["\n\n".join(paras[i:i + paragraphs_per_page])
                 for i in range(0, len(paras), max(1, paragraphs_per_page))]
        return pages or [self.content or ""]


@dataclass
class Course:
    id: str
    title: str = ""
    chapters: List[Chapter] = field(default_factory=list)

    def __post_init__(self):
        self.chapters = sorted(self.chapters, key=lambda c: c.order)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], chapters: Optional[List[Any]] = None) -> "Course":
        raw = unwrap(raw) or {}
        chapter_rows = chapters if chapters is not None else (raw.get("chapters") or [])
        return cls(
            id=str(_pick(raw, "id", "courseId", default="")),
            title=str(_pick(raw, "title", default="")),
            chapters=[c if isinstance(c, Chapter) else Chapter.from_dict(c)
                      for c in chapter_rows if isinstance(c, (dict, Chapter))],
        )

    @property
    def chapter_ids(self) -> List[str]:
        return [c.id for c in self.chapters]

    def chapter(self, chapter_id: Any) -> Optional[Chapter]:
        for c in self.chapters:
            if c.id == str(chapter_id):
                return c
        return None

    def next_chapter(self, chapter_id: Any) -> Optional[Chapter]:
        ids = self.chapter_ids
        try:
            idx = ids.index(str(chapter_id))
        except ValueError:
            return None
        return self.chapters[idx + 1] if idx + 1 < len(ids) else None


# ---------------------------------------------------------------------------
# Attempts, assessments, certificates
# ---------------------------------------------------------------------------
@dataclass
class AttemptResult:
    score: float
    earned_points: Optional[float] = None
    total_points: Optional[float] = None
    submitted_at: Optional[str] = None
    attempt_number: Optional[int] = None
    attempts_remaining: Optional[int] = None
    max_attempts: Optional[int] = None
    certificate_generated: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AttemptResult":
        raw = unwrap(raw) or {}
        score = _num_or_none(_pick(raw, "score", "scorePercent", "score_percent", default=0)) or 0
        attempt_number = _pick(raw, "attemptNumber", "attempt_number")
        remaining = _pick(raw, "attemptsRemaining", "attempts_remaining")
        max_attempts = _pick(raw, "maxAttempts", "max_attempts")
        return cls(
            score=score,
            earned_points=_num_or_none(_pick(raw, "earnedPoints", "earned_points")),
            total_points=_num_or_none(_pick(raw, "totalPoints", "total_points")),
            submitted_at=_pick(raw, "submittedAt", "submitted_at"),
            attempt_number=None if attempt_number is None else _int_or(attempt_number, 0),
            attempts_remaining=None if remaining is None else _int_or(remaining, 0),
            max_attempts=None if max_attempts is None else _int_or(max_attempts, 0),
            certificate_generated=bool(_pick(raw, "certificateGenerated", "certificate_generated", default=False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "earnedPoints": self.earned_points,
            "totalPoints": self.total_points,
            "submittedAt": self.submitted_at,
            "attemptNumber": self.attempt_number,
            "attemptsRemaining": self.attempts_remaining,
            "maxAttempts": self.max_attempts,
            "certificateGenerated": self.certificate_generated,
        }


@dataclass
class Assessment:
    id: str
    title: str = "Quiz"
    questions: List[Question] = field(default_factory=list)
    time_limit_seconds: Optional[int] = None
    scope: str = SCOPE_CHAPTER
    course_id: Optional[str] = None
    chapter_id: Optional[str] = None
    already_attempted: bool = False
    attempt_result: Optional[AttemptResult] = None
    # False when the listing endpoint returned a summary without questions
    questions_loaded: bool = True

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Assessment":
        raw = unwrap(raw) or {}
        tl = _pick(raw, "timeLimitSeconds", "time_limit_seconds")
        tl = _int_or(tl, 0) or None
        scope = str(_pick(raw, "scope", default=SCOPE_CHAPTER)).lower()
        prior = _pick(raw, "attemptResult", "attempt_result")
        course_id = _pick(raw, "courseId", "course_id")
        chapter_id = _pick(raw, "chapterId", "chapter_id")
        return cls(
            id=str(_pick(raw, "id", "assessmentId", default="")),
            title=str(_pick(raw, "title", default="Quiz")),
            questions=parse_questions(raw.get("questions")),
            time_limit_seconds=tl,
            scope=scope if scope in (SCOPE_CHAPTER, SCOPE_COURSE) else SCOPE_CHAPTER,
            course_id=None if course_id is None else str(course_id),
            chapter_id=None if chapter_id is None else str(chapter_id),
            already_attempted=bool(_pick(raw, "alreadyAttempted", "already_attempted", default=False)),
            attempt_result=AttemptResult.from_dict(prior) if isinstance(prior, dict) else None,
            questions_loaded=raw.get("questions") is not None,
        )

    @property
    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]

    def question(self, question_id: Any) -> Optional[Question]:
        for q in self.questions:
            if q.id == str(question_id):
                return q
        return None

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "scope": self.scope,
            "timeLimitSeconds": self.time_limit_seconds,
            "questions": [q.public_view() for q in self.questions],
        }


@dataclass
class Certificate:
    certificate_id: str
    assessment_id: str
    student_name: str = ""
    course_name: str = ""
    completion_date: Optional[str] = None
    score: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], assessment_id: Any = None) -> "Certificate":
        raw = unwrap(raw) or {}
        course = raw.get("course") if isinstance(raw.get("course"), dict) else {}
        a_id = _pick(raw, "assessmentId", "assessment_id", default=assessment_id)
        return cls(
            certificate_id=str(_pick(raw, "certificateId", "certificate_id", "id", default=a_id or "")),
            assessment_id=str(a_id or ""),
            student_name=str(_pick(raw, "studentName", "student_name", default="")),
            course_name=str(_pick(raw, "courseName", "course_name", default=course.get("title") or "")),
            completion_date=_pick(raw, "completionDate", "completion_date"),
            score=_num_or_none(_pick(raw, "score")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "certificateId": self.certificate_id,
            "assessmentId": self.assessment_id,
            "studentName": self.student_name,
            "courseName": self.course_name,
            "completionDate": self.completion_date,
            "score": self.score,
        }
