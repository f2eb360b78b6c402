# chapter_quiz.py
# -----------------------------------------------------------------------------
# Per-chapter quiz state machine:
#   NO_QUIZ | LOCKED | ALREADY_SUBMITTED
#   LOADING -> READY -> SUBMITTING -> SUBMITTED
#   LOADING -> NOT_AVAILABLE            (chapter lists no assessment)
# One submission per chapter quiz; scoring is local; submission completes the
# owning chapter through the ProgressTracker.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Optional

from errors import ForbiddenError
from gating import is_quiz_unlocked, LOCKED_QUIZ_MESSAGE
from models import Assessment
from questions import MATCH, MULTIPLE, set_match_pair, toggle_option
from scoring import score

NO_QUIZ = "no_quiz"
LOCKED = "locked"
LOADING = "loading"
READY = "ready"
SUBMITTING = "submitting"
SUBMITTED = "submitted"
ALREADY_SUBMITTED = "already_submitted"
NOT_AVAILABLE = "not_available"
IDLE = "idle"


class ChapterQuizSession:
    def __init__(self, backend, ctx, course, chapter, tracker):
        self.backend = backend
        self.ctx = ctx
        self.course = course
        self.chapter = chapter
        self.tracker = tracker
        self.state = IDLE
        self.quiz: Optional[Assessment] = None
        self.answers: Dict[str, Any] = {}
        self.result: Optional[Dict[str, Any]] = None

    @property
    def preview_only(self) -> bool:
        return self.ctx.privileged

    # ------------------------------- lifecycle --------------------------------
    def open(self) -> str:
        if not self.chapter.has_quiz:
            self.state = NO_QUIZ
            return self.state
        if not is_quiz_unlocked(self.chapter, self.course.chapters, self.tracker.completed, self.ctx.role):
            self.state = LOCKED
            return self.state
        if self.tracker.is_completed(self.chapter.id) and not self.preview_only:
            # No re-fetch, no answerable form: prevents retakes
            self.state = ALREADY_SUBMITTED
            self.result = self.tracker.quiz_score(self.chapter.id)
            return self.state

        self.state = LOADING
        self.quiz = None
        self.answers = {}
        self.result = None
        try:
            quiz = self._load_quiz()
        except Exception as e:
            print(f"[quiz] load for chapter {self.chapter.id} failed: {e}")
            self.state = IDLE
            raise
        if quiz is None:
            self.state = NOT_AVAILABLE
            return self.state
        self.quiz = quiz
        self.state = READY
        return self.state

    def _load_quiz(self) -> Optional[Assessment]:
        listed = self.backend.list_chapter_assessments(self.ctx, self.chapter.id)
        if not listed:
            return None
        first = listed[0]
        if not first.questions_loaded:
            first = self.backend.get_assessment(self.ctx, first.id)
        return first

    def discard(self) -> None:
        """Navigating away: in-progress answers are dropped, nothing is persisted."""
        if self.state in (READY, LOADING, IDLE):
            self.answers = {}
            self.quiz = None
            self.state = IDLE

    # -------------------------------- answers ---------------------------------
    def _can_mutate(self, question_id: Any) -> bool:
        if self.state != READY or self.preview_only or self.quiz is None:
            return False
        return self.quiz.question(question_id) is not None

    def answer(self, question_id: Any, value: Any) -> bool:
        if not self._can_mutate(question_id):
            return False
        self.answers[str(question_id)] = value
        return True

    def toggle_option(self, question_id: Any, option_index: int) -> bool:
        if not self._can_mutate(question_id) or self.quiz.question(question_id).type != MULTIPLE:
            return False
        qid = str(question_id)
        self.answers[qid] = toggle_option(self.answers.get(qid), option_index)
        return True

    def set_match_pair(self, question_id: Any, pair_index: int, value: str) -> bool:
        if not self._can_mutate(question_id) or self.quiz.question(question_id).type != MATCH:
            return False
        qid = str(question_id)
        self.answers[qid] = set_match_pair(self.answers.get(qid), pair_index, value)
        return True

    # ------------------------------- submission -------------------------------
    def submit(self) -> Optional[Dict[str, Any]]:
        if self.state in (SUBMITTED, ALREADY_SUBMITTED):
            return self.result
        if self.state == SUBMITTING:
            print(f"[quiz] submit for chapter {self.chapter.id} already in flight; ignoring")
            return None
        if self.preview_only:
            raise ForbiddenError("Quiz preview is read-only for this role.", error_code="PREVIEW_ONLY")
        if self.state == LOCKED:
            raise ForbiddenError(LOCKED_QUIZ_MESSAGE, error_code="QUIZ_LOCKED")
        if self.state != READY or self.quiz is None:
            raise ForbiddenError("No quiz is open for this chapter.", error_code="QUIZ_NOT_READY")

        self.state = SUBMITTING
        scored = score(self.quiz.questions, self.answers)
        result = scored.to_dict()
        result.update({"score": scored.earned_points, "max": scored.total_points})
        try:
            self.tracker.mark_complete(self.chapter.id)
        except Exception:
            # Answers stay in place so the learner can retry
            self.state = READY
            raise
        self.result = result
        self.tracker.record_quiz_score(self.chapter.id, result)
        self.state = SUBMITTED
        print(f"[quiz] chapter {self.chapter.id} submitted: {scored.earned_points}/{scored.total_points}")
        return result

    # --------------------------------- views ----------------------------------
    def view(self) -> Dict[str, Any]:
        return {
            "chapterId": self.chapter.id,
            "state": self.state,
            "previewOnly": self.preview_only,
            "quiz": self.quiz.public_view() if self.quiz else None,
            "answers": dict(self.answers),
            "result": self.result,
        }
