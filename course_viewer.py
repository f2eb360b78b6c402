# course_viewer.py
# -----------------------------------------------------------------------------
# One learner inside one course: loads course + completion, tracks the active
# chapter, completes text chapters and hands out the quiz session of the
# active chapter. Switching chapters drops an unsubmitted quiz.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Optional

from chapter_quiz import ChapterQuizSession
from errors import ForbiddenError, NotFoundError
from gating import (
    LOCKED_QUIZ_MESSAGE, course_outline, is_chapter_locked, is_final_test_reachable,
)
from progress import ProgressTracker


class CourseViewer:
    def __init__(self, backend, ctx, course_id: Any):
        self.backend = backend
        self.ctx = ctx
        self.course_id = str(course_id)
        self.course = None
        self.tracker: Optional[ProgressTracker] = None
        self.current = None
        self._quiz: Optional[ChapterQuizSession] = None

    def load(self, start_chapter_id: Any = None) -> "CourseViewer":
        self.course = self.backend.get_course(self.ctx, self.course_id)
        self.tracker = ProgressTracker(self.backend, self.ctx, self.course_id)
        self.tracker.hydrate()
        if not self.course.chapters:
            self.current = None
            return self
        initial = self.course.chapters[0]
        preferred = self.course.chapter(start_chapter_id) if start_chapter_id is not None else None
        if preferred is not None and not is_chapter_locked(
                preferred, self.course.chapters, self.tracker.completed, self.ctx.role):
            initial = preferred
        self.current = initial
        return self

    def _require_loaded(self):
        if self.course is None or self.tracker is None:
            raise NotFoundError("Course not loaded.", error_code="COURSE_NOT_LOADED")

    # ------------------------------- navigation -------------------------------
    def select_chapter(self, chapter_id: Any):
        self._require_loaded()
        chapter = self.course.chapter(chapter_id)
        if chapter is None:
            raise NotFoundError(f"Chapter {chapter_id} not found.", error_code="CHAPTER_NOT_FOUND")
        if is_chapter_locked(chapter, self.course.chapters, self.tracker.completed, self.ctx.role):
            raise ForbiddenError(LOCKED_QUIZ_MESSAGE, error_code="QUIZ_LOCKED")
        if self.current is None or chapter.id != self.current.id:
            self._drop_quiz()
            self.current = chapter
        return chapter

    def go_to_next_chapter(self):
        self._require_loaded()
        if self.current is None:
            return None
        nxt = self.course.next_chapter(self.current.id)
        if nxt is None:
            return None
        if is_chapter_locked(nxt, self.course.chapters, self.tracker.completed, self.ctx.role):
            return None
        self._drop_quiz()
        self.current = nxt
        return nxt

    def rebind(self, ctx) -> None:
        """Carry the caller's current identity (fresh token, changed role) into every later call."""
        if ctx.privileged != self.ctx.privileged:
            self._drop_quiz()
        self.ctx = ctx
        if self.tracker is not None:
            self.tracker.ctx = ctx
        if self._quiz is not None:
            self._quiz.ctx = ctx

    def close(self) -> None:
        self._drop_quiz()

    def _drop_quiz(self):
        if self._quiz is not None:
            self._quiz.discard()
        self._quiz = None

    # ------------------------------- completion -------------------------------
    def complete_current_chapter(self, advance: bool = True) -> Dict[str, Any]:
        """Text-chapter completion; completing twice is a no-op that still advances."""
        self._require_loaded()
        if self.current is None:
            raise NotFoundError("No chapter is open.", error_code="NO_CURRENT_CHAPTER")
        chapter = self.current
        recorded = self.tracker.mark_complete(chapter.id)
        moved_to = self.go_to_next_chapter() if advance else None
        return {
            "chapterId": chapter.id,
            "recorded": recorded,
            "alreadyCompleted": not recorded,
            "nextChapterId": moved_to.id if moved_to else None,
            "percentage": self.tracker.percentage(self.course),
        }

    def quiz(self) -> ChapterQuizSession:
        self._require_loaded()
        if self.current is None:
            raise NotFoundError("No chapter is open.", error_code="NO_CURRENT_CHAPTER")
        if self._quiz is None or self._quiz.chapter.id != self.current.id:
            self._quiz = ChapterQuizSession(self.backend, self.ctx, self.course, self.current, self.tracker)
            self._quiz.open()
        return self._quiz

    # --------------------------------- views ----------------------------------
    @property
    def percentage(self) -> int:
        self._require_loaded()
        return self.tracker.percentage(self.course)

    @property
    def final_test_reachable(self) -> bool:
        self._require_loaded()
        return is_final_test_reachable(self.course, self.tracker.completed, self.ctx.role)

    def outline(self) -> Dict[str, Any]:
        self._require_loaded()
        return {
            "course": {"id": self.course.id, "title": self.course.title},
            "currentChapterId": self.current.id if self.current else None,
            "chapters": course_outline(self.course, self.tracker.completed, self.ctx.role,
                                       pending=self.tracker.pending),
            "progress": self.tracker.summary(self.course),
            "finalTestReachable": self.final_test_reachable,
        }
