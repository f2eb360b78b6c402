# progress.py
# -----------------------------------------------------------------------------
# Per-(learner, course) completion record.
# - membership is monotonic; a chapter id is stored at most once
# - mark_complete only advances local state after the collaborator commits
#   (chapter sits in `pending` meanwhile); failures are raised, not swallowed
# - a second mark_complete while the first is in flight is a no-op
# -----------------------------------------------------------------------------

from typing import Any, Dict, FrozenSet, Iterable, Optional, Set

from errors import ConflictError
from scoring import percentage as _percentage


class ProgressTracker:
    def __init__(self, backend, ctx, course_id: Any, completed: Optional[Iterable[Any]] = None):
        self.backend = backend
        self.ctx = ctx
        self.course_id = str(course_id)
        self._completed: Set[str] = {str(c) for c in (completed or [])}
        self._in_flight: Set[str] = set()
        self._quiz_scores: Dict[str, Dict[str, Any]] = {}

    # ------------------------------- hydration --------------------------------
    def hydrate(self) -> FrozenSet[str]:
        ids = self.backend.get_completed_chapters(self.ctx, self.course_id)
        # Server is the source of truth, but never drop what this session confirmed
        self._completed |= {str(i) for i in (ids or [])}
        return self.completed

    # -------------------------------- queries ---------------------------------
    @property
    def completed(self) -> FrozenSet[str]:
        return frozenset(self._completed)

    @property
    def pending(self) -> FrozenSet[str]:
        return frozenset(self._in_flight)

    def is_completed(self, chapter_id: Any) -> bool:
        return str(chapter_id) in self._completed

    def is_pending(self, chapter_id: Any) -> bool:
        return str(chapter_id) in self._in_flight

    def completed_count(self, course) -> int:
        return sum(1 for c in course.chapters if c.id in self._completed)

    def percentage(self, course) -> int:
        total = len(course.chapters)
        if not total:
            return 0
        return _percentage(self.completed_count(course), total)

    def is_course_complete(self, course) -> bool:
        return all(c.id in self._completed for c in course.chapters)

    # ------------------------------- mutations --------------------------------
    def mark_complete(self, chapter_id: Any) -> bool:
        """
        Returns True when this call recorded the chapter, False when it was a
        no-op (already completed, or a persistence call is already in flight).
        """
        cid = str(chapter_id)
        if cid in self._completed:
            return False
        if cid in self._in_flight:
            print(f"[progress] completion for chapter {cid} already in flight; ignoring")
            return False

        self._in_flight.add(cid)
        try:
            self.backend.mark_chapter_complete(self.ctx, cid)
        except ConflictError:
            print(f"[progress] chapter {cid} already complete server-side")
        except Exception as e:
            print(f"[progress] persisting completion of chapter {cid} failed: {e}")
            raise
        finally:
            self._in_flight.discard(cid)

        self._completed.add(cid)
        print(f"[progress] chapter {cid} completed (course {self.course_id})")
        return True

    # ---------------------------- quiz score memo -----------------------------
    def record_quiz_score(self, chapter_id: Any, score: Dict[str, Any]) -> None:
        self._quiz_scores.setdefault(str(chapter_id), dict(score))

    def quiz_score(self, chapter_id: Any) -> Optional[Dict[str, Any]]:
        s = self._quiz_scores.get(str(chapter_id))
        return dict(s) if s else None

    def summary(self, course) -> Dict[str, Any]:
        return {
            "courseId": self.course_id,
            "completedChapters": sorted(c.id for c in course.chapters if c.id in self._completed),
            "completedCount": self.completed_count(course),
            "totalChapters": len(course.chapters),
            "percentage": self.percentage(course),
            "courseComplete": self.is_course_complete(course),
        }
