# gating.py
# -----------------------------------------------------------------------------
# Pure reachability predicates over chapter order + completion + role.
# Nothing here is persisted; everything is re-derived on every request.
# -----------------------------------------------------------------------------

import re
from typing import Any, Collection, Dict, Iterable, List, Optional

STUDENT = "STUDENT"
INSTRUCTOR = "INSTRUCTOR"
ADMIN = "ADMIN"
SUPERADMIN = "SUPERADMIN"

PRIVILEGED_ROLES = frozenset({INSTRUCTOR, ADMIN, SUPERADMIN})

LOCKED_QUIZ_MESSAGE = "Complete all previous chapters to unlock this quiz!"


def normalize_role(raw: Any) -> str:
    x = re.sub(r"[^A-Z]", "_", str(raw or "").strip().upper())
    if x in ("SUPERADMIN", "SUPER_ADMIN", "SA"):
        return SUPERADMIN
    if x == "ADMIN":
        return ADMIN
    if x in ("INSTRUCTOR", "TEACHER", "AUTHOR"):
        return INSTRUCTOR
    return STUDENT


def is_privileged(role: Any) -> bool:
    return normalize_role(role) in PRIVILEGED_ROLES


def _order(chapter: Any) -> int:
    return int(getattr(chapter, "order", 0) or 0)


def is_quiz_unlocked(chapter, chapters: Iterable[Any], completion: Collection[str], role: Any) -> bool:
    """
    A chapter's quiz is reachable when every chapter ordered strictly before it
    is completed. Privileged roles always pass (preview only). Chapters that
    share an order are not "prior" to each other.
    """
    if chapter is None or not getattr(chapter, "has_quiz", False):
        return False
    if is_privileged(role):
        return True
    target = _order(chapter)
    return all(str(c.id) in completion for c in chapters if _order(c) < target)


def is_chapter_locked(chapter, chapters: Iterable[Any], completion: Collection[str], role: Any) -> bool:
    """Only quiz-bearing chapters are ever locked; text chapters are always open."""
    return bool(getattr(chapter, "has_quiz", False)) and not is_quiz_unlocked(chapter, chapters, completion, role)


def is_final_test_reachable(course, completion: Collection[str], role: Any) -> bool:
    if is_privileged(role):
        return True
    chapters = list(getattr(course, "chapters", None) or [])
    if not chapters:
        return False
    return all(c.id in completion for c in chapters)


def next_action(course, completion: Collection[str], final_passed: bool = False,
                has_certificate: bool = False) -> Dict[str, str]:
    """Dashboard hint: what the learner should do next in this course."""
    chapters = list(getattr(course, "chapters", None) or [])
    done = sum(1 for c in chapters if c.id in completion)
    if done < len(chapters):
        return {"type": "continue", "text": "Continue Learning"}
    if not final_passed:
        return {"type": "course-test", "text": "Take Final Test"}
    if has_certificate:
        return {"type": "certificate", "text": "View Certificate"}
    return {"type": "completed", "text": "Course Complete"}


def course_outline(course, completion: Collection[str], role: Any,
                   pending: Optional[Collection[str]] = None) -> List[Dict[str, Any]]:
    pending = pending or ()
    chapters = list(getattr(course, "chapters", None) or [])
    out = []
    for c in chapters:
        out.append({
            "id": c.id,
            "title": c.title,
            "order": c.order,
            "type": "quiz" if c.has_quiz else "text",
            "hasQuiz": c.has_quiz,
            "completed": c.id in completion,
            "pending": c.id in pending,
            "locked": is_chapter_locked(c, chapters, completion, role),
        })
    return out
