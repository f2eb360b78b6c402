# backends.py
# -----------------------------------------------------------------------------
# Collaborator contract the engine talks to, plus the REST implementation.
# Every call receives the acting LearnerContext explicitly. Transport failures
# are converted into errors.py types here and nowhere else.
# -----------------------------------------------------------------------------

import os
from typing import Any, Dict, List, Optional

import requests

from errors import (
    ConflictError, EngineError, ForbiddenError, NotFoundError, TransientError,
    UnauthorizedError,
)
from models import Assessment, AttemptResult, Certificate, Course, unwrap, unwrap_list

COURSE_API_URL = (os.getenv("COURSE_API_URL", "http://localhost:5000") or "").rstrip("/")
COURSE_API_TIMEOUT = int(os.getenv("COURSE_API_TIMEOUT") or 20)

NO_CACHE_HEADERS = {
    "Content-Type": "application/json",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Expires": "0",
}


class CourseBackend:
    """Base contract. Concrete backends override every method."""

    def get_course(self, ctx, course_id: Any) -> Course:
        raise NotImplementedError

    def list_chapter_assessments(self, ctx, chapter_id: Any) -> List[Assessment]:
        """Empty list means the chapter carries no quiz."""
        raise NotImplementedError

    def get_assessment(self, ctx, assessment_id: Any) -> Assessment:
        raise NotImplementedError

    def get_completed_chapters(self, ctx, course_id: Any) -> List[str]:
        raise NotImplementedError

    def mark_chapter_complete(self, ctx, chapter_id: Any) -> bool:
        """Called at most once per chapter per learner by the engine."""
        raise NotImplementedError

    def submit_final_attempt(self, ctx, assessment_id: Any, answers: Dict[str, Any]) -> AttemptResult:
        """Single authoritative scoring call; a second attempt raises ConflictError."""
        raise NotImplementedError

    def get_certificate(self, ctx, assessment_id: Any) -> Certificate:
        """Raises NotFoundError when no certificate exists for the learner."""
        raise NotImplementedError

    def get_final_test_for_course(self, ctx, course_id: Any) -> Assessment:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# REST backend (the LMS API under <base>/api)
# ---------------------------------------------------------------------------
def _error_message(resp) -> str:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:200] or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or f"HTTP {resp.status_code}")
    return f"HTTP {resp.status_code}"


def _conflict_result(resp) -> Optional[AttemptResult]:
    try:
        data = unwrap(resp.json())
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    stored = data.get("attemptResult") or data.get("attempt_result")
    if isinstance(stored, dict):
        return AttemptResult.from_dict(stored)
    if "score" in data:
        return AttemptResult.from_dict(data)
    return None


def error_for_response(resp, path: str) -> EngineError:
    status = resp.status_code
    msg = _error_message(resp)
    ctx = {"path": path, "status": status}
    if status == 401:
        return UnauthorizedError(context=ctx)
    if status == 403:
        return ForbiddenError(msg or "You do not have access to this resource.", context=ctx)
    if status == 404:
        return NotFoundError(msg or "Not found.", context=ctx)
    if status == 409:
        return ConflictError(msg or "Already recorded.", context=ctx, result=_conflict_result(resp))
    if status >= 500:
        return TransientError(msg or "Server error. Please try again.", context=ctx)
    return EngineError(msg, error_code="BAD_REQUEST", status_code=status, context=ctx)


class HttpCourseBackend(CourseBackend):
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or COURSE_API_URL).rstrip("/")
        self.timeout = timeout or COURSE_API_TIMEOUT
        self.http = session or requests.Session()

    def _request(self, ctx, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        headers = dict(NO_CACHE_HEADERS)
        auth = ctx.auth_header() if ctx is not None else None
        if auth:
            headers["Authorization"] = auth
        url = f"{self.base_url}/api{path}"
        try:
            resp = self.http.request(method, url, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            print(f"[http] {method} {path} failed: {e}")
            raise TransientError("No response from server.", context={"path": path}) from e

        if resp.status_code >= 400:
            err = error_for_response(resp, path)
            print(f"[http] {method} {path} -> {resp.status_code} ({err.error_code})")
            raise err
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise TransientError("Malformed response from server.", context={"path": path}) from e

    # -------------------------------- course ----------------------------------
    def get_course(self, ctx, course_id: Any) -> Course:
        raw = self._request(ctx, "GET", f"/courses/{course_id}")
        chapters = unwrap_list(self._request(ctx, "GET", f"/courses/{course_id}/chapters"), "chapters")
        course = unwrap(raw) or {}
        if not isinstance(course, dict) or not course:
            raise NotFoundError(f"Course {course_id} not found.", error_code="COURSE_NOT_FOUND")
        return Course.from_dict(course, chapters=chapters or None)

    def list_chapter_assessments(self, ctx, chapter_id: Any) -> List[Assessment]:
        rows = unwrap_list(self._request(ctx, "GET", f"/chapters/{chapter_id}/assessments"), "assessments")
        return [Assessment.from_dict(r) for r in rows if isinstance(r, dict)]

    def get_assessment(self, ctx, assessment_id: Any) -> Assessment:
        raw = unwrap(self._request(ctx, "GET", f"/assessments/{assessment_id}"))
        if not isinstance(raw, dict) or not raw:
            raise NotFoundError(f"Assessment {assessment_id} not found.", error_code="ASSESSMENT_NOT_FOUND")
        return Assessment.from_dict(raw)

    # ------------------------------- progress ---------------------------------
    def get_completed_chapters(self, ctx, course_id: Any) -> List[str]:
        rows = unwrap_list(self._request(ctx, "GET", f"/progress/course/{course_id}/completed"),
                           "completedChapterIds", "chapterIds", "completed")
        out = []
        for r in rows:
            if isinstance(r, dict):
                r = r.get("chapterId") or r.get("chapter_id") or r.get("id")
            if r is not None:
                out.append(str(r))
        return out

    def mark_chapter_complete(self, ctx, chapter_id: Any) -> bool:
        self._request(ctx, "POST", f"/progress/chapters/{chapter_id}/complete")
        return True

    # ------------------------------ final test --------------------------------
    def submit_final_attempt(self, ctx, assessment_id: Any, answers: Dict[str, Any]) -> AttemptResult:
        raw = self._request(ctx, "POST", f"/assessments/{assessment_id}/attempts", {"answers": answers})
        return AttemptResult.from_dict(raw or {})

    def get_certificate(self, ctx, assessment_id: Any) -> Certificate:
        raw = unwrap(self._request(ctx, "GET", f"/assessments/{assessment_id}/certificate"))
        if not isinstance(raw, dict) or not raw:
            raise NotFoundError("Certificate not found.", error_code="CERTIFICATE_NOT_FOUND")
        return Certificate.from_dict(raw, assessment_id=assessment_id)

    def get_final_test_for_course(self, ctx, course_id: Any) -> Assessment:
        raw = unwrap(self._request(ctx, "GET", f"/courses/{course_id}/final-test"))
        if isinstance(raw, list):
            raw = raw[0] if raw else None
        if not isinstance(raw, dict) or not raw:
            raise NotFoundError(f"No final test for course {course_id}.", error_code="FINAL_TEST_NOT_FOUND")
        return Assessment.from_dict(raw)
