# pg_backend.py
# -----------------------------------------------------------------------------
# CourseBackend over Postgres. Takes the query helpers as a deps dict
# (fetch_one / fetch_all / execute / execute_returning, see db.helper_deps).
# - final tests are scored here, never by the caller
# - attempts per (learner, assessment) are capped by FINAL_TEST_MAX_ATTEMPTS
# - one certificate per (learner, assessment), issued on the first passing attempt
# -----------------------------------------------------------------------------

import json
import os
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from backends import CourseBackend
from certificate import eligible
from errors import ConflictError, NotFoundError
from models import SCOPE_CHAPTER, SCOPE_COURSE, Assessment, AttemptResult, Certificate, Course
from scoring import Grader, chain_graders, numerical_key_grader, score

FINAL_TEST_MAX_ATTEMPTS = int(os.getenv("FINAL_TEST_MAX_ATTEMPTS") or 1)

_DDL = (
    """
    CREATE TABLE IF NOT EXISTS engine_courses (
        id    TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT ''
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_chapters (
        id        TEXT PRIMARY KEY,
        course_id TEXT NOT NULL REFERENCES engine_courses(id) ON DELETE CASCADE,
        title     TEXT NOT NULL DEFAULT '',
        ord       INTEGER NOT NULL DEFAULT 0,
        content   TEXT NOT NULL DEFAULT '',
        UNIQUE (course_id, ord)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_assessments (
        id                 TEXT PRIMARY KEY,
        course_id          TEXT NOT NULL REFERENCES engine_courses(id) ON DELETE CASCADE,
        chapter_id         TEXT REFERENCES engine_chapters(id) ON DELETE CASCADE,
        scope              TEXT NOT NULL DEFAULT 'chapter',
        title              TEXT NOT NULL DEFAULT 'Quiz',
        time_limit_seconds INTEGER,
        questions          JSONB NOT NULL DEFAULT '[]'::jsonb
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_chapter_progress (
        user_id      TEXT NOT NULL,
        course_id    TEXT NOT NULL,
        chapter_id   TEXT NOT NULL,
        completed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, chapter_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_attempts (
        id             BIGSERIAL PRIMARY KEY,
        assessment_id  TEXT NOT NULL,
        user_id        TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        score          INTEGER NOT NULL,
        earned_points  NUMERIC NOT NULL,
        total_points   NUMERIC NOT NULL,
        answers        JSONB NOT NULL DEFAULT '{}'::jsonb,
        submitted_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (assessment_id, user_id, attempt_number)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_certificates (
        certificate_id TEXT PRIMARY KEY,
        assessment_id  TEXT NOT NULL,
        user_id        TEXT NOT NULL,
        student_name   TEXT NOT NULL DEFAULT '',
        course_name    TEXT NOT NULL DEFAULT '',
        score          INTEGER,
        issued_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (assessment_id, user_id)
    );
    """,
)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _new_certificate_id() -> str:
    return "CERT-" + uuid.uuid4().hex[:12].upper()


class PostgresCourseBackend(CourseBackend):
    """
    Required deps: fetch_one, fetch_all, execute, execute_returning
    Optional deps: grader (external grader for match/subjective questions),
                   max_attempts
    """

    def __init__(self, deps: Dict[str, Any]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps["execute_returning"]
        self.max_attempts = int(deps.get("max_attempts") or FINAL_TEST_MAX_ATTEMPTS)
        extra: Optional[Grader] = deps.get("grader")
        self.grader: Grader = numerical_key_grader
        if extra is not None:
            self.grader = chain_graders(numerical_key_grader, extra)
        self._tables_ready = False

    # ---- schema --------------------------------------------------------------
    def _ensure_tables(self) -> None:
        if self._tables_ready:
            return
        for stmt in _DDL:
            self.execute(stmt)
        self._tables_ready = True

    # ---- rows -> models ------------------------------------------------------
    @staticmethod
    def _assessment_from_row(row: Dict[str, Any]) -> Assessment:
        questions = row.get("questions")
        if isinstance(questions, (bytes, bytearray)):
            questions = questions.decode("utf-8")
        return Assessment.from_dict({
            "id": row["id"],
            "title": row.get("title") or "Quiz",
            "scope": row.get("scope") or SCOPE_CHAPTER,
            "courseId": row.get("course_id"),
            "chapterId": row.get("chapter_id"),
            "timeLimitSeconds": row.get("time_limit_seconds"),
            "questions": questions if questions is not None else [],
        })

    def _attempt_from_row(self, row: Dict[str, Any]) -> AttemptResult:
        number = int(row.get("attempt_number") or 0)
        return AttemptResult.from_dict({
            "score": row.get("score"),
            "earnedPoints": row.get("earned_points"),
            "totalPoints": row.get("total_points"),
            "submittedAt": _iso(row.get("submitted_at")),
            "attemptNumber": number,
            "attemptsRemaining": max(0, self.max_attempts - number),
            "maxAttempts": self.max_attempts,
            "certificateGenerated": row.get("certificate_id") is not None,
        })

    def _latest_attempt(self, assessment_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one("""
            SELECT t.attempt_number, t.score, t.earned_points, t.total_points, t.submitted_at,
                   c.certificate_id
              FROM engine_attempts t
              LEFT JOIN engine_certificates c
                ON c.assessment_id = t.assessment_id AND c.user_id = t.user_id
             WHERE t.assessment_id = %s AND t.user_id = %s
             ORDER BY t.attempt_number DESC
             LIMIT 1;
        """, (assessment_id, user_id))

    def _with_attempt_state(self, ctx, assessment: Assessment) -> Assessment:
        if assessment.scope != SCOPE_COURSE:
            return assessment
        latest = self._latest_attempt(assessment.id, str(ctx.user_id))
        if latest:
            assessment.attempt_result = self._attempt_from_row(latest)
            assessment.already_attempted = int(latest.get("attempt_number") or 0) >= self.max_attempts
        return assessment

    # ---- course --------------------------------------------------------------
    def get_course(self, ctx, course_id: Any) -> Course:
        self._ensure_tables()
        row = self.fetch_one("SELECT id, title FROM engine_courses WHERE id = %s;", (str(course_id),))
        if not row:
            raise NotFoundError(f"Course {course_id} not found.", error_code="COURSE_NOT_FOUND")
        chapters = self.fetch_all("""
            SELECT c.id, c.title, c.ord AS "order", c.content,
                   EXISTS (SELECT 1 FROM engine_assessments a
                            WHERE a.chapter_id = c.id AND a.scope = 'chapter') AS has_quiz
              FROM engine_chapters c
             WHERE c.course_id = %s
             ORDER BY c.ord;
        """, (str(course_id),))
        return Course.from_dict(row, chapters=list(chapters or []))

    def list_chapter_assessments(self, ctx, chapter_id: Any) -> List[Assessment]:
        self._ensure_tables()
        rows = self.fetch_all("""
            SELECT id, course_id, chapter_id, scope, title, time_limit_seconds, questions
              FROM engine_assessments
             WHERE chapter_id = %s AND scope = 'chapter'
             ORDER BY id;
        """, (str(chapter_id),))
        return [self._assessment_from_row(r) for r in (rows or [])]

    def get_assessment(self, ctx, assessment_id: Any) -> Assessment:
        self._ensure_tables()
        row = self.fetch_one("""
            SELECT id, course_id, chapter_id, scope, title, time_limit_seconds, questions
              FROM engine_assessments
             WHERE id = %s;
        """, (str(assessment_id),))
        if not row:
            raise NotFoundError(f"Assessment {assessment_id} not found.", error_code="ASSESSMENT_NOT_FOUND")
        return self._with_attempt_state(ctx, self._assessment_from_row(row))

    def get_final_test_for_course(self, ctx, course_id: Any) -> Assessment:
        self._ensure_tables()
        row = self.fetch_one("""
            SELECT id, course_id, chapter_id, scope, title, time_limit_seconds, questions
              FROM engine_assessments
             WHERE course_id = %s AND scope = 'course'
             ORDER BY id
             LIMIT 1;
        """, (str(course_id),))
        if not row:
            raise NotFoundError(f"No final test for course {course_id}.", error_code="FINAL_TEST_NOT_FOUND")
        return self._with_attempt_state(ctx, self._assessment_from_row(row))

    # ---- progress ------------------------------------------------------------
    def get_completed_chapters(self, ctx, course_id: Any) -> List[str]:
        self._ensure_tables()
        rows = self.fetch_all("""
            SELECT chapter_id FROM engine_chapter_progress
             WHERE user_id = %s AND course_id = %s
             ORDER BY completed_at;
        """, (str(ctx.user_id), str(course_id)))
        return [str(r["chapter_id"]) for r in (rows or [])]

    def mark_chapter_complete(self, ctx, chapter_id: Any) -> bool:
        self._ensure_tables()
        ch = self.fetch_one("SELECT course_id FROM engine_chapters WHERE id = %s;", (str(chapter_id),))
        if not ch:
            raise NotFoundError(f"Chapter {chapter_id} not found.", error_code="CHAPTER_NOT_FOUND")
        rows = self.execute_returning("""
            INSERT INTO engine_chapter_progress (user_id, course_id, chapter_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (user_id, chapter_id) DO NOTHING
            RETURNING chapter_id;
        """, (str(ctx.user_id), str(ch["course_id"]), str(chapter_id)))
        if not rows:
            raise ConflictError("Chapter already completed.", error_code="ALREADY_COMPLETED")
        return True

    # ---- final test ----------------------------------------------------------
    def submit_final_attempt(self, ctx, assessment_id: Any, answers: Dict[str, Any]) -> AttemptResult:
        assessment = self.get_assessment(ctx, assessment_id)
        uid = str(ctx.user_id)
        if assessment.already_attempted:
            raise ConflictError("This test has already been attempted.", error_code="ALREADY_ATTEMPTED",
                                result=assessment.attempt_result)

        prior = assessment.attempt_result.attempt_number if assessment.attempt_result else 0
        number = int(prior or 0) + 1
        scored = score(assessment.questions, answers or {}, grader=self.grader)
        pct = scored.percentage

        rows = self.execute_returning("""
            INSERT INTO engine_attempts
                (assessment_id, user_id, attempt_number, score, earned_points, total_points, answers)
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT (assessment_id, user_id, attempt_number) DO NOTHING
            RETURNING attempt_number, score, earned_points, total_points, submitted_at;
        """, (assessment.id, uid, number, pct, scored.earned_points, scored.total_points,
              json.dumps(answers or {}, ensure_ascii=False)))
        if not rows:
            # A concurrent submit took this attempt number
            latest = self._latest_attempt(assessment.id, uid)
            raise ConflictError("This test has already been attempted.", error_code="ALREADY_ATTEMPTED",
                                result=self._attempt_from_row(latest) if latest else None)

        row = dict(rows[0])
        if eligible({"score": pct}):
            row["certificate_id"] = self._issue_certificate(ctx, assessment, pct)
        print(f"[final-test] user {uid} assessment {assessment.id}: attempt {number} scored {pct}%")
        return self._attempt_from_row(row)

    def _issue_certificate(self, ctx, assessment: Assessment, pct: int) -> Optional[str]:
        uid = str(ctx.user_id)
        course = self.fetch_one("SELECT title FROM engine_courses WHERE id = %s;", (assessment.course_id,))
        self.execute("""
            INSERT INTO engine_certificates
                (certificate_id, assessment_id, user_id, student_name, course_name, score)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (assessment_id, user_id) DO NOTHING;
        """, (_new_certificate_id(), assessment.id, uid, ctx.display_name or "",
              (course or {}).get("title") or "", pct))
        row = self.fetch_one("""
            SELECT certificate_id FROM engine_certificates
             WHERE assessment_id = %s AND user_id = %s;
        """, (assessment.id, uid))
        return row["certificate_id"] if row else None

    def get_certificate(self, ctx, assessment_id: Any) -> Certificate:
        self._ensure_tables()
        row = self.fetch_one("""
            SELECT certificate_id, assessment_id, student_name, course_name, score, issued_at
              FROM engine_certificates
             WHERE assessment_id = %s AND user_id = %s;
        """, (str(assessment_id), str(ctx.user_id)))
        if not row:
            raise NotFoundError("Certificate not found.", error_code="CERTIFICATE_NOT_FOUND")
        return Certificate.from_dict({
            "certificateId": row["certificate_id"],
            "assessmentId": row["assessment_id"],
            "studentName": row.get("student_name"),
            "courseName": row.get("course_name"),
            "completionDate": _iso(row.get("issued_at")),
            "score": row.get("score"),
        })
