import sys
from collections import Counter
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backends import CourseBackend  # noqa: E402
from errors import ConflictError, NotFoundError  # noqa: E402
from models import Assessment, AttemptResult, Certificate, Course  # noqa: E402
from scoring import score  # noqa: E402


def single_choice(qid, correct=0, points=1, order=0):
    return {
        "id": qid,
        "type": "single",
        "prompt": f"Question {qid}",
        "points": points,
        "order": order,
        "options": ["a", "b", "c", "d"],
        "correctOptionIndex": correct,
    }


def make_course(course_id="c1", chapters=3, quiz_orders=(2,)):
    rows = []
    for order in range(1, chapters + 1):
        rows.append({
            "id": f"ch{order}",
            "title": f"Chapter {order}",
            "order": order,
            "content": "Para one.\n\nPara two.",
            "hasQuiz": order in quiz_orders,
        })
    return Course.from_dict({"id": course_id, "title": "Python Basics"}, chapters=rows)


class FakeBackend(CourseBackend):
    """In-memory collaborator; `fail[name]` raises that exception on the next call."""

    def __init__(self, course=None, completed=None):
        self.course = course or make_course()
        self.completed = [str(c) for c in (completed or [])]
        self.assessments = {}
        self.chapter_assessments = {}
        self.final_tests = {}
        self.final_scores = {}
        self.attempts = {}
        self.certificates = {}
        self.calls = Counter()
        self.mark_calls = []
        self.submitted_answers = []
        self.fail = {}

    # ---- setup -------------------------------------------------------------
    def add_chapter_quiz(self, chapter_id, assessment_id, questions):
        self.assessments[assessment_id] = {"id": assessment_id, "title": "Quiz",
                                           "scope": "chapter", "chapterId": chapter_id,
                                           "questions": questions}
        self.chapter_assessments.setdefault(chapter_id, []).append(assessment_id)

    def add_final_test(self, assessment_id, questions, time_limit=None, score_pct=None):
        self.assessments[assessment_id] = {"id": assessment_id, "title": "Final Test",
                                           "scope": "course", "courseId": self.course.id,
                                           "timeLimitSeconds": time_limit, "questions": questions}
        self.final_tests[self.course.id] = assessment_id
        if score_pct is not None:
            self.final_scores[assessment_id] = score_pct

    def issue_certificate(self, assessment_id, certificate_id="CERT-1"):
        self.certificates[assessment_id] = Certificate(
            certificate_id=certificate_id, assessment_id=assessment_id,
            student_name="Ada", course_name=self.course.title,
        )

    def _maybe_fail(self, name):
        self.calls[name] += 1
        err = self.fail.pop(name, None)
        if err is not None:
            raise err

    # ---- contract ------------------------------------------------------------
    def get_course(self, ctx, course_id):
        self._maybe_fail("get_course")
        if str(course_id) != self.course.id:
            raise NotFoundError(f"Course {course_id} not found.")
        return self.course

    def list_chapter_assessments(self, ctx, chapter_id):
        self._maybe_fail("list_chapter_assessments")
        return [self._assessment(ctx, a) for a in self.chapter_assessments.get(str(chapter_id), [])]

    def get_assessment(self, ctx, assessment_id):
        self._maybe_fail("get_assessment")
        if str(assessment_id) not in self.assessments:
            raise NotFoundError(f"Assessment {assessment_id} not found.")
        return self._assessment(ctx, str(assessment_id))

    def _assessment(self, ctx, assessment_id):
        a = Assessment.from_dict(dict(self.assessments[assessment_id]))
        stored = self.attempts.get((str(ctx.user_id), assessment_id))
        if stored is not None:
            a.already_attempted = True
            a.attempt_result = stored
        return a

    def get_completed_chapters(self, ctx, course_id):
        self._maybe_fail("get_completed_chapters")
        return list(self.completed)

    def mark_chapter_complete(self, ctx, chapter_id):
        self.mark_calls.append(str(chapter_id))
        self._maybe_fail("mark_chapter_complete")
        if str(chapter_id) in self.completed:
            raise ConflictError("Chapter already completed.")
        self.completed.append(str(chapter_id))
        return True

    def submit_final_attempt(self, ctx, assessment_id, answers):
        self.submitted_answers.append(dict(answers))
        self._maybe_fail("submit_final_attempt")
        key = (str(ctx.user_id), str(assessment_id))
        if key in self.attempts:
            raise ConflictError("Already attempted.", result=self.attempts[key])
        a = Assessment.from_dict(dict(self.assessments[str(assessment_id)]))
        pct = self.final_scores.get(str(assessment_id))
        if pct is None:
            pct = score(a.questions, answers).percentage
        result = AttemptResult(score=pct, attempt_number=1, attempts_remaining=0, max_attempts=1)
        self.attempts[key] = result
        return result

    def get_certificate(self, ctx, assessment_id):
        self._maybe_fail("get_certificate")
        cert = self.certificates.get(str(assessment_id))
        if cert is None:
            raise NotFoundError("Certificate not found.")
        return cert

    def get_final_test_for_course(self, ctx, course_id):
        self._maybe_fail("get_final_test_for_course")
        aid = self.final_tests.get(str(course_id))
        if aid is None:
            raise NotFoundError(f"No final test for course {course_id}.")
        return self._assessment(ctx, aid)
