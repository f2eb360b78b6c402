import sys
from pathlib import Path

import pytest
from flask import Flask, g, request

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from context import LearnerContext  # noqa: E402
from engine_api import create_engine_blueprint  # noqa: E402
from errors import TransientError, UnauthorizedError  # noqa: E402
from gating import LOCKED_QUIZ_MESSAGE  # noqa: E402
from fake_backend import FakeBackend, single_choice  # noqa: E402


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def backend():
    b = FakeBackend()
    b.add_chapter_quiz("ch2", "quiz-2", [single_choice("q1", correct=1), single_choice("q2", correct=0)])
    b.add_final_test("final-1", [single_choice("f1", correct=0)], time_limit=60)
    return b


def _client(backend, clock=None, user_id=7, role="STUDENT", **extra):
    app = Flask(__name__)
    app.testing = True

    @app.before_request
    def _set_learner():
        if not user_id:
            g.learner = None
            return
        g.learner = LearnerContext(
            user_id=request.headers.get("X-User") or user_id,
            role=request.headers.get("X-Role") or role,
            display_name="Ada",
            token=request.headers.get("X-Token"),
        )

    deps = {"backend": backend}
    if clock is not None:
        deps["clock"] = clock
    deps.update(extra)
    app.register_blueprint(create_engine_blueprint("/engine", deps))
    return app.test_client()


def test_requires_identity(backend):
    client = _client(backend, user_id=None)
    resp = client.get("/engine/courses/c1")
    assert resp.status_code == 401
    assert resp.get_json()["ok"] is False


def test_outline_and_locked_chapter(backend):
    client = _client(backend)
    outline = client.get("/engine/courses/c1").get_json()
    assert outline["ok"] is True
    assert [c["locked"] for c in outline["chapters"]] == [False, True, False]
    assert outline["progress"]["percentage"] == 0

    resp = client.get("/engine/courses/c1/chapters/ch2/quiz")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == LOCKED_QUIZ_MESSAGE


def test_unknown_course_is_404(backend):
    resp = _client(backend).get("/engine/courses/nope")
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "NOT_FOUND"


def test_chapter_flow_with_quiz(backend):
    client = _client(backend)
    done = client.post("/engine/courses/c1/chapters/ch1/complete").get_json()
    assert done["completion"]["recorded"] is True
    assert done["chapter"]["id"] == "ch2"

    again = client.post("/engine/courses/c1/chapters/ch1/complete").get_json()
    assert again["notice"] == "Chapter already completed."

    quiz = client.get("/engine/courses/c1/chapters/ch2/quiz").get_json()
    assert quiz["state"] == "ready"
    assert "correctOptionIndex" not in quiz["quiz"]["questions"][0]

    ans = client.post("/engine/courses/c1/chapters/ch2/quiz/answers", json={"questionId": "q1", "value": 1})
    assert ans.get_json()["accepted"] is True
    submitted = client.post("/engine/courses/c1/chapters/ch2/quiz/submit").get_json()
    assert submitted["result"]["percentage"] == 50
    assert submitted["state"] == "submitted"
    assert backend.mark_calls == ["ch1", "ch2"]


def test_transient_completion_failure_is_503(backend):
    client = _client(backend)
    backend.fail["mark_chapter_complete"] = TransientError("server down")
    resp = client.post("/engine/courses/c1/chapters/ch1/complete")
    assert resp.status_code == 503
    assert resp.get_json()["recoverable"] is True


def test_final_test_locked_until_course_complete(backend):
    resp = _client(backend).get("/engine/courses/c1/final-test")
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "FINAL_TEST_LOCKED"


def test_final_test_countdown_follows_wall_clock(backend):
    backend.completed.extend(["ch1", "ch2", "ch3"])
    clock = FakeClock()
    client = _client(backend, clock=clock)

    opened = client.get("/engine/courses/c1/final-test").get_json()
    assert opened["state"] == "active"
    assert opened["timeRemaining"] == 60

    clock.now += 15.5
    view = client.get("/engine/final-tests/final-1").get_json()
    assert view["timeRemaining"] == 45
    assert view["timeDisplay"] == "0:45"
    assert view["urgency"] == "critical"

    clock.now += 120
    view = client.get("/engine/final-tests/final-1").get_json()
    assert view["state"] == "submitted"
    assert view["autoSubmitted"] is True
    assert backend.calls["submit_final_attempt"] == 1


def test_final_test_confirm_flow_and_certificate(backend):
    backend.completed.extend(["ch1", "ch2", "ch3"])
    backend.issue_certificate("final-1", "CERT-XYZ")
    client = _client(backend, clock=FakeClock())

    client.get("/engine/courses/c1/final-test")
    client.post("/engine/final-tests/final-1/answers", json={"questionId": "f1", "value": 0})
    confirm = client.post("/engine/final-tests/final-1/submit").get_json()
    assert confirm["confirm"] == {"answered": 1, "total": 1, "unanswered": 0}
    assert confirm["state"] == "confirming_submit"

    done = client.post("/engine/final-tests/final-1/submit/confirm").get_json()
    assert done["state"] == "submitted"
    assert done["result"]["score"] == 100

    gate = client.get("/engine/assessments/final-1/certificate").get_json()
    assert gate["actions"] == ["generate"]
    issued = client.post("/engine/assessments/final-1/certificate").get_json()
    assert issued["certificate"]["certificateId"] == "CERT-XYZ"
    again = client.post("/engine/assessments/final-1/certificate").get_json()
    assert again["certificate"]["certificateId"] == "CERT-XYZ"
    assert backend.calls["get_certificate"] == 1

    nxt = client.get("/engine/courses/c1/next-action").get_json()
    assert nxt["nextAction"]["type"] == "completed"


def test_below_threshold_certificate_is_forbidden(backend):
    backend.completed.extend(["ch1", "ch2", "ch3"])
    client = _client(backend, clock=FakeClock())
    client.get("/engine/courses/c1/final-test")
    client.post("/engine/final-tests/final-1/submit")
    client.post("/engine/final-tests/final-1/submit/confirm")

    gate = client.get("/engine/assessments/final-1/certificate").get_json()
    assert gate["eligible"] is False
    assert gate["actions"] == []
    resp = client.post("/engine/assessments/final-1/certificate")
    assert resp.status_code == 403

    nxt = client.get("/engine/courses/c1/next-action").get_json()
    assert nxt["nextAction"]["text"] == "Take Final Test"


def test_final_test_must_be_opened_from_course(backend):
    resp = _client(backend).get("/engine/final-tests/final-1")
    assert resp.status_code == 404


def test_close_final_test(backend):
    backend.completed.extend(["ch1", "ch2", "ch3"])
    client = _client(backend, clock=FakeClock())
    client.get("/engine/courses/c1/final-test")
    closed = client.delete("/engine/final-tests/final-1").get_json()
    assert closed["closed"] is True
    assert client.get("/engine/final-tests/final-1").status_code == 404


def test_cached_viewer_uses_current_token(backend):
    seen = []
    original = backend.mark_chapter_complete

    def recording(ctx, chapter_id):
        seen.append(ctx.token)
        return original(ctx, chapter_id)

    backend.mark_chapter_complete = recording
    client = _client(backend)
    client.get("/engine/courses/c1", headers={"X-Token": "old-token"})
    client.post("/engine/courses/c1/chapters/ch1/complete", headers={"X-Token": "new-token"})
    assert seen == ["new-token"]
    assert backend.calls["get_course"] == 1


def test_role_change_reaches_cached_viewer(backend):
    client = _client(backend)
    assert client.get("/engine/courses/c1/chapters/ch2/quiz").status_code == 403
    quiz = client.get("/engine/courses/c1/chapters/ch2/quiz", headers={"X-Role": "ADMIN"}).get_json()
    assert quiz["previewOnly"] is True
    assert quiz["state"] == "ready"


def test_unauthorized_drops_cached_sessions(backend):
    client = _client(backend)
    client.get("/engine/courses/c1")
    backend.fail["mark_chapter_complete"] = UnauthorizedError()
    resp = client.post("/engine/courses/c1/chapters/ch1/complete")
    assert resp.status_code == 401

    client.get("/engine/courses/c1")
    assert backend.calls["get_course"] == 2


def test_admin_final_test_is_preview_only(backend):
    client = _client(backend, clock=FakeClock(), role="ADMIN")
    opened = client.get("/engine/courses/c1/final-test").get_json()
    assert opened["previewOnly"] is True
    resp = client.post("/engine/final-tests/final-1/submit")
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "PREVIEW_ONLY"
    assert backend.calls["submit_final_attempt"] == 0


def test_close_course_and_certificate_sessions(backend):
    client = _client(backend)
    client.get("/engine/courses/c1")
    assert client.delete("/engine/courses/c1").get_json()["closed"] is True
    assert client.delete("/engine/courses/c1").get_json()["closed"] is False
    client.get("/engine/courses/c1")
    assert backend.calls["get_course"] == 2

    client.get("/engine/assessments/final-1/certificate")
    assert client.delete("/engine/assessments/final-1/certificate").get_json()["closed"] is True


def test_viewer_registry_is_bounded(backend):
    client = _client(backend, max_sessions=1)
    client.get("/engine/courses/c1", headers={"X-User": "7"})
    client.get("/engine/courses/c1", headers={"X-User": "8"})
    client.get("/engine/courses/c1", headers={"X-User": "7"})
    assert backend.calls["get_course"] == 3

    client.get("/engine/courses/c1", headers={"X-User": "7"})
    assert backend.calls["get_course"] == 3
