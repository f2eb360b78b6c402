import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import final_test  # noqa: E402
from context import LearnerContext  # noqa: E402
from errors import ForbiddenError, TransientError, UnauthorizedError  # noqa: E402
from final_test import ClockSync, Countdown, TimedAssessmentSession, format_time, urgency  # noqa: E402
from models import AttemptResult  # noqa: E402
from fake_backend import FakeBackend, single_choice  # noqa: E402

CTX = LearnerContext(user_id=7, display_name="Ada")
QUESTIONS = [single_choice(f"q{i}", correct=0, order=i) for i in range(1, 5)]


@pytest.fixture
def backend():
    b = FakeBackend()
    b.add_final_test("final-1", QUESTIONS, time_limit=60)
    return b


def _active(backend):
    s = TimedAssessmentSession(backend, CTX, "final-1")
    assert s.load() == final_test.ACTIVE
    return s


def test_timer_expiry_auto_submits_once(backend):
    s = _active(backend)
    assert s.time_remaining == 60
    for _ in range(60):
        s.tick()
    assert s.state == final_test.SUBMITTED
    assert s.auto_submitted is True
    assert backend.submitted_answers == [{}]
    assert s.result.score == 0

    ticks = s.countdown.ticks
    assert s.tick() is False
    assert s.advance(30) == 0
    assert s.countdown.ticks == ticks == 60
    assert backend.calls["submit_final_attempt"] == 1


def test_default_time_limit_when_unset():
    b = FakeBackend()
    b.add_final_test("final-1", QUESTIONS)
    s = TimedAssessmentSession(b, CTX, "final-1")
    s.load()
    assert s.time_remaining == 1800


def test_prior_attempt_is_not_re_enterable(backend):
    backend.attempts[("7", "final-1")] = AttemptResult(score=85, attempt_number=1, attempts_remaining=0)
    s = TimedAssessmentSession(backend, CTX, "final-1")
    assert s.load() == final_test.ALREADY_ATTEMPTED
    assert s.result.score == 85
    assert s.countdown is None
    assert not s.answer("q1", 0)


def test_confirmation_gate_and_cancel_keep_answers_and_time(backend):
    s = _active(backend)
    s.answer("q1", 0)
    s.advance(10)

    summary = s.request_submit()
    assert summary == {"answered": 1, "total": 4, "unanswered": 3}
    assert s.state == final_test.CONFIRMING_SUBMIT

    s.cancel_submit()
    assert s.state == final_test.ACTIVE
    assert s.answers == {"q1": 0}
    assert s.time_remaining == 50

    s.request_submit()
    result = s.confirm_submit()
    assert result.score == 25
    assert s.state == final_test.SUBMITTED
    assert not s.answer("q2", 0)
    assert s.confirm_submit() is result
    assert backend.calls["submit_final_attempt"] == 1


def test_confirm_requires_request_first(backend):
    s = _active(backend)
    with pytest.raises(ForbiddenError):
        s.confirm_submit()


def test_navigation_is_clamped_and_preserves_answers(backend):
    s = _active(backend)
    s.answer("q2", 0)
    assert s.go_previous() == 0
    assert s.go_next() == 1
    assert s.jump_to(99) == 3
    assert s.jump_to(-5) == 0
    assert s.answers == {"q2": 0}
    assert s.time_remaining == 60


def test_transient_submit_failure_returns_to_active(backend):
    s = _active(backend)
    s.answer("q1", 0)
    backend.fail["submit_final_attempt"] = TransientError("server error")
    s.request_submit()
    with pytest.raises(TransientError):
        s.confirm_submit()
    assert s.state == final_test.ACTIVE
    assert s.answers == {"q1": 0}
    assert s.last_error == "server error"

    s.request_submit()
    assert s.confirm_submit().score == 25


def test_conflict_adopts_stored_result(backend):
    s = _active(backend)
    stored = AttemptResult(score=90, attempt_number=1, attempts_remaining=0)
    backend.attempts[("7", "final-1")] = stored
    s.request_submit()
    assert s.confirm_submit() is stored
    assert s.state == final_test.SUBMITTED


def test_unauthorized_closes_session(backend):
    s = _active(backend)
    backend.fail["submit_final_attempt"] = UnauthorizedError()
    s.request_submit()
    with pytest.raises(UnauthorizedError):
        s.confirm_submit()
    assert s.state == final_test.CLOSED
    assert s.tick() is False


def test_close_cancels_pending_countdown(backend):
    s = _active(backend)
    s.advance(59)
    s.close()
    assert s.advance(5) == 0
    assert backend.calls["submit_final_attempt"] == 0


def test_countdown_fires_exactly_once():
    fired = []
    c = Countdown(2, lambda: fired.append(1))
    assert c.tick() and c.tick()
    assert not c.tick()
    assert fired == [1]


def test_clock_sync_carries_fraction():
    now = [100.0]
    sync = ClockSync(lambda: now[0])
    now[0] = 101.6
    assert sync.elapsed_ticks() == 1
    now[0] = 102.1
    assert sync.elapsed_ticks() == 1
    assert sync.elapsed_ticks() == 0


@pytest.mark.parametrize("seconds,text,level", [
    (1800, "30:00", "normal"), (299, "4:59", "warning"), (59, "0:59", "critical"), (0, "0:00", "critical"),
])
def test_time_display(seconds, text, level):
    assert format_time(seconds) == text
    assert urgency(seconds) == level


def test_for_course_requires_all_chapters(backend):
    with pytest.raises(ForbiddenError):
        TimedAssessmentSession.for_course(backend, CTX, backend.course, {"ch1"})
    s = TimedAssessmentSession.for_course(backend, CTX, backend.course, {"ch1", "ch2", "ch3"})
    assert s.assessment_id == "final-1"
    assert s.load() == final_test.ACTIVE


def test_failed_auto_submit_freezes_answers_until_retry():
    b = FakeBackend()
    b.add_final_test("final-1", QUESTIONS, time_limit=3)
    s = TimedAssessmentSession(b, CTX, "final-1")
    s.load()
    s.answer("q1", 0)
    b.fail["submit_final_attempt"] = TransientError("server error")

    s.advance(3)
    assert s.state == final_test.EXPIRED
    assert s.auto_submitted is True
    assert s.last_error == "server error"
    assert not s.answer("q2", 0)
    assert not s.toggle_option("q3", 1)
    assert s.advance(1000) == 0
    with pytest.raises(ForbiddenError):
        s.request_submit()

    result = s.confirm_submit()
    assert result.score == 25
    assert s.state == final_test.SUBMITTED
    assert b.submitted_answers == [{"q1": 0}, {"q1": 0}]


def test_privileged_preview_never_records_an_attempt(backend):
    admin = LearnerContext(user_id=1, role="ADMIN")
    s = TimedAssessmentSession.for_course(backend, admin, backend.course, set())
    assert s.load() == final_test.ACTIVE
    assert s.preview_only is True
    assert s.countdown is None
    assert s.time_remaining == 60

    assert s.advance(120) == 0
    assert not s.answer("q1", 0)
    assert s.go_next() == 1
    with pytest.raises(ForbiddenError) as exc:
        s.request_submit()
    assert exc.value.error_code == "PREVIEW_ONLY"
    with pytest.raises(ForbiddenError):
        s.confirm_submit()
    assert s.view()["previewOnly"] is True
    assert backend.calls["submit_final_attempt"] == 0
    assert backend.attempts == {}
