# engine_api.py
# -----------------------------------------------------------------------------
# JSON blueprint over the progression engine.
# Identity is read from g.learner (a LearnerContext attached by the app).
# One live session object per (learner, target) is kept in process; final-test
# countdowns are advanced by the wall-clock seconds elapsed between requests.
# Cached objects always act with the identity of the current request, and a
# 401 drops everything cached for that learner.
# -----------------------------------------------------------------------------

import os
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

from certificate import CertificateGate, eligible
from course_viewer import CourseViewer
from errors import EngineError, NotFoundError, UnauthorizedError
from final_test import ClockSync, TimedAssessmentSession
from gating import next_action
from models import AttemptResult

ENGINE_MAX_SESSIONS = int(os.getenv("ENGINE_MAX_SESSIONS") or 500)


def create_engine_blueprint(base_path: str, deps: Dict[str, Any], name: str = "engine") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "/engine").
    Required deps: backend
    Optional deps: clock (monotonic seconds), default_seconds, max_sessions
    """
    url_prefix = base_path or "/engine"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    backend = deps["backend"]
    clock: Optional[Callable[[], float]] = deps.get("clock")
    default_seconds: Optional[int] = deps.get("default_seconds")
    max_sessions = int(deps.get("max_sessions") or ENGINE_MAX_SESSIONS)

    viewers: Dict[Tuple[str, str], CourseViewer] = {}
    finals: Dict[Tuple[str, str], Tuple[TimedAssessmentSession, ClockSync]] = {}
    gates: Dict[Tuple[str, str], CertificateGate] = {}

    def _remember(registry: Dict, key: Tuple[str, str], value: Any, on_evict: Optional[Callable] = None):
        """Insert as most recent; the least recently used entries go once the cap is passed."""
        registry.pop(key, None)
        registry[key] = value
        while len(registry) > max_sessions:
            oldest = next(iter(registry))
            evicted = registry.pop(oldest)
            if on_evict is not None:
                on_evict(evicted)
        return value

    def _touch(registry: Dict, key: Tuple[str, str]):
        value = registry.pop(key, None)
        if value is not None:
            registry[key] = value
        return value

    def _forget(user_id: str) -> None:
        for key in [k for k in viewers if k[0] == user_id]:
            viewers.pop(key).close()
        for key in [k for k in finals if k[0] == user_id]:
            finals.pop(key)[0].close()
        for key in [k for k in gates if k[0] == user_id]:
            gates.pop(key)

    # ---- errors --------------------------------------------------------------
    @bp.errorhandler(EngineError)
    def _engine_error(e: EngineError):
        ctx = getattr(g, "learner", None)
        if isinstance(e, UnauthorizedError) and ctx is not None:
            print(f"[engine] unauthorized for user {ctx.user_id}; dropping cached sessions")
            _forget(str(ctx.user_id))
        return jsonify(e.to_dict()), e.status_code

    @bp.errorhandler(Exception)
    def _unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        print(f"[engine] unhandled error on {request.path}: {e}")
        return jsonify({"ok": False, "error": "internal error"}), 500

    # ---- identity ------------------------------------------------------------
    def _learner():
        ctx = getattr(g, "learner", None)
        if ctx is None or ctx.user_id in (None, ""):
            raise UnauthorizedError()
        return ctx

    def _key(ctx, target: Any) -> Tuple[str, str]:
        return (str(ctx.user_id), str(target))

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    # ---- course viewer -------------------------------------------------------
    def _viewer(course_id: str, refresh: bool = False) -> CourseViewer:
        ctx = _learner()
        key = _key(ctx, course_id)
        viewer = _touch(viewers, key)
        if viewer is None or refresh:
            if viewer is not None:
                viewer.close()
            viewer = CourseViewer(backend, ctx, course_id).load(request.args.get("chapter"))
            _remember(viewers, key, viewer, on_evict=lambda v: v.close())
        else:
            viewer.rebind(ctx)
        return viewer

    def _chapter_payload(viewer: CourseViewer) -> Dict[str, Any]:
        ch = viewer.current
        if ch is None:
            return {"ok": True, "chapter": None, "outline": viewer.outline()}
        return {
            "ok": True,
            "chapter": {
                "id": ch.id,
                "title": ch.title,
                "order": ch.order,
                "hasQuiz": ch.has_quiz,
                "pages": ch.content_pages(),
                "attachments": ch.attachments,
                "completed": viewer.tracker.is_completed(ch.id),
            },
            "outline": viewer.outline(),
        }

    @bp.get("/courses/<course_id>")
    def course_outline(course_id: str):
        refresh = (request.args.get("refresh") or "").lower() in ("1", "true", "yes")
        viewer = _viewer(course_id, refresh=refresh)
        return jsonify({"ok": True, **viewer.outline()})

    @bp.delete("/courses/<course_id>")
    def course_close(course_id: str):
        ctx = _learner()
        viewer = viewers.pop(_key(ctx, course_id), None)
        if viewer is not None:
            viewer.close()
        return jsonify({"ok": True, "closed": viewer is not None})

    @bp.get("/courses/<course_id>/chapters/<chapter_id>")
    def chapter_view(course_id: str, chapter_id: str):
        viewer = _viewer(course_id)
        viewer.select_chapter(chapter_id)
        return jsonify(_chapter_payload(viewer))

    @bp.post("/courses/<course_id>/chapters/<chapter_id>/complete")
    def chapter_complete(course_id: str, chapter_id: str):
        viewer = _viewer(course_id)
        viewer.select_chapter(chapter_id)
        advance = _body().get("advance", True) is not False
        outcome = viewer.complete_current_chapter(advance=advance)
        payload = _chapter_payload(viewer)
        payload["completion"] = outcome
        if outcome["alreadyCompleted"]:
            payload["notice"] = "Chapter already completed."
        return jsonify(payload)

    # ---- chapter quiz --------------------------------------------------------
    def _quiz(course_id: str, chapter_id: str):
        viewer = _viewer(course_id)
        viewer.select_chapter(chapter_id)
        return viewer.quiz()

    @bp.get("/courses/<course_id>/chapters/<chapter_id>/quiz")
    def quiz_view(course_id: str, chapter_id: str):
        return jsonify({"ok": True, **_quiz(course_id, chapter_id).view()})

    @bp.post("/courses/<course_id>/chapters/<chapter_id>/quiz/answers")
    def quiz_answer(course_id: str, chapter_id: str):
        session = _quiz(course_id, chapter_id)
        accepted = _apply_answer(session, _body())
        return jsonify({"ok": True, "accepted": accepted, **session.view()})

    @bp.post("/courses/<course_id>/chapters/<chapter_id>/quiz/submit")
    def quiz_submit(course_id: str, chapter_id: str):
        session = _quiz(course_id, chapter_id)
        result = session.submit()
        return jsonify({"ok": True, "result": result, **session.view()})

    # ---- final test ----------------------------------------------------------
    def _final(assessment_id: str) -> TimedAssessmentSession:
        ctx = _learner()
        key = _key(ctx, assessment_id)
        entry = finals.get(key)
        if entry is None:
            raise NotFoundError("No final test is open. Start it from its course.",
                                error_code="FINAL_TEST_NOT_OPEN")
        session, sync = entry
        if session.ctx.privileged != ctx.privileged:
            finals.pop(key)
            session.close()
            raise NotFoundError("No final test is open. Start it from its course.",
                                error_code="FINAL_TEST_NOT_OPEN")
        session.ctx = ctx
        session.advance(sync.elapsed_ticks())
        return session

    @bp.get("/courses/<course_id>/final-test")
    def final_test_for_course(course_id: str):
        ctx = _learner()
        viewer = _viewer(course_id)
        final = backend.get_final_test_for_course(ctx, course_id)
        key = _key(ctx, final.id)
        if key not in finals:
            session = TimedAssessmentSession.for_course(backend, ctx, viewer.course, viewer.tracker.completed,
                                                        default_seconds=default_seconds)
            session.load()
            finals[key] = (session, ClockSync(clock) if clock else ClockSync())
        return jsonify({"ok": True, **_final(final.id).view()})

    @bp.get("/final-tests/<assessment_id>")
    def final_view(assessment_id: str):
        return jsonify({"ok": True, **_final(assessment_id).view()})

    @bp.post("/final-tests/<assessment_id>/answers")
    def final_answer(assessment_id: str):
        session = _final(assessment_id)
        accepted = _apply_answer(session, _body())
        return jsonify({"ok": True, "accepted": accepted, **session.view()})

    @bp.post("/final-tests/<assessment_id>/navigate")
    def final_navigate(assessment_id: str):
        session = _final(assessment_id)
        data = _body()
        direction = str(data.get("direction") or "").lower()
        if direction == "next":
            session.go_next()
        elif direction in ("previous", "prev"):
            session.go_previous()
        elif data.get("index") is not None:
            try:
                session.jump_to(int(data["index"]))
            except (TypeError, ValueError):
                return jsonify({"ok": False, "error": "index must be an integer"}), 400
        return jsonify({"ok": True, **session.view()})

    @bp.post("/final-tests/<assessment_id>/submit")
    def final_request_submit(assessment_id: str):
        session = _final(assessment_id)
        summary = session.request_submit()
        message = "Are you sure you want to submit? You cannot change your answers after submission."
        return jsonify({"ok": True, "confirm": summary, "message": message, **session.view()})

    @bp.post("/final-tests/<assessment_id>/submit/cancel")
    def final_cancel_submit(assessment_id: str):
        session = _final(assessment_id)
        session.cancel_submit()
        return jsonify({"ok": True, **session.view()})

    @bp.post("/final-tests/<assessment_id>/submit/confirm")
    def final_confirm_submit(assessment_id: str):
        session = _final(assessment_id)
        session.confirm_submit()
        return jsonify({"ok": True, **session.view()})

    @bp.delete("/final-tests/<assessment_id>")
    def final_close(assessment_id: str):
        ctx = _learner()
        entry = finals.pop(_key(ctx, assessment_id), None)
        if entry is not None:
            entry[0].close()
        return jsonify({"ok": True, "closed": entry is not None})

    # ---- certificate ---------------------------------------------------------
    def _attempt_for(ctx, assessment_id: str) -> Optional[AttemptResult]:
        entry = finals.get(_key(ctx, assessment_id))
        if entry is not None and entry[0].result is not None:
            return entry[0].result
        return backend.get_assessment(ctx, assessment_id).attempt_result

    def _gate(assessment_id: str) -> CertificateGate:
        ctx = _learner()
        key = _key(ctx, assessment_id)
        gate = _touch(gates, key)
        if gate is None or gate.result is None:
            gate = _remember(gates, key, CertificateGate(backend, ctx, assessment_id, _attempt_for(ctx, assessment_id)))
        gate.ctx = ctx
        return gate

    @bp.get("/assessments/<assessment_id>/certificate")
    def certificate_view(assessment_id: str):
        return jsonify({"ok": True, **_gate(assessment_id).view()})

    @bp.post("/assessments/<assessment_id>/certificate")
    def certificate_generate(assessment_id: str):
        gate = _gate(assessment_id)
        gate.generate()
        return jsonify({"ok": True, **gate.view()})

    @bp.delete("/assessments/<assessment_id>/certificate")
    def certificate_close(assessment_id: str):
        ctx = _learner()
        gate = gates.pop(_key(ctx, assessment_id), None)
        return jsonify({"ok": True, "closed": gate is not None})

    # ---- dashboard -----------------------------------------------------------
    @bp.get("/courses/<course_id>/next-action")
    def course_next_action(course_id: str):
        ctx = _learner()
        viewer = _viewer(course_id)
        final_passed, has_certificate = False, False
        try:
            final = backend.get_final_test_for_course(ctx, course_id)
        except NotFoundError:
            final = None
        if final is not None and final.attempt_result is not None:
            final_passed = eligible(final.attempt_result)
            has_certificate = final.attempt_result.certificate_generated
        return jsonify({
            "ok": True,
            "courseId": viewer.course.id,
            "progress": viewer.tracker.summary(viewer.course),
            "nextAction": next_action(viewer.course, viewer.tracker.completed,
                                      final_passed=final_passed, has_certificate=has_certificate),
        })

    return bp


def _apply_answer(session, data: Dict[str, Any]) -> bool:
    """{questionId, value} | {questionId, toggle} | {questionId, pairIndex, value}"""
    qid = data.get("questionId")
    if qid is None:
        return False
    if data.get("toggle") is not None:
        try:
            return session.toggle_option(qid, int(data["toggle"]))
        except (TypeError, ValueError):
            return False
    if data.get("pairIndex") is not None:
        try:
            return session.set_match_pair(qid, int(data["pairIndex"]), data.get("value") or "")
        except (TypeError, ValueError):
            return False
    return session.answer(qid, data.get("value"))
