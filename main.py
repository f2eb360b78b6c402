# main.py — BASE_PATH-aware Flask app serving the course progression engine
# Backend is chosen by ENGINE_BACKEND: "http" (LMS REST API) or "postgres" (psycopg3 pool).

import os
from typing import Optional

from flask import Flask, g, jsonify, request, session

import db
from backends import HttpCourseBackend
from context import LearnerContext
from engine_api import create_engine_blueprint
from final_test import DEFAULT_TIME_LIMIT_SECONDS
from pg_backend import PostgresCourseBackend

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)


def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p


# =============================================================================
# Backend selection
# =============================================================================
ENGINE_BACKEND = (os.getenv("ENGINE_BACKEND", "http") or "http").strip().lower()

if ENGINE_BACKEND == "postgres":
    backend = PostgresCourseBackend(db.helper_deps())
    print("[engine] using Postgres backend", flush=True)
else:
    backend = HttpCourseBackend()
    print(f"[engine] using LMS API at {backend.base_url}", flush=True)

# =============================================================================
# Identity
# =============================================================================
def _bearer_token() -> Optional[str]:
    auth = (request.headers.get("Authorization") or "").strip()
    return auth or None


def current_learner() -> Optional[LearnerContext]:
    """Upstream gateway headers first, then the signed session cookie."""
    uid = request.headers.get("X-User-Id")
    if uid:
        return LearnerContext(
            user_id=uid,
            role=request.headers.get("X-User-Role") or "STUDENT",
            display_name=request.headers.get("X-User-Name") or "Student",
            email=request.headers.get("X-User-Email"),
            token=_bearer_token(),
        )
    stored = session.get("learner")
    if isinstance(stored, dict) and stored.get("user_id"):
        return LearnerContext(
            user_id=stored["user_id"],
            role=stored.get("role") or "STUDENT",
            display_name=stored.get("display_name") or "Student",
            email=stored.get("email"),
            token=stored.get("token") or _bearer_token(),
        )
    return None


@app.before_request
def attach_identity():
    g.learner = current_learner()


# =============================================================================
# Routes (health, identity)
# =============================================================================
@app.get("/healthz")
def healthz():
    if ENGINE_BACKEND != "postgres":
        return ("ok", 200)
    try:
        row = db.fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)


@app.get(_bp("/whoami"))
def whoami():
    ctx = g.learner
    if ctx is None:
        return jsonify({"ok": False, "error": "Session expired. Please log in again."}), 401
    return jsonify({
        "ok": True,
        "userId": ctx.user_id,
        "role": ctx.role,
        "displayName": ctx.display_name,
        "email": ctx.email,
        "privileged": ctx.privileged,
    })


@app.post(_bp("/session"))
def remember_identity():
    """Pin the gateway-supplied identity into the session cookie."""
    ctx = g.learner
    if ctx is None:
        return jsonify({"ok": False, "error": "Session expired. Please log in again."}), 401
    session["learner"] = {
        "user_id": ctx.user_id,
        "role": ctx.role,
        "display_name": ctx.display_name,
        "email": ctx.email,
        "token": ctx.token,
    }
    return jsonify({"ok": True})


@app.delete(_bp("/session"))
def forget_identity():
    session.pop("learner", None)
    return jsonify({"ok": True})


# =============================================================================
# Engine blueprint
# =============================================================================
app.register_blueprint(create_engine_blueprint(_bp("/engine"), {
    "backend": backend,
    "default_seconds": DEFAULT_TIME_LIMIT_SECONDS,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
