"""
Error taxonomy for the progression engine.

Every collaborator failure is converted into one of these before it reaches a
session object. Each error carries:
- error_code: machine-readable string (e.g. "CHAPTER_NOT_FOUND")
- status_code: HTTP status used by the JSON blueprint
- recoverable: whether the learner can simply retry
- context: optional structured metadata dict

Scoring and gating never raise these for normal edge cases (missing answers,
empty question sets, empty courses).
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    recoverable = False

    def __init__(
        self,
        message: str,
        error_code: str = "ENGINE_ERROR",
        status_code: int = 500,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.message,
            "code": self.error_code,
            "recoverable": self.recoverable,
        }


class NotFoundError(EngineError):
    """Course, chapter, assessment or certificate absent. Not retried automatically."""

    def __init__(self, message: str, error_code: str = "NOT_FOUND",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, status_code=404, context=context)


class UnauthorizedError(EngineError):
    """Session expired; the caller has to re-authenticate."""

    def __init__(self, message: str = "Session expired. Please log in again.",
                 error_code: str = "UNAUTHORIZED",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, status_code=401, context=context)


class ForbiddenError(EngineError):
    """Role lacks access, or the action is not offered in the current state."""

    def __init__(self, message: str, error_code: str = "FORBIDDEN",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, status_code=403, context=context)


class TransientError(EngineError):
    """Network or server failure during a fetch or submit."""

    recoverable = True

    def __init__(self, message: str, error_code: str = "TRANSIENT",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, status_code=503, context=context)


class ConflictError(EngineError):
    """
    Resubmitting an already-attempted final test, or completing an
    already-completed chapter. Sessions treat this as a no-op success;
    `result` carries the stored attempt when the collaborator returned one.
    """

    recoverable = True

    def __init__(self, message: str, error_code: str = "CONFLICT",
                 context: Optional[Dict[str, Any]] = None, result: Any = None):
        self.result = result
        super().__init__(message, error_code=error_code, status_code=409, context=context)
