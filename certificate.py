# certificate.py
# -----------------------------------------------------------------------------
# Certificate issuance for a final-test attempt:
#   NOT_GENERATED -> GENERATING -> GENERATED
#                    GENERATING -> FAILED -> GENERATING (retry)
# Only attempts at or above the pass mark ever see a generate action.
# -----------------------------------------------------------------------------

import os
from typing import Any, List, Optional

from errors import ForbiddenError, NotFoundError, TransientError, UnauthorizedError
from models import AttemptResult, Certificate

PASS_THRESHOLD = int(os.getenv("EXAM_PASS_SCORE") or 70)

NOT_GENERATED = "not_generated"
GENERATING = "generating"
GENERATED = "generated"
FAILED = "failed"

NOT_FOUND_MESSAGE = "Certificate not found. It may not have been created. Please contact support."
RETRY_MESSAGE = "Failed to generate certificate. Please try again."


def _score_of(result: Any) -> Optional[float]:
    if result is None:
        return None
    if isinstance(result, dict):
        raw = result.get("score")
    else:
        raw = getattr(result, "score", None)
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def eligible(result: Any, threshold: int = PASS_THRESHOLD) -> bool:
    s = _score_of(result)
    return s is not None and s >= threshold


class CertificateGate:
    def __init__(self, backend, ctx, assessment_id: Any, result: Optional[AttemptResult]):
        self.backend = backend
        self.ctx = ctx
        self.assessment_id = str(assessment_id)
        self.result = result
        self.state = NOT_GENERATED
        self.certificate: Optional[Certificate] = None
        self.error_message: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return eligible(self.result)

    def actions(self) -> List[str]:
        if not self.eligible:
            return []
        if self.state == NOT_GENERATED:
            return ["generate"]
        if self.state == FAILED:
            return ["retry"]
        if self.state == GENERATED:
            return ["view"]
        return []

    def generate(self) -> Certificate:
        if self.state == GENERATED and self.certificate is not None:
            return self.certificate
        if not self.eligible:
            raise ForbiddenError(
                f"A score of at least {PASS_THRESHOLD}% is required for a certificate.",
                error_code="NOT_ELIGIBLE",
            )
        if self.state == GENERATING:
            raise ForbiddenError("Certificate generation already in progress.", error_code="CERTIFICATE_PENDING")

        self.state = GENERATING
        self.error_message = None
        try:
            cert = self.backend.get_certificate(self.ctx, self.assessment_id)
        except NotFoundError as e:
            print(f"[certificate] {self.assessment_id}: not found for user {self.ctx.user_id}")
            self.state = FAILED
            self.error_message = NOT_FOUND_MESSAGE
            err = NotFoundError(NOT_FOUND_MESSAGE, error_code="CERTIFICATE_NOT_FOUND", context=e.context)
            err.recoverable = True
            raise err from e
        except UnauthorizedError:
            self.state = NOT_GENERATED
            raise
        except Exception as e:
            print(f"[certificate] {self.assessment_id}: fetch failed: {e}")
            self.state = FAILED
            self.error_message = RETRY_MESSAGE
            raise TransientError(RETRY_MESSAGE, error_code="CERTIFICATE_FAILED") from e

        self.certificate = cert
        self.state = GENERATED
        print(f"[certificate] {self.assessment_id}: issued {cert.certificate_id}")
        return cert

    def view(self):
        return {
            "assessmentId": self.assessment_id,
            "state": self.state,
            "eligible": self.eligible,
            "passThreshold": PASS_THRESHOLD,
            "actions": self.actions(),
            "certificate": self.certificate.to_dict() if self.certificate else None,
            "error": self.error_message,
        }
