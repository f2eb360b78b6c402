from dataclasses import dataclass
from typing import Any, Optional

from gating import normalize_role, is_privileged


@dataclass(frozen=True)
class LearnerContext:
    """
    Who is acting. Passed explicitly into every engine entry point and every
    collaborator call, so several learners (or tests) can run side by side.
    """
    user_id: Any
    role: str = "STUDENT"
    display_name: str = "Student"
    email: Optional[str] = None
    token: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "role", normalize_role(self.role))

    @property
    def privileged(self) -> bool:
        return is_privileged(self.role)

    def auth_header(self) -> Optional[str]:
        if not self.token:
            return None
        t = str(self.token)
        return t if t.startswith("Bearer ") else f"Bearer {t}"
