from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from .errors import ValidationError


class SessionContext(BaseModel):
    """
    Authenticated operator, threaded explicitly into the engine and the gateway.
    """

    user_id: int = 0
    email: str = ""
    full_name: str = ""
    role: Literal["admin", "user"] = "user"
    token: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return (v or "").strip().lower()

    @property
    def is_authenticated(self) -> bool:
        return self.user_id > 0

    def require_user(self) -> int:
        if not self.is_authenticated:
            raise ValidationError("No authenticated user in session")
        return self.user_id

    def end(self) -> None:
        self.token = None
        self.user_id = 0
