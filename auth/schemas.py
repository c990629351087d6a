"""
auth/schemas.py -- Pydantic v2 input models for the service facade.

The facade accepts plain values; these models validate and normalize them
before anything touches the store. They are separate from the dataclasses in
auth/models.py, which own the internal domain representation.

Validation failures are converted to auth.errors.InvalidInput by
validate_input(), so callers only ever see the auth error taxonomy.
"""

from __future__ import annotations

from typing import Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from auth.errors import InvalidInput
from auth.models import Role

# Deliberately loose: one @, no whitespace, a dot in the domain. Deliverability
# is the mail system's problem, not ours.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Model = TypeVar("_Model", bound=BaseModel)


class RegisterRequest(BaseModel):
    """Input for AuthService.register()."""

    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=1, max_length=50)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)

    @field_validator("username", "email", "phone", "first_name", "last_name", mode="before")
    @classmethod
    def strip_text(cls, value):
        """Trim identity fields. The password is left verbatim: spaces are part of the secret."""
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class ProfileUpdate(BaseModel):
    """Input for AuthService.update_profile(). Unset fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    username: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, min_length=1, max_length=50)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value is not None else None


def validate_input(model: type[_Model], data: dict) -> _Model:
    """Validate `data` against `model`, raising InvalidInput on failure."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise InvalidInput(f"Invalid input: {', '.join(fields)}", detail={"fields": fields}) from exc
