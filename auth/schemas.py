"""
auth/schemas.py -- Pydantic v2 input models for session operations.

These validate what the UI hands to SessionManager before any remote call is
made. They are intentionally separate from the dataclasses in auth/models.py,
which own the internal domain representation.

Passwords are never stripped: leading and trailing spaces are part of the
secret. The minimum password length is a runtime setting, so the session
manager checks it rather than a Field constraint here.
"""

from pydantic import BaseModel, Field, ValidationError, field_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _normalize_email(value):
    return value.strip().lower() if isinstance(value, str) else value


class SignUpRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    password: str = Field(max_length=128)

    @field_validator("full_name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        return _normalize_email(value)


class SignInRequest(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        return _normalize_email(value)


class PasswordChange(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=128)


def first_error(exc: ValidationError) -> str:
    """Return a short, user-facing message for the first validation error."""
    errors = exc.errors()
    if not errors:
        return "Invalid input."
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    if field == "email":
        return "Enter a valid email address."
    if field == "full_name":
        return "Full name is required."
    if field in ("password", "current_password", "new_password"):
        return "Password is too long." if err.get("type") == "string_too_long" else "Password is required."
    return f"{field}: {err.get('msg', 'invalid value')}"
