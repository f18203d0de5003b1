"""One-time passcode schemas."""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Purpose(str, Enum):
    """Trust context a code is bound to. Codes never cross purposes."""

    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


class Challenge(BaseModel):
    """One outstanding code for an (identifier, purpose) pair.

    Built from the issuance response; the server owns attempts and expiry.
    """

    identifier: str
    purpose: Purpose
    expires_at: datetime
    attempts_remaining: int | None = None
    account_id: str | None = None

    def remaining(self, now: datetime) -> timedelta:
        """Time left before expiry, never negative."""
        return max(self.expires_at - now, timedelta(0))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def matches(self, identifier: str, purpose: Purpose) -> bool:
        return self.identifier == identifier and self.purpose == purpose


class VerifyResult(BaseModel):
    """Outcome of an accepted verification."""

    valid: bool
    magic_link: str | None = None


class _ServiceModel(BaseModel):
    """Wire models use the service's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestCodeRequest(_ServiceModel):
    """Body of a code issuance request."""

    email: str
    purpose: Purpose
    user_id: str | None = None


class RequestCodeResponse(_ServiceModel):
    """Issuance response."""

    expires_at: datetime | None = None
    error: str | None = None


class VerifyCodeRequest(_ServiceModel):
    """Body of a verification request."""

    email: str
    code: str = Field(min_length=1, pattern=r"^[0-9]+$")
    purpose: Purpose
    create_session: bool = False


class VerifyCodeResponse(_ServiceModel):
    """Verification response.

    ``magic_link`` is only present for passwordless login with
    ``create_session`` set.
    """

    valid: bool = False
    magic_link: str | None = None
    error: str | None = None


class ResetPasswordRequest(_ServiceModel):
    """Body of a password reset request."""

    email: str
    code: str
    new_password: str


class ResetPasswordResponse(_ServiceModel):
    """Password reset response."""

    success: bool = False
    message: str | None = None
    error: str | None = None
