"""Authentication flow schemas."""

from enum import Enum

from pydantic import BaseModel


class AuthMode(str, Enum):
    """Current state of the login screen. Exactly one is active."""

    PASSWORD = "password"
    PASSWORD_OTP_VERIFY = "password-otp-verify"
    OTP_REQUEST = "otp-request"
    OTP_VERIFY = "otp-verify"
    FORGOT_PASSWORD = "forgot-password"
    FORGOT_PASSWORD_OTP = "forgot-password-otp"
    RESET_PASSWORD = "reset-password"


class Session(BaseModel):
    """Identity provider session."""

    access_token: str
    refresh_token: str | None = None
    user_id: str
    email: str | None = None


class AccountStatus(BaseModel):
    """Account flags from the profiles store."""

    is_blocked: bool = False
    blocked_reason: str | None = None
    verification_status: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.verification_status == "deleted"


class VerifiedCredentials(BaseModel):
    """Password check result. No session is attached to it."""

    account_id: str
    account_status: AccountStatus


class FlowResult(BaseModel):
    """What the screen should do after a controller operation."""

    mode: AuthMode
    message: str | None = None
    navigate_to: str | None = None
    redirect_url: str | None = None
    ok: bool = True
    error: str | None = None
    can_resend: bool | None = None
