"""Custom exception classes for the authentication flow.

Every exception carries a stable, user-facing ``message``. Raw provider or
service error text never ends up in it.
"""


class BaseAuthFlowException(Exception):
    """Base exception for authentication flow errors."""

    code = "error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Message safe to show on the login screen."""
        return self.message


class ValidationException(BaseAuthFlowException):
    """Raised when local input validation fails."""

    code = "validation"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, status_code=422)
        self.field = field


class InvalidCredentialsException(BaseAuthFlowException):
    """Raised when email or password is wrong, or the account is unknown."""

    code = "invalid_credentials"

    def __init__(self, message: str = "Incorrect email or password"):
        super().__init__(message, status_code=401)


class EmailUnconfirmedException(BaseAuthFlowException):
    """Raised when the provider refuses sign-in until the email is confirmed."""

    code = "email_unconfirmed"

    def __init__(self, message: str = "Please confirm your email before signing in"):
        super().__init__(message, status_code=401)


class AccountBlockedException(BaseAuthFlowException):
    """Raised when the account is blocked or suspended."""

    code = "account_blocked"

    def __init__(self, blocked_reason: str | None = None):
        message = blocked_reason or (
            "This account has been suspended. Contact support for more information"
        )
        super().__init__(message, status_code=403)
        self.blocked_reason = blocked_reason


class AccountDeletedException(BaseAuthFlowException):
    """Raised when the account has been permanently deleted."""

    code = "account_deleted"

    def __init__(self):
        super().__init__(
            "This account has been permanently deleted and can no longer be accessed",
            status_code=403,
        )


class DeliveryFailedException(BaseAuthFlowException):
    """Raised when a verification code could not be sent."""

    code = "delivery_failed"

    def __init__(self, message: str = "Could not send the verification code. Try again"):
        super().__init__(message, status_code=502)


class InvalidCodeException(BaseAuthFlowException):
    """Raised when a verification code is malformed or wrong."""

    code = "invalid_code"

    def __init__(self, message: str = "Invalid verification code"):
        super().__init__(message, status_code=400)


class CodeExpiredException(BaseAuthFlowException):
    """Raised when the outstanding code is past its expiry."""

    code = "code_expired"

    def __init__(self):
        super().__init__("The verification code has expired. Request a new one", status_code=410)


class ResendNotAllowedException(BaseAuthFlowException):
    """Raised when a resend is requested before the resend window opens."""

    code = "resend_not_allowed"

    def __init__(self, retry_after: int):
        super().__init__(f"A new code can be requested in {retry_after} seconds", status_code=429)
        self.retry_after = retry_after


class InvalidOrExpiredCodeException(BaseAuthFlowException):
    """Raised when the reset operation rejects the code."""

    code = "invalid_or_expired_code"

    def __init__(self):
        super().__init__("Invalid or expired code. Request a new one", status_code=400)


class WeakPasswordException(BaseAuthFlowException):
    """Raised when a new password does not meet the length policy."""

    code = "weak_password"

    def __init__(self, min_length: int):
        super().__init__(
            f"Password must be at least {min_length} characters", status_code=422
        )
        self.min_length = min_length


class PasswordMismatchException(BaseAuthFlowException):
    """Raised when the password confirmation does not match."""

    code = "password_mismatch"

    def __init__(self):
        super().__init__("Passwords do not match", status_code=422)


class RateLimitExceededException(BaseAuthFlowException):
    """Raised when a collaborator throttles the caller."""

    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int | None = None):
        message = "Too many attempts"
        if retry_after:
            message += f". Retry after {retry_after} seconds"
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ExternalServiceException(BaseAuthFlowException):
    """Raised when a collaborator fails unexpectedly (server or network error)."""

    code = "external_service"

    def __init__(self, service: str, message: str | None = None):
        error_message = f"External service '{service}' is unavailable"
        if message:
            error_message += f": {message}"
        super().__init__(error_message, status_code=503)
        self.service = service

    @property
    def user_message(self) -> str:
        return "Unexpected error. Try again"


class InvalidTransitionException(BaseAuthFlowException):
    """Raised when an event is not valid in the current auth mode."""

    code = "invalid_transition"

    def __init__(self, mode: str, event: str):
        super().__init__(f"Cannot handle '{event}' while in '{mode}' mode", status_code=409)
        self.mode = mode
        self.event = event


class SessionGateViolation(AssertionError):
    """Raised when the session gate is found held where it must be released."""
