"""OTP-gated password reset."""

from authflow.core.config import settings
from authflow.core.exceptions import (
    InvalidCodeException,
    InvalidOrExpiredCodeException,
    PasswordMismatchException,
    WeakPasswordException,
)
from authflow.core.logging_config import get_logger
from authflow.schemas.otp import ResetPasswordRequest
from authflow.services.otp_client import OTPService
from authflow.services.otp_lifecycle import is_well_formed_code

logger = get_logger(__name__)

# Service messages that mean the password was refused, not the code
WEAK_PASSWORD_MARKERS = ("senha deve", "at least", "too short", "weak")


class PasswordResetService:
    """Sets a new password with a ``password_reset`` code.

    Local checks only fail fast; the service re-checks the code and its
    purpose and is authoritative.
    """

    def __init__(self, service: OTPService, min_length: int | None = None) -> None:
        self.service = service
        self.min_length = min_length or settings.PASSWORD_MIN_LENGTH

    def check_new_password(self, new_password: str, confirm_password: str) -> None:
        if new_password != confirm_password:
            raise PasswordMismatchException()
        if len(new_password) < self.min_length:
            raise WeakPasswordException(self.min_length)

    async def reset_password(
        self, email: str, code: str, new_password: str, confirm_password: str
    ) -> None:
        """
        Reset the password of ``email``.

        Raises:
            PasswordMismatchException: Confirmation differs
            WeakPasswordException: Too short, locally or per the service
            InvalidCodeException: Code is not 6 digits
            InvalidOrExpiredCodeException: Service rejected the code
            ExternalServiceException: Service failure
        """
        self.check_new_password(new_password, confirm_password)
        if not is_well_formed_code(code):
            raise InvalidCodeException()

        response = await self.service.reset_password(
            ResetPasswordRequest(email=email, code=code, new_password=new_password)
        )
        if response.success:
            logger.info("password_reset", email=email)
            return

        error = (response.error or "").lower()
        logger.warning("password_reset_rejected", email=email)
        if any(marker in error for marker in WEAK_PASSWORD_MARKERS):
            raise WeakPasswordException(self.min_length)
        raise InvalidOrExpiredCodeException()
