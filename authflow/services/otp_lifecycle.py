"""One-time passcode lifecycle: issuance, countdown, verification and resend."""

import asyncio
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from authflow.core.config import settings
from authflow.core.exceptions import (
    CodeExpiredException,
    DeliveryFailedException,
    ExternalServiceException,
    InvalidCodeException,
    ResendNotAllowedException,
)
from authflow.core.logging_config import get_logger
from authflow.schemas.otp import (
    Challenge,
    Purpose,
    RequestCodeRequest,
    VerifyCodeRequest,
    VerifyResult,
)
from authflow.services.otp_client import OTPService

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def is_well_formed_code(code: str, length: int | None = None) -> bool:
    """Check a code is exactly ``length`` ASCII digits."""
    length = length or settings.OTP_CODE_LENGTH
    return len(code) == length and code.isascii() and code.isdigit()


class OTPLifecycle:
    """
    Client side of the OTP lifecycle.

    Holds at most one outstanding challenge. Malformed and locally expired
    codes are rejected without contacting the service. The lifecycle never
    changes the auth mode or the session gate; it returns results and raises.
    """

    def __init__(
        self,
        service: OTPService,
        clock: Clock = utcnow,
        code_length: int | None = None,
        ttl_seconds: int | None = None,
        resend_threshold_seconds: int | None = None,
        tick_seconds: float | None = None,
    ) -> None:
        self.service = service
        self.clock = clock
        self.code_length = code_length or settings.OTP_CODE_LENGTH
        self.ttl = timedelta(seconds=ttl_seconds or settings.OTP_TTL_SECONDS)
        self.resend_threshold = timedelta(
            seconds=resend_threshold_seconds
            if resend_threshold_seconds is not None
            else settings.OTP_RESEND_THRESHOLD_SECONDS
        )
        self.tick_seconds = tick_seconds or settings.OTP_TICK_SECONDS
        self._challenge: Challenge | None = None
        self._remaining: timedelta | None = None
        self._expired = False
        self._countdown: asyncio.Task | None = None

    @property
    def challenge(self) -> Challenge | None:
        return self._challenge

    @property
    def remaining(self) -> timedelta | None:
        """Time left as of the last tick, ``None`` without a challenge."""
        return self._remaining

    @property
    def expired(self) -> bool:
        return self._expired

    def can_resend(self) -> bool:
        """Resend opens in the last moments of the window, or once expired."""
        if self._challenge is None:
            return True
        remaining = self._challenge.remaining(self.clock())
        return remaining <= timedelta(0) or remaining < self.resend_threshold

    def seconds_until_resend(self) -> int:
        if self.can_resend():
            return 0
        remaining = self._challenge.remaining(self.clock())
        return math.floor((remaining - self.resend_threshold).total_seconds()) + 1

    async def request_code(
        self, identifier: str, purpose: Purpose, account_id: str | None = None
    ) -> Challenge:
        """
        Ask the service to issue a code for (identifier, purpose).

        The service invalidates any earlier code for the same pair, so the
        local challenge is replaced on success and dropped on failure.

        Raises:
            DeliveryFailedException: The code could not be sent
            RateLimitExceededException: Too many codes requested
        """
        self.discard()
        request = RequestCodeRequest(email=identifier, purpose=purpose, user_id=account_id)
        try:
            response = await self.service.request_code(request)
        except ExternalServiceException as e:
            logger.error("otp_request_failed", email=identifier, purpose=purpose.value, error=e.message)
            raise DeliveryFailedException() from e

        if response.error:
            logger.warning("otp_delivery_rejected", email=identifier, purpose=purpose.value)
            raise DeliveryFailedException()

        expires_at = response.expires_at or (self.clock() + self.ttl)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        self._challenge = Challenge(
            identifier=identifier,
            purpose=purpose,
            expires_at=expires_at,
            account_id=account_id,
        )
        self.tick()
        logger.info("otp_requested", email=identifier, purpose=purpose.value, expires_at=expires_at.isoformat())
        return self._challenge

    async def resend(
        self, identifier: str, purpose: Purpose, account_id: str | None = None
    ) -> Challenge:
        """
        Re-issue the code for the same pair once the resend window is open.

        Raises:
            ResendNotAllowedException: More than the threshold remains
        """
        if not self.can_resend():
            raise ResendNotAllowedException(self.seconds_until_resend())
        return await self.request_code(identifier, purpose, account_id)

    async def verify_code(
        self,
        identifier: str,
        code: str,
        purpose: Purpose,
        create_session: bool = False,
        consume: bool = True,
    ) -> VerifyResult:
        """
        Verify a code for (identifier, purpose).

        Args:
            create_session: Ask the service for a session-establishing link
            consume: Drop the local challenge on success

        Raises:
            InvalidCodeException: Malformed (no network call) or rejected code
            CodeExpiredException: Local challenge is past expiry (no network call)
            ExternalServiceException: Service failure; nothing changes
        """
        if not is_well_formed_code(code, self.code_length):
            raise InvalidCodeException(f"Enter the {self.code_length}-digit code")

        challenge = self._challenge
        if challenge is not None and challenge.matches(identifier, purpose):
            self.tick()
            if challenge.is_expired(self.clock()):
                raise CodeExpiredException()

        response = await self.service.verify_code(
            VerifyCodeRequest(email=identifier, code=code, purpose=purpose, create_session=create_session)
        )
        if not response.valid:
            logger.info("otp_rejected", email=identifier, purpose=purpose.value)
            raise InvalidCodeException("Invalid or expired code")

        logger.info("otp_verified", email=identifier, purpose=purpose.value)
        # A resend may have replaced the challenge while this call was in flight
        if consume and self._challenge is challenge:
            self.discard()
        return VerifyResult(valid=True, magic_link=response.magic_link)

    def tick(self) -> timedelta | None:
        """Recompute the remaining time; no-op without a challenge."""
        if self._challenge is None:
            return None
        now = self.clock()
        self._remaining = self._challenge.remaining(now)
        if not self._expired and self._challenge.is_expired(now):
            self._expired = True
            logger.info("otp_expired", email=self._challenge.identifier, purpose=self._challenge.purpose.value)
        return self._remaining

    async def run_countdown(self, on_tick: Callable[[timedelta], None] | None = None) -> None:
        """Tick every ``tick_seconds`` until the challenge expires or is discarded."""
        while self._challenge is not None:
            remaining = self.tick()
            if on_tick is not None and remaining is not None:
                on_tick(remaining)
            if self._expired:
                break
            await asyncio.sleep(self.tick_seconds)

    def start_countdown(self, on_tick: Callable[[timedelta], None] | None = None) -> asyncio.Task:
        self.stop_countdown()
        self._countdown = asyncio.get_running_loop().create_task(self.run_countdown(on_tick))
        return self._countdown

    def stop_countdown(self) -> None:
        if self._countdown is not None and not self._countdown.done():
            self._countdown.cancel()
        self._countdown = None

    def discard(self) -> None:
        """Forget the outstanding challenge."""
        self.stop_countdown()
        self._challenge = None
        self._remaining = None
        self._expired = False
