"""Unit tests for the OTP lifecycle client."""

import asyncio
from datetime import timedelta

import pytest

from authflow.core.exceptions import (
    CodeExpiredException,
    DeliveryFailedException,
    ExternalServiceException,
    InvalidCodeException,
    ResendNotAllowedException,
)
from authflow.schemas.otp import Purpose, RequestCodeResponse
from authflow.services.otp_lifecycle import OTPLifecycle, is_well_formed_code

from conftest import TEST_EMAIL, TEST_USER_ID


@pytest.fixture
def lifecycle(otp_service, clock):
    return OTPLifecycle(otp_service, clock=clock, tick_seconds=0.01)


class TestCodeFormat:
    """Test the local 6-digit rule."""

    @pytest.mark.parametrize("code", ["123456", "000000"])
    def test_six_digits_accepted(self, code):
        assert is_well_formed_code(code)

    @pytest.mark.parametrize("code", ["1234", "1234567", "12a456", "", "١٢٣٤٥٦", " 12345"])
    def test_anything_else_rejected(self, code):
        assert not is_well_formed_code(code)


class TestRequestCode:
    """Test code issuance."""

    @pytest.mark.asyncio
    async def test_request_creates_challenge_from_response(self, lifecycle, otp_service, clock):
        challenge = await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN, TEST_USER_ID)

        assert challenge.identifier == TEST_EMAIL
        assert challenge.purpose == Purpose.LOGIN
        assert challenge.account_id == TEST_USER_ID
        assert challenge.expires_at == clock() + timedelta(seconds=300)
        assert lifecycle.remaining == timedelta(seconds=300)
        assert otp_service.requests[0].user_id == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_delivery_failure_leaves_no_challenge(self, lifecycle, otp_service):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        otp_service.fail_delivery = True

        with pytest.raises(DeliveryFailedException):
            await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        assert lifecycle.challenge is None

    @pytest.mark.asyncio
    async def test_service_outage_reported_as_delivery_failure(self, lifecycle, otp_service):
        async def unavailable(request):
            raise ExternalServiceException("send-otp", "network error")

        otp_service.request_code = unavailable

        with pytest.raises(DeliveryFailedException):
            await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        assert lifecycle.challenge is None

    @pytest.mark.asyncio
    async def test_missing_expiry_falls_back_to_ttl(self, lifecycle, otp_service, clock):
        async def no_expiry(request):
            return RequestCodeResponse()

        otp_service.request_code = no_expiry

        challenge = await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        assert challenge.expires_at == clock() + timedelta(minutes=5)


class TestVerifyCode:
    """Test verification."""

    @pytest.mark.asyncio
    async def test_correct_code_accepted_and_challenge_discarded(self, lifecycle):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        result = await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN)

        assert result.valid is True
        assert lifecycle.challenge is None

    @pytest.mark.asyncio
    async def test_consume_false_keeps_challenge(self, lifecycle):
        await lifecycle.request_code(TEST_EMAIL, Purpose.PASSWORD_RESET)

        await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.PASSWORD_RESET, consume=False)

        assert lifecycle.challenge is not None

    @pytest.mark.asyncio
    async def test_wrong_code_rejected(self, lifecycle):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        with pytest.raises(InvalidCodeException) as exc_info:
            await lifecycle.verify_code(TEST_EMAIL, "654321", Purpose.LOGIN)

        # Service text is not passed through
        assert "Código" not in exc_info.value.message
        assert lifecycle.challenge is not None

    @pytest.mark.asyncio
    async def test_short_code_fails_without_network(self, lifecycle, otp_service):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        with pytest.raises(InvalidCodeException):
            await lifecycle.verify_code(TEST_EMAIL, "1234", Purpose.LOGIN)

        assert otp_service.verify_calls == []

    @pytest.mark.asyncio
    async def test_expired_code_fails_without_network(self, lifecycle, otp_service, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        clock.advance(301)

        with pytest.raises(CodeExpiredException):
            await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN)

        assert otp_service.verify_calls == []
        assert lifecycle.expired is True
        assert lifecycle.can_resend() is True

    @pytest.mark.asyncio
    async def test_configured_code_length(self, otp_service, clock):
        lifecycle = OTPLifecycle(otp_service, clock=clock, code_length=8)
        otp_service.next_code = "12345678"
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        with pytest.raises(InvalidCodeException):
            await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN)
        result = await lifecycle.verify_code(TEST_EMAIL, "12345678", Purpose.LOGIN)

        assert result.valid is True
        assert otp_service.verify_calls[-1].code == "12345678"

    @pytest.mark.asyncio
    async def test_login_code_rejected_for_password_reset(self, lifecycle, otp_service):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        with pytest.raises(InvalidCodeException):
            await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.PASSWORD_RESET)

        # The login code is still usable for login
        result = await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN)
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_reset_code_rejected_for_login(self, lifecycle):
        await lifecycle.request_code(TEST_EMAIL, Purpose.PASSWORD_RESET)

        with pytest.raises(InvalidCodeException):
            await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN)

    @pytest.mark.asyncio
    async def test_stale_verify_does_not_discard_newer_challenge(self, lifecycle, otp_service, clock):
        """A resend landing while a verify is in flight keeps the new challenge."""
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        real_verify = otp_service.verify_code
        release = asyncio.Event()

        async def slow_verify(request):
            await release.wait()
            return await real_verify(request)

        otp_service.verify_code = slow_verify
        verify_task = asyncio.create_task(lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN))
        await asyncio.sleep(0)

        clock.advance(280)
        otp_service.next_code = "999999"
        await lifecycle.resend(TEST_EMAIL, Purpose.LOGIN)
        release.set()

        with pytest.raises(InvalidCodeException):
            await verify_task
        assert lifecycle.challenge is not None


class TestResend:
    """Test the resend window."""

    @pytest.mark.asyncio
    async def test_resend_disabled_with_30_seconds_or_more_left(self, lifecycle, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        clock.advance(270)  # exactly 30s left

        assert lifecycle.can_resend() is False
        with pytest.raises(ResendNotAllowedException):
            await lifecycle.resend(TEST_EMAIL, Purpose.LOGIN)

    @pytest.mark.asyncio
    async def test_resend_enabled_under_30_seconds(self, lifecycle, otp_service, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN, TEST_USER_ID)
        clock.advance(271)

        assert lifecycle.can_resend() is True
        challenge = await lifecycle.resend(TEST_EMAIL, Purpose.LOGIN, TEST_USER_ID)

        assert challenge.expires_at == clock() + timedelta(minutes=5)
        assert len(otp_service.requests) == 2
        assert otp_service.requests[1].user_id == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_resend_enabled_once_expired(self, lifecycle, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        clock.advance(600)

        assert lifecycle.can_resend() is True

    @pytest.mark.asyncio
    async def test_retry_after_counts_down_to_window(self, lifecycle, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)

        assert lifecycle.seconds_until_resend() == 271
        clock.advance(260)
        assert lifecycle.seconds_until_resend() == 11

    @pytest.mark.asyncio
    async def test_resent_code_invalidates_previous(self, lifecycle, otp_service, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        clock.advance(280)
        otp_service.next_code = "222222"
        await lifecycle.resend(TEST_EMAIL, Purpose.LOGIN)

        with pytest.raises(InvalidCodeException):
            await lifecycle.verify_code(TEST_EMAIL, "123456", Purpose.LOGIN)


class TestCountdown:
    """Test the ticking countdown."""

    @pytest.mark.asyncio
    async def test_tick_without_challenge_is_noop(self, lifecycle):
        assert lifecycle.tick() is None
        assert lifecycle.remaining is None

    @pytest.mark.asyncio
    async def test_tick_marks_expiry(self, lifecycle, clock):
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        clock.advance(300)

        assert lifecycle.tick() == timedelta(0)
        assert lifecycle.expired is True

    @pytest.mark.asyncio
    async def test_countdown_stops_when_challenge_discarded(self, lifecycle, clock):
        ticks = []
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        task = lifecycle.start_countdown(ticks.append)

        await asyncio.sleep(0.05)
        lifecycle.discard()
        await asyncio.sleep(0.02)

        assert ticks
        assert task.done()
        assert lifecycle.remaining is None

    @pytest.mark.asyncio
    async def test_countdown_stops_once_expired(self, lifecycle, clock):
        ticks = []
        await lifecycle.request_code(TEST_EMAIL, Purpose.LOGIN)
        task = lifecycle.start_countdown(ticks.append)
        await asyncio.sleep(0.03)

        clock.advance(300)
        await asyncio.sleep(0.05)

        assert task.done()
        assert ticks[-1] == timedelta(0)
        # The expired challenge stays until discarded
        assert lifecycle.challenge is not None
        assert lifecycle.expired is True
