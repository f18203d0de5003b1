"""Pytest configuration and fixtures."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from authflow.core.exceptions import EmailUnconfirmedException, InvalidCredentialsException
from authflow.schemas.auth import AccountStatus, Session
from authflow.schemas.otp import (
    RequestCodeRequest,
    RequestCodeResponse,
    ResetPasswordRequest,
    ResetPasswordResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from authflow.services.auth_controller import AuthController

TEST_EMAIL = "user@site.com"
TEST_PASSWORD = "testpassword123!"
TEST_USER_ID = "8b5f6f8e-0000-4000-8000-000000000001"


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 10, 17, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeIdentityProvider:
    """In-memory identity provider.

    Session notifications are delivered on the next loop iteration by default.
    With ``hold_notifications`` they queue until :meth:`deliver` is called, so
    tests can replay them late or out of order.
    """

    def __init__(self):
        self.accounts: dict[str, tuple[str, str]] = {}
        self.unconfirmed: set[str] = set()
        self.session: Session | None = None
        self.listeners = []
        self.hold_notifications = False
        self.pending: list[Session | None] = []
        self.sign_in_calls: list[str] = []
        self.sign_out_calls = 0
        self.fail_sign_in_after = None

    def add_account(self, email: str, password: str, user_id: str) -> None:
        self.accounts[email.lower()] = (password, user_id)

    def _emit(self, session: Session | None) -> None:
        if self.hold_notifications:
            self.pending.append(session)
            return
        loop = asyncio.get_running_loop()
        for listener in list(self.listeners):
            loop.call_soon(listener, session)

    def deliver(self, reverse: bool = False) -> None:
        pending, self.pending = self.pending, []
        for session in reversed(pending) if reverse else pending:
            for listener in list(self.listeners):
                listener(session)

    async def sign_in(self, email: str, password: str) -> Session:
        self.sign_in_calls.append(email)
        if self.fail_sign_in_after is not None and len(self.sign_in_calls) > self.fail_sign_in_after:
            raise InvalidCredentialsException()
        account = self.accounts.get(email.lower())
        if account is None or account[0] != password:
            raise InvalidCredentialsException()
        if email.lower() in self.unconfirmed:
            raise EmailUnconfirmedException()
        self.session = Session(
            access_token=f"token-{len(self.sign_in_calls)}",
            user_id=account[1],
            email=email,
        )
        self._emit(self.session)
        return self.session

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.session = None
        self._emit(None)

    async def get_session(self) -> Session | None:
        return self.session

    def on_session_change(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)


class FakeAccountStatusStore:
    """Account flags keyed by account id; unknown ids are in good standing."""

    def __init__(self):
        self.statuses: dict[str, AccountStatus] = {}
        self.calls: list[str] = []

    async def get_status(self, account_id: str) -> AccountStatus:
        self.calls.append(account_id)
        return self.statuses.get(account_id, AccountStatus())


class FakeOTPService:
    """OTP service keeping one live code per (email, purpose)."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.codes: dict[tuple[str, str], dict] = {}
        self.next_code = "123456"
        self.fail_delivery = False
        self.requests: list[RequestCodeRequest] = []
        self.verify_calls: list[VerifyCodeRequest] = []
        self.reset_calls: list[ResetPasswordRequest] = []
        self.magic_link = "https://auth.test/verify?token=magic"

    @staticmethod
    def _key(email: str, purpose) -> tuple[str, str]:
        return email.lower(), purpose.value

    async def request_code(self, request: RequestCodeRequest) -> RequestCodeResponse:
        self.requests.append(request)
        if self.fail_delivery:
            return RequestCodeResponse(error="email provider down")
        expires_at = self.clock() + timedelta(minutes=5)
        self.codes[self._key(request.email, request.purpose)] = {
            "code": self.next_code,
            "expires_at": expires_at,
            "used": False,
        }
        return RequestCodeResponse(expires_at=expires_at)

    async def verify_code(self, request: VerifyCodeRequest) -> VerifyCodeResponse:
        self.verify_calls.append(request)
        record = self.codes.get(self._key(request.email, request.purpose))
        if (
            record is None
            or record["used"]
            or record["code"] != request.code
            or self.clock() >= record["expires_at"]
        ):
            return VerifyCodeResponse(valid=False, error="Código inválido ou expirado")
        record["used"] = True
        magic_link = self.magic_link if request.create_session else None
        return VerifyCodeResponse(valid=True, magic_link=magic_link)

    async def reset_password(self, request: ResetPasswordRequest) -> ResetPasswordResponse:
        self.reset_calls.append(request)
        record = self.codes.get((request.email.lower(), "password_reset"))
        if record is None or record["code"] != request.code or self.clock() >= record["expires_at"]:
            return ResetPasswordResponse(success=False, error="Código inválido ou expirado")
        return ResetPasswordResponse(success=True, message="Senha atualizada com sucesso")


async def settle(rounds: int = 10) -> None:
    """Let queued callbacks and the tasks they spawn run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    provider = FakeIdentityProvider()
    provider.add_account(TEST_EMAIL, TEST_PASSWORD, TEST_USER_ID)
    return provider


@pytest.fixture
def status_store() -> FakeAccountStatusStore:
    return FakeAccountStatusStore()


@pytest.fixture
def otp_service(clock: FakeClock) -> FakeOTPService:
    return FakeOTPService(clock)


@pytest.fixture
def navigations() -> list[str]:
    return []


@pytest.fixture
async def controller(identity, status_store, otp_service, clock, navigations):
    """Controller over the fakes, recording navigations."""
    auth = AuthController(
        identity=identity,
        status_store=status_store,
        otp_service=otp_service,
        on_navigate=navigations.append,
        clock=clock,
        authenticated_route="/dashboard",
        run_countdown=False,
    )
    yield auth
    await auth.close()
