"""Auth mode controller: the login screen's state machine.

Flows:
    password -> password-otp-verify -> (session) -> authenticated route
    password -> otp-request -> otp-verify -> (magic link)
    password -> forgot-password -> forgot-password-otp -> reset-password -> password

The controller is the only writer of the auth mode and of the session gate.
The OTP lifecycle, the credential verifier and the reset service return
results or raise; transitions are decided here.
"""

import asyncio
from collections.abc import Callable

from authflow.core.config import settings
from authflow.core.exceptions import (
    BaseAuthFlowException,
    ExternalServiceException,
    InvalidTransitionException,
    ValidationException,
)
from authflow.core.logging_config import get_logger
from authflow.schemas.auth import AuthMode, FlowResult, Session
from authflow.schemas.otp import Purpose
from authflow.services.credential_verifier import CredentialVerifier
from authflow.services.identity import AccountStatusStore, IdentityProvider
from authflow.services.otp_client import OTPService
from authflow.services.otp_lifecycle import Clock, OTPLifecycle, utcnow
from authflow.services.password_reset import PasswordResetService
from authflow.services.session_gate import SessionGate

logger = get_logger(__name__)

Navigator = Callable[[str], None]

# Modes a cancel returns from
CANCELLABLE_MODES = (
    AuthMode.PASSWORD_OTP_VERIFY,
    AuthMode.OTP_REQUEST,
    AuthMode.OTP_VERIFY,
    AuthMode.FORGOT_PASSWORD,
    AuthMode.FORGOT_PASSWORD_OTP,
    AuthMode.RESET_PASSWORD,
)


class AuthController:
    """State machine driving password+OTP login, code login and password reset."""

    def __init__(
        self,
        identity: IdentityProvider,
        status_store: AccountStatusStore,
        otp_service: OTPService,
        on_navigate: Navigator | None = None,
        clock: Clock = utcnow,
        authenticated_route: str | None = None,
        run_countdown: bool = True,
    ) -> None:
        self.identity = identity
        self.gate = SessionGate()
        self.otp = OTPLifecycle(otp_service, clock=clock)
        self.verifier = CredentialVerifier(identity, status_store)
        self.resets = PasswordResetService(otp_service)
        self.on_navigate = on_navigate
        self.authenticated_route = authenticated_route or settings.AUTHENTICATED_ROUTE
        self.run_countdown = run_countdown

        self.mode = AuthMode.PASSWORD
        self.email = ""
        self.pending_user_id: str | None = None
        self.navigated_to: str | None = None
        self._password: str | None = None
        self._reset_code: str | None = None
        # Bumped whenever a flow is abandoned so late results are dropped
        self._flow = 0
        self._pending_checks: set[asyncio.Task] = set()
        self._unsubscribe = identity.on_session_change(self.handle_session_change)

    # ------------------------------------------------------------------
    # Session notifications
    # ------------------------------------------------------------------

    def handle_session_change(self, session: Session | None) -> None:
        """
        Listener for the identity provider's session notifications.

        Runs on whatever schedule the provider chooses. The gate is read
        inline; a notification that passes it is still confirmed against the
        provider's current session, so a session torn down in the meantime
        never navigates.
        """
        if session is None:
            return
        if self.gate.should_suppress(self.mode):
            logger.debug("session_change_suppressed", mode=self.mode.value)
            return
        task = asyncio.get_running_loop().create_task(self._confirm_session())
        self._pending_checks.add(task)
        task.add_done_callback(self._pending_checks.discard)

    async def _confirm_session(self) -> None:
        current = await self.identity.get_session()
        if current is None or self.gate.should_suppress(self.mode):
            logger.debug("stale_session_change_ignored")
            return
        self._navigate(self.authenticated_route)

    async def check_initial_session(self) -> FlowResult:
        """Redirect an already signed-in user, only from an idle password screen."""
        if self.mode == AuthMode.PASSWORD and not self.gate.is_held:
            session = await self.identity.get_session()
            if session and self.mode == AuthMode.PASSWORD and not self.gate.is_held:
                self._navigate(self.authenticated_route)
                return self._result(navigate_to=self.authenticated_route)
        return self._result()

    def _navigate(self, target: str) -> None:
        if self.navigated_to == target:
            return
        self.navigated_to = target
        logger.info("navigate", target=target if target == self.authenticated_route else "external")
        if self.on_navigate is not None:
            self.on_navigate(target)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, event: str, *modes: AuthMode) -> None:
        if self.mode not in modes:
            raise InvalidTransitionException(self.mode.value, event)

    def _result(self, message: str | None = None, **kwargs) -> FlowResult:
        return FlowResult(mode=self.mode, message=message, **kwargs)

    def _failure(self, error: BaseAuthFlowException, **kwargs) -> FlowResult:
        logger.info("flow_step_failed", mode=self.mode.value, error=error.code)
        return FlowResult(
            mode=self.mode,
            message=error.user_message,
            ok=False,
            error=error.code,
            can_resend=self.otp.can_resend() if self.otp.challenge else None,
            **kwargs,
        )

    def _set_mode(self, mode: AuthMode) -> None:
        if mode != self.mode:
            logger.debug("auth_mode_changed", previous=self.mode.value, mode=mode.value)
        self.mode = mode

    def _start_countdown(self) -> None:
        if self.run_countdown:
            self.otp.start_countdown()

    def _reset_to_password(self) -> None:
        self._flow += 1
        self.gate.release()
        self.otp.discard()
        self.pending_user_id = None
        self._password = None
        self._reset_code = None
        self._set_mode(AuthMode.PASSWORD)

    @staticmethod
    def _clean_email(email: str | None) -> str:
        email = (email or "").strip()
        if not email:
            raise ValidationException("Enter your email", field="email")
        return email

    @property
    def time_remaining(self) -> int | None:
        """Whole seconds left on the outstanding code."""
        remaining = self.otp.tick()
        return None if remaining is None else int(remaining.total_seconds())

    @property
    def can_resend(self) -> bool:
        return self.otp.can_resend()

    # ------------------------------------------------------------------
    # Password + OTP login
    # ------------------------------------------------------------------

    async def submit_password(self, email: str, password: str) -> FlowResult:
        """
        First factor. On success a login code is sent and the gate stays
        held until that code clears or the flow is cancelled.
        """
        self._require("submit_password", AuthMode.PASSWORD)
        try:
            email = self._clean_email(email)
            if not password:
                raise ValidationException("Enter your password", field="password")
        except ValidationException as e:
            return self._failure(e)

        self.email = email
        self.navigated_to = None
        flow = self._flow
        self.gate.hold()
        try:
            credentials = await self.verifier.verify_password(email, password)
            if flow != self._flow:
                return self._result()
            await self.otp.request_code(email, Purpose.LOGIN, credentials.account_id)
        except BaseAuthFlowException as e:
            if flow == self._flow:
                self.gate.release()
                self.pending_user_id = None
            return self._failure(e)
        except Exception as e:
            logger.exception("password_step_crashed", email=email)
            if flow == self._flow:
                self.gate.release()
                self.pending_user_id = None
            return self._failure(ExternalServiceException("login", str(e)))
        except BaseException:
            if flow == self._flow:
                self.gate.release()
            raise

        if flow != self._flow:
            # Cancelled while in flight
            self.otp.discard()
            return self._result()

        self.pending_user_id = credentials.account_id
        self._password = password
        self._set_mode(AuthMode.PASSWORD_OTP_VERIFY)
        self._start_countdown()
        return self._result("Code sent. Check your email", can_resend=self.otp.can_resend())

    async def verify_password_otp(self, code: str) -> FlowResult:
        """Second factor. A cleared code signs in for real and navigates."""
        self._require("verify_password_otp", AuthMode.PASSWORD_OTP_VERIFY)
        flow = self._flow
        try:
            await self.otp.verify_code(self.email, code, Purpose.LOGIN)
        except BaseAuthFlowException as e:
            return self._failure(e)
        if flow != self._flow:
            return self._result()

        password = self._password
        self._reset_to_password()
        try:
            # The sign-in notification is suppressed; navigation happens below
            with self.gate.held():
                await self.verifier.complete_sign_in(self.email, password or "")
        except Exception as e:
            if not isinstance(e, BaseAuthFlowException):
                logger.exception("login_completion_crashed", email=self.email)
                e = ExternalServiceException("login", str(e))
            logger.warning("login_completion_failed", email=self.email, error=e.code)
            return FlowResult(
                mode=self.mode,
                message="Could not finish signing in. Sign in again",
                ok=False,
                error=e.code,
            )

        self._navigate(self.authenticated_route)
        return self._result("Signed in", navigate_to=self.authenticated_route)

    async def resend_password_otp(self) -> FlowResult:
        self._require("resend_password_otp", AuthMode.PASSWORD_OTP_VERIFY)
        return await self._resend(Purpose.LOGIN, self.pending_user_id)

    # ------------------------------------------------------------------
    # Passwordless code login
    # ------------------------------------------------------------------

    def choose_code_login(self) -> FlowResult:
        self._require("choose_code_login", AuthMode.PASSWORD)
        self._password = None
        self._set_mode(AuthMode.OTP_REQUEST)
        return self._result()

    async def request_login_code(self, email: str) -> FlowResult:
        self._require("request_login_code", AuthMode.OTP_REQUEST)
        return await self._request(email, Purpose.LOGIN, AuthMode.OTP_VERIFY)

    async def verify_login_code(self, code: str) -> FlowResult:
        """Passwordless login; the session comes from the returned magic link."""
        self._require("verify_login_code", AuthMode.OTP_VERIFY)
        flow = self._flow
        try:
            result = await self.otp.verify_code(self.email, code, Purpose.LOGIN, create_session=True)
        except BaseAuthFlowException as e:
            return self._failure(e)
        if flow != self._flow:
            return self._result()

        self._reset_to_password()
        if not result.magic_link:
            logger.warning("login_code_without_session", email=self.email)
            return FlowResult(
                mode=self.mode,
                message="Could not complete the login. Try with your password",
                ok=False,
                error="session_unavailable",
            )
        self._navigate(result.magic_link)
        return self._result("Verified. Redirecting", redirect_url=result.magic_link)

    async def resend_login_code(self) -> FlowResult:
        self._require("resend_login_code", AuthMode.OTP_VERIFY)
        return await self._resend(Purpose.LOGIN, None)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self) -> FlowResult:
        self._require("forgot_password", AuthMode.PASSWORD)
        self._password = None
        self._set_mode(AuthMode.FORGOT_PASSWORD)
        return self._result()

    async def request_reset_code(self, email: str) -> FlowResult:
        self._require("request_reset_code", AuthMode.FORGOT_PASSWORD)
        return await self._request(email, Purpose.PASSWORD_RESET, AuthMode.FORGOT_PASSWORD_OTP)

    async def verify_reset_code(self, code: str) -> FlowResult:
        """Check the reset code; it is kept and sent again with the new password."""
        self._require("verify_reset_code", AuthMode.FORGOT_PASSWORD_OTP)
        flow = self._flow
        try:
            await self.otp.verify_code(self.email, code, Purpose.PASSWORD_RESET, consume=False)
        except BaseAuthFlowException as e:
            return self._failure(e)
        if flow != self._flow:
            return self._result()

        self._reset_code = code
        self._set_mode(AuthMode.RESET_PASSWORD)
        return self._result("Code verified. Choose a new password")

    async def resend_reset_code(self) -> FlowResult:
        self._require("resend_reset_code", AuthMode.FORGOT_PASSWORD_OTP)
        return await self._resend(Purpose.PASSWORD_RESET, None)

    async def submit_new_password(self, new_password: str, confirm_password: str) -> FlowResult:
        self._require("submit_new_password", AuthMode.RESET_PASSWORD)
        flow = self._flow
        try:
            await self.resets.reset_password(
                self.email, self._reset_code or "", new_password, confirm_password
            )
        except BaseAuthFlowException as e:
            return self._failure(e)
        if flow != self._flow:
            return self._result()

        self._reset_to_password()
        return self._result("Password updated. Sign in with your new password")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _request(self, email: str, purpose: Purpose, next_mode: AuthMode) -> FlowResult:
        try:
            email = self._clean_email(email)
        except ValidationException as e:
            return self._failure(e)

        self.email = email
        self.navigated_to = None
        flow = self._flow
        try:
            await self.otp.request_code(email, purpose)
        except BaseAuthFlowException as e:
            return self._failure(e)
        if flow != self._flow:
            self.otp.discard()
            return self._result()

        self._set_mode(next_mode)
        self._start_countdown()
        return self._result("Code sent. Check your email", can_resend=self.otp.can_resend())

    async def _resend(self, purpose: Purpose, account_id: str | None) -> FlowResult:
        flow = self._flow
        mode = self.mode
        try:
            await self.otp.resend(self.email, purpose, account_id)
        except BaseAuthFlowException as e:
            return self._failure(e)
        if flow != self._flow or mode != self.mode:
            self.otp.discard()
            return self._result()

        self._start_countdown()
        return self._result("A new code was sent", can_resend=self.otp.can_resend())

    def cancel(self) -> FlowResult:
        """Abandon any code flow and return to the password screen."""
        if self.mode in CANCELLABLE_MODES or self.gate.is_held:
            logger.info("flow_cancelled", mode=self.mode.value)
            self._reset_to_password()
        return self._result()

    async def close(self) -> None:
        """Detach from the provider and stop background work."""
        self._unsubscribe()
        self.otp.discard()
        for task in list(self._pending_checks):
            task.cancel()
        if self._pending_checks:
            await asyncio.gather(*self._pending_checks, return_exceptions=True)
