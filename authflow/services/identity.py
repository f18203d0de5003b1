"""Identity provider and account status store clients."""

import asyncio
from collections.abc import Callable
from typing import Protocol

import httpx

from authflow.core.config import settings
from authflow.core.exceptions import (
    EmailUnconfirmedException,
    ExternalServiceException,
    InvalidCredentialsException,
    RateLimitExceededException,
)
from authflow.core.logging_config import get_logger
from authflow.schemas.auth import AccountStatus, Session

logger = get_logger(__name__)

SessionListener = Callable[[Session | None], None]


class IdentityProvider(Protocol):
    """Credential check and session lifecycle.

    ``on_session_change`` listeners fire asynchronously, after the call that
    changed the session has already returned to its caller.
    """

    async def sign_in(self, email: str, password: str) -> Session: ...

    async def sign_out(self) -> None: ...

    async def get_session(self) -> Session | None: ...

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]: ...


class AccountStatusStore(Protocol):
    """Read access to the blocked/deleted flags of an account."""

    async def get_status(self, account_id: str) -> AccountStatus: ...


class SessionNotifier:
    """Fan-out of session changes to listeners on the running event loop."""

    def __init__(self) -> None:
        self._listeners: list[SessionListener] = []

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, session: Session | None) -> None:
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            loop.call_soon(listener, session)


class GoTrueIdentityProvider:
    """Identity provider backed by a GoTrue-style auth REST API."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.SUPABASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        self.client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
        self._session: Session | None = None
        self._notifier = SessionNotifier()

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {"apikey": self.api_key}
        headers["Authorization"] = f"Bearer {access_token or self.api_key}"
        return headers

    async def sign_in(self, email: str, password: str) -> Session:
        """
        Check the password and establish a session.

        Raises:
            InvalidCredentialsException: Wrong password or unknown account
            EmailUnconfirmedException: Account exists but email is unconfirmed
            RateLimitExceededException: Provider throttled the request
            ExternalServiceException: Provider unreachable or failing
        """
        try:
            response = await self.client.post(
                f"{self.base_url}/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise ExternalServiceException("identity", str(e)) from e

        if response.status_code == 429:
            raise RateLimitExceededException()
        if response.status_code >= 500:
            raise ExternalServiceException("identity", f"status {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceException("identity", "malformed response") from e
        if not isinstance(data, dict):
            raise ExternalServiceException("identity", "malformed response")
        if response.status_code >= 400:
            reason = " ".join(
                str(data.get(key) or "") for key in ("code", "error_code", "msg", "error_description")
            ).lower()
            logger.info("sign_in_rejected", email=email, status_code=response.status_code)
            if "email_not_confirmed" in reason or "email not confirmed" in reason:
                raise EmailUnconfirmedException()
            raise InvalidCredentialsException()

        user = data.get("user") or {}
        token = data.get("access_token")
        if not isinstance(token, str) or not isinstance(user, dict) or not user.get("id"):
            raise ExternalServiceException("identity", "session missing from response")
        session = Session(
            access_token=token,
            refresh_token=data.get("refresh_token"),
            user_id=str(user["id"]),
            email=user.get("email"),
        )
        self._session = session
        self._notifier.notify(session)
        return session

    async def sign_out(self) -> None:
        """Tear down the current session, locally even if the server call fails."""
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await self.client.post(
                f"{self.base_url}/auth/v1/logout",
                headers=self._headers(session.access_token),
            )
        except httpx.HTTPError as e:
            logger.warning("sign_out_request_failed", error=str(e))
        finally:
            self._notifier.notify(None)

    async def get_session(self) -> Session | None:
        return self._session

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        return self._notifier.subscribe(listener)

    async def close(self) -> None:
        await self.client.aclose()


class RestAccountStatusStore:
    """Reads account flags from the ``profiles`` table over the REST API."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.SUPABASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        self.client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    async def get_status(self, account_id: str) -> AccountStatus:
        """
        Get the status flags of an account.

        A missing profile row reads as an account in good standing.
        """
        try:
            response = await self.client.get(
                f"{self.base_url}/rest/v1/profiles",
                params={
                    "user_id": f"eq.{account_id}",
                    "select": "is_blocked,blocked_reason,verification_status",
                },
                headers={"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceException("profiles", str(e)) from e

        try:
            rows = response.json()
        except ValueError as e:
            raise ExternalServiceException("profiles", "malformed response") from e
        if not isinstance(rows, list) or (rows and not isinstance(rows[0], dict)):
            raise ExternalServiceException("profiles", "malformed response")
        if not rows:
            return AccountStatus()
        row = rows[0]
        return AccountStatus(
            is_blocked=bool(row.get("is_blocked")),
            blocked_reason=row.get("blocked_reason"),
            verification_status=row.get("verification_status"),
        )

    async def close(self) -> None:
        await self.client.aclose()
