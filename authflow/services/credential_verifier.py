"""Password check that never leaves a session behind."""

from authflow.core.exceptions import AccountBlockedException, AccountDeletedException
from authflow.core.logging_config import get_logger
from authflow.schemas.auth import Session, VerifiedCredentials
from authflow.services.identity import AccountStatusStore, IdentityProvider

logger = get_logger(__name__)


class CredentialVerifier:
    """First factor of the login.

    Callers hold the session gate around :meth:`verify_password`, since the
    provider establishes (and this class tears down) a session on the way.
    """

    def __init__(self, identity: IdentityProvider, status_store: AccountStatusStore) -> None:
        self.identity = identity
        self.status_store = status_store

    async def verify_password(self, email: str, password: str) -> VerifiedCredentials:
        """
        Check the password and the account flags.

        Returns:
            The account id and status. No session exists when this returns.

        Raises:
            InvalidCredentialsException: Wrong password or unknown account
            EmailUnconfirmedException: Email not confirmed yet
            AccountBlockedException: Account is blocked
            AccountDeletedException: Account is deleted
            ExternalServiceException: Provider or status store failure
        """
        session = await self.identity.sign_in(email, password)
        account_id = session.user_id
        logger.info("password_verified", email=email, account_id=account_id)

        # Signed out on every path, before raising, so the gate is still held
        # when the provider reports the teardown
        try:
            status = await self.status_store.get_status(account_id)
        finally:
            await self.identity.sign_out()

        if status.is_blocked:
            logger.warning("login_blocked_account", account_id=account_id)
            raise AccountBlockedException(status.blocked_reason)
        if status.is_deleted:
            logger.warning("login_deleted_account", account_id=account_id)
            raise AccountDeletedException()

        return VerifiedCredentials(account_id=account_id, account_status=status)

    async def complete_sign_in(self, email: str, password: str) -> Session:
        """Sign in for good, once the second factor has cleared."""
        session = await self.identity.sign_in(email, password)
        logger.info("login_completed", email=email, account_id=session.user_id)
        return session
