"""Session gate suppressing session-established handling during a challenge."""

from collections.abc import Iterator
from contextlib import contextmanager

from authflow.core.exceptions import SessionGateViolation
from authflow.core.logging_config import get_logger
from authflow.schemas.auth import AuthMode

logger = get_logger(__name__)


class SessionGate:
    """
    Plain synchronous flag.

    The session-change listener reads it inline, so it must never be derived
    from state that is applied later. Only the auth controller writes it.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def is_held(self) -> bool:
        return self._held

    def hold(self) -> None:
        if not self._held:
            logger.debug("session_gate_held")
        self._held = True

    def release(self) -> None:
        if self._held:
            logger.debug("session_gate_released")
        self._held = False

    @contextmanager
    def held(self) -> Iterator["SessionGate"]:
        """Hold the gate for the block, releasing it however the block exits."""
        self.hold()
        try:
            yield self
        finally:
            self.release()

    def should_suppress(self, mode: AuthMode) -> bool:
        """Whether a session-established notification must be discarded."""
        return self._held or mode == AuthMode.PASSWORD_OTP_VERIFY

    def assert_released(self) -> None:
        if self._held:
            raise SessionGateViolation("session gate left held")
