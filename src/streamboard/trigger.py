"""
Refresh trigger gated by a shared admin secret.

Fire-and-forget runs the refresh on a daemon thread and acknowledges at once;
synchronous runs it in the caller's thread and reports the outcome. Failure
details go to the log only; callers get a generic message.
"""

from __future__ import annotations

import hmac
import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum

from streamboard.config import Environment, TriggerConfig
from streamboard.errors import AuthorizationError, StreamboardError
from streamboard.refresh import RefreshEngine, RefreshGuard, RefreshReport

logger = logging.getLogger(__name__)


class TriggerMode(StrEnum):
    FIRE_AND_FORGET = "fire_and_forget"
    SYNCHRONOUS = "synchronous"


class TriggerStatus(StrEnum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"


@dataclass
class TriggerResult:
    status: TriggerStatus
    message: str
    timestamp: float
    report: RefreshReport | None = None


class RefreshTrigger:
    """Starts refresh cycles on behalf of schedulers and operators."""

    def __init__(
        self,
        engine: RefreshEngine,
        config: TriggerConfig,
        guard: RefreshGuard | None = None,
    ):
        self.engine = engine
        self.config = config
        self.guard = guard or RefreshGuard()
        self.last_report: RefreshReport | None = None
        self._thread: threading.Thread | None = None

    def authorize(self, secret: str | None) -> None:
        """
        Check the shared secret.

        Development deployments run unauthenticated.

        Raises:
            AuthorizationError: In production, when no admin secret is configured
                or ``secret`` does not match it
        """
        if self.config.environment != Environment.PRODUCTION:
            return
        expected = self.config.admin_secret
        if not expected:
            logger.error("ADMIN_SECRET is not configured, refusing refresh trigger")
            raise AuthorizationError("Admin secret is not configured")
        if not secret or not hmac.compare_digest(secret.encode(), expected.encode()):
            logger.warning("Refresh trigger rejected: invalid admin secret")
            raise AuthorizationError("Invalid admin secret")

    def trigger(self, mode: TriggerMode, secret: str | None = None) -> TriggerResult:
        """
        Start a refresh.

        Raises:
            AuthorizationError: If the secret is rejected; nothing is started
        """
        self.authorize(secret)

        if not self.guard.acquire():
            logger.info("Refresh trigger ignored, a refresh is already running")
            return TriggerResult(
                TriggerStatus.ALREADY_RUNNING, "Refresh already running", time.time()
            )

        if mode == TriggerMode.FIRE_AND_FORGET:
            self._thread = threading.Thread(
                target=self._run_in_background, name="streamboard-refresh", daemon=True
            )
            self._thread.start()
            return TriggerResult(TriggerStatus.STARTED, "Refresh started", time.time())

        try:
            report = self.engine.refresh_all()
        except StreamboardError:
            logger.exception("Refresh failed")
            return TriggerResult(TriggerStatus.FAILED, "Failed to refresh stats", time.time())
        finally:
            self.guard.release()

        self.last_report = report
        return TriggerResult(TriggerStatus.COMPLETED, "Refresh completed", time.time(), report=report)

    def _run_in_background(self) -> None:
        try:
            self.last_report = self.engine.refresh_all()
        except Exception:
            logger.exception("Background refresh error")
        finally:
            self.guard.release()

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for a fire-and-forget refresh; returns False if it is still running."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
