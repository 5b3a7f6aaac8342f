"""
Idempotent dispatch gate: at most one notification of a kind per window.
"""

from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from cert_alarm.logger import get_logger, log_dispatch
from cert_alarm.normalizer import utc_now
from cert_alarm.store import CertificateStore

ALERT = "alert"
DAILY_REPORT = "daily-report"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class DispatchGate:
    """
    Claim a window atomically, send, then confirm.

    The claim is an insert-if-absent against the store, so whoever inserts
    first owns the window. A failed send leaves the claim in place unsent;
    the same window is not retried. ``release`` is the only way to permit a
    resend and is used only for operator-forced dispatches when
    ``allow_same_day_resend`` is enabled.
    """

    def __init__(self, store: CertificateStore, allow_same_day_resend: bool = False):
        self.store = store
        self.allow_same_day_resend = allow_same_day_resend
        self.logger = get_logger("dispatch")

    @staticmethod
    def window_key(kind: str, now: Optional[datetime] = None, tz: str = "UTC") -> str:
        """Daily window identity ``<kind>:YYYY-MM-DD`` in the given timezone."""
        local = (now or utc_now()).astimezone(ZoneInfo(tz))
        return f"{kind}:{local.strftime('%Y-%m-%d')}"

    def try_claim(self, window_key: str) -> bool:
        return self.store.try_claim(window_key)

    def mark_sent(self, window_key: str, at: Optional[datetime] = None) -> None:
        self.store.mark_sent(window_key, at or utc_now())

    def release(self, window_key: str) -> bool:
        released = self.store.release(window_key)
        if released:
            self.logger.info(f"Released dispatch window {window_key}")
        return released

    async def dispatch(
        self,
        window_key: str,
        send: Callable[[], Awaitable[bool]],
        force: bool = False,
    ) -> DispatchOutcome:
        """
        Run ``send`` only if this caller wins the window.

        Args:
            window_key: Window identity from ``window_key``
            send: Coroutine factory returning True on successful delivery
            force: Release the window first (honored only if same-day resend is allowed)

        Returns:
            DispatchOutcome
        """
        if force:
            if self.allow_same_day_resend:
                self.release(window_key)
            else:
                self.logger.info(
                    f"Forced dispatch for {window_key} ignored, same-day resend is disabled"
                )

        if not self.try_claim(window_key):
            log_dispatch(self.logger, window_key, DispatchOutcome.SKIPPED.value)
            return DispatchOutcome.SKIPPED

        try:
            delivered = await send()
        except Exception as e:
            self.logger.error(f"Send for window {window_key} raised: {e}")
            delivered = False

        if not delivered:
            log_dispatch(self.logger, window_key, DispatchOutcome.FAILED.value)
            return DispatchOutcome.FAILED

        self.mark_sent(window_key)
        log_dispatch(self.logger, window_key, DispatchOutcome.SENT.value)
        return DispatchOutcome.SENT
