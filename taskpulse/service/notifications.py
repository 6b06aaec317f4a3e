from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Protocol

from taskpulse.logging import get_logger
from taskpulse.service.email import DailySummary, EmailService, build_daily_summary
from taskpulse.storage.models import User, utcnow

logger = get_logger(__name__)


class NotificationSender(Protocol):
    def send(self, user: User) -> Any: ...


class DailySummarySender:
    """Default sender: emails a user the summary of their open tasks."""

    def __init__(
        self,
        store: Any,
        email: EmailService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self._clock = clock or utcnow

    def build(self, user: User) -> DailySummary:
        tasks = self.store.list_tasks(user.id)
        return build_daily_summary(tasks, self._clock().date())

    def send(self, user: User) -> bool:
        summary = self.build(user)
        if summary.is_empty:
            logger.debug("daily_summary_skipped_empty", user_id=user.id)
            return True
        return self.email.send_daily_summary(user.email, summary)

    def send_test(self, user: User) -> bool:
        return self.email.send_daily_summary(user.email, self.build(user), test=True)


class NotificationDispatchJob:
    """Hourly fan-out of daily summaries to users whose delivery hour matches.

    The hour is taken from ``now`` in UTC; the user's stored timezone is not
    applied.
    """

    def __init__(
        self,
        store: Any,
        sender: NotificationSender,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self._clock = clock or utcnow

    def _send_batch(self, users: Iterable[User], *, hour: Optional[int]) -> int:
        considered = 0
        failed = 0
        for user in users:
            considered += 1
            try:
                ok = self.sender.send(user)
            except Exception as exc:
                failed += 1
                logger.warning(
                    "notification_send_failed",
                    user_id=user.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if not ok:
                failed += 1
                logger.warning("notification_send_rejected", user_id=user.id)
        logger.info(
            "notification_dispatch_complete",
            hour=hour,
            considered=considered,
            failed=failed,
        )
        return considered

    def run(self, now: Optional[datetime] = None) -> int:
        current = now or self._clock()
        if current.tzinfo is not None:
            current = current.astimezone(timezone.utc)
        hour = current.hour
        users: List[User] = self.store.find_users_for_hour(hour)
        return self._send_batch(users, hour=hour)

    def dispatch_all(self) -> int:
        """Send to every user with notifications enabled, ignoring the hour."""
        return self._send_batch(self.store.list_notification_users(), hour=None)
