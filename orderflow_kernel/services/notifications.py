"""
NotificationOutbox -- deferred, fire-and-forget notifications.

Responsibility:
    Services queue notifications (stock alerts, approval requests,
    rejections, approver escalations) while a transaction is open.  The
    caller dispatches them through a NotificationPort only after the
    transaction commits, and discards them on rollback, so nobody is told
    about a change that never happened.

Failure modes:
    - A notifier that raises is logged at ERROR and the remaining
      notifications are still delivered; the committed operation is not
      affected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from orderflow_kernel.domain.ports import NotificationPort
from orderflow_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


@dataclass(frozen=True)
class Notification:
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationOutbox:
    """Collects notifications for one unit of work."""

    def __init__(self) -> None:
        self._pending: list[Notification] = []

    def queue(self, event: str, **payload: Any) -> None:
        self._pending.append(Notification(event=event, payload=payload))

    @property
    def pending(self) -> tuple[Notification, ...]:
        return tuple(self._pending)

    def discard(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        return count

    def dispatch(self, notifier: NotificationPort) -> int:
        """Deliver and clear all queued notifications.  Returns delivered count."""
        pending, self._pending = self._pending, []
        delivered = 0
        for notification in pending:
            try:
                notifier.notify(notification.event, dict(notification.payload))
            except Exception:
                logger.error(
                    "notification_delivery_failed",
                    extra={"notification_event": notification.event},
                    exc_info=True,
                )
                continue
            delivered += 1
        return delivered
