"""
orderflow_services.notifier -- NotificationPort adapters.

Delivery (mail, push, chat) is an external collaborator.  LoggingNotifier
writes each event to the structured log so that alerts such as
``approver_unresolved`` and ``stock_low`` are visible to log-based
monitoring even without a delivery backend.
"""

from __future__ import annotations

import logging
from typing import Any

from orderflow_kernel.logging_config import get_logger

logger = get_logger("services.notifier")

# Events that need a human to act before the workflow can continue.
ALERT_EVENTS = frozenset({"approver_unresolved", "stock_out"})


class LoggingNotifier:
    """Fire-and-forget notifier that only logs."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        level = logging.WARNING if event in ALERT_EVENTS else self.level
        logger.log(
            level,
            "notification",
            extra={"notification_event": event, "payload": payload},
        )
