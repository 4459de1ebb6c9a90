"""
Notification Sink

Fire-and-forget channel the orchestrator uses to tell a user that an
analysis finished.  Delivery (email, websocket, ...) belongs to the
surrounding application; the core ships a logging sink.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    COMPLETED = "completed"
    FAILED    = "failed"


class NotificationSink(ABC):
    @abstractmethod
    def notify_user(self, user_id: int, event: NotificationEvent, payload: dict[str, Any]) -> None:
        """Deliver *event* to *user_id*.  Must not block for long."""


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the application log."""

    def notify_user(self, user_id, event, payload) -> None:
        logger.info(
            "Notify user %s: analysis %s %s.",
            user_id, payload.get("request_id"), event.value,
        )


def safe_notify(
    sink: NotificationSink,
    user_id: int,
    event: NotificationEvent,
    payload: dict[str, Any],
) -> None:
    """Call *sink* and log, never raise, if delivery fails."""
    try:
        sink.notify_user(user_id, event, payload)
    except Exception as exc:
        logger.warning("Notification to user %s failed: %s", user_id, exc)
