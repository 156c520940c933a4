"""
User-Visible Notifications

Flows push short messages here ("Withdrawn!", "Failed to withdraw funds.")
and the UI drains them after each intent. Rendering (toasts, dialogs) is
the UI's business.
"""

from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    level: NotificationLevel
    title: str
    message: str
    correlation_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationCenter:
    """FIFO of pending notifications."""

    def __init__(self, max_pending: int = 100):
        self._pending: deque[Notification] = deque(maxlen=max_pending)

    def push(
        self,
        level: NotificationLevel,
        title: str,
        message: str,
        correlation_id: Optional[UUID] = None,
    ) -> Notification:
        notification = Notification(
            level=level,
            title=title,
            message=message,
            correlation_id=correlation_id,
        )
        self._pending.append(notification)
        return notification

    def success(self, title: str, message: str, correlation_id: Optional[UUID] = None) -> Notification:
        return self.push(NotificationLevel.SUCCESS, title, message, correlation_id)

    def warning(self, title: str, message: str, correlation_id: Optional[UUID] = None) -> Notification:
        return self.push(NotificationLevel.WARNING, title, message, correlation_id)

    def error(self, title: str, message: str, correlation_id: Optional[UUID] = None) -> Notification:
        return self.push(NotificationLevel.ERROR, title, message, correlation_id)

    def drain(self) -> list[Notification]:
        """Return and clear everything pending, oldest first."""
        drained = list(self._pending)
        self._pending.clear()
        return drained

    def __len__(self) -> int:
        return len(self._pending)
