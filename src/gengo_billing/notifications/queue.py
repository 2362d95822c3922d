from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Abstract async message queue for dispatching user notifications
    (push, email, in-app). Concrete implementations could use Redis,
    RabbitMQ, a web-push worker, etc.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == notification_type]


class LoggingNotificationQueue(AsyncNotificationQueue):
    """Writes notifications to the application log; default when no broker is configured."""

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        logger.info(
            "notification %s for user %s: %s",
            payload.get("type"),
            payload.get("user_id"),
            payload.get("title"),
        )
