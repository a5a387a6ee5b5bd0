# app/core/notifications/ports.py
from __future__ import annotations
from typing import Any, Protocol

from app.core.notifications.events import NotificationEvent


class AsyncNotificationRepository(Protocol):
    async def was_delivered(self, event: NotificationEvent) -> bool: ...

    async def save_in_app(self, event: NotificationEvent, title: str, body: str) -> None: ...

    async def mark_delivered(self, event: NotificationEvent, push_sent: int) -> bool:
        """
        True  => first delivery recorded
        False => a concurrent delivery already recorded it
        """
        ...

    async def active_device_tokens(self, user_id: str) -> list[str]: ...


class PushTransport(Protocol):
    async def send(self, device_token: str, payload: dict[str, Any]) -> bool: ...
