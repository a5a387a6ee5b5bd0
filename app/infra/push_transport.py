# app/infra/push_transport.py
"""
FCM push transport over aiohttp (legacy HTTP API).

``send`` never raises on delivery problems: it returns False and logs,
and an ``NotRegistered`` token is deactivated so it is not retried.
"""
from __future__ import annotations

from typing import Any

import aiohttp

from app.core.notifications.ports import PushTransport
from app.infra.http_client import get_push_session
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter
from app.infra.pg_notification_repo_async import get_notification_repo

logger = get_logger(__name__)

_DEAD_TOKEN_ERRORS = frozenset({"NotRegistered", "InvalidRegistration"})


class FcmPushTransport(PushTransport):
    def __init__(self, *, endpoint: str, server_key: str, timeout_seconds: float = 5.0):
        self.endpoint = endpoint
        self.server_key = server_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(self, device_token: str, payload: dict[str, Any]) -> bool:
        body = {"to": device_token, "priority": "high", **payload}
        headers = {
            "Authorization": f"key={self.server_key}",
            "Content-Type": "application/json",
        }
        session = get_push_session()
        try:
            async with session.post(self.endpoint, json=body, headers=headers, timeout=self.timeout) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    logger.warning(f"FCM error: status={resp.status}, body={text[:200]}")
                    inc_counter("push_sent_total", result="http_error")
                    return False
                data = await resp.json()
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.warning(f"FCM transport error: {exc}")
            inc_counter("push_sent_total", result="transport_error")
            return False

        if data.get("success", 0) >= 1:
            inc_counter("push_sent_total", result="ok")
            return True

        errors = {r.get("error") for r in data.get("results") or [] if isinstance(r, dict)}
        if errors & _DEAD_TOKEN_ERRORS:
            await get_notification_repo().deactivate_token(device_token)
            logger.info(f"Deactivated unregistered device token {device_token[:8]}***")
        inc_counter("push_sent_total", result="rejected")
        return False
