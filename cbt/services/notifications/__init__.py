"""Real-time notification channel.

Services publish room-scoped events through a `Notifier`; the production
implementation fans them out over Redis pub/sub and the websocket relay in
`cbt.api.realtime` forwards them to connected clients.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import redis


logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "rooms:"

SESSION_LOCKED = "session_locked"
SESSION_UNLOCKED = "session_unlocked"
SESSION_FORCE_SUBMITTED = "session_force_submitted"
SESSION_EXPIRED = "session_expired"
EXAM_TERMINATED = "exam_terminated"
VIOLATION_LOGGED = "violation_logged"


def session_room(session_id: Any) -> str:
    return f"session_{session_id}"


def exam_room(exam_id: Any) -> str:
    return f"exam_{exam_id}"


def monitor_room(exam_id: Any) -> str:
    return f"monitor_exam_{exam_id}"


def channel_for(room: str) -> str:
    return f"{CHANNEL_PREFIX}{room}"


class Notifier(Protocol):
    def publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        ...


class RedisNotifier:
    """Publishes `{"event", "data"}` JSON messages on `rooms:<room>`."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event, "data": payload}, default=str)
        try:
            receivers = self.client.publish(channel_for(room), message)
        except redis.RedisError:
            logger.exception("Failed to publish %s to %s", event, room)
            return
        logger.debug("Published %s to %s (%s receivers)", event, room, receivers)


class NullNotifier:
    def publish(self, room: str, event: str, payload: dict[str, Any]) -> None:
        logger.debug("Dropping %s for %s", event, room)
