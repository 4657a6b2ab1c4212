from typing import Any, Dict

import orjson
import redis
from loguru import logger


class Notifier:
    """Fire-and-forget status-change hook.

    Subclasses implement ``publish``; ``notify`` never raises so a broken
    notification channel cannot fail an orchestration call.
    """

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.publish(event, payload)
        except Exception as exc:
            logger.warning(f"Notification {event} dropped: {exc}")

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Notification {event}: {payload}")


class RedisNotifier(Notifier):
    """Broadcasts ``{"event": ..., "payload": ...}`` on a Redis pub/sub channel."""

    def __init__(self, client: redis.Redis, channel: str):
        self.r = client
        self.channel = channel

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        message = orjson.dumps({"event": event, "payload": payload}, default=str)
        self.r.publish(self.channel, message)
