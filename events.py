"""Outbound side effects: live queue events and patient notifications.

Queue operations never talk to Redis directly.  While an operation runs it
appends messages to an ``Outbox``; once the store has committed, the
controller hands the outbox to a ``Dispatcher`` which delivers each message
on its own and logs, rather than raises, any failure.  A broken Redis or
notification channel can therefore never undo or block a queue mutation.

Live updates go out over Redis pub/sub (``PUBLISH``).  Notifications are
pushed onto a Redis list that ``notification_worker.py`` drains.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Return a Redis client if ``REDIS_URL`` is configured and reachable."""
    global _redis_client
    if not config.REDIS_URL:
        return None
    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
        except redis.RedisError as exc:
            logger.error("Redis connection failed: %s", exc)
            return None
        _redis_client = client
    return _redis_client


def session_topic(session_id: str) -> str:
    return f"queue:session:{session_id}"


def patient_topic(patient_id: str) -> str:
    return f"queue:patient:{patient_id}"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default)


class RedisEventPublisher:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self._client = client

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client if self._client is not None else get_redis()

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        client = self.client
        if client is None:
            logger.debug("Redis not configured, dropping event on %s", topic)
            return
        client.publish(topic, dumps(payload))


class RedisNotifier:
    """Queues notifications for the delivery worker."""

    def __init__(self, client: Optional[redis.Redis] = None, list_name: str = config.NOTIFICATION_LIST) -> None:
        self._client = client
        self.list_name = list_name

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client if self._client is not None else get_redis()

    def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        client = self.client
        if client is None:
            logger.info("Notification %s for %s not queued: Redis not configured", event_type, user_id)
            return
        message = {
            "user_id": user_id,
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.now().isoformat(),
        }
        client.lpush(self.list_name, dumps(message))
        logger.info("Queued %s notification for %s", event_type, user_id)


@dataclass
class Outbox:
    events: List[tuple] = field(default_factory=list)
    notifications: List[tuple] = field(default_factory=list)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.events.append((topic, payload))

    def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        self.notifications.append((user_id, event_type, payload))

    def __len__(self) -> int:
        return len(self.events) + len(self.notifications)


class Dispatcher:
    def __init__(self, publisher, notifier) -> None:
        self.publisher = publisher
        self.notifier = notifier

    def flush(self, outbox: Outbox) -> int:
        """Deliver everything in ``outbox``; returns how many deliveries failed."""
        failures = 0
        for topic, payload in outbox.events:
            try:
                self.publisher.publish(topic, payload)
            except Exception:
                failures += 1
                logger.exception("Failed to publish event on %s", topic)
        for user_id, event_type, payload in outbox.notifications:
            try:
                self.notifier.notify(user_id, event_type, payload)
            except Exception:
                failures += 1
                logger.exception("Failed to notify %s (%s)", user_id, event_type)
        outbox.events.clear()
        outbox.notifications.clear()
        return failures
