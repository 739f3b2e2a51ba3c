"""Best-effort progress event publishing and worker heartbeat."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import redis

from ifi_worker.orchestrator.models import ProgressEventKind

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFIX = "job:"
DEFAULT_HEARTBEAT_KEY = "ifi:worker:heartbeat"
DEFAULT_HEARTBEAT_TTL_SECONDS = 60
DEFAULT_SOCKET_TIMEOUT_SECONDS = 5.0


class ProgressPublisher(Protocol):
    """Fire-and-forget event channel.

    Delivery is at-most-once and not transactional with status persistence:
    callers publish after the corresponding write, and a publish failure never
    reaches them.
    """

    def publish(
        self,
        channel_key: str,
        event: ProgressEventKind,
        data: Mapping[str, Any],
    ) -> None: ...

    def close(self) -> None: ...


def channel_for_job(job_id: str, *, prefix: str = DEFAULT_CHANNEL_PREFIX) -> str:
    return f"{prefix}{job_id}"


def encode_envelope(event: ProgressEventKind, data: Mapping[str, Any]) -> str:
    return json.dumps({"event": event.value, "data": dict(data)}, ensure_ascii=False)


class RedisProgressPublisher:
    """Publish job events over Redis pub/sub; also owns the worker heartbeat key."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        heartbeat_key: str = DEFAULT_HEARTBEAT_KEY,
        heartbeat_ttl_seconds: int = DEFAULT_HEARTBEAT_TTL_SECONDS,
    ) -> None:
        self._client = client
        self.heartbeat_key = heartbeat_key
        self.heartbeat_ttl_seconds = heartbeat_ttl_seconds

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        heartbeat_key: str = DEFAULT_HEARTBEAT_KEY,
        heartbeat_ttl_seconds: int = DEFAULT_HEARTBEAT_TTL_SECONDS,
        socket_timeout_seconds: float = DEFAULT_SOCKET_TIMEOUT_SECONDS,
    ) -> RedisProgressPublisher:
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
            decode_responses=True,
        )
        return cls(
            client,
            heartbeat_key=heartbeat_key,
            heartbeat_ttl_seconds=heartbeat_ttl_seconds,
        )

    def publish(
        self,
        channel_key: str,
        event: ProgressEventKind,
        data: Mapping[str, Any],
    ) -> None:
        try:
            self._client.publish(channel_key, encode_envelope(event, data))
        except (redis.RedisError, TypeError, ValueError) as error:
            logger.warning("Failed to publish %s event on %s: %s", event.value, channel_key, error)

    def write_heartbeat(self, payload: Mapping[str, Any]) -> None:
        try:
            self._client.set(
                self.heartbeat_key,
                json.dumps(dict(payload)),
                ex=self.heartbeat_ttl_seconds,
            )
        except redis.RedisError as error:
            logger.warning("Failed to write worker heartbeat: %s", error)

    def read_heartbeat(self) -> dict[str, Any] | None:
        """Return the last heartbeat payload, or ``None`` when absent or unreadable."""

        try:
            raw = self._client.get(self.heartbeat_key)
        except redis.RedisError as error:
            logger.warning("Failed to read worker heartbeat: %s", error)
            return None
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as error:
            logger.debug("Ignoring error while closing redis client: %s", error)


class NullProgressPublisher:
    """Drop events; used when no event channel is configured."""

    def publish(
        self,
        channel_key: str,
        event: ProgressEventKind,
        data: Mapping[str, Any],
    ) -> None:
        logger.debug("Dropping %s event for %s", event.value, channel_key)

    def write_heartbeat(self, payload: Mapping[str, Any]) -> None:
        return None

    def read_heartbeat(self) -> dict[str, Any] | None:
        return None

    def ping(self) -> bool:
        return False

    def close(self) -> None:
        return None
