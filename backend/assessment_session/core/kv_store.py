from __future__ import annotations

from typing import Protocol

import redis

from assessment_session.core.redis_client import get_redis


class KeyValueStore(Protocol):
    """Durable key-value port used for checkpoints, submit keys and cached stats."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...


class RedisKeyValueStore:
    def __init__(self, client: redis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    def get(self, key: str) -> str | None:
        raw = self.client.get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return str(raw)

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        if ttl_seconds:
            self.client.set(key, value, ex=int(ttl_seconds))
        else:
            self.client.set(key, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def ping(self) -> bool:
        return bool(self.client.ping())


def checkpoint_key(application_id: int) -> str:
    return f"assessment_checkpoint:{application_id}"


def submit_key_key(application_id: int) -> str:
    return f"assessment_submit_key:{application_id}"


def stats_key(application_id: int) -> str:
    return f"assessment_stats:{application_id}"
