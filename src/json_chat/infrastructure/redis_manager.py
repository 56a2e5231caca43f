from __future__ import annotations

import json
from typing import Any

from redis import Redis


class RedisManager:
    """
    JSON cache helpers on top of a Redis client.

    This class is designed for dependency injection: callers provide a configured
    Redis client (e.g., via Redis.from_url) and a key namespace.

    Args:
        redis_client (Redis): A configured Redis client instance.
        namespace (str): Key namespace/prefix for generated keys.
        default_ttl (int): TTL in seconds used when `set_json` gets no TTL.
    """

    def __init__(
        self,
        redis_client: Redis,
        *,
        namespace: str = "json-chat",
        default_ttl: int | None = None,
    ) -> None:
        self._redis: Redis = redis_client
        self._namespace: str = namespace.rstrip(":")
        self._default_ttl: int | None = default_ttl

    def key(self, *parts: str) -> str:
        """Build a namespaced key from its parts."""
        return ":".join([self._namespace, *parts])

    def set_json(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        """
        Set a JSON value at `key` with optional TTL.

        Args:
            key (str): The Redis key to set.
            value (dict[str, Any]): The JSON-serializable mapping to store.
            ttl (int | None): Optional TTL in seconds; falls back to the default TTL.
        """
        data = json.dumps(value)
        ttl = ttl if ttl is not None else self._default_ttl
        if ttl is not None:
            self._redis.setex(key, ttl, data)
        else:
            self._redis.set(key, data)

    def get_json(self, key: str) -> dict[str, Any] | None:
        """
        Get a JSON value from `key` and parse it into a dict.

        Returns:
            dict[str, Any] | None: Parsed dict if present and valid; otherwise None.
        """
        raw = self._redis.get(key)
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None


def build_redis_manager(redis_url: str, namespace: str, default_ttl: int | None = None) -> RedisManager:
    """Create a RedisManager from a redis:// URL."""
    client = Redis.from_url(redis_url, decode_responses=True)
    return RedisManager(client, namespace=namespace, default_ttl=default_ttl)
