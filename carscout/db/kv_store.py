"""Durable key-value stores used for the pagination cursor."""

import asyncio
import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any, Optional, Protocol

import redis.asyncio as redis

from carscout.config import settings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal durable key-value capability."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def put(self, key: str, value: Any) -> None: ...


class JsonFileKeyValueStore:
    """
    Stores every key in one JSON document on disk.

    Writes go to a temp file in the same directory and are renamed over the
    original, so a crash mid-write never leaves a torn document behind.
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path or settings.state_path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
                return data if isinstance(data, dict) else {}
        except json.JSONDecodeError as e:
            logger.warning(f"State file {self.path} is not valid JSON, ignoring: {e}")
            return {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_path, self.path)
        except BaseException:
            with suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return self._read_all().get(key)

    async def put(self, key: str, value: Any) -> None:
        async with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)


class RedisKeyValueStore:
    """Stores JSON-encoded values under a key prefix in Redis."""

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "carscout:"):
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def get(self, key: str) -> Optional[Any]:
        client = await self._get_redis()
        raw = await client.get(self.prefix + key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Value under {self.prefix + key} is not valid JSON, ignoring")
            return None

    async def put(self, key: str, value: Any) -> None:
        client = await self._get_redis()
        await client.set(self.prefix + key, json.dumps(value, default=str))


def create_kv_store(backend: Optional[str] = None) -> KeyValueStore:
    """Build the configured cursor store."""
    backend = (backend or settings.state_backend).lower()
    if backend == "redis":
        return RedisKeyValueStore()
    if backend == "file":
        return JsonFileKeyValueStore()
    raise ValueError(f"Unknown state backend: {backend}")
