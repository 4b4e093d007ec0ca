"""Redis-based lock so only one run reads and writes the cursor at a time."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from carscout.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY = "carscout:run:lock"

# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
RELEASE_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    return 1
else
    return 2
end
"""


class RunLockManager:
    """
    Token-verified run lock.

    - ``SET NX EX`` acquisition with a TTL so a crashed run cannot hold the
      lock forever
    - Release only by the holder (run_id + token checked atomically)
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.run_lock_ttl_seconds
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

    async def acquire(self, run_id: str) -> Optional[str]:
        """
        Acquire the run lock.

        Returns:
            Token string if acquired, None if another run holds it
        """
        redis_client = await self._get_redis()

        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.now(timezone.utc).isoformat(),
        })

        acquired = await redis_client.set(
            LOCK_KEY,
            lock_value,
            nx=True,
            ex=self.ttl_seconds,
        )
        if acquired:
            logger.info(f"Acquired run lock for run_id: {run_id[:16]}...")
            return token

        info = await self.get_lock_info()
        holder = info.get("run_id") if info else None
        logger.debug(f"Run lock already held by run_id: {(holder or 'unknown')[:16]}...")
        return None

    async def release(self, run_id: str, token: str) -> bool:
        """Release the lock if this run still owns it."""
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(RELEASE_SCRIPT, 1, LOCK_KEY, run_id, token)
        except redis.RedisError as e:
            logger.error(f"Error releasing run lock: {e}")
            return False

        if result == 0:
            logger.debug("Run lock already released")
            return True
        if result == 1:
            logger.info(f"Released run lock for run_id: {run_id[:16]}...")
            return True
        logger.warning(f"Refusing to release run lock held by another run (requested={run_id[:16]}...)")
        return False

    async def force_unlock(self) -> bool:
        """Force unlock without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        try:
            await redis_client.delete(LOCK_KEY)
            logger.warning("Force-cleared run lock")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to force unlock: {e}")
            return False

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """Current holder, start time and remaining TTL, or None if unlocked."""
        redis_client = await self._get_redis()
        value = await redis_client.get(LOCK_KEY)
        ttl = await redis_client.ttl(LOCK_KEY)
        if not value:
            return None

        try:
            data = json.loads(value)
            return {
                "run_id": data.get("run_id"),
                "token": data.get("token"),
                "started_at": data.get("started_at"),
                "ttl_seconds": ttl if ttl > 0 else None,
            }
        except (json.JSONDecodeError, AttributeError) as e:
            logger.error(f"Invalid lock value format: {e}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
