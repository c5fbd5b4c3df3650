"""
Trust Cache - Redis-backed TTL cache for device trust snapshots

Shared by every API and worker process, so an invalidation after a trust
write is seen everywhere. Redis expires entries on its own (SETEX); a cache
outage only costs a database read.
"""
import json
import logging
from typing import Any, Dict, Optional

import redis

from viewtrust.config import settings

logger = logging.getLogger(__name__)


class TrustCache:
    """Read-through cache keyed by (user, device fingerprint)"""

    def __init__(
        self,
        ttl_seconds: int,
        client: Optional[redis.Redis] = None,
        prefix: str = "trust"
    ):
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._redis_client = client

    def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis client for caching"""
        if self._redis_client is None:
            try:
                self._redis_client = redis.from_url(
                    settings.REDIS_URL,
                    decode_responses=True,
                    socket_connect_timeout=1
                )
                self._redis_client.ping()
            except Exception as e:
                logger.warning(f"Redis unavailable for trust caching: {e}")
                self._redis_client = None
        return self._redis_client

    def key(self, user_id: str, device_fingerprint: Optional[str]) -> str:
        return f"{self.prefix}:{user_id}:{device_fingerprint or ''}"

    def get(self, user_id: str, device_fingerprint: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            r = self._get_redis()
            if r:
                cached = r.get(self.key(user_id, device_fingerprint))
                if cached:
                    return json.loads(cached)
        except Exception as e:
            logger.warning(f"Trust cache read error: {e}")
        return None

    def set(self, user_id: str, device_fingerprint: Optional[str], value: Dict[str, Any]) -> None:
        try:
            r = self._get_redis()
            if r:
                r.setex(
                    self.key(user_id, device_fingerprint),
                    self.ttl_seconds,
                    json.dumps(value)
                )
        except Exception as e:
            logger.warning(f"Trust cache write error: {e}")

    def invalidate(self, user_id: str, device_fingerprint: Optional[str]) -> None:
        try:
            r = self._get_redis()
            if r:
                r.delete(self.key(user_id, device_fingerprint))
        except Exception as e:
            logger.warning(f"Trust cache invalidation error for user {user_id}: {e}")

    def clear(self) -> None:
        """Drop every snapshot under this cache's prefix."""
        try:
            r = self._get_redis()
            if r:
                keys = list(r.scan_iter(match=f"{self.prefix}:*"))
                if keys:
                    r.delete(*keys)
        except Exception as e:
            logger.warning(f"Trust cache clear error: {e}")
