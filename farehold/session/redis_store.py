import json
import redis
from typing import Dict, Optional, Any, List
from farehold.config import settings
from farehold.obs.logger import log_event


class RedisStore:
    """Redis-backed key/value store.

    Falls back to an in-process dict when Redis is unreachable at start-up
    or a write fails, so a broken cache never takes the booking flow down.
    """

    def __init__(self, redis_url: str = None, ttl_seconds: int = None, client: Any = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.ttl_seconds = ttl_seconds or settings.RECORD_RETENTION_SECONDS
        self.prefix = settings.RECORD_KEY_PREFIX
        self._fallback_store: Dict[str, str] = {}
        self.client = client if client is not None else redis.from_url(self.redis_url, decode_responses=True)

        # Test connection
        try:
            self.client.ping()
        except redis.ConnectionError:
            # Fall back to in-memory if Redis is not available
            self.client = None
            log_event("redis_unavailable", level="WARNING", url=self.redis_url)

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.client is None:
            raw = self._fallback_store.get(key)
        else:
            try:
                raw = self.client.get(self._get_key(key))
            except redis.RedisError as e:
                log_event("redis_get_failed", level="WARNING", key=key, error=str(e))
                raw = self._fallback_store.get(key)
        if not raw:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Dict[str, Any]) -> None:
        data = json.dumps(value)
        if self.client is None:
            self._fallback_store[key] = data
            return

        try:
            self.client.setex(self._get_key(key), self.ttl_seconds, data)
        except redis.RedisError as e:
            log_event("redis_set_failed", level="WARNING", key=key, error=str(e))
            # Fallback to in-memory
            self._fallback_store[key] = data

    def delete(self, key: str) -> None:
        self._fallback_store.pop(key, None)
        if self.client is None:
            return
        try:
            self.client.delete(self._get_key(key))
        except redis.RedisError as e:
            log_event("redis_delete_failed", level="WARNING", key=key, error=str(e))

    def keys(self, prefix: str = "") -> List[str]:
        found = {k for k in self._fallback_store if k.startswith(prefix)}
        if self.client is not None:
            try:
                for full_key in self.client.scan_iter(f"{self.prefix}{prefix}*"):
                    found.add(full_key[len(self.prefix):])
            except redis.RedisError as e:
                log_event("redis_scan_failed", level="WARNING", prefix=prefix, error=str(e))
        return sorted(found)
