"""
Redis helpers: cached table/menu snapshots, rate limiting and the
distributed half of the booking and table-session locks.

Every method degrades gracefully when Redis is down: caches miss, the rate
limiter allows the request and locks fall back to the in-process lock only.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import redis
from redis.exceptions import LockError, RedisError

import config

logger = logging.getLogger(__name__)


class RedisClient:
    """Thin wrapper around ``redis.Redis`` with the keys this service uses."""

    def __init__(self, host: str = None, port: int = None, enabled: bool = None):
        self.redis_host = host or config.REDIS_HOST
        self.redis_port = port or config.REDIS_PORT
        self.client = None

        if enabled is None:
            enabled = config.REDIS_ENABLED
        if not enabled:
            logger.info("Redis disabled by configuration")
            return

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except RedisError as e:
            logger.warning(f"Could not connect to Redis at {self.redis_host}:{self.redis_port}: {e}")
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except RedisError:
            return False

    # ========== Generic JSON cache ==========

    def _cache_set(self, key: str, value: Any, ttl: int) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except RedisError as e:
            logger.warning(f"Failed to cache {key}: {e}")
            return False

    def _cache_get(self, key: str) -> Optional[Any]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get(key)
            if cached:
                return json.loads(cached)
        except RedisError as e:
            logger.warning(f"Failed to read {key} from cache: {e}")
        return None

    def _cache_delete(self, *keys: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(*keys)
            return True
        except RedisError as e:
            logger.warning(f"Failed to invalidate {keys}: {e}")
            return False

    # ========== Tables ==========

    def cache_tables(self, restaurant_id: int, tables: List[Dict], ttl: int = 60) -> bool:
        return self._cache_set(f"tables:{restaurant_id}", tables, ttl)

    def get_cached_tables(self, restaurant_id: int) -> Optional[List[Dict]]:
        return self._cache_get(f"tables:{restaurant_id}")

    def invalidate_tables_cache(self, restaurant_id: int) -> bool:
        return self._cache_delete(f"tables:{restaurant_id}")

    # ========== Menu ==========

    def cache_menu(self, restaurant_id: int, items: List[Dict], ttl: int = 300) -> bool:
        return self._cache_set(f"menu:{restaurant_id}", items, ttl)

    def get_cached_menu(self, restaurant_id: int) -> Optional[List[Dict]]:
        return self._cache_get(f"menu:{restaurant_id}")

    def invalidate_menu_cache(self, restaurant_id: int) -> bool:
        return self._cache_delete(f"menu:{restaurant_id}")

    # ========== Rate limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """
        Fixed-window counter.
        Returns (allowed, remaining requests in the window).
        """
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)

            remaining = max(0, max_requests - current)
            return current <= max_requests, remaining
        except RedisError as e:
            logger.warning(f"Rate limit check failed for {key}: {e}")
            return True, max_requests

    # ========== Distributed locks ==========

    def acquire_lock(self, name: str, timeout: int = None, blocking_timeout: int = None):
        """
        Returns an acquired ``redis.lock.Lock``, ``None`` when Redis is not
        available, or ``False`` when somebody else holds the lock.
        The lock expires on its own after ``timeout`` seconds so a crashed
        worker never wedges a table.
        """
        if not self.is_available():
            return None
        lock = self.client.lock(
            f"lock:{name}",
            timeout=timeout or config.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=config.LOCK_WAIT_SECONDS if blocking_timeout is None else blocking_timeout,
        )
        try:
            if lock.acquire():
                return lock
        except RedisError as e:
            logger.warning(f"Distributed lock {name} unavailable, using local lock only: {e}")
            return None
        return False

    def release_lock(self, lock) -> None:
        try:
            lock.release()
        except LockError as e:
            # expired before we were done; the local lock still covered this process
            logger.warning(f"Lock {lock.name} already released: {e}")
        except RedisError as e:
            logger.warning(f"Failed to release lock {lock.name}: {e}")

    # ========== Utilities ==========

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}

        try:
            return {
                "status": "available",
                "cached_tables_count": len(self.client.keys("tables:*")),
                "cached_menus_count": len(self.client.keys("menu:*")),
                "held_locks_count": len(self.client.keys("lock:*")),
            }
        except RedisError as e:
            return {"status": "error", "error": str(e)}


redis_client = RedisClient()
