"""
Per-entity write serialization.

Every writer that touches an entity's results, standing or rating holds that
entity's lock for its whole transaction. Locks are keyed by (season, entity)
and always taken in sorted key order so overlapping lock sets cannot deadlock.

Within a process the locks are re-entrant thread locks, dropped from the
registry once nobody holds or waits for them. When Redis is configured, a
Redis lock per key extends the guarantee across processes; its lease outlasts
the longest hold so it cannot expire under a running writer.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

import redis

from league_engine.config import Config
from league_engine.utils.exceptions import StateError

logger = logging.getLogger(__name__)


class EntityLockManager:
    """Hands out per-entity locks shared by every writer in the process."""

    _shared: Optional['EntityLockManager'] = None
    _shared_guard = threading.Lock()

    def __init__(self, redis_client: Optional[redis.Redis] = None,
                 timeout_seconds: Optional[float] = None, lease_seconds: Optional[float] = None):
        self.redis_client = redis_client
        self.timeout_seconds = timeout_seconds or Config.LOCK_TIMEOUT_SECONDS
        self.lease_seconds = lease_seconds or Config.LOCK_LEASE_SECONDS
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def shared(cls) -> 'EntityLockManager':
        """Process-wide manager, connected to Redis when REDIS_URL is set"""
        with cls._shared_guard:
            if cls._shared is None:
                from league_engine.utils.redis_utils import RedisUtils
                cls._shared = cls(redis_client=RedisUtils.create_redis_client())
            return cls._shared

    @staticmethod
    def lock_key(season_id: str, entity_id: str) -> str:
        return f"league_engine:entity_lock:{season_id}:{entity_id}"

    def _checkout(self, key: str) -> threading.RLock:
        """Local lock for a key, registered as in use until checked back in"""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str):
        with self._registry_lock:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def _acquire_distributed(self, key: str, lease_seconds: float):
        if self.redis_client is None:
            return None
        lock = self.redis_client.lock(key, timeout=lease_seconds,
                                      blocking_timeout=self.timeout_seconds)
        try:
            if not lock.acquire():
                raise StateError(f"Timed out waiting for distributed lock {key}")
        except redis.ConnectionError as e:
            logger.warning(f"Redis unavailable, proceeding with process-local lock for {key}: {e}")
            return None
        return lock

    @contextmanager
    def hold(self, season_id: str, entity_ids: Iterable[str], lease_seconds: Optional[float] = None):
        """
        Hold the locks for a set of entities in one season.

        Args:
            season_id: Season of the entities
            entity_ids: Entities to lock
            lease_seconds: Longest the caller may hold the locks; Redis locks
                expire after this, never sooner than the configured lease

        Raises:
            StateError: If a lock cannot be acquired within the timeout
        """
        keys = sorted({self.lock_key(season_id, entity_id) for entity_id in entity_ids})
        lease = max(lease_seconds or 0, self.lease_seconds)
        checked_out: List[str] = []
        local_held: List[threading.RLock] = []
        remote_held = []
        try:
            for key in keys:
                lock = self._checkout(key)
                checked_out.append(key)
                if not lock.acquire(timeout=self.timeout_seconds):
                    raise StateError(f"Timed out waiting for entity lock {key}")
                local_held.append(lock)

                remote = self._acquire_distributed(key, lease)
                if remote is not None:
                    remote_held.append(remote)
            logger.debug(f"Holding {len(keys)} entity locks for season {season_id}")
            yield
        finally:
            for remote in reversed(remote_held):
                try:
                    remote.release()
                except redis.RedisError as e:
                    logger.warning(f"Failed to release distributed lock {remote.name}: {e}")
            for lock in reversed(local_held):
                lock.release()
            for key in checked_out:
                self._checkin(key)
