"""
Redis utility module for centralized Redis configuration and connection logic.

Provides secure Redis connection management with production validation. Redis
is optional: without REDIS_URL the engine runs with process-local locks only.
"""

import logging
from typing import Optional

import redis

from league_engine.config import Config

logger = logging.getLogger(__name__)


class RedisUtils:
    """Centralized Redis configuration and connection utilities."""

    @staticmethod
    def get_secure_redis_url() -> Optional[str]:
        """Get Redis URL with security validation for production deployments."""
        redis_url = Config.REDIS_URL
        if not redis_url:
            return None

        if RedisUtils._validate_redis_security(redis_url):
            return redis_url

        logger.error("REDIS_URL contains insecure configuration")
        return None

    @staticmethod
    def _validate_redis_security(redis_url: str) -> bool:
        """Validate that Redis URL meets security requirements."""
        if not redis_url.startswith(('redis://', 'rediss://', 'unix://')):
            logger.error(f"Unsupported Redis URL scheme: {redis_url.split(':', 1)[0]}")
            return False

        if not Config.DEBUG:
            # Production mode - enforce strict security
            if redis_url.startswith('redis://') and not redis_url.startswith(('redis://localhost', 'redis://127.0.0.1')):
                logger.error("Production Redis must use rediss:// (TLS) protocol")
                return False
            if redis_url.startswith('rediss://') and '@' not in redis_url:
                logger.error("Production Redis must include authentication credentials")
                return False
        elif not redis_url.startswith(('redis://localhost', 'redis://127.0.0.1', 'rediss://')):
            logger.warning(f"Potentially insecure Redis URL in development: {redis_url}")

        return True

    @staticmethod
    def create_redis_client() -> Optional[redis.Redis]:
        """Create a Redis client with secure configuration."""
        redis_url = RedisUtils.get_secure_redis_url()
        if not redis_url:
            return None

        try:
            client = redis.Redis.from_url(redis_url)
            # Test connection
            client.ping()
            logger.info("Successfully connected to Redis")
            return client
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None
