"""Redis client for shared state across workers and surfaces."""

import os
import redis
import logging

logger = logging.getLogger(__name__)

# Redis connections (lazy initialization), one per URL
_redis_clients = {}


def get_redis(url=None):
    """Get or create a Redis connection.

    Falls back to ``REDIS_URL`` from the environment. Returns None when no
    URL is configured or the server cannot be reached.
    """
    redis_url = url or os.environ.get('REDIS_URL')

    if not redis_url:
        logger.warning("REDIS_URL not set - shared attempt tracking will be limited")
        return None

    if redis_url in _redis_clients:
        return _redis_clients[redis_url]

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        # Test connection
        client.ping()
        logger.info("Redis connected successfully")
        _redis_clients[redis_url] = client
        return client
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        return None
