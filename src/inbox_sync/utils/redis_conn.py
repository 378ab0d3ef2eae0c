import json
from typing import Any, Optional

import redis

from inbox_sync.config import config
from inbox_sync.utils.exceptions import CacheError

# Redis connection singleton
_redis_client = None


def get_redis_client() -> redis.Redis:
    """Get or create Redis client singleton."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis(
            host=config.redis_host,
            port=int(config.redis_port),
            db=int(config.redis_db),
            decode_responses=True  # Automatically decode response bytes to str
        )
    return _redis_client


def redis_set(key: str, value: Any, expire: Optional[int] = None, client: Any = None) -> None:
    """Store value in Redis, optionally with expiration in seconds."""
    client = client if client is not None else get_redis_client()
    if not isinstance(value, (str, bytes)):
        value = json.dumps(value)
    try:
        client.set(key, value, ex=expire)
    except redis.RedisError as e:
        raise CacheError("set", str(e), key) from e


def redis_get_raw(key: str, client: Any = None) -> Optional[str]:
    """Get the raw stored string, or None if the key does not exist."""
    client = client if client is not None else get_redis_client()
    try:
        return client.get(key)
    except redis.RedisError as e:
        raise CacheError("get", str(e), key) from e


def redis_get(key: str, default: Any = None, client: Any = None) -> Any:
    """Get value from Redis, return default if not found."""
    value = redis_get_raw(key, client=client)
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def redis_delete(key: str, client: Any = None) -> bool:
    """Delete a key from Redis. Returns True if key existed and was deleted."""
    client = client if client is not None else get_redis_client()
    try:
        return client.delete(key) > 0
    except redis.RedisError as e:
        raise CacheError("delete", str(e), key) from e
