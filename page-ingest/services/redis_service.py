#!/usr/bin/env python3
"""
Redis service for queue operations.
"""
import json
import redis
from typing import Optional, Tuple
from config.settings import REDIS_HOST, REDIS_PORT


class RedisService:
    """Service for Redis operations."""

    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT, client: redis.Redis = None):
        self.client = client or redis.Redis(host=host, port=port, decode_responses=True)

    def push_to_queue(self, queue_name: str, data: dict) -> None:
        """Push data to a Redis queue."""
        self.client.lpush(queue_name, json.dumps(data))

    def pop_from_queue(self, queue_name: str, timeout: int = 5) -> Optional[Tuple[str, str]]:
        """Pop the oldest entry from a Redis queue (blocks up to timeout seconds)."""
        return self.client.brpop(queue_name, timeout=timeout)

    def get_queue_length(self, queue_name: str) -> int:
        """Get the length of a queue."""
        return self.client.llen(queue_name)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.exceptions.RedisError:
            return False


def get_redis_client() -> redis.Redis:
    """Get Redis client instance."""
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, decode_responses=True)
