"""
Redis engine handle for quizstore
Opened once per process and shared by every record store
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError, RedisError

from quizstore.core.config import settings
from quizstore.core.exceptions import UnavailableException
from quizstore.db.kv import KvStore

logger = logging.getLogger(__name__)


class RedisEngine:
    """Owner of the process-wide Redis connection pool"""

    def __init__(self):
        self.redis_client: Optional[redis.Redis] = None
        self.kv: Optional[KvStore] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.kv is not None

    async def connect(self) -> KvStore:
        """
        Connect to Redis, retrying up to REDIS_CONNECT_ATTEMPTS times

        Returns:
            The shared KvStore

        Raises:
            UnavailableException: when every attempt failed
        """
        async with self._lock:
            if self.kv is not None:
                return self.kv

            attempts = max(1, settings.REDIS_CONNECT_ATTEMPTS)
            for attempt in range(1, attempts + 1):
                client = redis.from_url(
                    settings.get_redis_url(),
                    max_connections=settings.REDIS_POOL_MAX_CONNECTIONS,
                    encoding="utf-8",
                    decode_responses=True,
                )
                try:
                    await client.ping()
                except (RedisError, ConnectionError) as e:
                    await client.aclose()
                    logger.warning(f"Failed to connect to Redis (attempt {attempt}/{attempts}): {e}")
                    if attempt == attempts:
                        logger.error("Max Redis connection attempts reached")
                        raise UnavailableException("Could not connect to Redis") from e
                    await asyncio.sleep(1)
                    continue

                self.redis_client = client
                self.kv = KvStore(client)
                logger.info("Connected to Redis successfully")
                return self.kv

    async def disconnect(self):
        """Close the connection pool"""
        if self.kv:
            await self.kv.close()
            self.redis_client = None
            self.kv = None
            logger.info("Disconnected from Redis")


# Global engine instance
engine = RedisEngine()


async def get_kv() -> KvStore:
    """Shared KvStore, connecting on first use"""
    return await engine.connect()
