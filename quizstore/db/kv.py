"""
Versioned record store on top of Redis

Every entry lives in a Redis hash holding its JSON value and a versionstamp
that changes on every write. A lexicographic sorted set of encoded keys
provides ordered prefix scans. Multi-key changes go through ``commit``,
which WATCHes the checked keys, verifies their versionstamps and applies
all mutations in one MULTI/EXEC, or nothing at all.
"""

import asyncio
import functools
import json
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from quizstore.core.config import settings
from quizstore.core.exceptions import ConflictException, UnavailableException
from quizstore.db.keys import Key, decode_key, encode_key, prefix_range

logger = logging.getLogger(__name__)

VALUE_FIELD = "value"
VERSION_FIELD = "versionstamp"
INDEX_SUFFIX = "__keys__"

_ENGINE_ERRORS = (RedisConnectionError, RedisTimeoutError)


@dataclass
class KvEntry:
    """A key with its value and versionstamp; both are None when absent"""

    key: Key
    value: Any = None
    versionstamp: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.versionstamp is not None


@dataclass
class CommitResult:
    ok: bool
    versionstamp: Optional[str] = None


@dataclass
class _Mutation:
    type: str
    key: Key
    value: Any = None
    expire_in: Optional[int] = None


def with_engine_retry(func):
    """
    Retry a read on engine I/O failure, then raise UnavailableException

    Attempts and delay come from KV_RETRY_ATTEMPTS / KV_RETRY_DELAY.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        attempts = max(1, settings.KV_RETRY_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except _ENGINE_ERRORS as e:
                if attempt == attempts:
                    logger.error(f"Engine read failed after {attempts} attempts: {e}")
                    raise UnavailableException(details={"operation": func.__name__}) from e
                logger.warning(f"Engine read failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(settings.KV_RETRY_DELAY * attempt)

    return wrapper


def with_conflict_retry(max_attempts: Optional[int] = None):
    """
    Re-run a read-modify-commit coroutine when it raises ConflictException

    The wrapped coroutine must re-read everything it depends on, since every
    attempt starts from scratch.

    Args:
        max_attempts: bound on attempts, COMMIT_MAX_ATTEMPTS when omitted
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempts = max(1, max_attempts or settings.COMMIT_MAX_ATTEMPTS)
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except ConflictException:
                    if attempt == attempts:
                        logger.error(f"{func.__name__} gave up after {attempts} conflicting commits")
                        raise
                    logger.warning(
                        f"{func.__name__} commit conflicted (attempt {attempt}/{attempts}), retrying"
                    )
                    await asyncio.sleep(random.uniform(0, 0.005) * attempt)

        return wrapper

    return decorator


class AtomicOperation:
    """
    Builder for one atomic commit

    Example:
        result = await (
            kv.atomic()
            .check(("users", user_id), None)
            .set(("users", user_id), data)
            .commit()
        )
    """

    def __init__(self, store: "KvStore"):
        self._store = store
        self._checks: List[Tuple[Key, Optional[str]]] = []
        self._mutations: List[_Mutation] = []

    def check(self, key: Key, versionstamp: Optional[str]) -> "AtomicOperation":
        """Require ``key`` to be at ``versionstamp`` (None: require absence)"""
        self._checks.append((key, versionstamp))
        return self

    def set(self, key: Key, value: Any, expire_in: Optional[int] = None) -> "AtomicOperation":
        """Write ``value``; ``expire_in`` is a best-effort TTL in milliseconds"""
        self._mutations.append(_Mutation("set", key, value, expire_in))
        return self

    def delete(self, key: Key) -> "AtomicOperation":
        self._mutations.append(_Mutation("delete", key))
        return self

    @property
    def mutation_count(self) -> int:
        return len(self._mutations)

    async def commit(self) -> CommitResult:
        return await self._store.commit(self._checks, self._mutations)


class KvStore:
    """Versioned record store; one per process, shared by every record store"""

    def __init__(self, client: redis.Redis, namespace: Optional[str] = None):
        self.redis_client = client
        self.namespace = namespace or settings.KV_NAMESPACE
        self._index_key = f"{self.namespace}:{INDEX_SUFFIX}"

    def _redis_key(self, encoded: str) -> str:
        return f"{self.namespace}:{encoded}"

    @staticmethod
    def _to_entry(key: Key, data: dict) -> KvEntry:
        if not data:
            return KvEntry(key)
        return KvEntry(key, json.loads(data[VALUE_FIELD]), data[VERSION_FIELD])

    def atomic(self) -> AtomicOperation:
        return AtomicOperation(self)

    async def close(self) -> None:
        """Release the underlying connection pool"""
        await self.redis_client.aclose()

    @with_engine_retry
    async def get(self, key: Key) -> KvEntry:
        """Point read"""
        data = await self.redis_client.hgetall(self._redis_key(encode_key(key)))
        return self._to_entry(key, data)

    async def get_many(self, keys: Sequence[Key]) -> List[KvEntry]:
        """Read several keys from one consistent snapshot"""
        encoded = [encode_key(key) for key in keys]
        rows = await self._fetch(encoded)
        return [self._to_entry(key, data) for key, data in zip(keys, rows)]

    async def set(self, key: Key, value: Any, expire_in: Optional[int] = None) -> CommitResult:
        """Unconditional single-key write"""
        return await self.atomic().set(key, value, expire_in).commit()

    async def delete(self, key: Key) -> None:
        await self.atomic().delete(key).commit()

    async def list(
        self,
        prefix: Key = (),
        *,
        start: Optional[Key] = None,
        end: Optional[Key] = None,
        reverse: bool = False,
        limit: Optional[int] = None,
    ) -> AsyncIterator[KvEntry]:
        """
        Ordered scan over every key starting with ``prefix``

        Key membership and values are read from one snapshot taken when the
        scan starts. Members whose value the engine already expired are
        skipped.

        Args:
            prefix: key prefix to scan
            start: inclusive lower bound (must lie under ``prefix``)
            end: exclusive upper bound (must lie under ``prefix``)
            reverse: descending key order
            limit: maximum number of keys to visit
        """
        low, high = prefix_range(prefix)
        if start is not None:
            low = f"[{encode_key(start)}"
        if end is not None:
            high = f"({encode_key(end)}"

        for encoded, data in await self._snapshot(low, high, reverse, limit):
            if not data:
                continue
            yield self._to_entry(decode_key(encoded), data)

    async def list_keys(self, prefix: Key = ()) -> List[Key]:
        """Every key under ``prefix``, in order, without reading values"""
        low, high = prefix_range(prefix)
        return [decode_key(encoded) for encoded in await self._members(low, high, False, None)]

    @with_engine_retry
    async def count(self, prefix: Key = ()) -> int:
        """Number of keys under ``prefix``"""
        low, high = prefix_range(prefix)
        return await self.redis_client.zlexcount(self._index_key, low, high)

    async def _range(self, client, low: str, high: str, reverse: bool, limit: Optional[int]) -> List[str]:
        paging = {"start": 0, "num": limit} if limit is not None else {}
        if reverse:
            return await client.zrevrangebylex(self._index_key, high, low, **paging)
        return await client.zrangebylex(self._index_key, low, high, **paging)

    @with_engine_retry
    async def _members(self, low: str, high: str, reverse: bool, limit: Optional[int]) -> List[str]:
        return await self._range(self.redis_client, low, high, reverse, limit)

    @with_engine_retry
    async def _snapshot(
        self, low: str, high: str, reverse: bool, limit: Optional[int]
    ) -> List[Tuple[str, dict]]:
        """
        Members in range with their values, read in one transaction

        The key index is WATCHed between reading the members and reading
        their values; a commit that adds or removes keys in between makes
        EXEC fail and the snapshot is taken again, at most
        COMMIT_MAX_ATTEMPTS times.
        """
        attempts = max(1, settings.COMMIT_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                async with self.redis_client.pipeline(transaction=True) as pipe:
                    await pipe.watch(self._index_key)
                    members = await self._range(pipe, low, high, reverse, limit)
                    if not members:
                        return []
                    pipe.multi()
                    for encoded in members:
                        pipe.hgetall(self._redis_key(encoded))
                    rows = await pipe.execute()
                return list(zip(members, rows))
            except WatchError:
                logger.debug(f"Key index changed during scan (attempt {attempt}/{attempts})")
        raise ConflictException("Key index kept changing during scan")

    @with_engine_retry
    async def _fetch(self, encoded_keys: Sequence[str]) -> List[dict]:
        if not encoded_keys:
            return []
        async with self.redis_client.pipeline(transaction=True) as pipe:
            for encoded in encoded_keys:
                pipe.hgetall(self._redis_key(encoded))
            return await pipe.execute()

    async def commit(
        self, checks: Sequence[Tuple[Key, Optional[str]]], mutations: Sequence[_Mutation]
    ) -> CommitResult:
        """
        Apply ``mutations`` if every check still holds, all or nothing

        Returns CommitResult(ok=False) when a check fails or a watched key
        changes before EXEC. Engine I/O failures raise UnavailableException
        and are not retried, since the outcome of the commit is unknown.
        """
        versionstamp = uuid.uuid4().hex
        watched = [self._redis_key(encode_key(key)) for key, _ in checks]
        # encode everything up front so a bad key cannot abort a half-queued MULTI
        queued = [(mutation, encode_key(mutation.key)) for mutation in mutations]

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                if watched:
                    await pipe.watch(*watched)
                    for (key, expected), redis_key in zip(checks, watched):
                        current = await pipe.hget(redis_key, VERSION_FIELD)
                        if current != expected:
                            logger.debug(
                                f"Check failed for {key}: expected {expected}, found {current}"
                            )
                            return CommitResult(ok=False)

                pipe.multi()
                for mutation, encoded in queued:
                    redis_key = self._redis_key(encoded)
                    if mutation.type == "set":
                        pipe.delete(redis_key)
                        pipe.hset(
                            redis_key,
                            mapping={
                                VALUE_FIELD: json.dumps(mutation.value),
                                VERSION_FIELD: versionstamp,
                            },
                        )
                        if mutation.expire_in:
                            pipe.pexpire(redis_key, mutation.expire_in)
                        pipe.zadd(self._index_key, {encoded: 0})
                    else:
                        pipe.delete(redis_key)
                        pipe.zrem(self._index_key, encoded)
                await pipe.execute()
        except WatchError:
            logger.debug("Watched key changed before EXEC")
            return CommitResult(ok=False)
        except _ENGINE_ERRORS as e:
            logger.error(f"Engine commit failed: {e}")
            raise UnavailableException(details={"operation": "commit"}) from e

        return CommitResult(ok=True, versionstamp=versionstamp)
