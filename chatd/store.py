"""Key/hash/set store backends for chatd.

The hub only needs a handful of primitive operations from its store: hash
get/set (plus set-if-absent and increment), set membership, expiring claims
that only their holder may release, and applying several writes as one
unit. :class:`MemoryStore` keeps everything in process; :class:`RedisStore`
talks to a Redis server via ``redis.asyncio``.

:class:`StoreAdapter` is the base for the credential and history adapters. It
bounds every call with a timeout, retries idempotent reads, and makes sure a
failing store always surfaces as :class:`~chatd.errors.StoreError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Protocol, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import StoreError

# A single write inside a transaction: ("hset", key, field, value) or
# ("sadd", key, member).
StoreOp = tuple[Any, ...]

# Deletes a claim only while it still holds the caller's token.
_RELEASE_CLAIM = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class KeyValueStore(Protocol):
    async def hget(self, key: str, field: str) -> str | None: ...

    async def hset(self, key: str, field: str, value: str) -> None: ...

    async def hsetnx(self, key: str, field: str, value: str) -> bool: ...

    async def hmget(self, key: str, fields: Sequence[str]) -> list[str | None]: ...

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    async def sismember(self, key: str, member: str) -> bool: ...

    async def sadd(self, key: str, member: str) -> int: ...

    async def claim(self, key: str, token: str, ttl_s: float) -> bool: ...

    async def release_claim(self, key: str, token: str) -> bool: ...

    async def transaction(self, ops: Sequence[StoreOp]) -> list[Any]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryStore:
    """In-process store.

    Every method completes without suspending, so each call (including
    :meth:`transaction`) is atomic with respect to other tasks on the loop.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.claims: dict[str, tuple[str, float]] = {}  # key -> (token, expires_at)
        self.clock = clock

    async def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> None:
        self.hashes.setdefault(key, {})[field] = str(value)

    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        h = self.hashes.setdefault(key, {})
        if field in h:
            return False
        h[field] = str(value)
        return True

    async def hmget(self, key: str, fields: Sequence[str]) -> list[str | None]:
        h = self.hashes.get(key, {})
        return [h.get(str(f)) for f in fields]

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        h = self.hashes.setdefault(key, {})
        value = int(h.get(field, "0")) + int(amount)
        h[field] = str(value)
        return value

    async def sismember(self, key: str, member: str) -> bool:
        return member in self.sets.get(key, set())

    async def sadd(self, key: str, member: str) -> int:
        s = self.sets.setdefault(key, set())
        if member in s:
            return 0
        s.add(member)
        return 1

    async def claim(self, key: str, token: str, ttl_s: float) -> bool:
        held = self.claims.get(key)
        now = self.clock()
        if held is not None and held[1] > now:
            return False
        self.claims[key] = (token, now + float(ttl_s))
        return True

    async def release_claim(self, key: str, token: str) -> bool:
        held = self.claims.get(key)
        if held is None or held[0] != token:
            return False
        del self.claims[key]
        return True

    async def transaction(self, ops: Sequence[StoreOp]) -> list[Any]:
        for op in ops:
            if op[0] not in ("hset", "sadd"):
                raise ValueError(f"unsupported transaction op {op[0]!r}")
        results: list[Any] = []
        for op in ops:
            if op[0] == "hset":
                results.append(await self.hset(op[1], op[2], op[3]))
            else:
                results.append(await self.sadd(op[1], op[2]))
        return results

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class RedisStore:
    """Store backed by a Redis server."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        socket_timeout: float | None = None,
        client: aioredis.Redis | None = None,
    ) -> None:
        self.url = url
        self.socket_timeout = socket_timeout
        self._client = client

    def _ensure_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def hget(self, key: str, field: str) -> str | None:
        try:
            return await self._ensure_client().hget(key, field)
        except RedisError as e:
            raise StoreError(f"redis HGET {key} failed: {e}") from e

    async def hset(self, key: str, field: str, value: str) -> None:
        try:
            await self._ensure_client().hset(key, field, value)
        except RedisError as e:
            raise StoreError(f"redis HSET {key} failed: {e}") from e

    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        try:
            return bool(await self._ensure_client().hsetnx(key, field, value))
        except RedisError as e:
            raise StoreError(f"redis HSETNX {key} failed: {e}") from e

    async def hmget(self, key: str, fields: Sequence[str]) -> list[str | None]:
        if not fields:
            return []
        try:
            return list(await self._ensure_client().hmget(key, list(fields)))
        except RedisError as e:
            raise StoreError(f"redis HMGET {key} failed: {e}") from e

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        try:
            return int(await self._ensure_client().hincrby(key, field, amount))
        except RedisError as e:
            raise StoreError(f"redis HINCRBY {key} failed: {e}") from e

    async def sismember(self, key: str, member: str) -> bool:
        try:
            return bool(await self._ensure_client().sismember(key, member))
        except RedisError as e:
            raise StoreError(f"redis SISMEMBER {key} failed: {e}") from e

    async def sadd(self, key: str, member: str) -> int:
        try:
            return int(await self._ensure_client().sadd(key, member))
        except RedisError as e:
            raise StoreError(f"redis SADD {key} failed: {e}") from e

    async def claim(self, key: str, token: str, ttl_s: float) -> bool:
        try:
            ok = await self._ensure_client().set(
                key, token, nx=True, px=max(1, int(ttl_s * 1000))
            )
        except RedisError as e:
            raise StoreError(f"redis SET NX {key} failed: {e}") from e
        return bool(ok)

    async def release_claim(self, key: str, token: str) -> bool:
        try:
            return bool(await self._ensure_client().eval(_RELEASE_CLAIM, 1, key, token))
        except RedisError as e:
            raise StoreError(f"redis claim release {key} failed: {e}") from e

    async def transaction(self, ops: Sequence[StoreOp]) -> list[Any]:
        try:
            async with self._ensure_client().pipeline(transaction=True) as pipe:
                for op in ops:
                    if op[0] == "hset":
                        pipe.hset(op[1], op[2], op[3])
                    elif op[0] == "sadd":
                        pipe.sadd(op[1], op[2])
                    else:
                        raise ValueError(f"unsupported transaction op {op[0]!r}")
                return list(await pipe.execute())
        except RedisError as e:
            raise StoreError(f"redis MULTI/EXEC failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._ensure_client().ping())
        except RedisError:
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_store(url: str | None, *, socket_timeout: float | None = None) -> KeyValueStore:
    """Pick a backend from a store URL (empty -> in-process store)."""
    if not url:
        return MemoryStore()
    return RedisStore(url, socket_timeout=socket_timeout)


class StoreAdapter:
    """Base for adapters that wrap a :class:`KeyValueStore`.

    Reads go through :meth:`_read` and are retried up to ``read_attempts``
    times. Writes go through :meth:`_write` and are attempted once, since
    replaying a partially applied write is not always safe.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        timeout_s: float = 5.0,
        read_attempts: int = 3,
        retry_delay_s: float = 0.1,
        logger_name: str = "chatd.store",
    ) -> None:
        self.store = store
        self.timeout_s = float(timeout_s)
        self.read_attempts = max(1, int(read_attempts))
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self.log = logging.getLogger(logger_name)

    async def _call(self, op: str, *args: Any) -> Any:
        fn = getattr(self.store, op)
        try:
            if self.timeout_s > 0:
                return await asyncio.wait_for(fn(*args), timeout=self.timeout_s)
            return await fn(*args)
        except asyncio.TimeoutError as e:
            raise StoreError(f"store {op} timed out after {self.timeout_s}s") from e

    async def _read(self, op: str, *args: Any) -> Any:
        attempt = 1
        while True:
            try:
                return await self._call(op, *args)
            except StoreError as e:
                if attempt >= self.read_attempts:
                    raise
                self.log.warning(
                    "Store read %s failed attempt=%s/%s err=%s",
                    op,
                    attempt,
                    self.read_attempts,
                    e,
                )
                attempt += 1
                await asyncio.sleep(self.retry_delay_s)

    async def _write(self, op: str, *args: Any) -> Any:
        return await self._call(op, *args)
