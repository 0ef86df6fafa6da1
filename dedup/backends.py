"""
DEDUP BACKENDS

Key-value primitives the dedup store is built on:
- atomic claim (conditional set with expiry, guarded by processed-set check)
- compare-and-delete release
- set add / membership / cardinality
- field map with its own TTL

RedisBackend is the production backend (shared by every bot instance).
MemoryBackend keeps the same semantics inside one process.
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import BackendUnavailable

logger = logging.getLogger(__name__)

# try_claim() outcomes
CLAIM_OK = 'claimed'
CLAIM_LOCKED = 'in_progress'
CLAIM_DONE = 'processed'


class DedupBackend(ABC):
    """
    Abstract backend. Every method may raise BackendUnavailable;
    nothing else is expected to escape.
    """

    @abstractmethod
    async def try_claim(self, lock_key: str, processed_key: str, member: str,
                        token: str, lease_seconds: float) -> str:
        """
        Atomically: live lock -> 'in_progress'; member of processed set ->
        'processed'; otherwise store token under lock_key with expiry -> 'claimed'.
        """
        pass

    @abstractmethod
    async def release(self, lock_key: str, token: str) -> bool:
        """Delete lock_key only if it still holds token. True if deleted."""
        pass

    @abstractmethod
    async def mark(self, processed_key: str, member: str, meta_key: str,
                   fields: Dict[str, str], ttl_seconds: int) -> bool:
        """Add member to the processed set and write its metadata. True if newly added."""
        pass

    @abstractmethod
    async def is_member(self, set_key: str, member: str) -> bool:
        pass

    @abstractmethod
    async def cardinality(self, set_key: str) -> int:
        pass

    @abstractmethod
    async def members(self, set_key: str) -> List[str]:
        pass

    @abstractmethod
    async def remove_if_missing(self, set_key: str, member: str, guard_key: str) -> bool:
        """Atomically drop member from set_key unless guard_key exists. True if removed."""
        pass

    @abstractmethod
    async def get_fields(self, key: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns number deleted."""
        pass

    async def ping(self) -> bool:
        return True

    async def close(self):
        pass


class MemoryBackend(DedupBackend):
    """
    In-process backend.

    Every operation runs under one threading.Lock and never awaits inside it,
    so check-and-set is atomic for coroutines and threads alike.
    Expiry is lazy: entries are dropped when touched after their deadline.
    """

    def __init__(self, clock: Callable[[], float] = None):
        self._clock = clock or time.monotonic
        self._locks: Dict[str, Tuple[str, float]] = {}       # key -> (token, expires_at)
        self._sets: Dict[str, Set[str]] = {}
        self._hashes: Dict[str, Tuple[Dict[str, str], float]] = {}
        self._lock = threading.Lock()

    def _live_lock(self, key: str) -> Optional[str]:
        entry = self._locks.get(key)
        if entry is None:
            return None
        token, expires_at = entry
        if self._clock() >= expires_at:
            del self._locks[key]
            return None
        return token

    def _live_hash(self, key: str) -> Optional[Dict[str, str]]:
        entry = self._hashes.get(key)
        if entry is None:
            return None
        fields, expires_at = entry
        if self._clock() >= expires_at:
            del self._hashes[key]
            return None
        return fields

    async def try_claim(self, lock_key, processed_key, member, token, lease_seconds):
        with self._lock:
            if self._live_lock(lock_key) is not None:
                return CLAIM_LOCKED
            if member in self._sets.get(processed_key, ()):
                return CLAIM_DONE
            self._locks[lock_key] = (token, self._clock() + lease_seconds)
            return CLAIM_OK

    async def release(self, lock_key, token):
        with self._lock:
            if self._live_lock(lock_key) == token:
                del self._locks[lock_key]
                return True
            return False

    async def mark(self, processed_key, member, meta_key, fields, ttl_seconds):
        with self._lock:
            members = self._sets.setdefault(processed_key, set())
            added = member not in members
            members.add(member)
            self._hashes[meta_key] = (dict(fields), self._clock() + ttl_seconds)
            return added

    async def is_member(self, set_key, member):
        with self._lock:
            return member in self._sets.get(set_key, ())

    async def cardinality(self, set_key):
        with self._lock:
            return len(self._sets.get(set_key, ()))

    async def members(self, set_key):
        with self._lock:
            return list(self._sets.get(set_key, ()))

    async def remove_if_missing(self, set_key, member, guard_key):
        with self._lock:
            current = self._sets.get(set_key)
            if not current or member not in current:
                return False
            if self._live_lock(guard_key) is not None or self._live_hash(guard_key) is not None:
                return False
            current.discard(member)
            return True

    async def get_fields(self, key):
        with self._lock:
            return dict(self._live_hash(key) or {})

    async def exists(self, key):
        with self._lock:
            return self._live_lock(key) is not None or self._live_hash(key) is not None

    async def delete_prefix(self, prefix):
        with self._lock:
            doomed = [k for k in self._locks if k.startswith(prefix)]
            for key in doomed:
                del self._locks[key]
            doomed_hashes = [k for k in self._hashes if k.startswith(prefix)]
            for key in doomed_hashes:
                del self._hashes[key]
            return len(doomed) + len(doomed_hashes)


# KEYS[1]=lock key, KEYS[2]=processed set; ARGV[1]=member, ARGV[2]=token, ARGV[3]=lease ms
CLAIM_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 1
end
if redis.call('SISMEMBER', KEYS[2], ARGV[1]) == 1 then
    return 2
end
redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3], 'NX')
return 0
"""

# KEYS[1]=lock key; ARGV[1]=token
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

# KEYS[1]=processed set, KEYS[2]=metadata hash; ARGV[1]=member, ARGV[2]=ttl s, ARGV[3..]=field/value pairs
MARK_SCRIPT = """
local added = redis.call('SADD', KEYS[1], ARGV[1])
if #ARGV > 2 then
    redis.call('HSET', KEYS[2], unpack(ARGV, 3))
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end
return added
"""

# KEYS[1]=processed set, KEYS[2]=metadata hash; ARGV[1]=member
PRUNE_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then
    return 0
end
return redis.call('SREM', KEYS[1], ARGV[1])
"""

_CLAIM_CODES = {0: CLAIM_OK, 1: CLAIM_LOCKED, 2: CLAIM_DONE}


class RedisBackend(DedupBackend):
    """
    redis.asyncio backend.

    Every call is bounded by `timeout_seconds`; timeouts and RedisError are
    re-raised as BackendUnavailable. Nothing is retried here.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", timeout_seconds: float = 5.0,
                 client=None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.timeout_seconds,
                socket_connect_timeout=self.timeout_seconds,
            )
        return self._client

    async def _call(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(f"Redis call timed out after {self.timeout_seconds}s") from e
        except RedisError as e:
            raise BackendUnavailable(f"Redis error: {e}") from e
        except OSError as e:
            raise BackendUnavailable(f"Redis connection error: {e}") from e

    async def try_claim(self, lock_key, processed_key, member, token, lease_seconds):
        lease_ms = max(1, int(lease_seconds * 1000))
        code = await self._call(
            self.client.eval(CLAIM_SCRIPT, 2, lock_key, processed_key, member, token, lease_ms)
        )
        return _CLAIM_CODES[int(code)]

    async def release(self, lock_key, token):
        deleted = await self._call(self.client.eval(RELEASE_SCRIPT, 1, lock_key, token))
        return int(deleted) == 1

    async def mark(self, processed_key, member, meta_key, fields, ttl_seconds):
        flat = []
        for key, value in fields.items():
            flat.extend([key, value])
        added = await self._call(
            self.client.eval(MARK_SCRIPT, 2, processed_key, meta_key, member, int(ttl_seconds), *flat)
        )
        return int(added) == 1

    async def is_member(self, set_key, member):
        return bool(await self._call(self.client.sismember(set_key, member)))

    async def cardinality(self, set_key):
        return int(await self._call(self.client.scard(set_key)))

    async def members(self, set_key):
        return list(await self._call(self.client.smembers(set_key)))

    async def remove_if_missing(self, set_key, member, guard_key):
        removed = await self._call(self.client.eval(PRUNE_SCRIPT, 2, set_key, guard_key, member))
        return int(removed) == 1

    async def get_fields(self, key):
        return dict(await self._call(self.client.hgetall(key)))

    async def exists(self, key):
        return bool(await self._call(self.client.exists(key)))

    async def delete_prefix(self, prefix):
        keys = await self._call(self._scan_keys(f"{prefix}*"))
        if not keys:
            return 0
        return int(await self._call(self.client.delete(*keys)))

    async def _scan_keys(self, pattern: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=pattern)]

    async def ping(self):
        try:
            return bool(await self._call(self.client.ping()))
        except BackendUnavailable as e:
            logger.warning(f"⚠️  Redis ping failed: {e}")
            return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
