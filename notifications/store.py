"""Shared key-value store used as the coordination substrate.

Two implementations share one contract: ``RedisStore`` for production and
``InMemoryStore`` for tests and single-process development. Method names
follow Redis so the Redis wrapper stays thin.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple, Union

import redis

from .config import REDIS_URL

Score = Union[int, float]

# Deletes the key only while it still holds the caller's token.
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class SharedStore(Protocol):
    def zadd(self, key: str, score: Score, member: str) -> None: ...

    def zrangebyscore(self, key: str, min_score: Score, max_score: Score) -> List[str]: ...

    def zrange(self, key: str, *, withscores: bool = False, desc: bool = False,
               limit: Optional[int] = None) -> List: ...

    def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int: ...

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool: ...

    def get(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...

    def compare_and_delete(self, key: str, value: str) -> bool: ...

    def hset(self, key: str, mapping: Mapping[str, object]) -> None: ...

    def hgetall(self, key: str) -> Dict[str, str]: ...

    def sadd(self, key: str, member: str) -> None: ...

    def srem(self, key: str, member: str) -> None: ...

    def smembers(self, key: str) -> Set[str]: ...


def _stringify(mapping: Mapping[str, object]) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in mapping.items()}


class RedisStore:
    """SharedStore backed by redis-py. RedisError propagates to callers."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE)

    @classmethod
    def from_url(cls, url: str = REDIS_URL) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def zadd(self, key, score, member):
        self.client.zadd(key, {member: score})

    def zrangebyscore(self, key, min_score, max_score):
        return list(self.client.zrangebyscore(key, min_score, max_score))

    def zrange(self, key, *, withscores=False, desc=False, limit=None):
        if limit is not None and limit <= 0:
            return []
        end = -1 if limit is None else limit - 1
        return list(self.client.zrange(key, 0, end, desc=desc, withscores=withscores))

    def zremrangebyscore(self, key, min_score, max_score):
        return int(self.client.zremrangebyscore(key, min_score, max_score))

    def set_if_absent(self, key, value, ttl_ms):
        return bool(self.client.set(key, value, px=ttl_ms, nx=True))

    def get(self, key):
        return self.client.get(key)

    def delete(self, key):
        self.client.delete(key)

    def compare_and_delete(self, key, value):
        return bool(self._compare_and_delete(keys=[key], args=[value]))

    def hset(self, key, mapping):
        self.client.hset(key, mapping=_stringify(mapping))

    def hgetall(self, key):
        return dict(self.client.hgetall(key))

    def sadd(self, key, member):
        self.client.sadd(key, member)

    def srem(self, key, member):
        self.client.srem(key, member)

    def smembers(self, key):
        return set(self.client.smembers(key))


class InMemoryStore:
    """Process-local SharedStore with the same semantics as Redis.

    Values are strings, sorted sets order by (score, member) like Redis,
    and ``set_if_absent`` keys expire against ``clock`` (seconds).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._strings: Dict[str, Tuple[str, Optional[float]]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._sets: Dict[str, Set[str]] = {}

    def _live_string(self, key: str) -> Optional[str]:
        entry = self._strings.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._strings[key]
            return None
        return value

    def _sorted(self, key: str) -> List[Tuple[str, float]]:
        members = self._zsets.get(key, {})
        return sorted(members.items(), key=lambda item: (item[1], item[0]))

    def zadd(self, key, score, member):
        with self._lock:
            self._zsets.setdefault(key, {})[member] = float(score)

    def zrangebyscore(self, key, min_score, max_score):
        with self._lock:
            return [m for m, s in self._sorted(key) if min_score <= s <= max_score]

    def zrange(self, key, *, withscores=False, desc=False, limit=None):
        with self._lock:
            items = self._sorted(key)
        if desc:
            items.reverse()
        if limit is not None:
            items = items[:max(limit, 0)]
        if withscores:
            return items
        return [m for m, _ in items]

    def zremrangebyscore(self, key, min_score, max_score):
        with self._lock:
            members = self._zsets.get(key, {})
            doomed = [m for m, s in members.items() if min_score <= s <= max_score]
            for member in doomed:
                del members[member]
            return len(doomed)

    def set_if_absent(self, key, value, ttl_ms):
        with self._lock:
            if self._live_string(key) is not None:
                return False
            self._strings[key] = (value, self._clock() + ttl_ms / 1000.0)
            return True

    def get(self, key):
        with self._lock:
            return self._live_string(key)

    def delete(self, key):
        with self._lock:
            self._strings.pop(key, None)
            self._zsets.pop(key, None)
            self._hashes.pop(key, None)
            self._sets.pop(key, None)

    def compare_and_delete(self, key, value):
        with self._lock:
            if self._live_string(key) != value:
                return False
            del self._strings[key]
            return True

    def hset(self, key, mapping):
        with self._lock:
            self._hashes.setdefault(key, {}).update(_stringify(mapping))

    def hgetall(self, key):
        with self._lock:
            return dict(self._hashes.get(key, {}))

    def sadd(self, key, member):
        with self._lock:
            self._sets.setdefault(key, set()).add(member)

    def srem(self, key, member):
        with self._lock:
            self._sets.get(key, set()).discard(member)

    def smembers(self, key):
        with self._lock:
            return set(self._sets.get(key, set()))

    def keys(self, prefix: str = "") -> List[str]:
        """Every live key starting with ``prefix``; handy for inspection."""
        with self._lock:
            names = set(self._zsets) | set(self._hashes) | set(self._sets)
            names |= {k for k in list(self._strings) if self._live_string(k) is not None}
        return sorted(k for k in names if k.startswith(prefix))


def create_store(url: str = REDIS_URL) -> SharedStore:
    if url.startswith("memory://"):
        return InMemoryStore()
    return RedisStore.from_url(url)
