from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from hostplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def cache_key(provider: str, call_kind: str, *args: Any) -> str:
    # (provider, call-kind, args-hash); args are hashed so keys stay short and uniform.
    encoded = json.dumps(args, sort_keys=True, default=str).encode("utf-8")
    digest = hashlib.sha256(encoded).hexdigest()[:16]
    return f"{provider}:{call_kind}:{digest}"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ResultCache:
    """In-process read-through cache with per-key single-flight loading.

    Concurrent misses on one key share a single loader call. Loader
    exceptions are not cached; every waiter sees the same exception.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0

    def peek(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.value

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], *, ttl_s: float) -> Any:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            self.hits += 1
            increment_counter("result_cache_hits_total")
            return entry.value
        if entry is not None:
            self._entries.pop(key, None)

        pending = self._inflight.get(key)
        if pending is not None:
            # Another caller is already loading this key; share its result.
            self.hits += 1
            increment_counter("result_cache_coalesced_total")
            return await asyncio.shield(pending)

        self.misses += 1
        increment_counter("result_cache_misses_total")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unobserved failure does not warn on garbage collection.
            future.exception()
            raise
        else:
            if ttl_s > 0:
                self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_s)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            self._entries.pop(key, None)
        if keys:
            logger.debug("result_cache_invalidated prefix=%s count=%s", prefix, len(keys))
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if entry.expires_at > now)


_result_cache: ResultCache | None = None


def get_result_cache() -> ResultCache:
    # Process-wide cache shared by every worker and request handler.
    global _result_cache
    if _result_cache is None:
        _result_cache = ResultCache()
    return _result_cache


def reset_result_cache() -> None:
    global _result_cache
    _result_cache = None
