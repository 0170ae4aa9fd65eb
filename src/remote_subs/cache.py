from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set, Tuple

from .sources.base import RemoteFile

log = logging.getLogger("remote_subs.cache")

Traverse = Callable[[], Awaitable[Iterable[RemoteFile]]]


@dataclass(frozen=True)
class CacheEntry:
    timestamp: float
    files: Tuple[RemoteFile, ...]


class DirectoryCache:
    """Per-tenant memo of remote subtitle listings with TTL semantics.

    - Any traversal outcome is stored, including empty or partial listings,
      so a broken remote is not hammered for the rest of the TTL window.
    - Concurrent misses for the same tenant share one in-flight traversal.
    - The traversal runs as its own task; callers that give up (timeouts)
      do not cancel it, so it still lands in the cache.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def ttl(self) -> float:
        return self._ttl

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self._ttl:
            return None
        return entry

    def prune(self) -> int:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if now - entry.timestamp >= self._ttl]
        for k in expired:
            self._entries.pop(k, None)
        if expired:
            log.debug("[cache] pruned %d expired listings", len(expired))
        return len(expired)

    def invalidate(self, key: str) -> None:
        """Drop the listing and detach any in-flight traversal for ``key``."""
        self._entries.pop(key, None)
        if self._inflight.pop(key, None) is not None:
            log.info("[cache] detached in-flight traversal for %s", key)

    async def list_files(self, key: str, traverse: Traverse) -> Tuple[RemoteFile, ...]:
        entry = self.get_entry(key)
        if entry is not None:
            return entry.files

        task = self._inflight.get(key)
        if task is None:
            self.prune()
            task = asyncio.create_task(self._populate(key, traverse))
            self._inflight[key] = task
            self._background.add(task)
            task.add_done_callback(lambda t, k=key: self._finished(k, t))
        else:
            log.debug("[cache] joining in-flight traversal for %s", key)
        return await asyncio.shield(task)

    async def _populate(self, key: str, traverse: Traverse) -> Tuple[RemoteFile, ...]:
        try:
            files = tuple(await traverse())
        except Exception:
            log.exception("[cache] traversal for %s failed", key)
            files = ()
        if self._inflight.get(key) is asyncio.current_task():
            self._entries[key] = CacheEntry(timestamp=self._clock(), files=files)
            log.info("[cache] stored %d files for %s", len(files), key)
        return files

    def _finished(self, key: str, task: asyncio.Task) -> None:
        self._background.discard(task)
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)

    async def drain(self) -> None:
        """Wait for background traversals to settle."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
