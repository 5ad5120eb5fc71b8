"""
Reqflow
AI Response Cache.

Process-wide key → value store with per-entry absolute expiry:
    - Parallel readers, exclusive writers (RWLock)
    - ``get`` on an expired entry removes it inline and reports a miss
    - Background sweeper removes expired entries every 5 minutes
    - No size cap; eviction is by expiry only

Values are stored as-is. Callers keep them immutable and check their
type on retrieval.
"""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from reqflow.ai.entities import utcnow
from reqflow.core.locks import RWLock

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_SECONDS = 300  # 5 minutes

# Per-operation TTLs
TTL_ANALYSE = timedelta(minutes=30)
TTL_QUESTIONS = timedelta(minutes=15)
TTL_DIAGRAM = timedelta(minutes=60)
TTL_DOCUMENT = timedelta(minutes=60)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: datetime


class ResponseCache:
    """In-memory TTL cache guarded by a readers-writer lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = RWLock()
        self._stats_lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}
        self._sweeper: threading.Thread | None = None
        self._stop = threading.Event()

    @staticmethod
    def compute_key(operation: str, provider_id: str, *inputs) -> str:
        """Deterministic key for an operation tag, provider and its inputs."""
        payload = json.dumps([operation, provider_id, *inputs], sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> tuple[Any, bool]:
        """
        Look up ``key``.

        Returns:
            (value, True) on hit, (None, False) on miss or expiry.
        """
        with self._lock.read():
            entry = self._entries.get(key)
            expired = entry is not None and entry.expires_at <= self._clock()
            if entry is not None and not expired:
                self._count("hits")
                return entry.value, True

        if expired:
            with self._lock.write():
                current = self._entries.get(key)
                # Another writer may have replaced it while the lock was released
                if current is entry:
                    del self._entries[key]
                    self._count("evictions")

        self._count("misses")
        return None, False

    def set(self, key: str, value: Any, ttl: timedelta | float) -> None:
        """Store ``value`` under ``key``, replacing any existing entry."""
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        with self._lock.write():
            self._entries[key] = entry
        self._count("sets")

    def delete(self, key: str) -> bool:
        with self._lock.write():
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        with self._lock.write():
            count = len(self._entries)
            self._entries.clear()
        self._count("evictions", count)
        return count

    def sweep(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock.write():
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            self._count("evictions", len(expired))
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock.read():
            return key in self._entries

    def get_stats(self) -> dict:
        """Return cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["hits"] + stats["misses"]
        stats["hit_rate_pct"] = round(stats["hits"] / total * 100, 2) if total else 0.0
        stats["entries"] = len(self)
        stats["sweeper_running"] = self.sweeper_running
        return stats

    # ── Background sweeper ────────────────────────────────────────────────

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def start_sweeper(self, interval: float = DEFAULT_SWEEP_SECONDS) -> None:
        """Start the daemon thread that calls ``sweep`` every ``interval`` seconds."""
        if self.sweeper_running:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval,),
            name="reqflow-cache-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        logger.info("Cache sweeper started (every %ss)", interval)

    def stop_sweeper(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Cache sweep failed")

    # ── Internal ──────────────────────────────────────────────────────────

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += amount
