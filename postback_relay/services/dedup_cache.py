"""In-process deduplication cache for delivered postback identifiers.

Entries map identifier -> first processed time. A second delivery for an
identifier younger than the TTL must not happen. The cache is process-local and
best-effort: a restart clears it.

Concurrency: ``try_reserve`` is the atomic insert-if-absent used by the
pipeline. A reservation is either confirmed by ``mark_processed`` after a
successful delivery or dropped with ``release`` when the run ends without one,
so a concurrent duplicate sees the identifier as in flight and is ignored.
"""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from postback_relay.config import DEDUP_SETTINGS
from postback_relay.utils import get_logger
from postback_relay.utils.time import utc_now

logger = get_logger(__name__)


class ReserveResult(str, Enum):
    RESERVED = "reserved"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"


@dataclass
class _Entry:
    at: datetime
    confirmed: bool


@dataclass(frozen=True)
class Reservation:
    result: ReserveResult
    age_seconds: float | None = None

    @property
    def acquired(self) -> bool:
        return self.result == ReserveResult.RESERVED


class DedupCache:
    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        sweep_interval_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ttl = timedelta(seconds=float(ttl_seconds if ttl_seconds is not None else DEDUP_SETTINGS["ttl_seconds"]))
        self.sweep_interval_seconds = float(
            sweep_interval_seconds if sweep_interval_seconds is not None else DEDUP_SETTINGS["sweep_interval_seconds"]
        )
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    def _live(self, entry: _Entry | None, now: datetime) -> bool:
        return entry is not None and now - entry.at < self.ttl

    def has(self, identifier: str) -> bool:
        """True when a confirmed delivery for identifier is younger than the TTL."""
        with self._lock:
            entry = self._entries.get(identifier)
            return entry is not None and entry.confirmed and self._live(entry, self._clock())

    def age_seconds(self, identifier: str) -> float | None:
        with self._lock:
            entry = self._entries.get(identifier)
            now = self._clock()
            if not self._live(entry, now):
                return None
            return (now - entry.at).total_seconds()  # type: ignore[union-attr]

    def try_reserve(self, identifier: str) -> Reservation:
        """Atomically claim identifier for processing unless already delivered or in flight."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(identifier)
            if self._live(entry, now):
                age = (now - entry.at).total_seconds()  # type: ignore[union-attr]
                result = ReserveResult.DUPLICATE if entry.confirmed else ReserveResult.IN_FLIGHT  # type: ignore[union-attr]
                return Reservation(result, age)
            self._entries[identifier] = _Entry(at=now, confirmed=False)
            return Reservation(ReserveResult.RESERVED)

    def mark_processed(self, identifier: str) -> None:
        """Record a successful delivery; the TTL counts from this moment."""
        with self._lock:
            self._entries[identifier] = _Entry(at=self._clock(), confirmed=True)

    def release(self, identifier: str) -> None:
        """Drop an unconfirmed reservation (run ended without delivery)."""
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is not None and not entry.confirmed:
                del self._entries[identifier]

    def sweep(self) -> int:
        """Evict entries older than the TTL. Returns the eviction count."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if not self._live(e, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Dedup cache swept", evicted=len(expired), remaining=len(self))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:  # keep the timer alive
                logger.error("Dedup sweep failed", error=str(e), exc_info=True)

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info("Dedup sweep started", interval_seconds=self.sweep_interval_seconds, ttl_seconds=self.ttl.total_seconds())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def stats(self) -> dict[str, float | int]:
        return {
            "size": len(self),
            "ttl_seconds": self.ttl.total_seconds(),
            "sweep_interval_seconds": self.sweep_interval_seconds,
        }


__all__ = ["DedupCache", "Reservation", "ReserveResult"]
