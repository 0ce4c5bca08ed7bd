"""Background cache warming for recently active users."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Set

log = logging.getLogger(__name__)


class CacheWarmer:
    """Recomputes first feed pages for active users ahead of their next visit.

    ``warm_fn(user_id)`` does the actual work. A user is skipped while a warm
    for them is in flight, and when they were warmed less than half a warm
    interval ago.
    """

    def __init__(
        self,
        warm_fn: Callable[[str], Awaitable[object]],
        warm_interval: float = 15 * 60.0,
        active_window: float = 24 * 3600.0,
        concurrency: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.warm_fn = warm_fn
        self.warm_interval = warm_interval
        self.active_window = active_window
        self.concurrency = max(1, concurrency)
        self.clock = clock
        self.active: Dict[str, float] = {}
        self.last_warm: Dict[str, float] = {}
        self.in_flight: Set[str] = set()
        self.cycles = 0
        self.started_at = clock()

    def mark_active(self, user_id: str) -> None:
        self.active[user_id] = self.clock()

    def _should_skip(self, user_id: str, now: float) -> Optional[str]:
        if user_id in self.in_flight:
            return "in_flight"
        last = self.last_warm.get(user_id)
        if last is not None and now - last < self.warm_interval * 0.5:
            return "recently_warmed"
        return None

    async def warm_user(self, user_id: str) -> str:
        now = self.clock()
        reason = self._should_skip(user_id, now)
        if reason:
            log.debug(f"Cache warmer: skipping {user_id}, {reason}")
            return reason
        self.in_flight.add(user_id)
        self.last_warm[user_id] = now
        try:
            started = time.perf_counter()
            await self.warm_fn(user_id)
            log.debug(f"Cache warmer: {user_id} warmed in {(time.perf_counter() - started) * 1000:.0f}ms")
            return "warmed"
        finally:
            self.in_flight.discard(user_id)

    async def warm_cycle(self) -> dict:
        now = self.clock()
        users = sorted(uid for uid, seen in self.active.items() if now - seen <= self.active_window)
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(uid: str) -> str:
            async with sem:
                return await self.warm_user(uid)

        results = await asyncio.gather(*(_one(uid) for uid in users), return_exceptions=True)
        summary = {"users": len(users), "warmed": 0, "skipped": 0, "failed": 0}
        for uid, res in zip(users, results):
            if isinstance(res, BaseException):
                summary["failed"] += 1
                log.error(f"Cache warmer: error warming {uid}: {res}")
            elif res == "warmed":
                summary["warmed"] += 1
            else:
                summary["skipped"] += 1
        self.cycles += 1
        log.info(f"Cache warmer: cycle complete {summary}")
        return summary

    def cleanup_inactive(self) -> int:
        now = self.clock()
        stale = [uid for uid, seen in self.active.items() if now - seen > self.active_window]
        for uid in stale:
            self.active.pop(uid, None)
            self.last_warm.pop(uid, None)
        if stale:
            log.info(f"Cache warmer: dropped {len(stale)} inactive users, {len(self.active)} remain")
        return len(stale)

    async def force_warm(self, user_id: str) -> str:
        self.mark_active(user_id)
        self.last_warm.pop(user_id, None)
        return await self.warm_user(user_id)

    def stats(self) -> dict:
        return {
            "active_users": len(self.active),
            "in_flight": len(self.in_flight),
            "recently_warmed": len(self.last_warm),
            "cycles": self.cycles,
            "uptime": self.clock() - self.started_at,
        }
