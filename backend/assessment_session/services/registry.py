from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable

from assessment_session.core.clock import Clock, utc_now
from assessment_session.core.config import settings
from assessment_session.core.kv_store import RedisKeyValueStore
from assessment_session.services.dashboard import DashboardRuntime
from assessment_session.services.recruitment_api import RecruitmentApiClient

log = logging.getLogger(__name__)

RuntimeFactory = Callable[[str], DashboardRuntime]


def default_runtime(token: str) -> DashboardRuntime:
    return DashboardRuntime(RecruitmentApiClient(token), RedisKeyValueStore())


def _fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class RuntimeRegistry:
    """One live dashboard runtime per candidate credential.

    Every lookup also closes runtimes that have been idle for longer than
    ``idle_seconds``. A runtime with a submission in flight is never evicted;
    a candidate coming back later simply gets a fresh runtime, which catches up
    on any window that closed meanwhile on its first evaluation.
    """

    def __init__(
        self,
        factory: RuntimeFactory | None = None,
        *,
        idle_seconds: int | None = None,
        clock: Clock = utc_now,
    ):
        self._factory = factory or default_runtime
        self._idle = timedelta(seconds=int(settings.runtime_idle_seconds if idle_seconds is None else idle_seconds))
        self._clock = clock
        self._runtimes: dict[str, DashboardRuntime] = {}
        self._last_seen: dict[str, datetime] = {}

    async def get(self, token: str) -> DashboardRuntime:
        now = self._clock()
        key = _fingerprint(token)
        await self._evict_idle(now, keep=key)

        runtime = self._runtimes.get(key)
        if runtime is None or runtime.closed:
            runtime = self._factory(token)
            self._runtimes[key] = runtime
            log.info("dashboard runtime created candidate=%s", key)
        self._last_seen[key] = now
        return runtime

    async def _evict_idle(self, now: datetime, *, keep: str) -> None:
        for key, runtime in list(self._runtimes.items()):
            if key == keep:
                continue
            last_seen = self._last_seen.get(key, now)
            if now - last_seen < self._idle:
                continue
            if runtime.submissions.in_flight():
                continue
            self._runtimes.pop(key, None)
            self._last_seen.pop(key, None)
            await runtime.close()
            log.info("dashboard runtime evicted candidate=%s idle_since=%s", key, last_seen.isoformat())

    def __len__(self) -> int:
        return len(self._runtimes)

    def __contains__(self, token: str) -> bool:
        return _fingerprint(token) in self._runtimes

    async def close_all(self) -> None:
        runtimes = list(self._runtimes.values())
        self._runtimes.clear()
        self._last_seen.clear()
        for runtime in runtimes:
            await runtime.close()
