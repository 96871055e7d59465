from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Callable

from assessment_session.core.config import settings
from assessment_session.core.errors import TimerAuthorityError
from assessment_session.schemas.application import Application
from assessment_session.services.events import TimerRole, TimerTick
from assessment_session.services.scheduler import AssessmentWindow, needs_timer, window_for

log = logging.getLogger(__name__)

_generations = itertools.count(1)


class Authority(str, enum.Enum):
    none = "none"
    dashboard = "dashboard"
    session = "session"


# (current authority, transition) -> next authority. Anything else is a bug.
TRANSITIONS: dict[tuple[Authority, str], Authority] = {
    (Authority.none, "track"): Authority.dashboard,
    (Authority.dashboard, "track"): Authority.dashboard,
    (Authority.session, "track"): Authority.session,
    (Authority.none, "enter"): Authority.session,
    (Authority.dashboard, "enter"): Authority.session,
    (Authority.session, "enter"): Authority.session,
    (Authority.session, "leave"): Authority.dashboard,
    (Authority.none, "untrack"): Authority.none,
    (Authority.dashboard, "untrack"): Authority.none,
    (Authority.none, "complete"): Authority.none,
    (Authority.dashboard, "complete"): Authority.none,
    (Authority.session, "complete"): Authority.none,
}


class SignalKind(str, enum.Enum):
    warning = "warning"
    expired = "expired"


@dataclass(frozen=True)
class TimerSignal:
    kind: SignalKind
    application_id: int
    role: TimerRole


class CountdownTimer:
    """Remaining-seconds countdown for one application window.

    ``tick`` is pure bookkeeping; ``start`` attaches an asyncio task that posts a
    ``TimerTick`` every ``interval`` seconds until the timer is stopped.
    """

    def __init__(
        self,
        application_id: int,
        role: TimerRole,
        window: AssessmentWindow,
        *,
        interval: float,
        warning_threshold: int,
        emit: Callable[[TimerTick], None] | None = None,
    ):
        self.application_id = int(application_id)
        self.role = role
        self.window = window
        self.interval = float(interval)
        self.warning_threshold = int(warning_threshold)
        self.generation = next(_generations)
        self.remaining: int | None = None
        self.warning_issued = False
        self.stopped = False
        self._emit = emit
        self._task: asyncio.Task | None = None

    def tick(self, now: datetime) -> list[SignalKind]:
        if self.stopped:
            return []
        if now < self.window.start:
            self.remaining = None
            return []

        self.remaining = self.window.remaining_seconds(now)
        if self.window.end - now <= timedelta(0):
            self.stop()
            return [SignalKind.expired]
        if self.role == TimerRole.session and not self.warning_issued and self.remaining <= self.warning_threshold:
            self.warning_issued = True
            return [SignalKind.warning]
        return []

    def start(self) -> None:
        if self._emit is None or self._task is not None or self.stopped:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self.stopped:
            await asyncio.sleep(self.interval)
            if self.stopped or self._emit is None:
                return
            self._emit(TimerTick(self.application_id, self.role, self.generation))

    def stop(self) -> None:
        self.stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


class CountdownCoordinator:
    """Dashboard timers per outstanding application plus one session timer.

    Expiry actions are only surfaced for the timer that currently holds
    authority over an application, and at most once per application.
    """

    def __init__(
        self,
        *,
        emit: Callable[[TimerTick], None] | None = None,
        tz: tzinfo | None = None,
        interval: float | None = None,
        warning_threshold: int | None = None,
        autostart: bool = True,
    ):
        self._emit = emit
        self.tz = tz
        self.interval = float(interval if interval is not None else settings.tick_interval_seconds)
        self.warning_threshold = int(
            warning_threshold if warning_threshold is not None else settings.warning_threshold_seconds
        )
        self.autostart = autostart
        self.dashboard_timers: dict[int, CountdownTimer] = {}
        self.session_timer: CountdownTimer | None = None
        self._authority: dict[int, Authority] = {}
        self._expiry_issued: set[int] = set()

    def authority(self, application_id: int) -> Authority:
        return self._authority.get(int(application_id), Authority.none)

    def _transition(self, application_id: int, action: str) -> Authority:
        current = self.authority(application_id)
        nxt = TRANSITIONS.get((current, action))
        if nxt is None:
            raise TimerAuthorityError(f"invalid timer transition {current.value} -/{action}/-> for {application_id}")
        if nxt == Authority.none:
            self._authority.pop(int(application_id), None)
        else:
            self._authority[int(application_id)] = nxt
        if nxt != current:
            log.debug("timer authority application_id=%s %s -> %s", application_id, current.value, nxt.value)
        return nxt

    def _new_timer(self, application_id: int, role: TimerRole, window: AssessmentWindow) -> CountdownTimer:
        timer = CountdownTimer(
            application_id,
            role,
            window,
            interval=self.interval,
            warning_threshold=self.warning_threshold,
            emit=self._emit,
        )
        if self.autostart:
            timer.start()
        return timer

    def _ensure_dashboard_timer(self, application: Application) -> CountdownTimer | None:
        existing = self.dashboard_timers.get(application.id)
        if existing is not None and not existing.stopped:
            return existing
        window = window_for(application, self.tz)
        if window is None:
            return None
        timer = self._new_timer(application.id, TimerRole.dashboard, window)
        self.dashboard_timers[application.id] = timer
        return timer

    def _drop_dashboard_timer(self, application_id: int) -> None:
        timer = self.dashboard_timers.pop(int(application_id), None)
        if timer is not None:
            timer.stop()

    def _filter(self, timer: CountdownTimer, kinds: list[SignalKind]) -> list[TimerSignal]:
        out: list[TimerSignal] = []
        owner = self.authority(timer.application_id)
        is_owner = owner.value == timer.role.value
        for kind in kinds:
            if not is_owner:
                continue
            if kind == SignalKind.expired:
                if timer.application_id in self._expiry_issued:
                    continue
                self._expiry_issued.add(timer.application_id)
            out.append(TimerSignal(kind, timer.application_id, timer.role))
        return out

    def sync(self, applications: list[Application], now: datetime) -> list[TimerSignal]:
        """Align dashboard timers with the current application list."""

        signals: list[TimerSignal] = []
        seen: set[int] = set()
        for app in applications:
            seen.add(app.id)
            if not needs_timer(app):
                self.complete(app.id)
                continue
            self._transition(app.id, "track")
            timer = self._ensure_dashboard_timer(app)
            if timer is not None:
                signals.extend(self._filter(timer, timer.tick(now)))

        for app_id in list(self.dashboard_timers):
            if app_id not in seen and self.authority(app_id) != Authority.session:
                self._drop_dashboard_timer(app_id)
                self._transition(app_id, "untrack")
        return signals

    def enter_session(self, application: Application, now: datetime) -> list[TimerSignal]:
        window = window_for(application, self.tz)
        if window is None:
            raise TimerAuthorityError(f"application {application.id} has no assessment window")
        self._transition(application.id, "enter")
        if self.session_timer is not None:
            self.session_timer.stop()
        self.session_timer = self._new_timer(application.id, TimerRole.session, window)
        return self._filter(self.session_timer, self.session_timer.tick(now))

    def leave_session(self, application: Application, now: datetime) -> list[TimerSignal]:
        timer = self.session_timer
        if timer is not None and timer.application_id == application.id:
            timer.stop()
            self.session_timer = None

        if application.completed or not needs_timer(application):
            self.complete(application.id)
            return []
        if self.authority(application.id) != Authority.session:
            return []
        self._transition(application.id, "leave")
        dash = self._ensure_dashboard_timer(application)
        if dash is None:
            return []
        return self._filter(dash, dash.tick(now))

    def complete(self, application_id: int) -> None:
        self._drop_dashboard_timer(application_id)
        if self.session_timer is not None and self.session_timer.application_id == int(application_id):
            self.session_timer.stop()
            self.session_timer = None
        self._transition(application_id, "complete")

    def tick(self, application_id: int, role: TimerRole, generation: int, now: datetime) -> list[TimerSignal]:
        timer = self.timer(application_id, role)
        if timer is None or timer.generation != generation:
            return []
        return self._filter(timer, timer.tick(now))

    def tick_all(self, now: datetime) -> list[TimerSignal]:
        signals: list[TimerSignal] = []
        for timer in list(self.dashboard_timers.values()):
            signals.extend(self._filter(timer, timer.tick(now)))
        if self.session_timer is not None:
            signals.extend(self._filter(self.session_timer, self.session_timer.tick(now)))
        return signals

    def timer(self, application_id: int, role: TimerRole) -> CountdownTimer | None:
        if role == TimerRole.session:
            t = self.session_timer
            return t if t is not None and t.application_id == int(application_id) else None
        return self.dashboard_timers.get(int(application_id))

    def remaining(self, application_id: int) -> int | None:
        """Display value: the session timer when it owns the application, else the dashboard timer."""

        timer = None
        if self.authority(application_id) == Authority.session:
            timer = self.timer(application_id, TimerRole.session)
        if timer is None:
            timer = self.timer(application_id, TimerRole.dashboard)
        return timer.remaining if timer is not None else None

    def live_timers(self) -> list[CountdownTimer]:
        timers = [t for t in self.dashboard_timers.values() if t.running]
        if self.session_timer is not None and self.session_timer.running:
            timers.append(self.session_timer)
        return timers

    def cancel_all(self) -> None:
        for timer in list(self.dashboard_timers.values()):
            timer.stop()
        self.dashboard_timers.clear()
        if self.session_timer is not None:
            self.session_timer.stop()
            self.session_timer = None
        self._authority.clear()
