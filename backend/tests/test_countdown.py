import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from assessment_session.core.errors import TimerAuthorityError
from assessment_session.services.countdown import (
    TRANSITIONS,
    Authority,
    CountdownCoordinator,
    CountdownTimer,
    SignalKind,
)
from assessment_session.services.events import TimerRole
from assessment_session.services.scheduler import AssessmentWindow
from conftest import make_application

UTC = timezone.utc
START = datetime(2026, 3, 4, 14, 0, tzinfo=UTC)
END = START + timedelta(minutes=30)


def _coordinator(**kwargs):
    return CountdownCoordinator(tz=UTC, interval=1.0, autostart=False, **kwargs)


def _kinds(signals):
    return [(s.kind, s.application_id, s.role) for s in signals]


def test_session_timer_warns_once_then_expires():
    t = CountdownTimer(1, TimerRole.session, AssessmentWindow(START, END), interval=1.0, warning_threshold=60)
    assert t.tick(START - timedelta(seconds=1)) == []
    assert t.remaining is None

    assert t.tick(END - timedelta(seconds=61)) == []
    assert t.tick(END - timedelta(seconds=60)) == [SignalKind.warning]
    assert t.tick(END - timedelta(seconds=30)) == []
    assert t.remaining == 30

    assert t.tick(END) == [SignalKind.expired]
    assert t.stopped
    assert t.tick(END + timedelta(seconds=1)) == []


def test_dashboard_timer_never_warns():
    t = CountdownTimer(1, TimerRole.dashboard, AssessmentWindow(START, END), interval=1.0, warning_threshold=60)
    assert t.tick(END - timedelta(seconds=10)) == []
    assert t.tick(END) == [SignalKind.expired]


def test_expiry_waits_for_the_exact_end():
    t = CountdownTimer(1, TimerRole.dashboard, AssessmentWindow(START, END), interval=1.0, warning_threshold=60)
    assert t.tick(END - timedelta(milliseconds=500)) == []
    assert t.remaining == 0
    assert not t.stopped
    assert t.tick(END - timedelta(microseconds=1)) == []
    assert t.tick(END) == [SignalKind.expired]


def test_transition_table_has_no_leave_without_session():
    assert (Authority.none, "leave") not in TRANSITIONS
    assert (Authority.dashboard, "leave") not in TRANSITIONS
    assert (Authority.session, "untrack") not in TRANSITIONS


def test_authority_follows_session_lifecycle():
    c = _coordinator()
    app = make_application(1)
    now = START + timedelta(minutes=5)

    c.sync([app], now)
    assert c.authority(1) == Authority.dashboard

    c.enter_session(app, now)
    assert c.authority(1) == Authority.session
    assert c.session_timer is not None

    c.leave_session(app, now)
    assert c.authority(1) == Authority.dashboard
    assert c.session_timer is None

    c.complete(1)
    assert c.authority(1) == Authority.none
    assert 1 not in c.dashboard_timers


def test_enter_without_window_is_rejected():
    c = _coordinator()
    with pytest.raises(TimerAuthorityError):
        c.enter_session(make_application(1, scheduled=False), START)


def test_expiry_surfaces_only_from_authority_and_once():
    c = _coordinator()
    app = make_application(1)
    now = START + timedelta(minutes=5)
    c.sync([app], now)
    c.enter_session(app, now)

    signals = c.tick_all(END + timedelta(seconds=1))
    assert _kinds(signals) == [(SignalKind.expired, 1, TimerRole.session)]

    c.leave_session(app, END + timedelta(seconds=2))
    assert c.tick_all(END + timedelta(seconds=3)) == []


def test_dashboard_expiry_for_unopened_application():
    c = _coordinator()
    c.sync([make_application(1), make_application(2, start=START + timedelta(hours=2))], START)

    signals = c.tick_all(END)
    assert _kinds(signals) == [(SignalKind.expired, 1, TimerRole.dashboard)]
    assert c.tick_all(END + timedelta(seconds=5)) == []


def test_stale_generation_is_ignored():
    c = _coordinator()
    app = make_application(1)
    c.sync([app], START)
    timer = c.timer(1, TimerRole.dashboard)
    assert c.tick(1, TimerRole.dashboard, timer.generation + 1000, END) == []
    assert _kinds(c.tick(1, TimerRole.dashboard, timer.generation, END)) == [
        (SignalKind.expired, 1, TimerRole.dashboard)
    ]


def test_sync_drops_applications_that_vanished_or_completed():
    c = _coordinator()
    c.sync([make_application(1), make_application(2)], START)
    assert set(c.dashboard_timers) == {1, 2}

    c.sync([make_application(2, completed=True)], START)
    assert c.dashboard_timers == {}
    assert c.authority(1) == Authority.none
    assert c.authority(2) == Authority.none


def test_running_timers_post_ticks_and_cancel_cleanly():
    async def run():
        ticks = []
        c = CountdownCoordinator(emit=ticks.append, tz=UTC, interval=0.01, autostart=True)
        app = make_application(1)
        c.sync([app], START)
        c.enter_session(app, START)
        assert len(c.live_timers()) == 2

        await asyncio.sleep(0.05)
        assert {t.role for t in ticks} == {TimerRole.dashboard, TimerRole.session}

        c.cancel_all()
        await asyncio.sleep(0)
        assert c.live_timers() == []
        seen = len(ticks)
        await asyncio.sleep(0.03)
        assert len(ticks) == seen

    asyncio.run(run())
