from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from assessment_session.core.config import settings
from assessment_session.schemas.application import Application, ApplicationStatus


class Availability(str, enum.Enum):
    inapplicable = "inapplicable"
    completed = "completed"
    not_yet_open = "not_yet_open"
    open = "open"
    closed = "closed"


@dataclass(frozen=True)
class AssessmentWindow:
    start: datetime
    end: datetime

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, math.floor((self.end - now).total_seconds()))


def assessment_tz() -> tzinfo:
    return ZoneInfo(str(settings.assessment_timezone or "UTC"))


def compute_window(
    day: date,
    start_time: time,
    duration_minutes: int,
    tz: tzinfo | None = None,
) -> AssessmentWindow:
    """Return the ``[start, end)`` window of a scheduled test.

    ``day`` and ``start_time`` are wall-clock values in ``tz`` (the configured
    assessment timezone when omitted). ``end - start`` is exactly
    ``duration_minutes``.
    """

    if int(duration_minutes) <= 0:
        raise ValueError("duration_minutes must be positive")
    zone = tz or assessment_tz()
    start = datetime.combine(day, start_time.replace(tzinfo=None), tzinfo=zone)
    return AssessmentWindow(start=start, end=start + timedelta(minutes=int(duration_minutes)))


def window_for(application: Application, tz: tzinfo | None = None) -> AssessmentWindow | None:
    sa = application.scheduled_assessment
    if sa is None:
        return None
    return compute_window(sa.date, sa.start_time, sa.duration_minutes, tz)


def is_available(now: datetime, application: Application, tz: tzinfo | None = None) -> bool:
    if application.status != ApplicationStatus.accepted or application.completed:
        return False
    window = window_for(application, tz)
    if window is None:
        return False
    return now >= window.start


def is_expired(now: datetime, application: Application, tz: tzinfo | None = None) -> bool:
    # Independent of status and availability: a never-opened window still expires.
    if application.completed:
        return False
    window = window_for(application, tz)
    if window is None:
        return False
    return now > window.end


def needs_timer(application: Application) -> bool:
    return (
        application.status == ApplicationStatus.accepted
        and application.scheduled_assessment is not None
        and not application.completed
    )


def classify(now: datetime, application: Application, tz: tzinfo | None = None) -> Availability:
    if application.status != ApplicationStatus.accepted or application.scheduled_assessment is None:
        return Availability.inapplicable
    if application.completed:
        return Availability.completed
    if is_expired(now, application, tz):
        return Availability.closed
    if is_available(now, application, tz):
        return Availability.open
    return Availability.not_yet_open


def format_remaining(seconds: int | None) -> str:
    if seconds is None:
        return "N/A"
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def is_urgent(seconds: int | None, threshold: int | None = None) -> bool:
    limit = int(settings.urgency_threshold_seconds if threshold is None else threshold)
    return seconds is not None and 0 < int(seconds) <= limit


def format_start(window: AssessmentWindow) -> str:
    # e.g. "Mar 4, 2025 at 2:00 PM"
    hour = window.start.hour % 12 or 12
    ampm = "PM" if window.start.hour >= 12 else "AM"
    return f"{window.start.strftime('%b')} {window.start.day}, {window.start.year} at {hour}:{window.start.minute:02d} {ampm}"


def availability_label(availability: Availability, window: AssessmentWindow | None) -> str:
    if availability == Availability.completed:
        return "Test Completed"
    if availability == Availability.closed:
        return "Quiz Closed - Time Expired"
    if availability == Availability.open:
        return "Attend Test"
    if availability == Availability.not_yet_open and window is not None:
        return f"Quiz will start on {format_start(window)}"
    return ""


def result_label(application: Application) -> str | None:
    if not application.completed or application.score is None:
        return None
    verdict = "PASSED" if application.passed else "FAILED"
    return f"Test Completed / {verdict} / {application.score}%"
