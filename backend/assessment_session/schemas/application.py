from __future__ import annotations

import datetime as dt
import enum
from typing import Any

from pydantic import BaseModel, Field


class ApplicationStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


class ScheduledAssessment(BaseModel):
    quiz_set_id: int
    title: str = ""
    date: dt.date
    start_time: dt.time
    duration_minutes: int = Field(gt=0)
    pass_percentage: int = 60
    total_questions: int | None = None


class Application(BaseModel):
    id: int
    status: ApplicationStatus
    scheduled_assessment: ScheduledAssessment | None = None
    completed: bool = False
    score: int | None = None
    passed: bool | None = None
    total_questions: int | None = None
    answered_questions: int | None = None

    # Display fields, passed through from the upstream listing.
    title: str = ""
    company: str = ""
    location: str = ""
    applied_at: str | None = None


class DashboardEntry(BaseModel):
    application_id: int
    title: str
    company: str
    status: ApplicationStatus
    availability: str
    label: str
    quiz_title: str | None = None
    window_start: dt.datetime | None = None
    window_end: dt.datetime | None = None
    remaining_seconds: int | None = None
    remaining_label: str = "N/A"
    urgent: bool = False
    completed: bool = False
    score: int | None = None
    passed: bool | None = None
    result_label: str | None = None


class DashboardResponse(BaseModel):
    now: dt.datetime
    applications: list[DashboardEntry]


class WidgetResult(BaseModel):
    ok: bool
    data: Any = None
    error: str | None = None


class DashboardOverview(BaseModel):
    counts: WidgetResult
    upcoming_interviews: WidgetResult
    test_results: WidgetResult
