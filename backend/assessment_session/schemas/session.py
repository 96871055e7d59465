from __future__ import annotations

import datetime as dt
import enum

from pydantic import BaseModel, Field

from assessment_session.schemas.quiz import Question


class SessionState(str, enum.Enum):
    not_open = "not_open"
    active = "active"
    submitting = "submitting"
    submitted = "submitted"
    time_expired = "time_expired"
    error = "error"


FROZEN_STATES = frozenset({SessionState.submitting, SessionState.submitted, SessionState.time_expired})


class SubmitTrigger(str, enum.Enum):
    manual = "manual"
    expiry = "expiry"


class SessionCheckpoint(BaseModel):
    answers: dict[int, int] = Field(default_factory=dict)
    current_question_index: int = 0
    saved_at: int  # epoch milliseconds


class CompletionStats(BaseModel):
    total_questions: int
    answered_questions: int


class CompletionRecord(BaseModel):
    score: int | None = None
    passed: bool | None = None
    total_questions: int
    answered_questions: int
    completed_at: dt.datetime
    source: str = "submission"


class SessionResult(BaseModel):
    score: int
    passed: bool
    total_questions: int
    answered_questions: int
    unanswered_note: str | None = None


class SessionView(BaseModel):
    application_id: int
    state: SessionState
    title: str = ""
    company: str = ""
    questions: list[Question] = Field(default_factory=list)
    current_question_index: int = 0
    answers: dict[int, int] = Field(default_factory=dict)
    remaining_seconds: int | None = None
    remaining_label: str = "N/A"
    urgent: bool = False
    warning_issued: bool = False
    banner: str | None = None
    message: str | None = None
    result: SessionResult | None = None
