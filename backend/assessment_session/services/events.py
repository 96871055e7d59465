"""Messages consumed by the dashboard runtime.

Timer tasks, user actions and network completions never touch session state
directly; they post one of these onto the runtime queue and the single
consumer applies them in order.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Union

from assessment_session.schemas.application import Application
from assessment_session.schemas.quiz import Question
from assessment_session.schemas.session import SubmitTrigger


class TimerRole(str, enum.Enum):
    dashboard = "dashboard"
    session = "session"


@dataclass(frozen=True)
class ApplicationsLoaded:
    applications: list[Application]


@dataclass(frozen=True)
class TimerTick:
    application_id: int
    role: TimerRole
    generation: int


@dataclass(frozen=True)
class CheckpointTick:
    application_id: int
    generation: int


@dataclass(frozen=True)
class SessionOpened:
    application_id: int
    questions: list[Question] = field(default_factory=list)
    load_error: str | None = None


@dataclass(frozen=True)
class AnswerSelected:
    application_id: int
    question_id: int
    option_index: int


@dataclass(frozen=True)
class QuestionNavigated:
    application_id: int
    direction: str


@dataclass(frozen=True)
class SubmitRequested:
    application_id: int
    trigger: SubmitTrigger = SubmitTrigger.manual


@dataclass(frozen=True)
class SubmissionFinished:
    application_id: int
    trigger: SubmitTrigger
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class SessionClosed:
    application_id: int


SessionEvent = Union[
    ApplicationsLoaded,
    TimerTick,
    CheckpointTick,
    SessionOpened,
    AnswerSelected,
    QuestionNavigated,
    SubmitRequested,
    SubmissionFinished,
    SessionClosed,
]
