from __future__ import annotations

from pydantic import BaseModel


class QuestionOption(BaseModel):
    id: int
    text: str


class Question(BaseModel):
    id: int
    text: str
    options: list[QuestionOption]


class ScoringResult(BaseModel):
    score: int
    passed: bool
    test_completed: bool = True
    test_score: int | None = None
    test_passed: bool | None = None


class AnswerRequest(BaseModel):
    option_index: int


class NavigateRequest(BaseModel):
    direction: str  # next|previous
