import sys
import time
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from assessment_session.core.errors import NetworkError
from assessment_session.core.kv_store import RedisKeyValueStore
from assessment_session.schemas.application import Application, ScheduledAssessment
from assessment_session.schemas.quiz import Question, QuestionOption, ScoringResult


class _MemoryRedis:
    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def ping(self):
        return True

    def _now(self) -> float:
        return time.time()

    def _get_entry(self, key: str):
        v = self._data.get(key)
        if not v:
            return None
        value, exp = v
        if exp is not None and exp <= self._now():
            self._data.pop(key, None)
            return None
        return value, exp

    def get(self, key: str):
        entry = self._get_entry(key)
        return entry[0] if entry else None

    def set(self, key: str, value: str, ex: int | None = None):
        exp = (self._now() + int(ex)) if ex else None
        self._data[key] = (value, exp)
        return True

    def delete(self, key: str):
        self._data.pop(key, None)
        return 1

    def ttl(self, key: str):
        entry = self._get_entry(key)
        if not entry:
            return -2
        _, exp = entry
        if exp is None:
            return -1
        return max(0, int(exp - self._now()))


# Stub Redis at import time (health checks + default runtime stores).
_mem_redis = _MemoryRedis()
import assessment_session.core.redis_client as redis_client_module

redis_client_module.get_redis = lambda: _mem_redis

import assessment_session.core.kv_store as kv_store_module

kv_store_module.get_redis = lambda: _mem_redis


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeApi:
    """Stands in for RecruitmentApiClient; records every scoring call."""

    def __init__(self, applications=None, questions=None):
        self.applications: list[Application] = list(applications or [])
        self.questions: dict[int, list[Question]] = dict(questions or {})
        self.submit_calls: list[tuple[int, dict[int, int], str | None]] = []
        self.question_calls = 0
        self.submit_error = None
        self.question_error = None
        self.widget_errors: dict[str, Exception] = {}
        self.gate = None
        self.score = 75
        self.passed = True
        self.closed = False

    async def list_applications(self):
        return [a.model_copy(deep=True) for a in self.applications]

    async def fetch_questions(self, quiz_set_id):
        self.question_calls += 1
        if self.question_error is not None:
            raise self.question_error
        return list(self.questions.get(int(quiz_set_id), []))

    async def submit_results(self, application_id, answers, *, idempotency_key=None):
        self.submit_calls.append((int(application_id), dict(answers), idempotency_key))
        if self.gate is not None:
            await self.gate.wait()
        if self.submit_error is not None:
            raise self.submit_error
        return ScoringResult(score=self.score, passed=self.passed)

    async def _widget(self, name, value):
        err = self.widget_errors.get(name)
        if err is not None:
            raise err
        return value

    async def application_counts(self):
        return await self._widget("counts", {"applied": 3, "approved": 1, "rejected": 1})

    async def scheduled_interviews(self):
        return await self._widget(
            "interviews",
            [
                {"id": 1, "date": "2026-03-01", "time": "09:00"},
                {"id": 2, "date": "2026-03-10", "time": "11:30"},
            ],
        )

    async def test_results(self):
        return await self._widget("results", [{"internship_id": 7, "score": 80}])

    async def aclose(self):
        self.closed = True


NOW = datetime(2026, 3, 4, 14, 10, tzinfo=timezone.utc)


def make_questions(n: int = 3, options: int = 4) -> list[Question]:
    return [
        Question(
            id=100 + i,
            text=f"Question {i + 1}?",
            options=[QuestionOption(id=1000 + i * 10 + j, text=f"Option {j + 1}") for j in range(options)],
        )
        for i in range(n)
    ]


def make_application(
    app_id: int = 1,
    *,
    start: datetime = datetime(2026, 3, 4, 14, 0, tzinfo=timezone.utc),
    duration: int = 30,
    status: str = "accepted",
    completed: bool = False,
    quiz_set_id: int | None = None,
    scheduled: bool = True,
    **fields,
) -> Application:
    sa = None
    if scheduled:
        sa = ScheduledAssessment(
            quiz_set_id=quiz_set_id or app_id * 10,
            title=f"Quiz {app_id}",
            date=date(start.year, start.month, start.day),
            start_time=start.time(),
            duration_minutes=duration,
        )
    return Application(
        id=app_id,
        status=status,
        scheduled_assessment=sa,
        completed=completed,
        title=f"Role {app_id}",
        company="Acme",
        **fields,
    )


@pytest.fixture()
def memory_redis():
    return _MemoryRedis()


@pytest.fixture()
def store(memory_redis):
    return RedisKeyValueStore(memory_redis)


@pytest.fixture()
def clock():
    return FakeClock(NOW)


@pytest.fixture()
def network_error():
    return NetworkError("request failed: ConnectError")
