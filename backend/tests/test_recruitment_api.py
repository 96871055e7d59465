import asyncio
import json
from datetime import date, datetime, time, timezone

import httpx
import pytest

from assessment_session.core.errors import AuthError, NetworkError
from assessment_session.schemas.application import ApplicationStatus
from assessment_session.services.recruitment_api import (
    RecruitmentApiClient,
    application_from_payload,
    upcoming_interviews,
)

APPLICATION_PAYLOAD = {
    "id": 7,
    "status": "accepted",
    "applied_at": "2026-02-01T10:00:00Z",
    "internship": {"internship_role": "Data Intern", "company_name": "Acme", "district": "Pune"},
    "test_scheduled": {
        "quiz_set_id": 42,
        "quiz_title": "Python Basics",
        "date": "2026-03-04",
        "time": "14:00:00",
        "duration": 30,
    },
    "test_completed": True,
    "test_score": 80,
    "test_passed": True,
    "question_count": 10,
    "questions_answered": 8,
}


def _client(handler, token="tok-123"):
    return RecruitmentApiClient(token, base_url="http://upstream.test/api", transport=httpx.MockTransport(handler))


def test_application_payload_mapping():
    app = application_from_payload(APPLICATION_PAYLOAD)
    assert app.id == 7
    assert app.status == ApplicationStatus.accepted
    assert app.title == "Data Intern" and app.company == "Acme" and app.location == "Pune"
    assert app.completed and app.score == 80 and app.passed is True
    assert (app.total_questions, app.answered_questions) == (10, 8)

    sa = app.scheduled_assessment
    assert sa.quiz_set_id == 42
    assert sa.title == "Python Basics"
    assert sa.date == date(2026, 3, 4)
    assert sa.start_time == time(14, 0)
    assert sa.duration_minutes == 30
    assert sa.pass_percentage == 60


def test_application_without_schedule_or_counts():
    app = application_from_payload({"id": "3", "status": "pending"})
    assert app.id == 3
    assert app.scheduled_assessment is None
    assert app.total_questions is None
    assert app.answered_questions is None


def test_exact_zero_counters_are_kept():
    payload = {**APPLICATION_PAYLOAD, "question_count": None, "total_questions": 10, "answered_questions": 0}
    payload.pop("questions_answered")
    app = application_from_payload(payload)
    assert (app.total_questions, app.answered_questions) == (10, 0)

    app = application_from_payload({**APPLICATION_PAYLOAD, "answered_questions": 0, "questions_answered": 8})
    assert app.answered_questions == 0


def test_list_applications_sends_token_and_skips_malformed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["path"] = request.url.path
        broken = {"id": 8, "status": "accepted", "test_scheduled": {"quiz_set_id": 1, "date": "2026-03-04", "time": "x"}}
        return httpx.Response(200, json=[APPLICATION_PAYLOAD, broken])

    async def call():
        api = _client(handler)
        try:
            return await api.list_applications()
        finally:
            await api.aclose()

    apps = asyncio.run(call())
    assert [a.id for a in apps] == [7]
    assert seen["auth"] == "Token tok-123"
    assert seen["path"] == "/api/candidates/list-applications/"


def test_submit_posts_answers_with_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("idempotency-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"score": 67, "passed": True, "test_completed": True})

    async def call():
        api = _client(handler)
        try:
            return await api.submit_results(7, {101: 2, 102: 0}, idempotency_key="abc")
        finally:
            await api.aclose()

    result = asyncio.run(call())
    assert result.score == 67 and result.passed
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/candidates/submit-test-results/"
    assert seen["key"] == "abc"
    assert seen["body"] == {"internship_id": 7, "answers": {"101": 2, "102": 0}}


@pytest.mark.parametrize(
    "response, error",
    [
        (httpx.Response(401, json={"detail": "bad token"}), AuthError),
        (httpx.Response(403, json={"detail": "forbidden"}), AuthError),
        (httpx.Response(503, text="unavailable"), NetworkError),
        (httpx.Response(200, text="<html>"), NetworkError),
    ],
)
def test_error_mapping(response, error):
    async def call():
        api = _client(lambda request: response)
        try:
            return await api.fetch_questions(42)
        finally:
            await api.aclose()

    with pytest.raises(error):
        asyncio.run(call())


def test_transport_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def call():
        api = _client(handler)
        try:
            return await api.application_counts()
        finally:
            await api.aclose()

    with pytest.raises(NetworkError):
        asyncio.run(call())


def test_missing_token_fails_before_any_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=[])

    async def call():
        api = _client(handler, token=None)
        try:
            return await api.list_applications()
        finally:
            await api.aclose()

    with pytest.raises(AuthError):
        asyncio.run(call())
    assert calls == []


def test_upcoming_interviews_filters_past_and_sorts():
    now = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
    interviews = [
        {"id": 3, "date": "2026-03-20", "time": "10:00"},
        {"id": 1, "date": "2026-03-01", "time": "09:00"},
        {"id": 2, "date": "2026-03-04", "time": "12:30"},
        {"id": 4, "date": "not a date", "time": "10:00"},
    ]
    assert [i["id"] for i in upcoming_interviews(interviews, now)] == [2, 3]
