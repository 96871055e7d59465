from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Any

import httpx
from pydantic import ValidationError

from assessment_session.core.config import settings
from assessment_session.core.errors import AuthError, NetworkError
from assessment_session.schemas.application import Application, ScheduledAssessment
from assessment_session.schemas.quiz import Question, ScoringResult

log = logging.getLogger(__name__)


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = payload.get(k)
        if v is not None and v != "":
            return v
    return None


def _parse_time(raw: object) -> time:
    # Upstream sends "HH:MM" or "HH:MM:SS".
    return time.fromisoformat(str(raw or "").strip())


def _scheduled_from_payload(raw: dict[str, Any] | None) -> ScheduledAssessment | None:
    if not raw:
        return None
    return ScheduledAssessment(
        quiz_set_id=int(raw["quiz_set_id"]),
        title=str(raw.get("quiz_title") or raw.get("title") or ""),
        date=date.fromisoformat(str(raw["date"])[:10]),
        start_time=_parse_time(raw.get("time") or raw.get("start_time")),
        duration_minutes=int(raw.get("duration") or raw.get("duration_minutes") or 0),
        pass_percentage=int(raw.get("pass_percentage") or settings.default_pass_percentage),
        total_questions=_first(raw, "total_questions", "question_count"),
    )


def application_from_payload(raw: dict[str, Any]) -> Application:
    """Normalize one upstream application payload.

    The listing endpoint has used several field names over time for the
    question counters; the first one present wins, so an exact 0 is kept.
    """

    scheduled = _scheduled_from_payload(raw.get("test_scheduled"))
    internship = raw.get("internship") or {}

    total = _first(raw, "total_questions", "question_count", "test_questions")
    if total is None and scheduled is not None:
        total = scheduled.total_questions

    location = internship.get("district") or ", ".join(
        str(x) for x in (raw.get("district"), raw.get("state"), raw.get("country")) if x
    )

    return Application(
        id=int(raw["id"]),
        status=str(raw.get("status") or "pending"),
        scheduled_assessment=scheduled,
        completed=bool(raw.get("test_completed") or False),
        score=raw.get("test_score"),
        passed=raw.get("test_passed"),
        total_questions=total,
        answered_questions=_first(raw, "answered_questions", "questions_answered", "attempted_questions"),
        title=str(internship.get("internship_role") or raw.get("title") or ""),
        company=str(internship.get("company_name") or raw.get("company") or ""),
        location=str(location or ""),
        applied_at=raw.get("applied_at"),
    )


def _is_upcoming(interview: dict[str, Any], now: datetime) -> bool:
    try:
        d = date.fromisoformat(str(interview.get("date"))[:10])
        t = _parse_time(interview.get("time"))
    except (TypeError, ValueError):
        return False
    return datetime.combine(d, t) >= now.replace(tzinfo=None)


def upcoming_interviews(interviews: list[dict[str, Any]], now: datetime) -> list[dict[str, Any]]:
    upcoming = [i for i in interviews if _is_upcoming(i, now)]
    return sorted(upcoming, key=lambda i: (str(i.get("date") or ""), str(i.get("time") or "")))


class RecruitmentApiClient:
    """Async client for the candidate-facing recruitment API."""

    def __init__(
        self,
        token: str | None,
        *,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | None = None,
    ):
        self.token = (token or "").strip() or None
        self.base_url = (str(base_url).strip() if base_url is not None else "") or str(
            settings.recruitment_api_base_url or ""
        ).strip()
        self._timeout = timeout or httpx.Timeout(
            connect=float(settings.recruitment_api_timeout_connect),
            read=float(settings.recruitment_api_timeout_read),
            write=10.0,
            pool=3.0,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url.rstrip("/"),
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        if not self.token:
            raise AuthError("No authentication token found. Please log in.")
        headers = {"Authorization": f"{settings.recruitment_auth_scheme} {self.token}"}
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, path: str, *, json: Any = None, headers: dict[str, str] | None = None) -> Any:
        h = self._headers(headers)
        try:
            r = await self._http().request(method, path, json=json, headers=h)
        except httpx.HTTPError as e:
            log.warning("recruitment api %s %s failed: %s: %s", method, path, type(e).__name__, e)
            raise NetworkError(f"request failed: {type(e).__name__}") from e

        if r.status_code in (401, 403):
            raise AuthError("authentication rejected by recruitment api")
        if r.status_code >= 400:
            snip = ""
            try:
                snip = (r.text or "")[:200]
            except Exception:
                snip = ""
            log.warning("recruitment api %s %s -> http_%s %s", method, path, r.status_code, snip)
            raise NetworkError(f"http_{r.status_code}")

        try:
            return r.json()
        except ValueError as e:
            raise NetworkError("invalid json from recruitment api") from e

    async def list_applications(self) -> list[Application]:
        data = await self._request("GET", "/candidates/list-applications/")
        if not isinstance(data, list):
            raise NetworkError("unexpected applications payload")
        out: list[Application] = []
        for raw in data:
            try:
                out.append(application_from_payload(raw))
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                log.warning("skipping malformed application payload id=%s: %s", (raw or {}).get("id"), e)
        return out

    async def fetch_questions(self, quiz_set_id: int) -> list[Question]:
        data = await self._request("GET", f"/candidates/quiz/{int(quiz_set_id)}/questions/")
        if not isinstance(data, list):
            raise NetworkError("unexpected questions payload")
        try:
            return [Question.model_validate(q) for q in data]
        except ValidationError as e:
            raise NetworkError("question payload failed validation") from e

    async def submit_results(
        self,
        application_id: int,
        answers: dict[int, int],
        *,
        idempotency_key: str | None = None,
    ) -> ScoringResult:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request(
            "POST",
            "/candidates/submit-test-results/",
            json={"internship_id": int(application_id), "answers": {str(k): int(v) for k, v in answers.items()}},
            headers=headers,
        )
        try:
            return ScoringResult.model_validate(data)
        except ValidationError as e:
            raise NetworkError("scoring payload failed validation") from e

    async def application_counts(self) -> dict[str, int]:
        data = await self._request("GET", "/candidates/application-counts/") or {}
        return {
            "applied": int(data.get("applied") or 0),
            "approved": int(data.get("approved") or 0),
            "rejected": int(data.get("rejected") or 0),
        }

    async def scheduled_interviews(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/candidates/scheduled-interviews/") or {}
        return list(data.get("interviews") or [])

    async def test_results(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/candidates/test-results/") or {}
        return list(data.get("results") or [])
