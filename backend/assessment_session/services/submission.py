from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass

from assessment_session.core.clock import Clock, utc_now
from assessment_session.core.config import settings
from assessment_session.core.errors import AssessmentError, NetworkError
from assessment_session.core.kv_store import KeyValueStore, checkpoint_key, stats_key, submit_key_key
from assessment_session.schemas.application import Application
from assessment_session.schemas.quiz import ScoringResult
from assessment_session.schemas.session import CompletionRecord, CompletionStats, SubmitTrigger
from assessment_session.services.recruitment_api import RecruitmentApiClient

log = logging.getLogger(__name__)


class SubmissionPhase(str, enum.Enum):
    idle = "idle"
    submitting = "submitting"
    submitted = "submitted"


@dataclass
class SubmissionOutcome:
    application_id: int
    trigger: SubmitTrigger
    ok: bool
    result: ScoringResult | None = None
    stats: CompletionStats | None = None
    error: AssessmentError | None = None


class SubmissionController:
    """Single-flight scoring submission per application.

    The in-flight flag lives in memory only. Across reloads duplicates are
    caught server-side through the persisted ``Idempotency-Key``.
    """

    def __init__(self, api: RecruitmentApiClient, store: KeyValueStore, *, clock: Clock = utc_now):
        self.api = api
        self.store = store
        self.clock = clock
        self._phases: dict[int, SubmissionPhase] = {}
        self._tasks: dict[int, asyncio.Task] = {}

    def phase(self, application_id: int) -> SubmissionPhase:
        return self._phases.get(int(application_id), SubmissionPhase.idle)

    def in_flight(self) -> list[asyncio.Task]:
        return [t for t in self._tasks.values() if not t.done()]

    def idempotency_key(self, application_id: int) -> str:
        key = submit_key_key(application_id)
        existing = self.store.get(key)
        if existing:
            return existing
        token = uuid.uuid4().hex
        self.store.set(key, token, ttl_seconds=int(settings.checkpoint_max_age_seconds))
        return token

    def submit(
        self,
        application: Application,
        answers: dict[int, int],
        total_questions: int,
        trigger: SubmitTrigger,
    ) -> asyncio.Task | None:
        """Claim the application and start the scoring call.

        Returns ``None`` without sending anything when a submission for this
        application is already in flight or has been accepted.
        """

        app_id = int(application.id)
        current = self.phase(app_id)
        if current != SubmissionPhase.idle:
            log.info(
                "submit ignored application_id=%s trigger=%s phase=%s", app_id, trigger.value, current.value
            )
            return None

        self._phases[app_id] = SubmissionPhase.submitting
        snapshot = dict(answers)
        task = asyncio.get_running_loop().create_task(
            self._send(application, snapshot, int(total_questions), trigger)
        )
        self._tasks[app_id] = task
        return task

    async def _send(
        self,
        application: Application,
        answers: dict[int, int],
        total_questions: int,
        trigger: SubmitTrigger,
    ) -> SubmissionOutcome:
        app_id = int(application.id)
        try:
            key = self.idempotency_key(app_id)
            result = await self.api.submit_results(app_id, answers, idempotency_key=key)
        except AssessmentError as e:
            self._phases[app_id] = SubmissionPhase.idle
            log.warning("submission failed application_id=%s trigger=%s err=%s", app_id, trigger.value, e.message)
            return SubmissionOutcome(app_id, trigger, ok=False, error=e)
        except Exception as e:
            self._phases[app_id] = SubmissionPhase.idle
            log.exception("submission crashed application_id=%s trigger=%s", app_id, trigger.value)
            return SubmissionOutcome(app_id, trigger, ok=False, error=NetworkError(f"submission failed: {type(e).__name__}"))

        answered = len(answers)
        total = int(total_questions)
        if total < 1 and application.scheduled_assessment is not None:
            total = int(application.scheduled_assessment.total_questions or 0)

        score = result.test_score if result.test_score is not None else result.score
        passed = result.test_passed if result.test_passed is not None else result.passed

        application.completed = True
        application.score = score
        application.passed = passed
        application.total_questions = total if total >= 1 else None
        application.answered_questions = answered

        if total >= 1:
            record = CompletionRecord(
                score=score,
                passed=passed,
                total_questions=total,
                answered_questions=answered,
                completed_at=self.clock(),
            )
            try:
                self.store.set(stats_key(app_id), record.model_dump_json())
            except Exception:
                log.warning("failed to cache completion stats application_id=%s", app_id, exc_info=True)
        else:
            # Nothing displayable yet; the reconciler derives the totals later.
            log.info("submission without known question count application_id=%s", app_id)

        try:
            self.store.delete(checkpoint_key(app_id))
            self.store.delete(submit_key_key(app_id))
        except Exception:
            log.warning("failed to clear session keys application_id=%s", app_id, exc_info=True)

        self._phases[app_id] = SubmissionPhase.submitted
        log.info(
            "submission accepted application_id=%s trigger=%s score=%s passed=%s answered=%s total=%s",
            app_id,
            trigger.value,
            score,
            passed,
            answered,
            total,
        )
        return SubmissionOutcome(
            app_id,
            trigger,
            ok=True,
            result=result,
            stats=CompletionStats(total_questions=max(total, 0), answered_questions=answered),
        )

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
