from __future__ import annotations

import logging
import math

from pydantic import ValidationError

from assessment_session.core.clock import Clock, utc_now
from assessment_session.core.errors import AssessmentError
from assessment_session.core.kv_store import KeyValueStore, stats_key
from assessment_session.schemas.application import Application
from assessment_session.schemas.session import CompletionRecord, CompletionStats
from assessment_session.services.recruitment_api import RecruitmentApiClient

log = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_answered(score: int | None, total: int) -> int:
    """Guess how many questions were answered from the score alone.

    Assumes equally weighted questions and that roughly one in six answers was
    wrong, never reporting more than ``total``.
    """

    if score is None:
        return total
    estimated_correct = _round_half_up(score / 100 * total)
    return min(total, max(estimated_correct, _round_half_up(estimated_correct * 1.2)))


class ResultReconciler:
    """Derive displayable answered/total counts for a completed assessment.

    Sources, first usable one wins:
      1. the in-memory application record
      2. the cached completion record
      3. a re-fetch of the question set; answered is kept when the record
         already knows it, otherwise estimated from the score
      4. a 1/1 placeholder
    Whatever is derived is cached again, so repeated calls agree.
    """

    def __init__(self, api: RecruitmentApiClient, store: KeyValueStore, *, clock: Clock = utc_now):
        self.api = api
        self.store = store
        self.clock = clock

    def cached(self, application_id: int) -> CompletionRecord | None:
        raw = self.store.get(stats_key(application_id))
        if raw is None:
            return None
        try:
            return CompletionRecord.model_validate_json(raw)
        except ValidationError:
            log.warning("ignoring unreadable completion stats application_id=%s", application_id)
            return None

    def _from_application(self, application: Application) -> CompletionStats | None:
        total = application.total_questions or 0
        if total < 1 and application.scheduled_assessment is not None:
            total = application.scheduled_assessment.total_questions or 0
        if total < 1:
            return None
        answered = application.answered_questions
        if answered is None:
            cached = self.cached(application.id)
            if cached is not None and cached.total_questions == total:
                answered = cached.answered_questions
            else:
                answered = estimate_answered(application.score, total)
        return CompletionStats(total_questions=total, answered_questions=max(0, min(int(answered), total)))

    async def _from_refetch(self, application: Application) -> CompletionStats | None:
        sa = application.scheduled_assessment
        if sa is None:
            return None
        try:
            questions = await self.api.fetch_questions(sa.quiz_set_id)
        except AssessmentError as e:
            log.warning("question re-fetch failed application_id=%s err=%s", application.id, e.message)
            return None
        total = len(questions)
        if total < 1:
            return None
        answered = application.answered_questions
        if answered is None:
            answered = estimate_answered(application.score, total)
        return CompletionStats(total_questions=total, answered_questions=max(0, min(int(answered), total)))

    def _remember(self, application: Application, stats: CompletionStats, source: str) -> None:
        application.total_questions = stats.total_questions
        application.answered_questions = stats.answered_questions
        record = CompletionRecord(
            score=application.score,
            passed=application.passed,
            total_questions=stats.total_questions,
            answered_questions=stats.answered_questions,
            completed_at=self.clock(),
            source=source,
        )
        try:
            self.store.set(stats_key(application.id), record.model_dump_json())
        except Exception:
            log.warning("failed to cache reconciled stats application_id=%s", application.id, exc_info=True)

    async def reconcile(self, application: Application) -> CompletionStats:
        stats = self._from_application(application)
        if stats is not None:
            cached = self.cached(application.id)
            if cached is None or (cached.total_questions, cached.answered_questions) != (
                stats.total_questions,
                stats.answered_questions,
            ):
                self._remember(application, stats, "application")
            return stats

        cached = self.cached(application.id)
        if cached is not None and cached.total_questions >= 1:
            application.total_questions = cached.total_questions
            application.answered_questions = cached.answered_questions
            return CompletionStats(
                total_questions=cached.total_questions,
                answered_questions=cached.answered_questions,
            )

        stats = await self._from_refetch(application)
        if stats is not None:
            self._remember(application, stats, "refetch")
            return stats

        log.warning("using placeholder completion stats application_id=%s", application.id)
        stats = CompletionStats(total_questions=1, answered_questions=1)
        self._remember(application, stats, "placeholder")
        return stats
