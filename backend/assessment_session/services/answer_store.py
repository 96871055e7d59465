from __future__ import annotations

import logging
from typing import Callable

from pydantic import ValidationError

from assessment_session.core.config import settings
from assessment_session.core.errors import AssessmentValidationError
from assessment_session.core.kv_store import KeyValueStore, checkpoint_key
from assessment_session.schemas.quiz import Question
from assessment_session.schemas.session import FROZEN_STATES, SessionCheckpoint, SessionState

log = logging.getLogger(__name__)


def read_checkpoint(store: KeyValueStore, application_id: int) -> SessionCheckpoint | None:
    """Look at a stored checkpoint without consuming it."""

    raw = store.get(checkpoint_key(application_id))
    if raw is None:
        return None
    try:
        return SessionCheckpoint.model_validate_json(raw)
    except ValidationError:
        return None


class AnswerStore:
    """In-progress answers for one application plus their durable checkpoint."""

    def __init__(
        self,
        store: KeyValueStore,
        application_id: int,
        *,
        state: Callable[[], SessionState],
        max_age_ms: int | None = None,
    ):
        self.store = store
        self.application_id = int(application_id)
        self._state = state
        self.max_age_ms = int(max_age_ms if max_age_ms is not None else settings.checkpoint_max_age_seconds * 1000)
        self.answers: dict[int, int] = {}
        self.current_question_index = 0
        self._options: dict[int, int] = {}

    @property
    def key(self) -> str:
        return checkpoint_key(self.application_id)

    @property
    def frozen(self) -> bool:
        return self._state() in FROZEN_STATES

    def load_questions(self, questions: list[Question]) -> None:
        self._options = {q.id: len(q.options) for q in questions}
        self.answers = {qid: idx for qid, idx in self.answers.items() if qid in self._options}
        self.current_question_index = self._clamp(self.current_question_index)

    def _clamp(self, index: int) -> int:
        if not self._options:
            return 0
        return max(0, min(int(index), len(self._options) - 1))

    def validate(self, question_id: int, option_index: int) -> None:
        n_options = self._options.get(int(question_id))
        if n_options is None:
            raise AssessmentValidationError(f"unknown question {question_id}")
        if not 0 <= int(option_index) < n_options:
            raise AssessmentValidationError(f"option index out of range for question {question_id}")

    def record_answer(self, question_id: int, option_index: int) -> bool:
        if self.frozen:
            return False
        self.validate(question_id, option_index)
        self.answers[int(question_id)] = int(option_index)
        return True

    def next_question(self) -> bool:
        if self.frozen or self.current_question_index >= len(self._options) - 1:
            return False
        self.current_question_index += 1
        return True

    def previous_question(self) -> bool:
        if self.frozen or self.current_question_index <= 0:
            return False
        self.current_question_index -= 1
        return True

    def save_checkpoint(self, now_ms: int) -> bool:
        if self._state() != SessionState.active or not self.answers:
            return False
        cp = SessionCheckpoint(
            answers=dict(self.answers),
            current_question_index=self.current_question_index,
            saved_at=int(now_ms),
        )
        try:
            self.store.set(self.key, cp.model_dump_json(), ttl_seconds=int(settings.checkpoint_max_age_seconds))
        except Exception:
            # Save failures never end the session.
            log.warning("checkpoint save failed application_id=%s", self.application_id, exc_info=True)
            return False
        return True

    def recover_checkpoint(self, now_ms: int) -> SessionCheckpoint | None:
        raw = self.store.get(self.key)
        if raw is None:
            return None

        try:
            cp = SessionCheckpoint.model_validate_json(raw)
        except ValidationError:
            log.warning("discarding unreadable checkpoint application_id=%s", self.application_id)
            self.store.delete(self.key)
            return None

        age_ms = int(now_ms) - int(cp.saved_at)
        if age_ms >= self.max_age_ms:
            log.info("discarding stale checkpoint application_id=%s age_ms=%s", self.application_id, age_ms)
            self.store.delete(self.key)
            return None

        if self._options:
            self.answers = {qid: idx for qid, idx in cp.answers.items() if qid in self._options}
        else:
            self.answers = dict(cp.answers)
        self.current_question_index = self._clamp(cp.current_question_index)
        self.store.delete(self.key)
        log.info(
            "restored checkpoint application_id=%s answers=%s index=%s",
            self.application_id,
            len(self.answers),
            self.current_question_index,
        )
        return cp

    def clear(self) -> None:
        self.store.delete(self.key)
