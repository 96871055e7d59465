import pytest

from assessment_session.core.errors import AssessmentValidationError
from assessment_session.core.kv_store import checkpoint_key
from assessment_session.schemas.session import SessionState
from assessment_session.services.answer_store import AnswerStore, read_checkpoint
from conftest import make_questions

T0 = 1_772_633_400_000  # epoch ms


class _State:
    def __init__(self, value=SessionState.active):
        self.value = value

    def __call__(self):
        return self.value


def _answer_store(store, state=None):
    a = AnswerStore(store, 1, state=state or _State())
    a.load_questions(make_questions(3))
    return a


def test_record_and_navigate(store):
    a = _answer_store(store)
    assert a.record_answer(100, 2)
    assert a.record_answer(100, 3)
    assert a.answers == {100: 3}

    assert not a.previous_question()
    assert a.next_question() and a.next_question()
    assert not a.next_question()
    assert a.current_question_index == 2


def test_rejects_unknown_question_and_bad_index(store):
    a = _answer_store(store)
    with pytest.raises(AssessmentValidationError):
        a.record_answer(999, 0)
    with pytest.raises(AssessmentValidationError):
        a.record_answer(100, 4)
    with pytest.raises(AssessmentValidationError):
        a.record_answer(100, -1)
    assert a.answers == {}


def test_frozen_states_never_mutate(store):
    state = _State()
    a = _answer_store(store, state)
    a.record_answer(100, 1)
    a.next_question()

    for frozen in (SessionState.submitting, SessionState.submitted, SessionState.time_expired):
        state.value = frozen
        for qid in (100, 101, 102):
            for idx in range(4):
                assert a.record_answer(qid, idx) is False
        assert not a.next_question()
        assert not a.previous_question()
        assert a.answers == {100: 1}
        assert a.current_question_index == 1


def test_checkpoint_is_single_use(store):
    a = _answer_store(store)
    a.record_answer(100, 1)
    a.record_answer(102, 3)
    a.next_question()
    assert a.save_checkpoint(T0)

    b = _answer_store(store)
    cp = b.recover_checkpoint(T0 + 3_599_999)
    assert cp is not None
    assert b.answers == {100: 1, 102: 3}
    assert b.current_question_index == 1

    c = _answer_store(store)
    assert c.recover_checkpoint(T0 + 3_599_999) is None
    assert c.answers == {}


def test_stale_checkpoint_is_discarded(store, memory_redis):
    a = _answer_store(store)
    a.record_answer(100, 1)
    a.save_checkpoint(T0)

    b = _answer_store(store)
    assert b.recover_checkpoint(T0 + 3_600_001) is None
    assert b.answers == {}
    assert memory_redis.get(checkpoint_key(1)) is None


def test_checkpoint_carries_ttl(store, memory_redis):
    a = _answer_store(store)
    a.record_answer(100, 1)
    a.save_checkpoint(T0)
    assert 0 < memory_redis.ttl(checkpoint_key(1)) <= 3600


def test_unreadable_checkpoint_is_discarded(store, memory_redis):
    memory_redis.set(checkpoint_key(1), "{not json")
    a = _answer_store(store)
    assert a.recover_checkpoint(T0) is None
    assert memory_redis.get(checkpoint_key(1)) is None


def test_save_requires_active_state_and_answers(store):
    state = _State()
    a = _answer_store(store, state)
    assert not a.save_checkpoint(T0)

    a.record_answer(100, 1)
    state.value = SessionState.submitted
    assert not a.save_checkpoint(T0)
    assert read_checkpoint(store, 1) is None


def test_save_failure_is_not_fatal(store, monkeypatch):
    a = _answer_store(store)
    a.record_answer(100, 1)

    def _boom(*args, **kwargs):
        raise ConnectionError("redis down")

    monkeypatch.setattr(store, "set", _boom)
    assert a.save_checkpoint(T0) is False
    assert a.answers == {100: 1}


def test_recovered_answers_are_limited_to_loaded_questions(store):
    a = AnswerStore(store, 1, state=_State())
    a.load_questions(make_questions(5))
    a.record_answer(104, 2)
    a.record_answer(100, 0)
    a.current_question_index = 4
    a.save_checkpoint(T0)

    b = _answer_store(store)
    b.recover_checkpoint(T0 + 1000)
    assert b.answers == {100: 0}
    assert b.current_question_index == 2
