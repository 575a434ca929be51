import uuid
from types import SimpleNamespace

import pytest

from coursebot.core.errors import AnswerMismatchError, NoActiveTestError, PersistenceError
from coursebot.models.result import Grade
from coursebot.services.attempts import (
    RedisAttemptStore,
    SubmittedAnswer,
    TestAttempt,
    TestSessionEngine,
    score_answers,
)
from coursebot.services.repository import QuestionSnapshot, TestSnapshot


class _ResultsRepo:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.saved = []

    def save_test_result(self, user_id, test_id, score, grade, answers):
        if self.fail:
            raise PersistenceError("flush failed: disk full")
        row = SimpleNamespace(id=uuid.uuid4(), user_id=user_id, test_id=test_id, score=score, grade=grade, answers=answers)
        self.saved.append(row)
        return row


def _test(correct_options: list[int]) -> TestSnapshot:
    return TestSnapshot(
        id=uuid.uuid4(),
        title="Пожарная безопасность",
        questions=tuple(
            QuestionSnapshot(id=uuid.uuid4(), text=f"Q{i}", options=("a", "b", "c", "d"), correct_option=c)
            for i, c in enumerate(correct_options)
        ),
    )


def _engine(mem_redis, *, fail: bool = False, ttl_seconds=None):
    repo = _ResultsRepo(fail=fail)
    return TestSessionEngine(RedisAttemptStore(mem_redis, ttl_seconds=ttl_seconds), repo), repo


def _answer_all(engine, learner_id, test, picks):
    for q, pick in zip(test.questions, picks):
        engine.submit_answer(learner_id, q.id, pick)


def test_all_correct_scores_100_a(mem_redis):
    engine, repo = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0, 1, 2])
    engine.start_attempt(learner, test)
    _answer_all(engine, learner, test, [0, 1, 2])

    out = engine.finish(learner, test)
    assert (out.score, out.grade, out.correct, out.total) == (100, Grade.A, 3, 3)
    assert repo.saved[0].score == 100
    assert engine.get_attempt(learner) is None


def test_all_wrong_scores_0_f(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0, 1])
    engine.start_attempt(learner, test)
    _answer_all(engine, learner, test, [3, 3])

    out = engine.finish(learner, test)
    assert (out.score, out.grade) == (0, Grade.F)


def test_seven_of_ten_is_exactly_c(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0] * 10)
    engine.start_attempt(learner, test)
    _answer_all(engine, learner, test, [0] * 7 + [1] * 3)

    out = engine.finish(learner, test)
    assert (out.score, out.grade) == (70, Grade.C)


def test_score_rounds_half_up():
    test = _test([0, 0, 0])
    answers = [SubmittedAnswer(str(test.questions[i].id), 0) for i in range(2)]
    assert score_answers(test, answers) == (2, 3, 67)
    assert score_answers(test, answers[:1]) == (1, 3, 33)

    two = _test([0, 0])
    assert score_answers(two, [SubmittedAnswer(str(two.questions[0].id), 0)]) == (1, 2, 50)


def test_unanswered_questions_count_as_incorrect(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0, 0, 0, 0])
    engine.start_attempt(learner, test)
    engine.submit_answer(learner, test.questions[0].id, 0)

    out = engine.finish(learner, test)
    assert (out.correct, out.total, out.score) == (1, 4, 25)


def test_zero_question_test_is_safe(mem_redis):
    engine, repo = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([])
    attempt = engine.start_attempt(learner, test)
    assert attempt.is_complete

    out = engine.finish(learner, test)
    assert (out.score, out.grade, out.total) == (0, Grade.F, 0)
    assert out.degenerate is True
    assert len(repo.saved) == 1


def test_start_attempt_overwrites_previous(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    first = _test([0, 0])
    second = _test([1])
    engine.start_attempt(learner, first)
    engine.submit_answer(learner, first.questions[0].id, 0)

    engine.start_attempt(learner, second)
    attempt = engine.get_attempt(learner)
    assert attempt.test_id == str(second.id)
    assert attempt.answers == []
    assert engine.current_question_index(learner) == 0


def test_current_question_index_tracks_answers(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0, 0])
    assert engine.current_question_index(learner) is None

    engine.start_attempt(learner, test)
    outcome = engine.submit_answer(learner, test.questions[0].id, 2)
    assert outcome.completed is False
    assert engine.current_question_index(learner) == 1

    outcome = engine.submit_answer(learner, test.questions[1].id, 0)
    assert outcome.completed is True


def test_submit_rejects_out_of_order_question(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0, 0])
    engine.start_attempt(learner, test)

    with pytest.raises(AnswerMismatchError):
        engine.submit_answer(learner, test.questions[1].id, 0)
    assert engine.current_question_index(learner) == 0


def test_submit_and_finish_without_attempt_fail(mem_redis):
    engine, _ = _engine(mem_redis)
    learner = uuid.uuid4()
    test = _test([0])

    with pytest.raises(NoActiveTestError):
        engine.submit_answer(learner, test.questions[0].id, 0)
    with pytest.raises(NoActiveTestError):
        engine.finish(learner, test)


def test_attempt_cleared_even_when_result_write_fails(mem_redis):
    engine, _ = _engine(mem_redis, fail=True)
    learner = uuid.uuid4()
    test = _test([0])
    engine.start_attempt(learner, test)
    engine.submit_answer(learner, test.questions[0].id, 0)

    with pytest.raises(PersistenceError):
        engine.finish(learner, test)
    assert engine.get_attempt(learner) is None


def test_store_roundtrip_and_ttl(mem_redis):
    store = RedisAttemptStore(mem_redis, ttl_seconds=600)
    learner = uuid.uuid4()
    attempt = TestAttempt(
        test_id="t1",
        question_ids=["q1", "q2"],
        current_question_index=1,
        answers=[SubmittedAnswer("q1", 3)],
        started_at=1700000000,
    )
    store.save(learner, attempt)

    assert store.load(learner) == attempt
    assert 0 < mem_redis.ttl(f"test_attempt:{learner}") <= 600


def test_corrupted_attempt_is_dropped(mem_redis):
    store = RedisAttemptStore(mem_redis)
    learner = uuid.uuid4()
    mem_redis.set(f"test_attempt:{learner}", "{not json")

    assert store.load(learner) is None
    assert mem_redis.get(f"test_attempt:{learner}") is None
