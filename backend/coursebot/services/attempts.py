from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field

import redis

from coursebot.core.errors import AnswerMismatchError, NoActiveTestError
from coursebot.models.result import Grade
from coursebot.services.grading import grade_for
from coursebot.services.repository import CourseRepository, TestSnapshot

log = logging.getLogger(__name__)


@dataclass
class SubmittedAnswer:
    question_id: str
    selected_option: int


@dataclass
class TestAttempt:
    """One in-flight quiz for one learner.

    ``question_ids`` is the question order fixed when the attempt started; the
    next answer must target ``question_ids[current_question_index]``.
    """

    __test__ = False

    test_id: str
    question_ids: list[str]
    current_question_index: int = 0
    answers: list[SubmittedAnswer] = field(default_factory=list)
    started_at: int = 0

    @property
    def expected_question_id(self) -> str | None:
        if self.current_question_index < len(self.question_ids):
            return self.question_ids[self.current_question_index]
        return None

    @property
    def is_complete(self) -> bool:
        return self.current_question_index >= len(self.question_ids)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> TestAttempt:
        data = json.loads(raw)
        return cls(
            test_id=str(data["test_id"]),
            question_ids=[str(q) for q in data.get("question_ids") or []],
            current_question_index=int(data.get("current_question_index") or 0),
            answers=[
                SubmittedAnswer(question_id=str(a["question_id"]), selected_option=int(a["selected_option"]))
                for a in data.get("answers") or []
            ],
            started_at=int(data.get("started_at") or 0),
        )


class RedisAttemptStore:
    """Attempt slot per learner, last write wins.

    Losing an entry (flush, restart, TTL) only means the learner restarts the quiz.
    """

    def __init__(self, r: redis.Redis, *, ttl_seconds: int | None = None):
        self.r = r
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(learner_id: uuid.UUID | str) -> str:
        return f"test_attempt:{learner_id}"

    def load(self, learner_id: uuid.UUID | str) -> TestAttempt | None:
        raw = self.r.get(self._key(learner_id))
        if raw is None:
            return None
        try:
            return TestAttempt.from_json(raw)
        except (ValueError, KeyError, TypeError):
            log.warning("dropping corrupted test attempt for learner %s", learner_id)
            self.r.delete(self._key(learner_id))
            return None

    def save(self, learner_id: uuid.UUID | str, attempt: TestAttempt) -> None:
        self.r.set(self._key(learner_id), attempt.to_json(), ex=self.ttl_seconds)

    def clear(self, learner_id: uuid.UUID | str) -> None:
        self.r.delete(self._key(learner_id))


@dataclass(frozen=True)
class SubmitOutcome:
    attempt: TestAttempt
    completed: bool


@dataclass(frozen=True)
class FinishedTest:
    result_id: uuid.UUID
    test_id: uuid.UUID
    score: int
    grade: Grade
    correct: int
    total: int
    degenerate: bool
    answers: list[dict]


def score_answers(test: TestSnapshot, answers: list[SubmittedAnswer]) -> tuple[int, int, int]:
    """Return ``(correct, total, score)``; a test without questions scores 0."""
    first_by_qid: dict[str, int] = {}
    for a in answers:
        first_by_qid.setdefault(str(a.question_id), int(a.selected_option))

    total = len(test.questions)
    correct = sum(1 for q in test.questions if first_by_qid.get(str(q.id)) == q.correct_option)
    if total == 0:
        return 0, 0, 0
    # half-up rounding of correct / total * 100
    score = (correct * 200 + total) // (2 * total)
    return correct, total, int(score)


class TestSessionEngine:
    __test__ = False

    def __init__(self, store: RedisAttemptStore, repository: CourseRepository):
        self.store = store
        self.repository = repository

    def start_attempt(self, learner_id: uuid.UUID, test: TestSnapshot) -> TestAttempt:
        attempt = TestAttempt(
            test_id=str(test.id),
            question_ids=[str(q.id) for q in test.questions],
            started_at=int(time.time()),
        )
        self.store.save(learner_id, attempt)
        log.info("test attempt started learner=%s test=%s questions=%s", learner_id, test.id, len(test.questions))
        return attempt

    def get_attempt(self, learner_id: uuid.UUID) -> TestAttempt | None:
        return self.store.load(learner_id)

    def current_question_index(self, learner_id: uuid.UUID) -> int | None:
        attempt = self.store.load(learner_id)
        return attempt.current_question_index if attempt is not None else None

    def submit_answer(self, learner_id: uuid.UUID, question_id: uuid.UUID | str, selected_option: int) -> SubmitOutcome:
        attempt = self.store.load(learner_id)
        if attempt is None:
            raise NoActiveTestError(learner_id)

        expected = attempt.expected_question_id
        if expected is None or str(question_id) != expected:
            raise AnswerMismatchError(expected=expected, got=str(question_id))

        attempt.answers.append(SubmittedAnswer(question_id=str(question_id), selected_option=int(selected_option)))
        attempt.current_question_index += 1
        self.store.save(learner_id, attempt)
        return SubmitOutcome(attempt=attempt, completed=attempt.is_complete)

    def finish(self, learner_id: uuid.UUID, test: TestSnapshot) -> FinishedTest:
        """Grade the attempt, persist the result and drop the attempt.

        The attempt is cleared even when persisting fails; the error still
        propagates to the caller.
        """
        attempt = self.store.load(learner_id)
        if attempt is None:
            raise NoActiveTestError(learner_id)

        try:
            correct, total, score = score_answers(test, attempt.answers)
            degenerate = total == 0
            if degenerate:
                log.warning("test %s has no questions; graded as 0 for learner %s", test.id, learner_id)
            grade = grade_for(score)
            answers = [asdict(a) for a in attempt.answers]

            result = self.repository.save_test_result(learner_id, test.id, score, grade, answers)
        finally:
            self.store.clear(learner_id)

        log.info(
            "test attempt finished learner=%s test=%s score=%s grade=%s correct=%s/%s",
            learner_id,
            test.id,
            score,
            grade.value,
            correct,
            total,
        )
        return FinishedTest(
            result_id=result.id,
            test_id=test.id,
            score=score,
            grade=grade,
            correct=correct,
            total=total,
            degenerate=degenerate,
            answers=answers,
        )
