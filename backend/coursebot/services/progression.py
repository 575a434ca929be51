from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from coursebot.core.errors import (
    InvalidAnswerError,
    LessonNotFound,
    NoActiveTestError,
    NoCourseAvailable,
    NotWatchingError,
    ProgressNotFound,
)
from coursebot.models.progress import CoursePhase, CourseProgress
from coursebot.services.attempts import FinishedTest, TestAttempt, TestSessionEngine
from coursebot.services.repository import (
    CourseRepository,
    CourseSnapshot,
    LessonSnapshot,
    QuestionSnapshot,
    TestSnapshot,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuestionView:
    question: QuestionSnapshot
    number: int
    total: int


@dataclass(frozen=True)
class NextLesson:
    course: CourseSnapshot
    progress: CourseProgress
    lesson: LessonSnapshot


@dataclass(frozen=True)
class CourseCompleted:
    course: CourseSnapshot
    progress: CourseProgress


@dataclass(frozen=True)
class TestStarted:
    __test__ = False

    course: CourseSnapshot
    progress: CourseProgress
    test: TestSnapshot
    question: QuestionView


@dataclass(frozen=True)
class NextQuestion:
    test: TestSnapshot
    question: QuestionView


@dataclass(frozen=True)
class TestCompleted:
    """A graded attempt plus where progression went afterwards."""

    __test__ = False

    test: TestSnapshot
    result: FinishedTest
    then: NextLesson | CourseCompleted


@dataclass(frozen=True)
class CourseStart:
    course: CourseSnapshot
    progress: CourseProgress
    created: bool
    lesson: LessonSnapshot | None
    # set when the learner is resuming a quiz
    test: TestSnapshot | None = None
    question: QuestionView | None = None

    @property
    def completed(self) -> bool:
        return self.progress.phase == CoursePhase.completed


WatchedOutcome = NextLesson | TestStarted | TestCompleted | CourseCompleted
AnswerOutcome = NextQuestion | TestCompleted


def _question_view(test: TestSnapshot, attempt: TestAttempt) -> QuestionView | None:
    qid = attempt.expected_question_id
    if qid is None:
        return None
    question = test.question(qid)
    if question is None:
        return None
    return QuestionView(question=question, number=attempt.current_question_index + 1, total=len(attempt.question_ids))


class CourseProgression:
    """Per-learner course state machine: WatchingLesson -> TakingTest -> ... -> Completed.

    Every public operation runs in one database transaction and commits before
    returning. The attempt itself lives in the engine's store.
    """

    def __init__(self, repository: CourseRepository, engine: TestSessionEngine):
        self.repository = repository
        self.engine = engine

    def _active_course(self) -> CourseSnapshot:
        course = self.repository.get_active_course()
        if course is None:
            raise NoCourseAvailable()
        return course

    def _require_progress(self, learner_id: uuid.UUID, course: CourseSnapshot) -> CourseProgress:
        progress = self.repository.get_progress(learner_id, course.id)
        if progress is None:
            raise ProgressNotFound(f"{learner_id}/{course.id}")
        return progress

    def _current_lesson(self, course: CourseSnapshot, progress: CourseProgress) -> LessonSnapshot:
        lesson = course.lesson_at(int(progress.current_lesson_index))
        if lesson is None:
            raise LessonNotFound(f"{course.id}#{progress.current_lesson_index}")
        return lesson

    def start_course(self, learner_id: uuid.UUID) -> CourseStart:
        course = self._active_course()
        if not course.lessons:
            raise LessonNotFound(f"{course.id}#0", message=f"course {course.id} has no lessons")

        existing = self.repository.get_progress(learner_id, course.id)
        progress = existing or self.repository.create_progress(learner_id, course.id)
        created = existing is None

        if progress.phase == CoursePhase.completed:
            self.repository.commit()
            return CourseStart(course=course, progress=progress, created=created, lesson=None)

        if course.lesson_at(int(progress.current_lesson_index)) is None:
            # lessons were removed behind the learner
            progress = self.repository.update_progress(
                learner_id,
                course.id,
                phase=CoursePhase.completed,
                completed_at=datetime.utcnow(),
            )
            self.repository.commit()
            log.info("course closed after content removal learner=%s course=%s", learner_id, course.id)
            return CourseStart(course=course, progress=progress, created=created, lesson=None)

        lesson = self._current_lesson(course, progress)
        if progress.phase == CoursePhase.taking_test and lesson.test is None:
            # the test was removed from the lesson while the learner was in it
            self._advance(learner_id, course, progress)
            self.repository.commit()
            return self.start_course(learner_id)
        if progress.phase == CoursePhase.taking_test and lesson.test is not None:
            attempt = self.engine.get_attempt(learner_id)
            view = None
            if attempt is not None and attempt.test_id == str(lesson.test.id):
                if attempt.is_complete:
                    # every answer is in but the attempt was never graded
                    self._complete_test(learner_id, course, progress, lesson.test)
                    return self.start_course(learner_id)
                view = _question_view(lesson.test, attempt)
            if view is None:
                # attempt lost (restart, flush) or stale after a content edit; the quiz starts over
                attempt = self.engine.start_attempt(learner_id, lesson.test)
                view = _question_view(lesson.test, attempt)
            if view is None:
                self._complete_test(learner_id, course, progress, lesson.test)
                return self.start_course(learner_id)
            self.repository.commit()
            return CourseStart(
                course=course,
                progress=progress,
                created=created,
                lesson=lesson,
                test=lesson.test,
                question=view,
            )

        self.repository.commit()
        if created:
            log.info("course started learner=%s course=%s", learner_id, course.id)
        return CourseStart(course=course, progress=progress, created=created, lesson=lesson)

    def current_position(self, learner_id: uuid.UUID) -> tuple[CourseSnapshot, CourseProgress, LessonSnapshot | None]:
        course = self._active_course()
        progress = self._require_progress(learner_id, course)
        if progress.phase == CoursePhase.completed:
            return course, progress, None
        return course, progress, self._current_lesson(course, progress)

    def lesson_watched(self, learner_id: uuid.UUID, lesson_index: int | None = None) -> WatchedOutcome:
        course = self._active_course()
        progress = self._require_progress(learner_id, course)

        if progress.phase != CoursePhase.watching_lesson:
            raise NotWatchingError(expected=CoursePhase.watching_lesson.value, actual=progress.phase.value)
        if lesson_index is not None and int(lesson_index) != int(progress.current_lesson_index):
            raise NotWatchingError(
                expected=f"lesson {progress.current_lesson_index}",
                actual=f"lesson {lesson_index}",
                message="lesson is no longer current",
            )

        lesson = self._current_lesson(course, progress)
        if lesson.test is None:
            outcome = self._advance(learner_id, course, progress)
            self.repository.commit()
            return outcome

        progress = self.repository.update_progress(learner_id, course.id, phase=CoursePhase.taking_test)
        self.repository.commit()

        attempt = self.engine.start_attempt(learner_id, lesson.test)
        question = _question_view(lesson.test, attempt)
        if question is None:
            return self._complete_test(learner_id, course, progress, lesson.test)
        return TestStarted(course=course, progress=progress, test=lesson.test, question=question)

    def answer_submitted(
        self,
        learner_id: uuid.UUID,
        selected_option: int,
        question_id: uuid.UUID | str | None = None,
    ) -> AnswerOutcome:
        course = self._active_course()
        progress = self.repository.get_progress(learner_id, course.id)
        if progress is None or progress.phase != CoursePhase.taking_test:
            raise NoActiveTestError(learner_id)

        lesson = self._current_lesson(course, progress)
        test = lesson.test
        if test is None:
            raise NoActiveTestError(learner_id, message=f"lesson {lesson.id} has no test")

        attempt = self.engine.get_attempt(learner_id)
        if attempt is None or attempt.test_id != str(test.id):
            raise NoActiveTestError(learner_id)
        if attempt.is_complete:
            return self._complete_test(learner_id, course, progress, test)

        expected_qid = attempt.expected_question_id
        if expected_qid is not None and test.question(expected_qid) is None:
            # questions were replaced mid-attempt; start_course restarts the quiz
            raise NoActiveTestError(learner_id, message="test content changed during the attempt")
        target_qid = str(question_id) if question_id is not None else expected_qid
        question = test.question(target_qid) if target_qid is not None else None
        if question is not None and not (0 <= int(selected_option) < len(question.options)):
            raise InvalidAnswerError(selected_option=int(selected_option), options_count=len(question.options))

        outcome = self.engine.submit_answer(learner_id, target_qid or "", int(selected_option))
        if not outcome.completed:
            view = _question_view(test, outcome.attempt)
            if view is not None:
                return NextQuestion(test=test, question=view)

        return self._complete_test(learner_id, course, progress, test)

    def _complete_test(
        self,
        learner_id: uuid.UUID,
        course: CourseSnapshot,
        progress: CourseProgress,
        test: TestSnapshot,
    ) -> TestCompleted:
        try:
            finished = self.engine.finish(learner_id, test)
            then = self._advance(learner_id, course, progress)
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise
        return TestCompleted(test=test, result=finished, then=then)

    def _advance(
        self,
        learner_id: uuid.UUID,
        course: CourseSnapshot,
        progress: CourseProgress,
    ) -> NextLesson | CourseCompleted:
        next_index = int(progress.current_lesson_index) + 1
        if next_index >= len(course.lessons):
            progress = self.repository.update_progress(
                learner_id,
                course.id,
                phase=CoursePhase.completed,
                completed_at=datetime.utcnow(),
            )
            log.info("course completed learner=%s course=%s", learner_id, course.id)
            return CourseCompleted(course=course, progress=progress)

        progress = self.repository.update_progress(
            learner_id,
            course.id,
            phase=CoursePhase.watching_lesson,
            lesson_index=next_index,
        )
        return NextLesson(course=course, progress=progress, lesson=course.lessons[next_index])

