from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from coursebot.core.errors import InvalidStateTransition, LearnerNotFound, PersistenceError, ProgressNotFound
from coursebot.models.course import Course, Lesson, MediaType
from coursebot.models.notification import Notification
from coursebot.models.progress import CoursePhase, CourseProgress
from coursebot.models.quiz import Question, Test
from coursebot.models.result import Grade, TestResult
from coursebot.models.user import Admin, User


@dataclass(frozen=True)
class Media:
    kind: MediaType
    url: str


@dataclass(frozen=True)
class QuestionSnapshot:
    id: uuid.UUID
    text: str
    options: tuple[str, ...]
    correct_option: int


@dataclass(frozen=True)
class TestSnapshot:
    __test__ = False

    id: uuid.UUID
    title: str
    questions: tuple[QuestionSnapshot, ...]

    def question(self, question_id: uuid.UUID | str) -> QuestionSnapshot | None:
        qid = str(question_id)
        for q in self.questions:
            if str(q.id) == qid:
                return q
        return None


@dataclass(frozen=True)
class LessonSnapshot:
    id: uuid.UUID
    index: int
    title: str
    media: Media
    caption: str | None
    button_text: str | None
    button_url: str | None
    test: TestSnapshot | None

    @property
    def call_to_action(self) -> tuple[str, str] | None:
        if self.button_text and self.button_url:
            return self.button_text, self.button_url
        return None


@dataclass(frozen=True)
class CourseSnapshot:
    """Read-only view of a course with lessons in delivery order.

    Lesson positions are the zero-based list positions, independent of gaps
    in the stored ``order_index`` values.
    """

    id: uuid.UUID
    title: str
    description: str | None
    lessons: tuple[LessonSnapshot, ...]

    def lesson_at(self, index: int) -> LessonSnapshot | None:
        if 0 <= index < len(self.lessons):
            return self.lessons[index]
        return None


class CourseRepository:
    """Catalog and progress storage the course core runs against.

    Nothing here commits implicitly; callers decide the transaction boundary
    through :meth:`commit`.
    """

    def __init__(self, db: Session):
        self.db = db

    # Catalog

    def get_active_course(self) -> CourseSnapshot | None:
        course = self.db.scalar(
            select(Course)
            .where(Course.is_active == True)  # noqa: E712
            .order_by(Course.order_index.asc(), Course.created_at.asc())
            .limit(1)
        )
        if course is None:
            return None
        return self._snapshot(course)

    def get_course_catalog(self, course_id: uuid.UUID) -> CourseSnapshot | None:
        course = self.db.scalar(select(Course).where(Course.id == course_id))
        if course is None:
            return None
        return self._snapshot(course)

    def _snapshot(self, course: Course) -> CourseSnapshot:
        lessons = self.db.scalars(
            select(Lesson).where(Lesson.course_id == course.id).order_by(Lesson.order_index.asc())
        ).all()
        lesson_ids = [lesson.id for lesson in lessons]

        tests_by_lesson: dict[uuid.UUID, Test] = {}
        questions_by_test: dict[uuid.UUID, list[Question]] = {}
        if lesson_ids:
            tests = self.db.scalars(select(Test).where(Test.lesson_id.in_(lesson_ids))).all()
            tests_by_lesson = {t.lesson_id: t for t in tests}
            if tests:
                rows = self.db.scalars(
                    select(Question)
                    .where(Question.test_id.in_([t.id for t in tests]))
                    .order_by(Question.test_id, Question.order_index.asc())
                ).all()
                for q in rows:
                    questions_by_test.setdefault(q.test_id, []).append(q)

        items: list[LessonSnapshot] = []
        for idx, lesson in enumerate(lessons):
            test = tests_by_lesson.get(lesson.id)
            test_snap = None
            if test is not None:
                test_snap = TestSnapshot(
                    id=test.id,
                    title=test.title,
                    questions=tuple(
                        QuestionSnapshot(
                            id=q.id,
                            text=q.question_text,
                            options=tuple(str(o) for o in (q.options or [])),
                            correct_option=int(q.correct_option),
                        )
                        for q in questions_by_test.get(test.id, [])
                    ),
                )
            items.append(
                LessonSnapshot(
                    id=lesson.id,
                    index=idx,
                    title=lesson.title,
                    media=Media(kind=lesson.media_type, url=lesson.media_url),
                    caption=lesson.caption,
                    button_text=lesson.button_text,
                    button_url=lesson.button_url,
                    test=test_snap,
                )
            )

        return CourseSnapshot(id=course.id, title=course.title, description=course.description, lessons=tuple(items))

    # Progress

    def get_progress(self, user_id: uuid.UUID, course_id: uuid.UUID) -> CourseProgress | None:
        return self.db.scalar(
            select(CourseProgress).where(CourseProgress.user_id == user_id, CourseProgress.course_id == course_id)
        )

    def create_progress(self, user_id: uuid.UUID, course_id: uuid.UUID) -> CourseProgress:
        existing = self.get_progress(user_id, course_id)
        if existing is not None:
            return existing

        now = datetime.utcnow()
        progress = CourseProgress(
            user_id=user_id,
            course_id=course_id,
            phase=CoursePhase.watching_lesson,
            current_lesson_index=0,
            started_at=now,
            last_activity=now,
        )
        self.db.add(progress)
        try:
            self.db.flush()
        except IntegrityError:
            # Lost a race against another insert for the same pair.
            self.db.rollback()
            existing = self.get_progress(user_id, course_id)
            if existing is None:
                raise
            return existing
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"failed to create progress: {e}") from e
        return progress

    def update_progress(
        self,
        user_id: uuid.UUID,
        course_id: uuid.UUID,
        *,
        phase: CoursePhase | None = None,
        lesson_index: int | None = None,
        completed_at: datetime | None = None,
    ) -> CourseProgress:
        progress = self.get_progress(user_id, course_id)
        if progress is None:
            raise ProgressNotFound(f"{user_id}/{course_id}")

        if progress.phase == CoursePhase.completed:
            raise InvalidStateTransition(
                expected="an active course",
                actual=CoursePhase.completed.value,
                message="completed progress is immutable",
            )
        if lesson_index is not None and lesson_index < int(progress.current_lesson_index):
            raise InvalidStateTransition(
                expected=f"lesson index >= {progress.current_lesson_index}",
                actual=str(lesson_index),
                message="lesson index must not decrease",
            )

        if phase is not None:
            progress.phase = phase
        if lesson_index is not None:
            progress.current_lesson_index = int(lesson_index)
        if completed_at is not None:
            progress.completed_at = completed_at
        progress.last_activity = datetime.utcnow()
        self._flush()
        return progress

    def list_stale_progress(
        self,
        phase: CoursePhase,
        idle_threshold: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[CourseProgress]:
        cutoff = (now or datetime.utcnow()) - idle_threshold
        return list(
            self.db.scalars(
                select(CourseProgress)
                .where(CourseProgress.phase == phase, CourseProgress.last_activity < cutoff)
                .order_by(CourseProgress.last_activity.asc())
            ).all()
        )

    def progress_counts(self, course_id: uuid.UUID) -> tuple[int, int]:
        """``(enrolled, completed)`` for one course."""
        total = self.db.scalar(select(func.count(CourseProgress.id)).where(CourseProgress.course_id == course_id))
        completed = self.db.scalar(
            select(func.count(CourseProgress.id)).where(
                CourseProgress.course_id == course_id,
                CourseProgress.completed_at.is_not(None),
            )
        )
        return int(total or 0), int(completed or 0)

    # Results

    def save_test_result(
        self,
        user_id: uuid.UUID,
        test_id: uuid.UUID,
        score: int,
        grade: Grade,
        answers: list[dict],
    ) -> TestResult:
        result = TestResult(user_id=user_id, test_id=test_id, score=int(score), grade=grade, answers=list(answers))
        self.db.add(result)
        self._flush()
        return result

    # Learners and admins

    def get_user(self, user_id: uuid.UUID) -> User | None:
        return self.db.scalar(select(User).where(User.id == user_id))

    def get_user_by_telegram_id(self, telegram_id: str) -> User | None:
        return self.db.scalar(select(User).where(User.telegram_id == str(telegram_id)))

    def users_by_id(self, user_ids: list[uuid.UUID]) -> dict[uuid.UUID, User]:
        if not user_ids:
            return {}
        rows = self.db.scalars(select(User).where(User.id.in_(user_ids))).all()
        return {u.id: u for u in rows}

    def get_or_create_user(
        self,
        telegram_id: str,
        *,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[User, bool]:
        user = self.get_user_by_telegram_id(telegram_id)
        if user is not None:
            if username is not None:
                user.username = username
            if first_name is not None:
                user.first_name = first_name
            if last_name is not None:
                user.last_name = last_name
            self._flush()
            return user, False

        user = User(telegram_id=str(telegram_id), username=username, first_name=first_name, last_name=last_name)
        self.db.add(user)
        self._flush()
        return user, True

    def update_user_phone(self, user_id: uuid.UUID, phone_number: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise LearnerNotFound(user_id)
        user.phone_number = str(phone_number).strip()
        self._flush()
        return user

    def list_admins(self) -> list[Admin]:
        return list(self.db.scalars(select(Admin).order_by(Admin.created_at.asc())).all())

    def is_admin(self, telegram_id: str) -> bool:
        return self.db.scalar(select(Admin.id).where(Admin.telegram_id == str(telegram_id))) is not None

    def add_admin(self, telegram_id: str) -> Admin:
        existing = self.db.scalar(select(Admin).where(Admin.telegram_id == str(telegram_id)))
        if existing is not None:
            return existing
        admin = Admin(telegram_id=str(telegram_id))
        self.db.add(admin)
        self._flush()
        return admin

    def remove_admin(self, telegram_id: str) -> bool:
        admin = self.db.scalar(select(Admin).where(Admin.telegram_id == str(telegram_id)))
        if admin is None:
            return False
        self.db.delete(admin)
        self._flush()
        return True

    def notifications_for_phase(self, course_id: uuid.UUID, phase: CoursePhase) -> list[Notification]:
        return list(
            self.db.scalars(
                select(Notification)
                .where(
                    Notification.course_id == course_id,
                    Notification.phase == phase,
                    Notification.is_active == True,  # noqa: E712
                )
                .order_by(Notification.created_at.asc())
            ).all()
        )

    # Transactions

    def _flush(self) -> None:
        try:
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"flush failed: {e}") from e

    def commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"commit failed: {e}") from e

    def rollback(self) -> None:
        self.db.rollback()
