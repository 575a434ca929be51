from __future__ import annotations

import csv
import io
import json
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursebot.core.config import settings
from coursebot.core.queue import fetch_job, get_queue
from coursebot.core.rate_limit import rate_limit
from coursebot.core.redis_client import get_redis
from coursebot.core.security import get_current_operator
from coursebot.db.session import get_db
from coursebot.models.course import Course, Lesson
from coursebot.models.notification import Notification
from coursebot.models.progress import CourseProgress
from coursebot.models.quiz import Question, Test
from coursebot.models.result import TestResult
from coursebot.models.user import Admin, ConsoleOperator, User
from coursebot.schemas.admin import (
    AdminCreateRequest,
    AdminPublic,
    BroadcastRequest,
    CourseCreateRequest,
    CoursePublic,
    CourseUpdateRequest,
    IdResponse,
    LearnerPublic,
    LearnersListResponse,
    LessonCreateRequest,
    LessonPublic,
    LessonUpdateRequest,
    NotificationCreateRequest,
    NotificationPublic,
    NotificationUpdateRequest,
    QuestionIn,
    StatsResponse,
    TestPublic,
    TestUpsertRequest,
)
from coursebot.services.attempts import RedisAttemptStore
from coursebot.services.notifications import broadcast_job

router = APIRouter(prefix="/admin", tags=["admin"])

log = logging.getLogger(__name__)

LEARNER_STATUSES = {"not_started", "in_progress", "completed"}


def _uuid(value: str, *, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"invalid {field}") from e


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _commit(db: Session, *, conflict: str) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=conflict) from e


def _validate_questions(questions: list[QuestionIn]) -> None:
    for i, q in enumerate(questions):
        if not str(q.question_text or "").strip():
            raise HTTPException(status_code=400, detail=f"question {i + 1}: text is required")
        options = [str(o or "").strip() for o in q.options]
        if len(options) < 2 or any(not o for o in options):
            raise HTTPException(status_code=400, detail=f"question {i + 1}: at least 2 non-empty options required")
        if not (0 <= int(q.correct_option) < len(options)):
            raise HTTPException(status_code=400, detail=f"question {i + 1}: correct_option out of range")


def _validate_button(text: str | None, url: str | None) -> None:
    if bool(text) != bool(url):
        raise HTTPException(status_code=400, detail="button_text and button_url must be set together")


def _active_course_id(db: Session) -> uuid.UUID | None:
    return db.scalar(
        select(Course.id)
        .where(Course.is_active == True)  # noqa: E712
        .order_by(Course.order_index.asc(), Course.created_at.asc())
        .limit(1)
    )


def _learner_status(progress: CourseProgress | None) -> str:
    if progress is None:
        return "not_started"
    if progress.completed_at is not None:
        return "completed"
    return "in_progress"


def _learner_public(user: User, progress: CourseProgress | None) -> dict:
    return {
        "id": str(user.id),
        "telegram_id": user.telegram_id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone_number": user.phone_number,
        "created_at": _iso(user.created_at),
        "status": _learner_status(progress),
    }


def _course_public(course: Course, lessons_count: int) -> dict:
    return {
        "id": str(course.id),
        "title": course.title,
        "description": course.description,
        "is_active": bool(course.is_active),
        "order_index": int(course.order_index or 0),
        "lessons_count": int(lessons_count),
        "created_at": _iso(course.created_at),
    }


def _lesson_public(lesson: Lesson, test_id: uuid.UUID | None) -> dict:
    return {
        "id": str(lesson.id),
        "course_id": str(lesson.course_id),
        "title": lesson.title,
        "order_index": int(lesson.order_index),
        "media_type": lesson.media_type,
        "media_url": lesson.media_url,
        "caption": lesson.caption,
        "button_text": lesson.button_text,
        "button_url": lesson.button_url,
        "test_id": str(test_id) if test_id else None,
    }


def _notification_public(n: Notification) -> dict:
    return {
        "id": str(n.id),
        "course_id": str(n.course_id),
        "phase": n.phase,
        "media_type": n.media_type,
        "media_url": n.media_url,
        "caption": n.caption,
        "button_text": n.button_text,
        "button_url": n.button_url,
        "is_active": bool(n.is_active),
    }


def _test_public(db: Session, test: Test) -> dict:
    questions = db.scalars(select(Question).where(Question.test_id == test.id).order_by(Question.order_index.asc())).all()
    return {
        "id": str(test.id),
        "lesson_id": str(test.lesson_id),
        "title": test.title,
        "questions": [
            {
                "id": str(q.id),
                "question_text": q.question_text,
                "options": list(q.options or []),
                "correct_option": int(q.correct_option),
                "order_index": int(q.order_index),
            }
            for q in questions
        ],
    }


def _delete_tests(db: Session, test_ids: list[uuid.UUID]) -> None:
    if not test_ids:
        return
    db.execute(delete(TestResult).where(TestResult.test_id.in_(test_ids)))
    db.execute(delete(Question).where(Question.test_id.in_(test_ids)))
    db.execute(delete(Test).where(Test.id.in_(test_ids)))


# Stats


@router.get("/stats", response_model=StatsResponse)
def stats(
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    enrolled = int(db.scalar(select(func.count(CourseProgress.id))) or 0)
    completed = int(db.scalar(select(func.count(CourseProgress.id)).where(CourseProgress.completed_at.is_not(None))) or 0)
    avg = db.scalar(select(func.avg(TestResult.score)))
    return {
        "users_total": int(db.scalar(select(func.count(User.id))) or 0),
        "users_with_phone": int(db.scalar(select(func.count(User.id)).where(User.phone_number.is_not(None))) or 0),
        "courses_total": int(db.scalar(select(func.count(Course.id))) or 0),
        "courses_active": int(db.scalar(select(func.count(Course.id)).where(Course.is_active == True)) or 0),  # noqa: E712
        "lessons_total": int(db.scalar(select(func.count(Lesson.id))) or 0),
        "tests_total": int(db.scalar(select(func.count(Test.id))) or 0),
        "enrolled": enrolled,
        "in_progress": enrolled - completed,
        "completed": completed,
        "results_total": int(db.scalar(select(func.count(TestResult.id))) or 0),
        "average_score": round(float(avg), 1) if avg is not None else None,
    }


# Learners


def _learners_query(db: Session, *, q: str | None, status: str | None):
    course_id = _active_course_id(db)
    stmt = select(User, CourseProgress).outerjoin(
        CourseProgress,
        (CourseProgress.user_id == User.id) & (CourseProgress.course_id == course_id),
    )

    needle = str(q or "").strip()
    if needle:
        like = f"%{needle}%"
        stmt = stmt.where(
            or_(
                User.telegram_id.ilike(like),
                User.username.ilike(like),
                User.first_name.ilike(like),
                User.last_name.ilike(like),
                User.phone_number.ilike(like),
            )
        )

    if status:
        if status not in LEARNER_STATUSES:
            raise HTTPException(status_code=400, detail="invalid status")
        if status == "not_started":
            stmt = stmt.where(CourseProgress.id.is_(None))
        elif status == "completed":
            stmt = stmt.where(CourseProgress.completed_at.is_not(None))
        else:
            stmt = stmt.where(CourseProgress.id.is_not(None), CourseProgress.completed_at.is_(None))
    return stmt


@router.get("/users", response_model=LearnersListResponse)
def list_users(
    q: str | None = Query(default=None),
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    stmt = _learners_query(db, q=q, status=status)
    total = int(db.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
    rows = db.execute(
        stmt.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    ).all()
    return {
        "items": [_learner_public(user, progress) for user, progress in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/users/export")
def export_users(
    fmt: str = Query(default="csv", alias="format"),
    q: str | None = Query(default=None),
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
    __: object = rate_limit(key_prefix="admin_export_users", limit=10, window_seconds=60),
):
    fmt = str(fmt or "").strip().lower()
    if fmt not in {"csv", "json"}:
        raise HTTPException(status_code=400, detail="format must be csv or json")

    rows = db.execute(_learners_query(db, q=q, status=status).order_by(User.created_at.asc())).all()
    items = [_learner_public(user, progress) for user, progress in rows]

    if fmt == "json":
        return Response(
            content=json.dumps(items, ensure_ascii=False),
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="users.json"'},
        )

    buf = io.StringIO()
    fields = list(LearnerPublic.model_fields.keys())
    writer = csv.DictWriter(buf, fieldnames=fields)
    writer.writeheader()
    for item in items:
        writer.writerow(item)
    return Response(
        content=buf.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="users.csv"'},
    )


@router.get("/users/{user_id}")
def get_user(
    user_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    uid = _uuid(user_id, field="user_id")
    user = db.scalar(select(User).where(User.id == uid))
    if user is None:
        raise HTTPException(status_code=404, detail="user not found")

    active_id = _active_course_id(db)
    progress_rows = db.execute(
        select(CourseProgress, Course.title)
        .join(Course, Course.id == CourseProgress.course_id)
        .where(CourseProgress.user_id == uid)
        .order_by(CourseProgress.started_at.asc())
    ).all()
    result_rows = db.execute(
        select(TestResult, Test.title)
        .join(Test, Test.id == TestResult.test_id)
        .where(TestResult.user_id == uid)
        .order_by(TestResult.created_at.asc())
    ).all()

    active_progress = next((p for p, _t in progress_rows if p.course_id == active_id), None)
    return {
        "user": _learner_public(user, active_progress),
        "progress": [
            {
                "course_id": str(p.course_id),
                "course_title": title,
                "phase": p.phase.value,
                "current_lesson_index": int(p.current_lesson_index),
                "started_at": _iso(p.started_at),
                "last_activity": _iso(p.last_activity),
                "completed_at": _iso(p.completed_at),
            }
            for p, title in progress_rows
        ],
        "results": [
            {
                "id": str(r.id),
                "test_id": str(r.test_id),
                "test_title": title,
                "score": int(r.score),
                "grade": r.grade.value,
                "created_at": _iso(r.created_at),
            }
            for r, title in result_rows
        ],
    }


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    db: Session = Depends(get_db),
    operator: ConsoleOperator = Depends(get_current_operator),
):
    uid = _uuid(user_id, field="user_id")
    user = db.scalar(select(User).where(User.id == uid))
    if user is None:
        raise HTTPException(status_code=404, detail="user not found")

    db.execute(delete(TestResult).where(TestResult.user_id == uid))
    db.execute(delete(CourseProgress).where(CourseProgress.user_id == uid))
    db.delete(user)
    db.commit()
    RedisAttemptStore(get_redis()).clear(uid)
    log.info("user %s deleted by operator %s", uid, operator.login)
    return {"ok": True}


# Courses


@router.get("/courses", response_model=list[CoursePublic])
def list_courses(
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    counts = dict(db.execute(select(Lesson.course_id, func.count(Lesson.id)).group_by(Lesson.course_id)).all())
    courses = db.scalars(select(Course).order_by(Course.order_index.asc(), Course.created_at.asc())).all()
    return [_course_public(c, counts.get(c.id, 0)) for c in courses]


def _require_course(db: Session, course_id: str) -> Course:
    cid = _uuid(course_id, field="course_id")
    course = db.scalar(select(Course).where(Course.id == cid))
    if course is None:
        raise HTTPException(status_code=404, detail="course not found")
    return course


def _lessons_count(db: Session, course_id: uuid.UUID) -> int:
    return int(db.scalar(select(func.count(Lesson.id)).where(Lesson.course_id == course_id)) or 0)


@router.get("/courses/{course_id}", response_model=CoursePublic)
def get_course(
    course_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, course_id)
    return _course_public(course, _lessons_count(db, course.id))


@router.post("/courses", response_model=IdResponse)
def create_course(
    body: CourseCreateRequest,
    db: Session = Depends(get_db),
    operator: ConsoleOperator = Depends(get_current_operator),
):
    if not str(body.title or "").strip():
        raise HTTPException(status_code=400, detail="title is required")
    course = Course(
        title=body.title.strip(),
        description=body.description,
        is_active=body.is_active,
        order_index=body.order_index,
    )
    db.add(course)
    db.commit()
    log.info("course %s created by operator %s", course.id, operator.login)
    return {"id": str(course.id)}


@router.patch("/courses/{course_id}", response_model=CoursePublic)
def update_course(
    course_id: str,
    body: CourseUpdateRequest,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, course_id)
    data = body.model_dump(exclude_unset=True)
    if "title" in data and not str(data["title"] or "").strip():
        raise HTTPException(status_code=400, detail="title is required")
    for k, v in data.items():
        setattr(course, k, v)
    db.commit()
    return _course_public(course, _lessons_count(db, course.id))


@router.post("/courses/{course_id}/toggle", response_model=CoursePublic)
def toggle_course(
    course_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, course_id)
    course.is_active = not bool(course.is_active)
    db.commit()
    return _course_public(course, _lessons_count(db, course.id))


@router.delete("/courses/{course_id}")
def delete_course(
    course_id: str,
    db: Session = Depends(get_db),
    operator: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, course_id)
    lesson_ids = list(db.scalars(select(Lesson.id).where(Lesson.course_id == course.id)).all())
    if lesson_ids:
        _delete_tests(db, list(db.scalars(select(Test.id).where(Test.lesson_id.in_(lesson_ids))).all()))
        db.execute(delete(Lesson).where(Lesson.id.in_(lesson_ids)))
    db.execute(delete(Notification).where(Notification.course_id == course.id))
    db.execute(delete(CourseProgress).where(CourseProgress.course_id == course.id))
    db.delete(course)
    db.commit()
    log.info("course %s deleted by operator %s", course_id, operator.login)
    return {"ok": True}


# Lessons


def _require_lesson(db: Session, lesson_id: str) -> Lesson:
    lid = _uuid(lesson_id, field="lesson_id")
    lesson = db.scalar(select(Lesson).where(Lesson.id == lid))
    if lesson is None:
        raise HTTPException(status_code=404, detail="lesson not found")
    return lesson


def _lesson_test_id(db: Session, lesson_id: uuid.UUID) -> uuid.UUID | None:
    return db.scalar(select(Test.id).where(Test.lesson_id == lesson_id))


@router.get("/courses/{course_id}/lessons", response_model=list[LessonPublic])
def list_lessons(
    course_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, course_id)
    lessons = db.scalars(select(Lesson).where(Lesson.course_id == course.id).order_by(Lesson.order_index.asc())).all()
    tests: dict[uuid.UUID, uuid.UUID] = {}
    if lessons:
        rows = db.execute(select(Test.lesson_id, Test.id).where(Test.lesson_id.in_([lesson.id for lesson in lessons]))).all()
        tests = {lesson_id: test_id for lesson_id, test_id in rows}
    return [_lesson_public(lesson, tests.get(lesson.id)) for lesson in lessons]


@router.get("/lessons/{lesson_id}", response_model=LessonPublic)
def get_lesson(
    lesson_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    lesson = _require_lesson(db, lesson_id)
    return _lesson_public(lesson, _lesson_test_id(db, lesson.id))


@router.post("/lessons", response_model=IdResponse)
def create_lesson(
    body: LessonCreateRequest,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, body.course_id)
    if not str(body.title or "").strip() or not str(body.media_url or "").strip():
        raise HTTPException(status_code=400, detail="title and media_url are required")
    _validate_button(body.button_text, body.button_url)

    order_index = body.order_index
    if order_index is None:
        current_max = db.scalar(select(func.max(Lesson.order_index)).where(Lesson.course_id == course.id))
        order_index = int(current_max) + 1 if current_max is not None else 0

    lesson = Lesson(
        course_id=course.id,
        title=body.title.strip(),
        order_index=int(order_index),
        media_type=body.media_type,
        media_url=body.media_url.strip(),
        caption=body.caption,
        button_text=body.button_text,
        button_url=body.button_url,
    )
    db.add(lesson)
    _commit(db, conflict="order_index already used in this course")
    return {"id": str(lesson.id)}


@router.patch("/lessons/{lesson_id}", response_model=LessonPublic)
def update_lesson(
    lesson_id: str,
    body: LessonUpdateRequest,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    lesson = _require_lesson(db, lesson_id)
    data = body.model_dump(exclude_unset=True)
    for k in ("title", "media_url", "media_type"):
        if k in data and not data[k]:
            raise HTTPException(status_code=400, detail=f"{k} is required")
    _validate_button(data.get("button_text", lesson.button_text), data.get("button_url", lesson.button_url))

    for k, v in data.items():
        setattr(lesson, k, v)
    _commit(db, conflict="order_index already used in this course")
    return _lesson_public(lesson, _lesson_test_id(db, lesson.id))


@router.delete("/lessons/{lesson_id}")
def delete_lesson(
    lesson_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    lesson = _require_lesson(db, lesson_id)
    _delete_tests(db, list(db.scalars(select(Test.id).where(Test.lesson_id == lesson.id)).all()))
    db.delete(lesson)
    db.commit()
    return {"ok": True}


# Tests


@router.get("/tests")
def list_tests(
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    counts = dict(db.execute(select(Question.test_id, func.count(Question.id)).group_by(Question.test_id)).all())
    rows = db.execute(
        select(Test, Lesson.title, Lesson.course_id)
        .join(Lesson, Lesson.id == Test.lesson_id)
        .order_by(Lesson.course_id, Lesson.order_index.asc())
    ).all()
    return [
        {
            "id": str(t.id),
            "lesson_id": str(t.lesson_id),
            "lesson_title": lesson_title,
            "course_id": str(course_id),
            "title": t.title,
            "questions_count": int(counts.get(t.id, 0)),
        }
        for t, lesson_title, course_id in rows
    ]


@router.get("/tests/{test_id}", response_model=TestPublic)
def get_test(
    test_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    tid = _uuid(test_id, field="test_id")
    test = db.scalar(select(Test).where(Test.id == tid))
    if test is None:
        raise HTTPException(status_code=404, detail="test not found")
    return _test_public(db, test)


@router.get("/lessons/{lesson_id}/test", response_model=TestPublic)
def get_lesson_test(
    lesson_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    lesson = _require_lesson(db, lesson_id)
    test = db.scalar(select(Test).where(Test.lesson_id == lesson.id))
    if test is None:
        raise HTTPException(status_code=404, detail="test not found")
    return _test_public(db, test)


@router.put("/tests", response_model=TestPublic)
def upsert_test(
    body: TestUpsertRequest,
    db: Session = Depends(get_db),
    operator: ConsoleOperator = Depends(get_current_operator),
):
    """Create the lesson's test or replace its title and questions."""
    lesson = _require_lesson(db, body.lesson_id)
    if not str(body.title or "").strip():
        raise HTTPException(status_code=400, detail="title is required")
    _validate_questions(body.questions)

    test = db.scalar(select(Test).where(Test.lesson_id == lesson.id))
    if test is None:
        test = Test(lesson_id=lesson.id, title=body.title.strip())
        db.add(test)
        db.flush()
    else:
        test.title = body.title.strip()
        db.execute(delete(Question).where(Question.test_id == test.id))

    for i, q in enumerate(body.questions):
        db.add(
            Question(
                test_id=test.id,
                question_text=q.question_text.strip(),
                options=[str(o).strip() for o in q.options],
                correct_option=int(q.correct_option),
                order_index=i,
            )
        )
    _commit(db, conflict="lesson already has a test")
    log.info("test %s saved with %s questions by operator %s", test.id, len(body.questions), operator.login)
    return _test_public(db, test)


@router.delete("/tests/{test_id}")
def delete_test(
    test_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    tid = _uuid(test_id, field="test_id")
    if db.scalar(select(Test.id).where(Test.id == tid)) is None:
        raise HTTPException(status_code=404, detail="test not found")
    _delete_tests(db, [tid])
    db.commit()
    return {"ok": True}


# Chat admins


@router.get("/admins", response_model=list[AdminPublic])
def list_admins(
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    admins = db.scalars(select(Admin).order_by(Admin.created_at.asc())).all()
    return [{"id": str(a.id), "telegram_id": a.telegram_id, "created_at": _iso(a.created_at)} for a in admins]


@router.post("/admins", response_model=AdminPublic)
def add_admin(
    body: AdminCreateRequest,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    telegram_id = str(body.telegram_id or "").strip()
    if not telegram_id:
        raise HTTPException(status_code=400, detail="telegram_id is required")
    admin = db.scalar(select(Admin).where(Admin.telegram_id == telegram_id))
    if admin is None:
        admin = Admin(telegram_id=telegram_id)
        db.add(admin)
        _commit(db, conflict="admin already exists")
    return {"id": str(admin.id), "telegram_id": admin.telegram_id, "created_at": _iso(admin.created_at)}


@router.delete("/admins/{telegram_id}")
def remove_admin(
    telegram_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    admin = db.scalar(select(Admin).where(Admin.telegram_id == str(telegram_id).strip()))
    if admin is None:
        raise HTTPException(status_code=404, detail="admin not found")
    db.delete(admin)
    db.commit()
    return {"ok": True}


# Notifications


def _require_notification(db: Session, notification_id: str) -> Notification:
    nid = _uuid(notification_id, field="notification_id")
    n = db.scalar(select(Notification).where(Notification.id == nid))
    if n is None:
        raise HTTPException(status_code=404, detail="notification not found")
    return n


@router.get("/notifications", response_model=list[NotificationPublic])
def list_notifications(
    course_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    stmt = select(Notification).order_by(Notification.created_at.asc())
    if course_id:
        stmt = stmt.where(Notification.course_id == _uuid(course_id, field="course_id"))
    return [_notification_public(n) for n in db.scalars(stmt).all()]


@router.get("/notifications/{notification_id}", response_model=NotificationPublic)
def get_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    return _notification_public(_require_notification(db, notification_id))


@router.post("/notifications", response_model=IdResponse)
def create_notification(
    body: NotificationCreateRequest,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    course = _require_course(db, body.course_id)
    if not str(body.media_url or "").strip():
        raise HTTPException(status_code=400, detail="media_url is required")
    _validate_button(body.button_text, body.button_url)

    n = Notification(
        course_id=course.id,
        phase=body.phase,
        media_type=body.media_type,
        media_url=body.media_url.strip(),
        caption=body.caption,
        button_text=body.button_text,
        button_url=body.button_url,
        is_active=body.is_active,
    )
    db.add(n)
    db.commit()
    return {"id": str(n.id)}


@router.patch("/notifications/{notification_id}", response_model=NotificationPublic)
def update_notification(
    notification_id: str,
    body: NotificationUpdateRequest,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    n = _require_notification(db, notification_id)
    data = body.model_dump(exclude_unset=True)
    for k in ("phase", "media_type", "media_url"):
        if k in data and not data[k]:
            raise HTTPException(status_code=400, detail=f"{k} is required")
    _validate_button(data.get("button_text", n.button_text), data.get("button_url", n.button_url))
    for k, v in data.items():
        setattr(n, k, v)
    db.commit()
    return _notification_public(n)


@router.post("/notifications/{notification_id}/toggle", response_model=NotificationPublic)
def toggle_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    n = _require_notification(db, notification_id)
    n.is_active = not bool(n.is_active)
    db.commit()
    return _notification_public(n)


@router.delete("/notifications/{notification_id}")
def delete_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    _: ConsoleOperator = Depends(get_current_operator),
):
    n = _require_notification(db, notification_id)
    db.delete(n)
    db.commit()
    return {"ok": True}


# Broadcast and jobs


@router.post("/broadcast")
def broadcast(
    body: BroadcastRequest,
    operator: ConsoleOperator = Depends(get_current_operator),
    _: object = rate_limit(key_prefix="admin_broadcast", limit=5, window_seconds=60),
):
    if not str(body.message or "").strip():
        raise HTTPException(status_code=400, detail="message is required")
    if bool(body.media_type) != bool(body.media_url):
        raise HTTPException(status_code=400, detail="media_type and media_url must be set together")
    _validate_button(body.button_text, body.button_url)

    q = get_queue(str(settings.rq_queue_default))
    job = q.enqueue(
        broadcast_job,
        message=body.message,
        media_type=body.media_type.value if body.media_type else None,
        media_url=body.media_url,
        button_text=body.button_text,
        button_url=body.button_url,
        job_timeout=60 * 60,
        result_ttl=60 * 60 * 24,
        failure_ttl=60 * 60 * 24,
    )
    log.info("broadcast job %s enqueued by operator %s", job.id, operator.login)
    return {"ok": True, "job_id": str(job.id)}


@router.get("/jobs/{job_id}")
def job_status(
    job_id: str,
    _: ConsoleOperator = Depends(get_current_operator),
):
    job = fetch_job(job_id)
    if job is None:
        return {"id": str(job_id), "status": "missing", "result": None, "error": "job not found"}

    status = job.get_status(refresh=True)
    status = str(getattr(status, "value", status))
    meta = dict(job.meta or {})

    error_summary = None
    if status == "failed":
        error_summary = str(job.exc_info or "").strip().splitlines()[-1:] or None
        error_summary = error_summary[0][:500] if error_summary else None

    return {
        "id": job.id,
        "status": status,
        "enqueued_at": _iso(job.enqueued_at),
        "started_at": _iso(job.started_at),
        "ended_at": _iso(job.ended_at),
        "done": meta.get("done"),
        "total": meta.get("total"),
        "result": job.return_value() if status == "finished" else None,
        "error": error_summary,
    }
