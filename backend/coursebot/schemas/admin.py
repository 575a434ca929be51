from __future__ import annotations

from pydantic import BaseModel

from coursebot.models.course import MediaType
from coursebot.models.progress import CoursePhase


class IdResponse(BaseModel):
    id: str


class CourseCreateRequest(BaseModel):
    title: str
    description: str | None = None
    is_active: bool = True
    order_index: int = 0


class CourseUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    is_active: bool | None = None
    order_index: int | None = None


class CoursePublic(BaseModel):
    id: str
    title: str
    description: str | None = None
    is_active: bool
    order_index: int
    lessons_count: int = 0
    created_at: str | None = None


class LessonCreateRequest(BaseModel):
    course_id: str
    title: str
    # appended after the last lesson when omitted
    order_index: int | None = None
    media_type: MediaType
    media_url: str
    caption: str | None = None
    button_text: str | None = None
    button_url: str | None = None


class LessonUpdateRequest(BaseModel):
    title: str | None = None
    order_index: int | None = None
    media_type: MediaType | None = None
    media_url: str | None = None
    caption: str | None = None
    button_text: str | None = None
    button_url: str | None = None


class LessonPublic(BaseModel):
    id: str
    course_id: str
    title: str
    order_index: int
    media_type: MediaType
    media_url: str
    caption: str | None = None
    button_text: str | None = None
    button_url: str | None = None
    test_id: str | None = None


class QuestionIn(BaseModel):
    question_text: str
    options: list[str]
    correct_option: int


class QuestionPublic(BaseModel):
    id: str
    question_text: str
    options: list[str]
    correct_option: int
    order_index: int


class TestUpsertRequest(BaseModel):
    __test__ = False

    lesson_id: str
    title: str
    questions: list[QuestionIn] = []


class TestPublic(BaseModel):
    __test__ = False

    id: str
    lesson_id: str
    title: str
    questions: list[QuestionPublic] = []


class AdminCreateRequest(BaseModel):
    telegram_id: str


class AdminPublic(BaseModel):
    id: str
    telegram_id: str
    created_at: str | None = None


class NotificationCreateRequest(BaseModel):
    course_id: str
    phase: CoursePhase
    media_type: MediaType
    media_url: str
    caption: str | None = None
    button_text: str | None = None
    button_url: str | None = None
    is_active: bool = True


class NotificationUpdateRequest(BaseModel):
    phase: CoursePhase | None = None
    media_type: MediaType | None = None
    media_url: str | None = None
    caption: str | None = None
    button_text: str | None = None
    button_url: str | None = None
    is_active: bool | None = None


class NotificationPublic(BaseModel):
    id: str
    course_id: str
    phase: CoursePhase
    media_type: MediaType
    media_url: str
    caption: str | None = None
    button_text: str | None = None
    button_url: str | None = None
    is_active: bool


class BroadcastRequest(BaseModel):
    message: str
    media_type: MediaType | None = None
    media_url: str | None = None
    button_text: str | None = None
    button_url: str | None = None


class LearnerPublic(BaseModel):
    id: str
    telegram_id: str
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    created_at: str | None = None
    # not_started / in_progress / completed for the active course
    status: str = "not_started"


class LearnersListResponse(BaseModel):
    items: list[LearnerPublic]
    total: int
    page: int
    page_size: int


class StatsResponse(BaseModel):
    users_total: int
    users_with_phone: int
    courses_total: int
    courses_active: int
    lessons_total: int
    tests_total: int
    enrolled: int
    in_progress: int
    completed: int
    results_total: int
    average_score: float | None = None
