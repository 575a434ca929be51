import os
import sys
import time
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from coursebot.core.errors import ChannelError
from coursebot.db import session as session_module
from coursebot.db.base import Base
from coursebot.main import create_app

# Import models so that they are registered in Base.metadata before create_all.
from coursebot.models.course import Course, Lesson, MediaType
from coursebot.models.notification import Notification  # noqa: F401
from coursebot.models.progress import CourseProgress  # noqa: F401
from coursebot.models.quiz import Question, Test
from coursebot.models.result import TestResult  # noqa: F401
from coursebot.models.user import Admin, ConsoleOperator, User


class _MemoryRedis:
    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def ping(self):
        return True

    def flushall(self):
        self._data.clear()
        return True

    def _now(self) -> float:
        return time.time()

    def _get_entry(self, key: str):
        v = self._data.get(key)
        if not v:
            return None
        value, exp = v
        if exp is not None and exp <= self._now():
            self._data.pop(key, None)
            return None
        return value, exp

    def get(self, key: str):
        entry = self._get_entry(key)
        return entry[0] if entry else None

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and self._get_entry(key) is not None:
            return None
        exp = (self._now() + int(ex)) if ex else None
        self._data[key] = (str(value), exp)
        return True

    def delete(self, key: str):
        return 1 if self._data.pop(key, None) is not None else 0

    def eval(self, script: str, numkeys: int, *keys_and_args):
        # only the learner-lock compare-and-delete script runs against this fake
        keys, args = keys_and_args[:numkeys], keys_and_args[numkeys:]
        if self.get(keys[0]) == str(args[0]):
            return self.delete(keys[0])
        return 0

    def incr(self, key: str):
        cur = self.get(key)
        n = int(cur or 0) + 1
        _, exp = self._data.get(key, ("", None))
        self._data[key] = (str(n), exp)
        return n

    def expire(self, key: str, seconds: int):
        entry = self._get_entry(key)
        if not entry:
            return False
        value, _ = entry
        self._data[key] = (value, self._now() + int(seconds))
        return True

    def ttl(self, key: str):
        entry = self._get_entry(key)
        if not entry:
            return -2
        _, exp = entry
        if exp is None:
            return -1
        return max(0, int(exp - self._now()))


class RecordingChannel:
    """Channel fake that records every outbound call; chats in ``fail_for`` raise ChannelError."""

    def __init__(self):
        self.sent: list[dict] = []
        self.callbacks: list[tuple[str, str | None]] = []
        self.commands: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()

    def _check(self, method: str, chat_id: str) -> None:
        if str(chat_id) in self.fail_for:
            raise ChannelError(method, "Forbidden: bot was blocked by the user", status=403)

    def send_message(self, chat_id, text, *, reply_markup=None, parse_mode=None):
        self._check("sendMessage", chat_id)
        self.sent.append(
            {
                "method": "sendMessage",
                "chat_id": str(chat_id),
                "text": text,
                "reply_markup": reply_markup,
                "parse_mode": parse_mode,
            }
        )
        return {"message_id": len(self.sent)}

    def send_media(self, chat_id, media, *, caption=None, reply_markup=None):
        method = "sendPhoto" if media.kind == MediaType.photo else "sendVideo"
        self._check(method, chat_id)
        self.sent.append(
            {
                "method": method,
                "chat_id": str(chat_id),
                "url": media.url,
                "text": caption,
                "reply_markup": reply_markup,
            }
        )
        return {"message_id": len(self.sent)}

    def answer_callback(self, callback_id, text=None):
        self.callbacks.append((callback_id, text))

    def set_commands(self, commands):
        self.commands = list(commands)

    def to(self, chat_id) -> list[dict]:
        return [m for m in self.sent if m["chat_id"] == str(chat_id)]

    def texts(self, chat_id) -> list[str]:
        return [m["text"] or "" for m in self.to(chat_id)]


# Configure test DB (SQLite in-memory) at import time so every module that
# resolves coursebot.db.session.SessionLocal gets the patched version.
_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
Base.metadata.create_all(bind=_engine)
session_module.engine = _engine
session_module.SessionLocal = session_module.sessionmaker(autocommit=False, autoflush=False, bind=_engine)


# Stub Redis at import time (rate limiting, attempts, locks, reminders).
_mem_redis = _MemoryRedis()
import coursebot.core.redis_client as redis_client_module

redis_client_module.get_redis = lambda: _mem_redis

import coursebot.core.rate_limit as rate_limit_module
rate_limit_module.get_redis = lambda: _mem_redis

import coursebot.routers.health as health_router_module
health_router_module.get_redis = lambda: _mem_redis

import coursebot.routers.admin as admin_router_module
admin_router_module.get_redis = lambda: _mem_redis

import coursebot.routers.telegram as telegram_router_module
telegram_router_module.get_redis = lambda: _mem_redis

import coursebot.services.notifications as notifications_module
notifications_module.get_redis = lambda: _mem_redis


@pytest.fixture(autouse=True)
def _clean_state():
    Base.metadata.drop_all(bind=_engine)
    Base.metadata.create_all(bind=_engine)
    _mem_redis.flushall()
    yield


@pytest.fixture()
def mem_redis():
    return _mem_redis


@pytest.fixture()
def channel():
    return RecordingChannel()


@pytest.fixture()
def client(channel):
    app = create_app()

    # Ensure app dependencies use our session factory and the recording channel.
    def _get_db_override():
        db = session_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[session_module.get_db] = _get_db_override
    app.dependency_overrides[telegram_router_module.get_channel] = lambda: channel
    return TestClient(app)


@pytest.fixture()
def db():
    with session_module.SessionLocal() as session:
        yield session


@pytest.fixture()
def make_course(db):
    """Build a course; ``lessons`` holds one entry per lesson, ``None`` for no test
    or a list of ``(options, correct_option)`` per question."""

    def _make(lessons, *, title="Основы безопасности в школе", is_active=True, order_index=0):
        course = Course(title=title, description=None, is_active=is_active, order_index=order_index)
        db.add(course)
        db.flush()
        for idx, questions in enumerate(lessons):
            lesson = Lesson(
                course_id=course.id,
                title=f"Урок {idx + 1}",
                # gaps in stored order must not matter
                order_index=idx * 10,
                media_type=MediaType.photo if idx % 2 == 0 else MediaType.video,
                media_url=f"https://example.com/lesson-{idx}",
                caption=f"Урок {idx + 1}",
            )
            db.add(lesson)
            db.flush()
            if questions is None:
                continue
            test = Test(lesson_id=lesson.id, title=f"Тест {idx + 1}")
            db.add(test)
            db.flush()
            for q_idx, (options, correct) in enumerate(questions):
                db.add(
                    Question(
                        test_id=test.id,
                        question_text=f"Вопрос {q_idx + 1}",
                        options=list(options),
                        correct_option=correct,
                        order_index=q_idx,
                    )
                )
        db.commit()
        return course

    return _make


@pytest.fixture()
def make_learner(db):
    def _make(telegram_id: str = "100", **fields) -> User:
        user = User(telegram_id=telegram_id, **fields)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def make_admin(db):
    def _make(telegram_id: str) -> Admin:
        admin = Admin(telegram_id=telegram_id)
        db.add(admin)
        db.commit()
        return admin

    return _make


@pytest.fixture()
def operator_token(client, db):
    from coursebot.core.security import hash_password

    login = f"op_{uuid.uuid4().hex[:8]}"
    password = "testpass123"
    db.add(ConsoleOperator(login=login, password_hash=hash_password(password)))
    db.commit()

    r = client.post(
        "/auth/token",
        data={"username": login, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 200
    return r.json()["access_token"]


@pytest.fixture()
def auth_headers(operator_token):
    return {"Authorization": f"Bearer {operator_token}"}
