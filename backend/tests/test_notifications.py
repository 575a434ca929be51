from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from coursebot.models.course import MediaType
from coursebot.models.notification import Notification
from coursebot.models.progress import CoursePhase, CourseProgress
from coursebot.services import notifications as notifications_module
from coursebot.services.notifications import TEST_REMINDER_TEXT, NotificationService
from coursebot.services.repository import Media


@pytest.fixture()
def service(db, channel, mem_redis):
    return NotificationService(db, channel, mem_redis)


def _notification(db, course, phase, caption, **extra):
    n = Notification(
        course_id=course.id,
        phase=phase,
        media_type=MediaType.photo,
        media_url="https://example.com/reminder.jpg",
        caption=caption,
        is_active=extra.pop("is_active", True),
        **extra,
    )
    db.add(n)
    db.commit()
    return n


def _progress(db, learner, course, phase, idle: timedelta, lesson_index: int = 0):
    stamp = datetime.utcnow() - idle
    progress = CourseProgress(
        user_id=learner.id,
        course_id=course.id,
        phase=phase,
        current_lesson_index=lesson_index,
        started_at=stamp,
        last_activity=stamp,
    )
    db.add(progress)
    db.commit()
    return progress


def test_idle_watching_learner_gets_course_reminder(service, channel, db, make_course, make_learner):
    course = make_course([None, None])
    _notification(
        db,
        course,
        CoursePhase.watching_lesson,
        "⏰ Напоминание о продолжении обучения",
        button_text="📚 Продолжить обучение",
        button_url="https://t.me/course_bot",
    )
    _notification(db, course, CoursePhase.watching_lesson, "выключено", is_active=False)
    learner = make_learner("100")
    _progress(db, learner, course, CoursePhase.watching_lesson, timedelta(minutes=31))

    out = service.check_and_send_notifications()
    assert out == {"lesson_start": 1, "watched": 0, "test_timeout": 0}
    sent = channel.to("100")
    assert len(sent) == 1
    assert sent[0]["method"] == "sendPhoto"
    assert sent[0]["text"] == "⏰ Напоминание о продолжении обучения"
    assert sent[0]["reply_markup"] == {"inline_keyboard": [[{"text": "📚 Продолжить обучение", "url": "https://t.me/course_bot"}]]}


def test_recently_active_learner_is_left_alone(service, channel, db, make_course, make_learner):
    course = make_course([None])
    _notification(db, course, CoursePhase.watching_lesson, "напоминание")
    learner = make_learner("100")
    _progress(db, learner, course, CoursePhase.watching_lesson, timedelta(minutes=5))

    service.check_and_send_notifications()
    assert channel.sent == []


def test_reminder_fires_once_per_idle_period(service, channel, db, make_course, make_learner):
    course = make_course([None])
    _notification(db, course, CoursePhase.watching_lesson, "напоминание")
    learner = make_learner("100")
    progress = _progress(db, learner, course, CoursePhase.watching_lesson, timedelta(hours=2))
    stamp = progress.last_activity

    service.check_and_send_notifications()
    service.check_and_send_notifications()
    assert len(channel.to("100")) == 1

    db.refresh(progress)
    assert progress.last_activity == stamp
    assert progress.phase == CoursePhase.watching_lesson

    # new activity, then idle again
    progress.last_activity = datetime.utcnow() - timedelta(hours=1)
    db.commit()
    service.check_and_send_notifications()
    assert len(channel.to("100")) == 2


def test_idle_test_taker_gets_both_reminders(service, channel, db, make_course, make_learner):
    course = make_course([[(["a", "b"], 0)]])
    _notification(db, course, CoursePhase.taking_test, "📝 Не забудьте пройти тест!")
    learner = make_learner("100")
    _progress(db, learner, course, CoursePhase.taking_test, timedelta(minutes=61))

    out = service.check_and_send_notifications()
    assert out == {"lesson_start": 0, "watched": 1, "test_timeout": 1}
    texts = channel.texts("100")
    assert "📝 Не забудьте пройти тест!" in texts
    assert TEST_REMINDER_TEXT in texts
    assert [m["parse_mode"] for m in channel.to("100") if m["method"] == "sendMessage"] == ["Markdown"]


def test_test_timeout_only_after_threshold(service, channel, db, make_course, make_learner):
    course = make_course([[(["a", "b"], 0)]])
    learner = make_learner("100")
    _progress(db, learner, course, CoursePhase.taking_test, timedelta(minutes=46))

    out = service.check_and_send_notifications()
    assert out == {"lesson_start": 0, "watched": 0, "test_timeout": 1}


def test_failed_send_does_not_stop_sweep(service, channel, db, make_course, make_learner):
    course = make_course([None])
    _notification(db, course, CoursePhase.watching_lesson, "напоминание")
    blocked = make_learner("100")
    active = make_learner("200")
    _progress(db, blocked, course, CoursePhase.watching_lesson, timedelta(hours=3))
    _progress(db, active, course, CoursePhase.watching_lesson, timedelta(hours=2))
    channel.fail_for.add("100")

    out = service.check_and_send_notifications()
    assert out["lesson_start"] == 1
    assert len(channel.to("200")) == 1


def test_completed_learners_are_never_reminded(service, channel, db, make_course, make_learner):
    course = make_course([None])
    _notification(db, course, CoursePhase.completed, "не отправлять")
    learner = make_learner("100")
    _progress(db, learner, course, CoursePhase.completed, timedelta(days=3))

    assert service.check_and_send_notifications() == {"lesson_start": 0, "watched": 0, "test_timeout": 0}
    assert channel.sent == []


def test_admin_notices(service, channel, make_admin, make_learner):
    make_admin("900")
    make_admin("901")
    channel.fail_for.add("901")
    learner = make_learner("100", first_name="Мария", username="maria", phone_number="+70001112233")

    assert service.notify_admins_of_completion(learner, "Основы безопасности") == 1
    text = channel.texts("900")[-1]
    assert "Мария" in text
    assert "+70001112233" in text
    assert "Основы безопасности" in text

    assert service.notify_admins_about_new_user(learner) == 1
    assert "@maria" in channel.texts("900")[-1]


def test_broadcast_counts_failures(service, channel, make_learner):
    for tid in ("100", "200", "300"):
        make_learner(tid)
    channel.fail_for.add("200")
    progress = []

    out = service.broadcast(
        "Новый курс доступен!",
        media=Media(kind=MediaType.video, url="https://example.com/v.mp4"),
        button_text="Открыть",
        button_url="https://example.com",
        delay_ms=0,
        on_progress=lambda done, total: progress.append((done, total)),
    )
    assert out == {"sent": 2, "failed": 1, "total": 3}
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert channel.to("100")[0]["method"] == "sendVideo"
    assert channel.to("300")[0]["text"] == "Новый курс доступен!"


def test_send_custom_text_only(service, channel):
    service.send_custom("100", "Привет")
    assert channel.to("100") == [
        {"method": "sendMessage", "chat_id": "100", "text": "Привет", "reply_markup": None, "parse_mode": None}
    ]


def test_sweep_job_uses_configured_channel(channel, db, make_course, make_learner, monkeypatch):
    course = make_course([None])
    _notification(db, course, CoursePhase.watching_lesson, "напоминание")
    learner = make_learner("100")
    _progress(db, learner, course, CoursePhase.watching_lesson, timedelta(hours=1))
    monkeypatch.setattr(notifications_module, "TelegramChannel", SimpleNamespace(from_settings=lambda: channel))

    out = notifications_module.notification_sweep_job()
    assert out == {"ok": True, "sent": {"lesson_start": 1, "watched": 0, "test_timeout": 0}}


def test_broadcast_job(channel, make_learner, monkeypatch):
    make_learner("100")
    monkeypatch.setattr(notifications_module, "TelegramChannel", SimpleNamespace(from_settings=lambda: channel))
    monkeypatch.setattr(notifications_module.settings, "broadcast_delay_ms", 0)

    out = notifications_module.broadcast_job(message="Всем привет", media_type="photo", media_url="https://example.com/p.jpg")
    assert out == {"ok": True, "sent": 1, "failed": 0, "total": 1}
    assert channel.to("100")[0]["method"] == "sendPhoto"
