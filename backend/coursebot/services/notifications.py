from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import redis
from rq import get_current_job
from sqlalchemy import select
from sqlalchemy.orm import Session

from coursebot.core.config import settings
from coursebot.core.errors import ChannelError
from coursebot.core.redis_client import get_redis
from coursebot.db import session as db_session
from coursebot.models.course import MediaType
from coursebot.models.notification import Notification
from coursebot.models.progress import CoursePhase, CourseProgress
from coursebot.models.user import User
from coursebot.services.channel import Channel, TelegramChannel
from coursebot.services.keyboards import link_keyboard
from coursebot.services.repository import CourseRepository, Media


log = logging.getLogger(__name__)


TEST_REMINDER_TEXT = (
    "⏰ *Напоминание о тесте*\n\n"
    "Вы начали проходить тест, но не завершили его.\n\n"
    "Пожалуйста, завершите тест, чтобы продолжить обучение.\n\n"
    "Нажмите /start для продолжения."
)


@dataclass(frozen=True)
class ReminderCheck:
    kind: str
    phase: CoursePhase
    idle_minutes: int


def reminder_checks() -> list[ReminderCheck]:
    return [
        ReminderCheck("lesson_start", CoursePhase.watching_lesson, int(settings.lesson_start_timeout_minutes)),
        ReminderCheck("watched", CoursePhase.taking_test, int(settings.watched_timeout_minutes)),
        ReminderCheck("test_timeout", CoursePhase.taking_test, int(settings.test_timeout_minutes)),
    ]


def _full_name(user: User) -> str:
    return f"{user.first_name or ''} {user.last_name or ''}".strip()


def _now_ru() -> str:
    return datetime.now().strftime("%d.%m.%Y, %H:%M:%S")


class NotificationService:
    """Idle-learner reminders and admin/broadcast messaging.

    A reminder is sent at most once per idle period: the claim key includes the
    progress ``last_activity`` stamp, so any learner activity opens a new period.
    Progress records are only read here.
    """

    def __init__(self, db: Session, channel: Channel, r: redis.Redis):
        self.db = db
        self.channel = channel
        self.r = r
        self.repository = CourseRepository(db)

    def _claim_reminder(self, progress: CourseProgress, kind: str) -> bool:
        stamp = int(progress.last_activity.timestamp()) if progress.last_activity else 0
        key = f"reminder:{progress.id}:{kind}:{stamp}"
        return bool(self.r.set(key, "1", nx=True, ex=int(settings.reminder_dedup_ttl_seconds)))

    def check_and_send_notifications(self, *, now: datetime | None = None) -> dict:
        now = now or datetime.utcnow()
        out: dict[str, int] = {}
        for check in reminder_checks():
            try:
                out[check.kind] = self._run_check(check, now=now)
            except Exception:
                log.exception("reminder check %s failed", check.kind)
                out[check.kind] = 0
        log.info("notification sweep done %s", out)
        return out

    def _run_check(self, check: ReminderCheck, *, now: datetime) -> int:
        stale = self.repository.list_stale_progress(check.phase, timedelta(minutes=check.idle_minutes), now=now)
        if not stale:
            return 0

        users = self.repository.users_by_id([p.user_id for p in stale])
        by_course: dict[uuid.UUID, list[Notification]] = {}
        sent = 0
        for progress in stale:
            user = users.get(progress.user_id)
            if user is None:
                continue

            if check.kind == "test_timeout":
                if not self._claim_reminder(progress, check.kind):
                    continue
                try:
                    self.channel.send_message(user.telegram_id, TEST_REMINDER_TEXT, parse_mode="Markdown")
                    sent += 1
                except ChannelError:
                    log.exception("test reminder to %s failed", user.telegram_id)
                continue

            if progress.course_id not in by_course:
                by_course[progress.course_id] = self.repository.notifications_for_phase(progress.course_id, check.phase)
            notifications = by_course[progress.course_id]
            if not notifications or not self._claim_reminder(progress, check.kind):
                continue
            for notification in notifications:
                if self._send_notification(user.telegram_id, notification):
                    sent += 1
        return sent

    def _send_notification(self, telegram_id: str, notification: Notification) -> bool:
        try:
            self.channel.send_media(
                telegram_id,
                Media(kind=notification.media_type, url=notification.media_url),
                caption=notification.caption,
                reply_markup=link_keyboard(notification.button_text, notification.button_url),
            )
            return True
        except ChannelError:
            log.exception("notification %s to %s failed", notification.id, telegram_id)
            return False

    def _admin_broadcast(self, text: str, *, parse_mode: str | None = None) -> int:
        sent = 0
        for admin in self.repository.list_admins():
            try:
                self.channel.send_message(admin.telegram_id, text, parse_mode=parse_mode)
                sent += 1
            except ChannelError:
                log.exception("notifying admin %s failed", admin.telegram_id)
        return sent

    def notify_admins_of_completion(self, user: User, course_title: str) -> int:
        text = (
            "🎓 Пользователь завершил курс!\n\n"
            f"👤 Пользователь: {_full_name(user)}\n"
            f"📞 Телефон: {user.phone_number or 'Не указан'}\n"
            f"👤 Username: @{user.username or 'Не указан'}\n"
            f"📚 Курс: {course_title}\n"
            f"🆔 Telegram ID: {user.telegram_id}\n"
            f"📅 Дата завершения: {_now_ru()}"
        )
        return self._admin_broadcast(text)

    def notify_admins_about_new_user(self, user: User) -> int:
        text = (
            "👋 Новый пользователь зарегистрировался!\n\n"
            f"👤 Имя: {_full_name(user)}\n"
            f"👤 Username: @{user.username or 'Не указан'}\n"
            f"🆔 Telegram ID: {user.telegram_id}\n"
            f"📅 Дата регистрации: {_now_ru()}"
        )
        return self._admin_broadcast(text)

    def send_custom(
        self,
        telegram_id: str,
        message: str,
        *,
        media: Media | None = None,
        button_text: str | None = None,
        button_url: str | None = None,
    ) -> None:
        """Send one operator message; raises :class:`ChannelError` on failure."""
        markup = link_keyboard(button_text, button_url)
        if media is not None:
            self.channel.send_media(telegram_id, media, caption=message, reply_markup=markup)
        else:
            self.channel.send_message(telegram_id, message, reply_markup=markup)

    def broadcast(
        self,
        message: str,
        *,
        media: Media | None = None,
        button_text: str | None = None,
        button_url: str | None = None,
        delay_ms: int | None = None,
        on_progress=None,
    ) -> dict:
        delay = max(0, int(settings.broadcast_delay_ms if delay_ms is None else delay_ms)) / 1000.0
        recipients = list(self.db.scalars(select(User.telegram_id).order_by(User.created_at.asc())).all())

        sent = 0
        failed = 0
        for i, telegram_id in enumerate(recipients):
            try:
                self.send_custom(
                    telegram_id,
                    message,
                    media=media,
                    button_text=button_text,
                    button_url=button_url,
                )
                sent += 1
            except ChannelError:
                log.warning("broadcast to %s failed", telegram_id, exc_info=True)
                failed += 1
            if on_progress is not None:
                on_progress(i + 1, len(recipients))
            if delay and i + 1 < len(recipients):
                time.sleep(delay)

        log.info("broadcast finished sent=%s failed=%s total=%s", sent, failed, len(recipients))
        return {"sent": sent, "failed": failed, "total": len(recipients)}


def notification_sweep_job() -> dict:
    db = db_session.SessionLocal()
    try:
        svc = NotificationService(db, TelegramChannel.from_settings(), get_redis())
        out = svc.check_and_send_notifications()
        return {"ok": True, "sent": out}
    finally:
        db.close()


def _job_progress(done: int, total: int) -> None:
    try:
        job = get_current_job()
    except Exception:
        job = None
    if job is None:
        return
    try:
        meta = dict(job.meta or {})
        meta["done"] = int(done)
        meta["total"] = int(total)
        meta["stage_at"] = datetime.utcnow().isoformat()
        job.meta = meta
        job.save_meta()
    except Exception:
        return


def broadcast_job(
    *,
    message: str,
    media_type: str | None = None,
    media_url: str | None = None,
    button_text: str | None = None,
    button_url: str | None = None,
) -> dict:
    media = None
    if media_type and media_url:
        media = Media(kind=MediaType(media_type), url=media_url)

    db = db_session.SessionLocal()
    try:
        svc = NotificationService(db, TelegramChannel.from_settings(), get_redis())
        out = svc.broadcast(
            message,
            media=media,
            button_text=button_text,
            button_url=button_url,
            on_progress=_job_progress,
        )
        return {"ok": True, **out}
    finally:
        db.close()
