from __future__ import annotations

import logging
import secrets
import time
from contextlib import contextmanager

import redis
from sqlalchemy.orm import Session

from coursebot.core.config import settings
from coursebot.core.errors import (
    AnswerMismatchError,
    ChannelError,
    CourseBotError,
    InvalidAnswerError,
    LearnerBusyError,
    NoActiveTestError,
    NoCourseAvailable,
    NotFoundError,
    NotWatchingError,
)
from coursebot.models.progress import CoursePhase
from coursebot.models.user import User
from coursebot.schemas.telegram import CallbackQuery, Message, Update
from coursebot.services import keyboards
from coursebot.services.attempts import RedisAttemptStore, TestSessionEngine
from coursebot.services.channel import Channel
from coursebot.services.grading import format_score, grading_scale
from coursebot.services.notifications import NotificationService
from coursebot.services.progression import (
    CourseCompleted,
    CourseProgression,
    NextLesson,
    NextQuestion,
    QuestionView,
    TestCompleted,
    TestStarted,
)
from coursebot.services.repository import CourseRepository, LessonSnapshot, TestSnapshot


log = logging.getLogger(__name__)

# delete the learner lock only while it still holds our token
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

BOT_COMMANDS: list[tuple[str, str]] = [
    ("start", "Начать работу с ботом"),
    ("help", "Получить справку"),
    ("admin_add", "Добавить администратора (только для админов)"),
    ("admin_remove", "Удалить администратора (только для админов)"),
    ("stats", "Получить статистику (только для админов)"),
]

WELCOME_TEXT = (
    "🎓 Добро пожаловать в систему онлайн обучения!\n\n"
    "Здесь вы сможете пройти обучающий курс с интерактивными уроками и тестами.\n\n"
    "📚 Нажмите кнопку ниже, чтобы начать обучение."
)

NO_COURSE_TEXT = "❌ В данный момент нет доступных курсов."
NOT_WATCHING_TEXT = "❌ Вы не просматриваете урок в данный момент."
ALL_LESSONS_DONE_TEXT = "✅ Вы завершили все уроки в этом курсе!"
NO_RIGHTS_TEXT = "❌ У вас нет прав администратора."
PHONE_REQUEST_TEXT = "📞 Пожалуйста, поделитесь своим номером телефона для завершения регистрации:"
PHONE_SAVED_TEXT = "✅ Спасибо! Ваш номер телефона сохранен."


def help_text() -> str:
    return (
        "📚 *Справка по использованию бота*\n\n"
        "*Как использовать:*\n"
        "1. Нажмите 'Начать курс' для старта обучения\n"
        "2. Просматривайте уроки и нажимайте 'Посмотрел!' после изучения\n"
        "3. Проходите тесты, выбирая правильные ответы\n"
        "4. Получайте оценки и продолжайте обучение\n\n"
        "*Команды:*\n"
        "/start - начать работу с ботом\n"
        "/help - показать эту справку\n\n"
        "*Оценки:*\n" + grading_scale()
    )


def _command(text: str) -> tuple[str, str]:
    """'/admin_add@bot 123' -> ('admin_add', '123')."""
    head, _, rest = text.partition(" ")
    return head[1:].split("@", 1)[0].lower(), rest.strip()


class BotDispatcher:
    """Routes Telegram updates to the course progression and renders outcomes.

    Each update is processed at most once (``update_id`` claim) and never
    concurrently with another update from the same chat (per-learner lock).
    """

    def __init__(
        self,
        db: Session,
        channel: Channel,
        r: redis.Redis,
        *,
        lock_wait_seconds: float = 5.0,
    ):
        self.db = db
        self.channel = channel
        self.r = r
        self.lock_wait_seconds = float(lock_wait_seconds)

        self.repository = CourseRepository(db)
        store = RedisAttemptStore(r, ttl_seconds=settings.test_attempt_ttl_seconds)
        self.engine = TestSessionEngine(store, self.repository)
        self.progression = CourseProgression(self.repository, self.engine)
        self.notifications = NotificationService(db, channel, r)

    # Entry point

    def dispatch(self, update: Update) -> str:
        chat_ref = self._chat_ref(update)
        if chat_ref is None:
            return "ignored"

        with self._learner_lock(chat_ref):
            if not self._claim_update(update.update_id):
                log.info("duplicate update %s skipped", update.update_id)
                return "duplicate"
            try:
                if update.callback_query is not None:
                    self._handle_callback(update.callback_query)
                elif update.message is not None:
                    self._handle_message(update.message)
            except Exception:
                log.exception("update %s failed chat=%s", update.update_id, chat_ref)
                self.repository.rollback()
                self._safe_send(chat_ref, "❌ Произошла ошибка. Попробуйте еще раз позже.")
        return "handled"

    @staticmethod
    def _chat_ref(update: Update) -> str | None:
        if update.callback_query is not None:
            cq = update.callback_query
            if cq.message is not None:
                return str(cq.message.chat.id)
            return str(cq.from_user.id)
        if update.message is not None:
            return str(update.message.chat.id)
        return None

    def _claim_update(self, update_id: int) -> bool:
        key = f"tg:update:{int(update_id)}"
        return bool(self.r.set(key, "1", nx=True, ex=int(settings.event_dedup_ttl_seconds)))

    @contextmanager
    def _learner_lock(self, chat_ref: str):
        key = f"locks:learner:{chat_ref}"
        token = secrets.token_hex(8)
        deadline = time.monotonic() + self.lock_wait_seconds
        while not self.r.set(key, token, nx=True, ex=int(settings.learner_lock_ttl_seconds)):
            if time.monotonic() >= deadline:
                raise LearnerBusyError(chat_ref)
            time.sleep(0.05)
        try:
            yield
        finally:
            self.r.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)

    def _safe_send(self, chat_id: str, text: str, **kwargs) -> None:
        try:
            self.channel.send_message(chat_id, text, **kwargs)
        except ChannelError:
            log.exception("send to %s failed", chat_id)

    def _safe_answer(self, callback_id: str, text: str | None = None) -> None:
        try:
            self.channel.answer_callback(callback_id, text)
        except ChannelError:
            log.warning("answerCallbackQuery %s failed", callback_id, exc_info=True)

    # Learners

    def _learner(self, message: Message) -> User:
        chat = message.chat
        user, created = self.repository.get_or_create_user(
            str(chat.id),
            username=chat.username,
            first_name=chat.first_name,
            last_name=chat.last_name,
        )
        self.repository.commit()
        if created:
            log.info("new learner telegram_id=%s", user.telegram_id)
            self.notifications.notify_admins_about_new_user(user)
        return user

    # Messages

    def _handle_message(self, message: Message) -> None:
        chat_id = str(message.chat.id)
        if message.contact is not None:
            self._handle_contact(message)
            return

        text = (message.text or "").strip()
        if not text:
            return

        if text.startswith("/"):
            command, args = _command(text)
            if command == "start":
                self._handle_start(message)
            elif command == "help":
                self.channel.send_message(chat_id, help_text(), parse_mode="Markdown")
            elif command == "admin_add":
                self._handle_admin_change(chat_id, args, add=True)
            elif command == "admin_remove":
                self._handle_admin_change(chat_id, args, add=False)
            elif command == "stats":
                self._handle_stats(chat_id)
            return

        if text == keyboards.START_COURSE_TEXT:
            self._handle_start_course(message)
        elif text == keyboards.WATCHED_TEXT:
            # carries no lesson index, so it only re-sends the current step
            self._handle_start_course(message)

    def _handle_start(self, message: Message) -> None:
        self._learner(message)
        self.channel.send_message(str(message.chat.id), WELCOME_TEXT, reply_markup=keyboards.start_keyboard())

    def _handle_start_course(self, message: Message) -> None:
        chat_id = str(message.chat.id)
        user = self._learner(message)
        try:
            start = self.progression.start_course(user.id)
        except NoCourseAvailable:
            self.channel.send_message(chat_id, NO_COURSE_TEXT)
            return
        except CourseBotError:
            log.exception("start course failed learner=%s", user.id)
            self.repository.rollback()
            self.channel.send_message(chat_id, "❌ Произошла ошибка при запуске курса.")
            return

        if start.completed:
            self.channel.send_message(chat_id, ALL_LESSONS_DONE_TEXT)
            return
        if start.test is not None and start.question is not None:
            self._send_test_intro(chat_id, start.test)
            self._send_question(chat_id, start.question)
            return
        if start.lesson is not None:
            self._send_lesson(chat_id, start.lesson)

    def _handle_watched(self, chat_id: str, user: User, lesson_index: int | None) -> None:
        try:
            outcome = self.progression.lesson_watched(user.id, lesson_index)
        except NotWatchingError:
            self.channel.send_message(chat_id, NOT_WATCHING_TEXT)
            return
        except NoCourseAvailable:
            self.channel.send_message(chat_id, NO_COURSE_TEXT)
            return
        except NotFoundError:
            self.channel.send_message(chat_id, NOT_WATCHING_TEXT)
            return
        except CourseBotError:
            log.exception("mark watched failed learner=%s", user.id)
            self.repository.rollback()
            self.channel.send_message(chat_id, "❌ Произошла ошибка при обработке урока.")
            return
        self._present(chat_id, user, outcome)

    def _handle_contact(self, message: Message) -> None:
        chat_id = str(message.chat.id)
        contact = message.contact
        sender = message.from_user
        if contact.user_id is not None and sender is not None and int(contact.user_id) != int(sender.id):
            self.channel.send_message(chat_id, "❌ Пожалуйста, отправьте свой собственный номер телефона.")
            return

        user = self._learner(message)
        had_phone = bool(user.phone_number)
        self.repository.update_user_phone(user.id, contact.phone_number)
        self.repository.commit()
        self.channel.send_message(chat_id, PHONE_SAVED_TEXT, reply_markup=keyboards.remove_keyboard())

        course = self.repository.get_active_course()
        if course is None:
            return
        progress = self.repository.get_progress(user.id, course.id)
        if not had_phone and progress is not None and progress.phase == CoursePhase.completed:
            self.notifications.notify_admins_of_completion(user, course.title)

    # Callbacks

    def _handle_callback(self, cq: CallbackQuery) -> None:
        data = cq.data or ""
        if cq.message is None:
            self._safe_answer(cq.id)
            return

        chat_id = str(cq.message.chat.id)
        parsed_answer = keyboards.parse_answer_callback(data)
        if parsed_answer is not None:
            question_id, option = parsed_answer
            self._handle_answer(cq, chat_id, question_id or None, option)
            return

        lesson_index = keyboards.parse_watched_callback(data)
        if lesson_index is not None:
            self._safe_answer(cq.id)
            self._handle_watched(chat_id, self._learner(cq.message), lesson_index)
            return

        self._safe_answer(cq.id)

    def _handle_answer(self, cq: CallbackQuery, chat_id: str, question_id: str | None, option: int) -> None:
        user = self._learner(cq.message)
        try:
            outcome = self.progression.answer_submitted(user.id, option, question_id)
        except NoActiveTestError:
            self._safe_answer(cq.id, "Тест не найден.")
            return
        except AnswerMismatchError:
            self._safe_answer(cq.id, "Этот вопрос уже не актуален.")
            return
        except InvalidAnswerError:
            self._safe_answer(cq.id, "Неверный вариант ответа.")
            return
        except CourseBotError:
            log.exception("answer failed learner=%s", user.id)
            self.repository.rollback()
            self._safe_answer(cq.id, "Ошибка при обработке ответа.")
            return

        self._safe_answer(cq.id, "Ответ записан!")
        self._present(chat_id, user, outcome)

    # Admin commands

    def _handle_admin_change(self, chat_id: str, args: str, *, add: bool) -> None:
        if not self.repository.is_admin(chat_id):
            self.channel.send_message(chat_id, NO_RIGHTS_TEXT)
            return

        command = "admin_add" if add else "admin_remove"
        telegram_id = args.split()[0] if args else ""
        if not telegram_id:
            self.channel.send_message(
                chat_id,
                f"❌ Пожалуйста, укажите Telegram ID. Пример: /{command} 123456789",
            )
            return

        if add:
            self.repository.add_admin(telegram_id)
            self.repository.commit()
            log.info("admin %s added by %s", telegram_id, chat_id)
            self.channel.send_message(chat_id, f"✅ Администратор {telegram_id} успешно добавлен!")
            return

        removed = self.repository.remove_admin(telegram_id)
        self.repository.commit()
        if not removed:
            self.channel.send_message(chat_id, f"❌ Администратор {telegram_id} не найден.")
            return
        log.info("admin %s removed by %s", telegram_id, chat_id)
        self.channel.send_message(chat_id, f"✅ Администратор {telegram_id} успешно удален!")

    def _handle_stats(self, chat_id: str) -> None:
        if not self.repository.is_admin(chat_id):
            self.channel.send_message(chat_id, NO_RIGHTS_TEXT)
            return

        course = self.repository.get_active_course()
        if course is None:
            self.channel.send_message(chat_id, "❌ Курс не найден.")
            return

        total, completed = self.repository.progress_counts(course.id)
        self.channel.send_message(
            chat_id,
            f'📊 Статистика курса "{course.title}"\n\n'
            f"👥 Всего пользователей: {total}\n"
            f"✅ Завершили курс: {completed}\n"
            f"📚 В процессе обучения: {total - completed}",
        )

    # Rendering

    def _send_lesson(self, chat_id: str, lesson: LessonSnapshot) -> None:
        self.channel.send_media(
            chat_id,
            lesson.media,
            caption=lesson.caption or lesson.title,
            reply_markup=keyboards.lesson_keyboard(lesson),
        )

    def _send_test_intro(self, chat_id: str, test: TestSnapshot) -> None:
        self.channel.send_message(
            chat_id,
            f"📝 Тест: {test.title}\n\nОтветьте на все вопросы, чтобы продолжить.",
            reply_markup=keyboards.remove_keyboard(),
        )

    def _send_question(self, chat_id: str, view: QuestionView) -> None:
        self.channel.send_message(
            chat_id,
            f"❓ Вопрос {view.number} из {view.total}\n\n{view.question.text}",
            reply_markup=keyboards.test_keyboard(view.question),
        )

    def _present(self, chat_id: str, user: User, outcome) -> None:
        if isinstance(outcome, NextLesson):
            self._send_lesson(chat_id, outcome.lesson)
        elif isinstance(outcome, TestStarted):
            self._send_test_intro(chat_id, outcome.test)
            self._send_question(chat_id, outcome.question)
        elif isinstance(outcome, NextQuestion):
            self._send_question(chat_id, outcome.question)
        elif isinstance(outcome, TestCompleted):
            result = outcome.result
            self.channel.send_message(
                chat_id,
                f"🎯 Тест завершен!\n\n{format_score(result.score, result.grade)}\n\nПоздравляем с прохождением теста!",
            )
            self._present(chat_id, user, outcome.then)
        elif isinstance(outcome, CourseCompleted):
            self._complete_course(chat_id, user, outcome.course.title)

    def _complete_course(self, chat_id: str, user: User, course_title: str) -> None:
        self.channel.send_message(
            chat_id,
            f'🎉 Поздравляем! Вы успешно завершили курс "{course_title}"!\n\n'
            "Спасибо за ваше участие и усердие в обучении.",
            reply_markup=keyboards.remove_keyboard(),
        )
        if not user.phone_number:
            self.channel.send_message(chat_id, PHONE_REQUEST_TEXT, reply_markup=keyboards.phone_request_keyboard())
            return
        self.notifications.notify_admins_of_completion(user, course_title)


def register_commands(channel: Channel) -> None:
    channel.set_commands(list(BOT_COMMANDS))
