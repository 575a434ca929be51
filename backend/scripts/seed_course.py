from __future__ import annotations

import argparse
import os
import pathlib
import sys

from sqlalchemy import select

# Ensure imports work when running from any CWD and in Docker (/app)
_HERE = pathlib.Path(__file__).resolve()
_BACKEND_ROOT = _HERE.parents[1]
sys.path.insert(0, str(_BACKEND_ROOT))
sys.path.insert(0, "/app")
sys.path.insert(0, os.getcwd())

from coursebot.db.session import SessionLocal
from coursebot.models.course import Course, Lesson, MediaType
from coursebot.models.notification import Notification
from coursebot.models.progress import CoursePhase
from coursebot.models.quiz import Question, Test
from coursebot.models.user import Admin


COURSE = {
    "title": "Основы безопасности в школе",
    "description": "Курс по основам безопасности и правилам поведения в школе",
    "lessons": [
        {
            "title": "Добро пожаловать в курс безопасности",
            "media_type": MediaType.photo,
            "media_url": "https://images.unsplash.com/photo-1580582932707-520aed937b7b?w=800",
            "caption": (
                '🎓 Добро пожаловать в курс "Основы безопасности в школе"!\n\n'
                "В этом курсе вы изучите:\n• Правила поведения в школе\n• Основы пожарной безопасности\n"
                "• Действия в чрезвычайных ситуациях\n• Правила дорожного движения\n\nДавайте начнем обучение!"
            ),
            "button": ("📋 Правила курса", "https://example.com/rules"),
        },
        {
            "title": "Пожарная безопасность",
            "media_type": MediaType.video,
            "media_url": "https://sample-videos.com/zip/10/mp4/SampleVideo_1280x720_1mb.mp4",
            "caption": (
                "🔥 Урок 1: Пожарная безопасность\n\nВ этом уроке вы узнаете:\n• Как предотвратить пожар\n"
                "• Что делать при обнаружении огня\n• Как правильно эвакуироваться\n"
                "• Как пользоваться огнетушителем\n\nВнимательно изучите материал!"
            ),
            "button": ("🚒 Инструкция по эвакуации", "https://example.com/evacuation"),
            "test": {
                "title": "Тест по пожарной безопасности",
                "questions": [
                    (
                        "Что нужно делать в первую очередь при обнаружении пожара?",
                        [
                            "Попытаться потушить огонь самостоятельно",
                            "Сообщить взрослым или вызвать пожарную службу",
                            "Собрать свои вещи",
                            "Спрятаться в классе",
                        ],
                        1,
                    ),
                    ("По какому номеру вызывается пожарная служба?", ["101", "102", "103", "104"], 0),
                    (
                        "Как правильно покидать здание при пожаре?",
                        [
                            "Бежать как можно быстрее",
                            "Использовать лифт",
                            "Двигаться спокойно по лестнице, пригнувшись",
                            "Ждать помощи в классе",
                        ],
                        2,
                    ),
                ],
            },
        },
        {
            "title": "Действия в чрезвычайных ситуациях",
            "media_type": MediaType.photo,
            "media_url": "https://images.unsplash.com/photo-1584464491033-06628f3a6b7b?w=800",
            "caption": (
                "⚠️ Урок 2: Чрезвычайные ситуации\n\nВ этом уроке изучаем:\n• Что такое чрезвычайная ситуация\n"
                "• Сигналы тревоги в школе\n• Правила поведения при землетрясении\n• Действия при угрозе теракта\n\n"
                "Знание этих правил может спасти жизнь!"
            ),
            "test": {
                "title": "Тест по чрезвычайным ситуациям",
                "questions": [
                    (
                        "Что означает длинный непрерывный звук сирены в школе?",
                        ["Начало урока", "Пожарная тревога", "Воздушная тревога", "Конец учебного дня"],
                        2,
                    ),
                    (
                        "Как нужно вести себя при землетрясении, находясь в классе?",
                        [
                            "Выбежать из класса",
                            "Спрятаться под парту и держаться за ее ножки",
                            "Встать у окна",
                            "Забраться на стол",
                        ],
                        1,
                    ),
                ],
            },
        },
        {
            "title": "Правила дорожного движения",
            "media_type": MediaType.video,
            "media_url": "https://sample-videos.com/zip/10/mp4/SampleVideo_1280x720_2mb.mp4",
            "caption": (
                "🚦 Урок 3: Безопасность на дороге\n\nИзучаем важные правила:\n• Как правильно переходить дорогу\n"
                "• Значение дорожных знаков\n• Правила для пешеходов\n• Безопасность в транспорте\n\n"
                "Эти знания помогут вам быть в безопасности!"
            ),
            "button": ("🚸 ПДД для детей", "https://example.com/road-rules"),
        },
        {
            "title": "Заключение курса",
            "media_type": MediaType.photo,
            "media_url": "https://images.unsplash.com/photo-1517486808906-6ca8b3f04846?w=800",
            "caption": (
                "🎉 Поздравляем с завершением курса!\n\nВы успешно изучили:\n✅ Пожарную безопасность\n"
                "✅ Действия в ЧС\n✅ Правила дорожного движения\n\nТеперь вы знаете, как обеспечить свою "
                "безопасность в школе и за ее пределами. Применяйте полученные знания каждый день!"
            ),
        },
    ],
    "notifications": [
        {
            "phase": CoursePhase.watching_lesson,
            "media_url": "https://images.unsplash.com/photo-1611224923853-80b023f02d71?w=800",
            "caption": (
                "⏰ Напоминание о продолжении обучения\n\nВы начали изучать курс безопасности, но не завершили урок. "
                "Пожалуйста, продолжите обучение!\n\nПолученные знания очень важны для вашей безопасности."
            ),
            "button": ("📚 Продолжить обучение", "https://t.me/your_bot_username"),
        },
        {
            "phase": CoursePhase.taking_test,
            "media_url": "https://images.unsplash.com/photo-1434030216411-0b793f4b4173?w=800",
            "caption": (
                "📝 Не забудьте пройти тест!\n\nВы просмотрели урок, но не прошли тест. "
                "Тест поможет закрепить полученные знания.\n\nПожалуйста, завершите тестирование!"
            ),
            "button": ("📝 Пройти тест", "https://t.me/your_bot_username"),
        },
    ],
}


def seed(*, admin_telegram_id: str | None) -> None:
    db = SessionLocal()
    try:
        existing = db.scalar(select(Course).where(Course.title == COURSE["title"]))
        if existing is not None:
            print(f"course already exists: {existing.id}")
        else:
            course = Course(title=COURSE["title"], description=COURSE["description"], is_active=True, order_index=1)
            db.add(course)
            db.flush()

            tests = 0
            for idx, spec in enumerate(COURSE["lessons"]):
                button_text, button_url = spec.get("button") or (None, None)
                lesson = Lesson(
                    course_id=course.id,
                    title=spec["title"],
                    order_index=idx,
                    media_type=spec["media_type"],
                    media_url=spec["media_url"],
                    caption=spec["caption"],
                    button_text=button_text,
                    button_url=button_url,
                )
                db.add(lesson)
                db.flush()

                test_spec = spec.get("test")
                if not test_spec:
                    continue
                test = Test(lesson_id=lesson.id, title=test_spec["title"])
                db.add(test)
                db.flush()
                for q_idx, (text, options, correct) in enumerate(test_spec["questions"]):
                    db.add(
                        Question(
                            test_id=test.id,
                            question_text=text,
                            options=list(options),
                            correct_option=int(correct),
                            order_index=q_idx,
                        )
                    )
                tests += 1

            for spec in COURSE["notifications"]:
                button_text, button_url = spec.get("button") or (None, None)
                db.add(
                    Notification(
                        course_id=course.id,
                        phase=spec["phase"],
                        media_type=MediaType.photo,
                        media_url=spec["media_url"],
                        caption=spec["caption"],
                        button_text=button_text,
                        button_url=button_url,
                        is_active=True,
                    )
                )
            print(
                f"course created: {course.id} lessons={len(COURSE['lessons'])} tests={tests} "
                f"notifications={len(COURSE['notifications'])}"
            )

        if admin_telegram_id:
            tid = str(admin_telegram_id).strip()
            if db.scalar(select(Admin).where(Admin.telegram_id == tid)) is None:
                db.add(Admin(telegram_id=tid))
                print(f"admin added: {tid}")

        db.commit()
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the demo course")
    parser.add_argument("--admin-telegram-id", default=os.getenv("SEED_ADMIN_TELEGRAM_ID"))
    args = parser.parse_args()
    seed(admin_telegram_id=args.admin_telegram_id)


if __name__ == "__main__":
    main()
