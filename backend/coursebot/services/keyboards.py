from __future__ import annotations

from coursebot.services.repository import LessonSnapshot, QuestionSnapshot

START_COURSE_TEXT = "📚 Начать курс"
WATCHED_TEXT = "✅ Посмотрел!"
SHARE_PHONE_TEXT = "📞 Поделиться номером"

ANSWER_PREFIX = "answer"
WATCHED_PREFIX = "watched"


def start_keyboard() -> dict:
    return {
        "keyboard": [[{"text": START_COURSE_TEXT}]],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


def lesson_keyboard(lesson: LessonSnapshot) -> dict:
    """Inline keyboard under a lesson: optional call-to-action link, then the watched button.

    The watched callback carries the lesson index so a stale tap is rejected.
    """
    rows: list[list[dict]] = []
    cta = lesson.call_to_action
    if cta is not None:
        text, url = cta
        rows.append([{"text": text, "url": url}])
    rows.append([{"text": WATCHED_TEXT, "callback_data": f"{WATCHED_PREFIX}:{lesson.index}"}])
    return {"inline_keyboard": rows}


def link_keyboard(text: str | None, url: str | None) -> dict | None:
    if not text or not url:
        return None
    return {"inline_keyboard": [[{"text": text, "url": url}]]}


def test_keyboard(question: QuestionSnapshot) -> dict:
    return {
        "inline_keyboard": [
            [{"text": f"{i + 1}. {option}", "callback_data": f"{ANSWER_PREFIX}:{question.id}:{i}"}]
            for i, option in enumerate(question.options)
        ]
    }


test_keyboard.__test__ = False


def phone_request_keyboard() -> dict:
    return {
        "keyboard": [[{"text": SHARE_PHONE_TEXT, "request_contact": True}]],
        "resize_keyboard": True,
        "one_time_keyboard": True,
    }


def remove_keyboard() -> dict:
    return {"remove_keyboard": True}


def parse_answer_callback(data: str) -> tuple[str, int] | None:
    """``answer:<question_id>:<option>`` -> (question_id, option); legacy ``answer_<option>`` has no id."""
    raw = str(data or "")
    if raw.startswith(f"{ANSWER_PREFIX}:"):
        parts = raw.split(":")
        if len(parts) != 3:
            return None
        try:
            return parts[1], int(parts[2])
        except ValueError:
            return None
    if raw.startswith(f"{ANSWER_PREFIX}_"):
        try:
            return "", int(raw[len(ANSWER_PREFIX) + 1 :])
        except ValueError:
            return None
    return None


def parse_watched_callback(data: str) -> int | None:
    raw = str(data or "")
    if not raw.startswith(f"{WATCHED_PREFIX}:"):
        return None
    try:
        return int(raw.split(":", 1)[1])
    except ValueError:
        return None
