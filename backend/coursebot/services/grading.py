from __future__ import annotations

from coursebot.models.result import Grade

_THRESHOLDS: tuple[tuple[int, Grade], ...] = (
    (90, Grade.A),
    (80, Grade.B),
    (70, Grade.C),
    (60, Grade.D),
)

_EMOJI: dict[Grade, str] = {
    Grade.A: "🏆",
    Grade.B: "🥈",
    Grade.C: "🥉",
    Grade.D: "📚",
    Grade.F: "📖",
}

_LABELS: dict[Grade, str] = {
    Grade.A: "Отлично",
    Grade.B: "Хорошо",
    Grade.C: "Удовлетворительно",
    Grade.D: "Слабо",
    Grade.F: "Неудовлетворительно",
}


def grade_for(score: int) -> Grade:
    for threshold, grade in _THRESHOLDS:
        if score >= threshold:
            return grade
    return Grade.F


def grade_emoji(grade: Grade) -> str:
    return _EMOJI[grade]


def grade_label(grade: Grade) -> str:
    return _LABELS[grade]


def format_score(score: int, grade: Grade) -> str:
    return f"{grade_emoji(grade)} Оценка: {grade.value} ({score}%)"


def grading_scale() -> str:
    """Help-text legend, one grade per line: "🏆 A (90-100%) - Отлично"."""
    lines = []
    upper = 100
    for threshold, grade in _THRESHOLDS:
        lines.append(f"{_EMOJI[grade]} {grade.value} ({threshold}-{upper}%) - {_LABELS[grade]}")
        upper = threshold - 1
    lines.append(f"{_EMOJI[Grade.F]} F (0-{upper}%) - {_LABELS[Grade.F]}")
    return "\n".join(lines)
