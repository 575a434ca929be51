"""Typed failure outcomes of the course core.

Every condition the progression or the test engine can hit is raised as one
of these, so the chat binding and the console can tell them apart and pick
their own wording.
"""

from __future__ import annotations


class CourseBotError(Exception):
    """Base class for every domain failure."""


class NotFoundError(CourseBotError):
    kind = "entity"

    def __init__(self, ref: object | None = None, message: str | None = None):
        self.ref = ref
        super().__init__(message or f"{self.kind} not found" + (f": {ref}" if ref is not None else ""))


class NoCourseAvailable(NotFoundError):
    kind = "active course"


class CourseNotFound(NotFoundError):
    kind = "course"


class LessonNotFound(NotFoundError):
    kind = "lesson"


class LearnerNotFound(NotFoundError):
    kind = "learner"


class ProgressNotFound(NotFoundError):
    kind = "progress"


class NoActiveTestError(NotFoundError):
    kind = "active test attempt"


class InvalidStateTransition(CourseBotError):
    def __init__(self, *, expected: str, actual: str, message: str | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"invalid state transition: expected {expected}, got {actual}")


class NotWatchingError(InvalidStateTransition):
    """Mark-watched outside WatchingLesson, or for a lesson that is no longer current."""


class AnswerMismatchError(CourseBotError):
    def __init__(self, *, expected: str | None, got: str):
        self.expected = expected
        self.got = got
        super().__init__(f"answer for question {got} does not match expected question {expected}")


class InvalidAnswerError(CourseBotError):
    def __init__(self, *, selected_option: int, options_count: int):
        self.selected_option = selected_option
        self.options_count = options_count
        super().__init__(f"option {selected_option} is out of range 0..{options_count - 1}")


class PersistenceError(CourseBotError):
    """A store write failed mid-sequence."""


class ChannelError(CourseBotError):
    """An outbound call to the messaging channel failed."""

    def __init__(self, method: str, message: str, *, status: int | None = None):
        self.method = method
        self.status = status
        super().__init__(f"{method}: {message}")


class LearnerBusyError(CourseBotError):
    """Another event for the same learner is still being processed."""

    def __init__(self, learner_ref: str):
        self.learner_ref = learner_ref
        super().__init__(f"learner {learner_ref} is busy")
