from coursebot.models.course import Course, Lesson, MediaType
from coursebot.models.notification import Notification
from coursebot.models.progress import CoursePhase, CourseProgress
from coursebot.models.quiz import Question, Test
from coursebot.models.result import Grade, TestResult
from coursebot.models.user import Admin, ConsoleOperator, User

__all__ = [
    "Admin",
    "ConsoleOperator",
    "Course",
    "CoursePhase",
    "CourseProgress",
    "Grade",
    "Lesson",
    "MediaType",
    "Notification",
    "Question",
    "Test",
    "TestResult",
    "User",
]
