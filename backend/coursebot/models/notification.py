import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from coursebot.db.base import Base
from coursebot.models.course import MediaType
from coursebot.models.progress import CoursePhase


class Notification(Base):
    """Reminder content sent to learners idling in a given phase of a course."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("courses.id"), index=True)
    phase: Mapped[CoursePhase] = mapped_column(Enum(CoursePhase), index=True)

    media_type: Mapped[MediaType] = mapped_column(Enum(MediaType))
    media_url: Mapped[str] = mapped_column(String(2000))
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    button_text: Mapped[str | None] = mapped_column(String(200), nullable=True)
    button_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
