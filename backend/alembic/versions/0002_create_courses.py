"""create courses, lessons, tests, progress and notifications

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # shared by several tables; created once up front
    media_type = postgresql.ENUM("photo", "video", name="mediatype", create_type=False)
    phase = postgresql.ENUM("watching_lesson", "taking_test", "completed", name="coursephase", create_type=False)
    bind = op.get_bind()
    postgresql.ENUM("photo", "video", name="mediatype").create(bind, checkfirst=True)
    postgresql.ENUM("watching_lesson", "taking_test", "completed", name="coursephase").create(bind, checkfirst=True)

    op.create_table(
        "courses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_courses_title", "courses", ["title"], unique=False)
    op.create_index("ix_courses_is_active", "courses", ["is_active"], unique=False)

    op.create_table(
        "lessons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("media_type", media_type, nullable=False),
        sa.Column("media_url", sa.String(length=2000), nullable=False),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("button_text", sa.String(length=200), nullable=True),
        sa.Column("button_url", sa.String(length=2000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("course_id", "order_index", name="uq_lesson_course_order"),
    )
    op.create_index("ix_lessons_course_id", "lessons", ["course_id"], unique=False)

    op.create_table(
        "tests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("lesson_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("lessons.id"), nullable=False, unique=True),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "questions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("test_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tests.id"), nullable=False),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=False),
        sa.Column("correct_option", sa.Integer(), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
    )
    op.create_index("ix_questions_test_id", "questions", ["test_id"], unique=False)

    op.create_table(
        "course_progress",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("phase", phase, nullable=False),
        sa.Column("current_lesson_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "course_id", name="uq_progress_user_course"),
    )
    op.create_index("ix_course_progress_user_id", "course_progress", ["user_id"], unique=False)
    op.create_index("ix_course_progress_course_id", "course_progress", ["course_id"], unique=False)
    op.create_index("ix_course_progress_phase", "course_progress", ["phase"], unique=False)
    op.create_index("ix_course_progress_last_activity", "course_progress", ["last_activity"], unique=False)

    op.create_table(
        "test_results",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("test_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tests.id"), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("grade", sa.Enum("A", "B", "C", "D", "F", name="grade"), nullable=False),
        sa.Column("answers", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_test_results_user_id", "test_results", ["user_id"], unique=False)
    op.create_index("ix_test_results_test_id", "test_results", ["test_id"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("phase", phase, nullable=False),
        sa.Column("media_type", media_type, nullable=False),
        sa.Column("media_url", sa.String(length=2000), nullable=False),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("button_text", sa.String(length=200), nullable=True),
        sa.Column("button_url", sa.String(length=2000), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_notifications_course_id", "notifications", ["course_id"], unique=False)
    op.create_index("ix_notifications_phase", "notifications", ["phase"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_notifications_phase", table_name="notifications")
    op.drop_index("ix_notifications_course_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_test_results_test_id", table_name="test_results")
    op.drop_index("ix_test_results_user_id", table_name="test_results")
    op.drop_table("test_results")
    op.drop_index("ix_course_progress_last_activity", table_name="course_progress")
    op.drop_index("ix_course_progress_phase", table_name="course_progress")
    op.drop_index("ix_course_progress_course_id", table_name="course_progress")
    op.drop_index("ix_course_progress_user_id", table_name="course_progress")
    op.drop_table("course_progress")
    op.drop_index("ix_questions_test_id", table_name="questions")
    op.drop_table("questions")
    op.drop_table("tests")
    op.drop_index("ix_lessons_course_id", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("ix_courses_is_active", table_name="courses")
    op.drop_index("ix_courses_title", table_name="courses")
    op.drop_table("courses")
    op.execute("DROP TYPE IF EXISTS grade")
    op.execute("DROP TYPE IF EXISTS coursephase")
    op.execute("DROP TYPE IF EXISTS mediatype")
