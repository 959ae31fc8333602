"""create planner tables

Revision ID: 4c1e2b7a9d10
Revises:
Create Date: 2026-01-04 21:12:08.513220

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "4c1e2b7a9d10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=80), nullable=False),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "task",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("text", sa.String(length=500), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False),
        sa.Column("day", sa.String(length=50), nullable=True),
        sa.Column("week_in_month", sa.Integer(), nullable=True),
        sa.Column("month", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("task") as batch:
        batch.create_index(
            "ix_task_user_month_week", ["user_id", "month", "week_in_month"], unique=False
        )

    # 1 キー 1 メモ. month_id / week_id は該当しなければ -1
    op.create_table(
        "note",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=10), nullable=False),
        sa.Column("month_id", sa.Integer(), nullable=False),
        sa.Column("week_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "category", "month_id", "week_id", name="uq_note_user_key"
        ),
    )


def downgrade():
    op.drop_table("note")
    with op.batch_alter_table("task") as batch:
        batch.drop_index("ix_task_user_month_week")
    op.drop_table("task")
    op.drop_table("user")
