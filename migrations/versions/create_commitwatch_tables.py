"""create repositories, commits and scheduler_locks tables

Revision ID: create_commitwatch_tables
Revises:
Create Date: 2025-01-15 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "create_commitwatch_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("repo_string", sa.String(length=255), nullable=False),
        sa.Column("owner", sa.String(length=100), nullable=False),
        sa.Column("repo", sa.String(length=100), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("notification_interval", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_check_time", sa.DateTime(), nullable=True),
        sa.Column("next_check_time", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("notification_interval IN (1, 2, 3, 6, 12, 24)", name="valid_notification_interval"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("repo_string"),
    )
    # Due-time query
    op.create_index(op.f("ix_repositories_next_check_time"), "repositories", ["next_check_time"], unique=False)

    op.create_table(
        "commits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sha", sa.String(length=40), nullable=False),
        sa.Column("repository_id", sa.Integer(), nullable=True),
        sa.Column("author_name", sa.String(length=255), nullable=True),
        sa.Column("author_email", sa.String(length=255), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("commit_date", sa.DateTime(), nullable=True),
        sa.Column("html_url", sa.String(length=500), nullable=True),
        sa.Column("notified_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["repository_id"], ["repositories.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sha"),
    )
    op.create_index(op.f("ix_commits_repository_id"), "commits", ["repository_id"], unique=False)
    op.create_index(op.f("ix_commits_notified_at"), "commits", ["notified_at"], unique=False)

    op.create_table(
        "scheduler_locks",
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index(op.f("ix_commits_notified_at"), table_name="commits")
    op.drop_index(op.f("ix_commits_repository_id"), table_name="commits")
    op.drop_table("commits")
    op.drop_index(op.f("ix_repositories_next_check_time"), table_name="repositories")
    op.drop_table("repositories")
