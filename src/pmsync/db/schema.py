"""Table definitions shared by the sync engine and the admin layer.

Migrations are owned elsewhere; ``create_schema`` only creates missing tables
so a fresh database (or the SQLite test engine) can be bootstrapped.
"""
from __future__ import annotations
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

project = Table(
    "project", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("namespace_id", BigInteger),
    Column("namespace_name", String(255)),
    Column("is_external", Boolean, nullable=False, default=False),
    Column("hourly_rate", Numeric(12, 2)),
    Column("budget", Numeric(14, 2)),
    Column("budget_from", Date),
    Column("budget_to", Date),
)

repository = Table(
    "repository", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("gitlab_repo_id", BigInteger, nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("name_with_namespace", String(512)),
    Column("namespace_id", BigInteger),
    Column("namespace_name", String(255)),
    Column("root_repo", Boolean, nullable=False, default=True),
    Column("project_id", Integer, ForeignKey("project.id", ondelete="SET NULL")),
)

issue = Table(
    "issue", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("repository_id", Integer, ForeignKey("repository.id", ondelete="CASCADE"), nullable=False),
    Column("gitlab_issue_id", BigInteger),
    Column("iid", BigInteger, nullable=False),
    Column("title", Text),
    Column("state", String(32)),
    Column("assignee_id", BigInteger),
    Column("assignee_username", String(255)),
    Column("author_name", String(255)),
    Column("labels", JSON),
    Column("milestone_title", String(255)),
    Column("milestone_state", String(32)),
    Column("due_date", Date),
    Column("time_estimate_seconds", Integer),
    Column("total_time_spent_seconds", Integer),
    Column("human_time_estimate", String(64)),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
    Column("web_url", String(1024)),
    UniqueConstraint("repository_id", "iid", name="uq_issue_repository_iid"),
)

milestone = Table(
    "milestone", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("milestone_id", BigInteger, nullable=False, unique=True),
    Column("project_id", Integer, ForeignKey("project.id", ondelete="CASCADE"), nullable=False),
    Column("milestone_iid", BigInteger),
    Column("title", String(255)),
    Column("state", String(32)),
    Column("description", Text),
    Column("due_date", Date),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

level = Table(
    "level", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("label", String(255), nullable=False),
    Column("hourly_rate", Numeric(12, 2), nullable=False),
)

intern = Table(
    "intern", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("level_id", Integer, ForeignKey("level.id")),
)

intern_level_history = Table(
    "intern_level_history", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("intern_id", Integer, ForeignKey("intern.id", ondelete="CASCADE"), nullable=False),
    Column("level_id", Integer, ForeignKey("level.id"), nullable=False),
    Column("valid_from", Date, nullable=False),
    Column("valid_to", Date),
)

report = Table(
    "report", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("repository_id", Integer, ForeignKey("repository.id", ondelete="CASCADE"), nullable=False),
    Column("issue_iid", BigInteger),
    Column("spent_at", DateTime(timezone=True), nullable=False),
    Column("time_spent_seconds", Integer, nullable=False),
    Column("time_spent_hours", Numeric(12, 4), nullable=False),
    Column("username", String(255), nullable=False),
    Column("hourly_rate", Numeric(12, 2)),
    Column("cost", Numeric(14, 2)),
)

# issue_iid is nullable; fold NULL so the natural key still deduplicates
Index(
    "uq_report_natural_key",
    report.c.repository_id,
    func.coalesce(report.c.issue_iid, -1),
    report.c.spent_at,
    report.c.time_spent_seconds,
    report.c.username,
    unique=True,
)
Index("ix_report_username", report.c.username)

sync_cursor = Table(
    "sync_cursor", metadata,
    Column("repository_id", Integer, ForeignKey("repository.id", ondelete="CASCADE"), primary_key=True),
    Column("scope", String(32), primary_key=True),
    Column("last_run_at", DateTime(timezone=True), nullable=False),
)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)
