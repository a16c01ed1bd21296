"""Data access for the sync engine.

Upserts follow update-by-natural-key first, insert when nothing was updated,
so re-running a sync converges on the same rows.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.engine import Connection

from pmsync.db.schema import issue, milestone, project, report, repository


@dataclass(frozen=True)
class UpsertResult:
    id: int
    inserted: bool


@dataclass(frozen=True)
class RepositoryLink:
    repository_id: int
    gitlab_repo_id: Optional[int]
    name: str
    project_id: Optional[int]
    project_hourly_rate: Optional[Decimal]


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_ts(value: str | datetime | None) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def parse_date(value: str | date | None) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _upsert(conn: Connection, table, key: Dict[str, Any], values: Dict[str, Any]) -> UpsertResult:
    where = and_(*[table.c[k] == v for k, v in key.items()])
    res = conn.execute(update(table).where(where).values(**values))
    if res.rowcount and res.rowcount > 0:
        row_id = conn.execute(select(table.c.id).where(where)).scalar_one()
        return UpsertResult(row_id, False)
    res = conn.execute(insert(table).values(**key, **values))
    return UpsertResult(res.inserted_primary_key[0], True)


def upsert_repository(conn: Connection, p: Dict[str, Any], project_id: int | None = None) -> UpsertResult:
    """Store a GitLab project payload as a local repository."""
    namespace = p.get("namespace") or {}
    values = {
        "name": p.get("name") or str(p["id"]),
        "name_with_namespace": p.get("path_with_namespace") or p.get("name_with_namespace"),
        "namespace_id": namespace.get("id"),
        "namespace_name": namespace.get("name"),
        "root_repo": True,
    }
    if project_id is not None:
        values["project_id"] = project_id
    return _upsert(conn, repository, {"gitlab_repo_id": int(p["id"])}, values)


def find_repository(conn: Connection, gitlab_repo_id: int) -> Optional[RepositoryLink]:
    row = conn.execute(
        select(repository.c.id, repository.c.gitlab_repo_id, repository.c.name, repository.c.project_id)
        .where(repository.c.gitlab_repo_id == gitlab_repo_id)
    ).mappings().first()
    if not row:
        return None
    return RepositoryLink(
        repository_id=row["id"],
        gitlab_repo_id=row["gitlab_repo_id"],
        name=row["name"],
        project_id=row["project_id"],
        project_hourly_rate=project_rate_for_repository(conn, row["id"]),
    )


def project_rate_for_repository(conn: Connection, repository_id: int) -> Optional[Decimal]:
    """Hourly rate of the owning project when it is billed as external work."""
    q = (
        select(project.c.hourly_rate)
        .select_from(repository.join(project, project.c.id == repository.c.project_id))
        .where(repository.c.id == repository_id, project.c.is_external.is_(True))
    )
    return conn.execute(q).scalar_one_or_none()


def list_repositories_for_sync(
    conn: Connection,
    project_id: int | None = None,
    assigned_only: bool = False,
) -> List[RepositoryLink]:
    q = (
        select(
            repository.c.id,
            repository.c.gitlab_repo_id,
            repository.c.name,
            repository.c.project_id,
            project.c.hourly_rate,
            project.c.is_external,
        )
        .select_from(repository.outerjoin(project, project.c.id == repository.c.project_id))
        .order_by(repository.c.gitlab_repo_id)
    )
    if project_id is not None:
        q = q.where(repository.c.project_id == project_id)
    elif assigned_only:
        q = q.where(repository.c.project_id.is_not(None))
    links = []
    for r in conn.execute(q).mappings():
        links.append(RepositoryLink(
            repository_id=r["id"],
            gitlab_repo_id=r["gitlab_repo_id"],
            name=r["name"],
            project_id=r["project_id"],
            project_hourly_rate=r["hourly_rate"] if r["is_external"] else None,
        ))
    return links


def upsert_issue(conn: Connection, repository_id: int, i: Dict[str, Any]) -> UpsertResult:
    assignees = i.get("assignees") or []
    first_assignee = assignees[0] if assignees else (i.get("assignee") or {})
    stats = i.get("time_stats") or {}
    ms = i.get("milestone") or {}
    values = {
        "gitlab_issue_id": i.get("id"),
        "title": i.get("title"),
        "state": i.get("state"),
        "assignee_id": first_assignee.get("id"),
        "assignee_username": first_assignee.get("username"),
        "author_name": (i.get("author") or {}).get("name"),
        "labels": list(i.get("labels") or []),
        "milestone_title": ms.get("title"),
        "milestone_state": ms.get("state"),
        "due_date": parse_date(i.get("due_date")),
        "time_estimate_seconds": stats.get("time_estimate"),
        "total_time_spent_seconds": stats.get("total_time_spent"),
        "human_time_estimate": stats.get("human_time_estimate"),
        "created_at": parse_ts(i.get("created_at")),
        "updated_at": parse_ts(i.get("updated_at")),
        "web_url": i.get("web_url"),
    }
    return _upsert(conn, issue, {"repository_id": repository_id, "iid": int(i["iid"])}, values)


def upsert_milestone(conn: Connection, project_id: int, m: Dict[str, Any]) -> UpsertResult:
    values = {
        "project_id": project_id,
        "milestone_iid": m.get("iid"),
        "title": m.get("title"),
        "state": m.get("state"),
        "description": m.get("description"),
        "due_date": parse_date(m.get("due_date")),
        "created_at": parse_ts(m.get("created_at")),
        "updated_at": parse_ts(m.get("updated_at")),
    }
    return _upsert(conn, milestone, {"milestone_id": int(m["id"])}, values)


def list_issue_iids(conn: Connection, repository_id: int) -> List[int]:
    rows = conn.execute(select(issue.c.iid).where(issue.c.repository_id == repository_id).order_by(issue.c.iid))
    return [int(iid) for iid in rows.scalars()]


def last_report_spent_at(conn: Connection, repository_id: int) -> Optional[datetime]:
    q = (
        select(report.c.spent_at)
        .where(report.c.repository_id == repository_id)
        .order_by(report.c.spent_at.desc())
        .limit(1)
    )
    return as_utc(conn.execute(q).scalar_one_or_none())


def delete_reports(conn: Connection, project_ids: List[int] | None = None) -> int:
    if not project_ids:
        return conn.execute(delete(report)).rowcount
    repo_ids = select(repository.c.id).where(repository.c.project_id.in_(sorted(set(project_ids))))
    return conn.execute(delete(report).where(report.c.repository_id.in_(repo_ids))).rowcount
