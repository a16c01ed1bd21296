from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pmsync.config import GitLabSettings  # noqa: E402
from pmsync.db.schema import (  # noqa: E402
    create_schema,
    intern,
    intern_level_history,
    level,
    project,
    repository,
)
from pmsync.gitlab.client import Page  # noqa: E402
from pmsync.gitlab.graphql import TimelogPage  # noqa: E402


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def settings() -> GitLabSettings:
    return GitLabSettings(
        api="https://gitlab.example.com/api/v4",
        token="t0ken",
        retry_max_attempts=3,
        retry_backoff_ms=500,
        per_page=20,
    )


@dataclass
class FakeResponse:
    status_code: int
    payload: Any = None
    headers: dict[str, str] | None = None
    text: str = ""

    def __post_init__(self) -> None:
        self.headers = self.headers or {}

    @property
    def content(self) -> bytes:
        if self.payload is None:
            return b""
        return b"json"

    def json(self) -> Any:
        return self.payload


class FakeSession:
    """Returns queued responses in order; the last one repeats."""

    def __init__(self, responses: list[FakeResponse]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("No fake response left")
        if len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)


class FakeGitLab:
    """In-memory stand-in for GitLabClient.

    Pages are served by page number; an exception queued in place of a page
    is raised when that page is requested.
    """

    def __init__(self) -> None:
        self.pages: dict[tuple, list] = {}
        self.projects: dict[int, dict] = {}
        self.calls: list[tuple] = []

    def set_pages(self, key: tuple, *pages: Any) -> None:
        self.pages[key] = list(pages)

    def _serve(self, key: tuple, page: int) -> Page:
        pages = self.pages.get(key, [])
        if page > len(pages):
            return Page(data=[], page=page, total_pages=len(pages))
        item = pages[page - 1]
        if isinstance(item, Exception):
            raise item
        next_page = str(page + 1) if page < len(pages) else None
        return Page(data=list(item), page=page, total_pages=len(pages), next_page=next_page)

    def get_project(self, gitlab_project_id: int) -> dict:
        self.calls.append(("project", gitlab_project_id))
        return self.projects[gitlab_project_id]

    def list_group_projects_page(self, group_id, page=1):
        self.calls.append(("group_projects", group_id, page))
        return self._serve(("group_projects", group_id), page)

    def list_issues_page(self, gitlab_project_id, page=1, updated_after=None):
        self.calls.append(("issues", gitlab_project_id, page, updated_after))
        return self._serve(("issues", gitlab_project_id), page)

    def list_project_milestones_page(self, gitlab_project_id, page=1, updated_after=None):
        self.calls.append(("milestones", gitlab_project_id, page, updated_after))
        return self._serve(("milestones", gitlab_project_id), page)

    def list_issue_notes_page(self, gitlab_project_id, iid, page=1):
        self.calls.append(("notes", gitlab_project_id, iid, page))
        return self._serve(("notes", gitlab_project_id, iid), page)


class FakeGraphQL:
    """Serves timelog pages per project gid; cursors are "c1", "c2", ..."""

    def __init__(self) -> None:
        self.pages: dict[str, list] = {}
        self.calls: list[dict[str, Any]] = []

    def set_pages(self, gid: str, *pages: list) -> None:
        self.pages[gid] = list(pages)

    def fetch_timelogs(self, gid, start, end, after=None, first=100) -> TimelogPage:
        self.calls.append({"gid": gid, "start": start, "end": end, "after": after, "first": first})
        pages = self.pages.get(gid, [])
        index = int(after[1:]) if after else 0
        if index >= len(pages):
            return TimelogPage()
        item = pages[index]
        if isinstance(item, Exception):
            raise item
        has_next = index + 1 < len(pages)
        return TimelogPage(nodes=list(item), has_next_page=has_next,
                           end_cursor=f"c{index + 1}" if has_next else None)


@pytest.fixture()
def fake_gitlab() -> FakeGitLab:
    return FakeGitLab()


@pytest.fixture()
def fake_graphql() -> FakeGraphQL:
    return FakeGraphQL()


class Seeder:
    def __init__(self, engine) -> None:
        self.engine = engine

    def _insert(self, table, **values) -> int:
        with self.engine.begin() as conn:
            return conn.execute(insert(table).values(**values)).inserted_primary_key[0]

    def project(self, name: str = "Project", is_external: bool = False, hourly_rate: str | None = None) -> int:
        return self._insert(project, name=name, is_external=is_external,
                            hourly_rate=Decimal(hourly_rate) if hourly_rate else None)

    def repository(self, gitlab_repo_id: int, project_id: int | None = None, name: str | None = None) -> int:
        return self._insert(repository, gitlab_repo_id=gitlab_repo_id, name=name or f"repo-{gitlab_repo_id}",
                            project_id=project_id, root_repo=True)

    def level(self, code: str, hourly_rate: str) -> int:
        return self._insert(level, code=code, label=code.title(), hourly_rate=Decimal(hourly_rate))

    def intern(self, username: str, level_id: int | None = None) -> int:
        return self._insert(intern, username=username, level_id=level_id)

    def history(self, intern_id: int, level_id: int, valid_from: date, valid_to: date | None = None) -> int:
        return self._insert(intern_level_history, intern_id=intern_id, level_id=level_id,
                            valid_from=valid_from, valid_to=valid_to)


@pytest.fixture()
def seed(db_engine) -> Seeder:
    return Seeder(db_engine)
