from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.engine import Connection

from pmsync.db.dao import RepositoryLink, UpsertResult, upsert_milestone
from pmsync.errors import MappingError
from pmsync.gitlab.client import Page
from pmsync.sync.cursors import SCOPE_MILESTONES
from pmsync.sync.paged import PagedSynchronizer


class MilestoneSynchronizer(PagedSynchronizer):
    """Milestones of a repository, stored against the repository's local project."""

    scope = SCOPE_MILESTONES
    logger_name = "sync.milestones"

    def check_link(self, link: RepositoryLink) -> None:
        if link.project_id is None:
            raise MappingError(f"Repository {link.gitlab_repo_id} is not assigned to a project")

    def fetch_page(self, link: RepositoryLink, page: int, updated_after: datetime | None) -> Page:
        return self.client.list_project_milestones_page(link.gitlab_repo_id, page=page, updated_after=updated_after)

    def apply_record(self, conn: Connection, link: RepositoryLink, record: Dict[str, Any]) -> Optional[UpsertResult]:
        if record.get("id") is None:
            return None
        return upsert_milestone(conn, link.project_id, record)
