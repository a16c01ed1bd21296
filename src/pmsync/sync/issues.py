from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.engine import Connection

from pmsync.db.dao import RepositoryLink, UpsertResult, list_repositories_for_sync, upsert_issue
from pmsync.errors import MappingError
from pmsync.gitlab.client import Page
from pmsync.sync.cursors import SCOPE_ISSUES
from pmsync.sync.paged import PagedSynchronizer
from pmsync.sync.repositories import RepositorySynchronizer
from pmsync.sync.summary import ProgressListener, SyncSummary


class IssueSynchronizer(PagedSynchronizer):
    scope = SCOPE_ISSUES
    logger_name = "sync.issues"

    def fetch_page(self, link: RepositoryLink, page: int, updated_after: datetime | None) -> Page:
        return self.client.list_issues_page(link.gitlab_repo_id, page=page, updated_after=updated_after)

    def apply_record(self, conn: Connection, link: RepositoryLink, record: Dict[str, Any]) -> Optional[UpsertResult]:
        if record.get("iid") is None:
            self.log.warning("Issue without iid skipped repo=%s id=%s", link.gitlab_repo_id, record.get("id"))
            return None
        return upsert_issue(conn, link.repository_id, record)

    def sync_for_project(self, project_id: int, full: bool = False, since: datetime | None = None) -> SyncSummary:
        """Sync issues of every repository linked to a local project."""
        with self.engine.connect() as conn:
            links = list_repositories_for_sync(conn, project_id=project_id)
        gitlab_ids = list(dict.fromkeys(l.gitlab_repo_id for l in links if l.gitlab_repo_id is not None))
        if not gitlab_ids:
            raise MappingError(f"Project {project_id} has no repositories assigned for issue sync")
        total = SyncSummary()
        for gid in gitlab_ids:
            total.merge(self.sync(gid, full=full, since=since))
        return total

    def sync_all(
        self,
        full: bool = False,
        assigned_only: bool = False,
        progress: ProgressListener | None = None,
        repositories: RepositorySynchronizer | None = None,
    ) -> SyncSummary:
        """Sync issues across all known repositories, optionally only those linked to a project."""
        progress = progress or ProgressListener()
        if repositories is not None:
            repositories.sync_group()
        with self.engine.connect() as conn:
            links = list_repositories_for_sync(conn, assigned_only=assigned_only)
        progress.on_start(len(links))

        total = SyncSummary()
        for processed, link in enumerate(links, start=1):
            progress.on_repo_start(link.gitlab_repo_id)
            s = self.sync(link.gitlab_repo_id, full=full)
            total.merge(s)
            progress.on_repo_done(processed, link.gitlab_repo_id, s)
        return total
