from __future__ import annotations
import logging

from sqlalchemy.engine import Engine

from pmsync.db.dao import upsert_repository
from pmsync.gitlab.client import GitLabClient
from pmsync.sync.summary import SyncSummary

log = logging.getLogger("sync.repositories")


class RepositorySynchronizer:
    def __init__(self, engine: Engine, client: GitLabClient, group_id: int | None = None) -> None:
        self.engine = engine
        self.client = client
        self.group_id = group_id

    def sync_one(self, gitlab_repo_id: int, project_id: int | None = None) -> SyncSummary:
        """Fetch one GitLab project and store it as a repository, optionally linking it to a project."""
        log.info("Starting repositories sync project=%s", gitlab_repo_id)
        summary = SyncSummary()
        p = self.client.get_project(gitlab_repo_id)
        with self.engine.begin() as conn:
            res = upsert_repository(conn, p, project_id=project_id)
        summary.fetched += 1
        if res.inserted:
            summary.inserted += 1
        else:
            summary.updated += 1
        return summary

    def sync_group(self, group_id: int | None = None) -> SyncSummary:
        group_id = group_id or self.group_id
        if group_id is None:
            log.info("No GitLab group configured, repository refresh skipped")
            return SyncSummary()
        summary = SyncSummary()
        page = 1
        while True:
            res = self.client.list_group_projects_page(group_id, page=page)
            summary.fetched += len(res.data)
            if res.data:
                summary.pages += 1
                with self.engine.begin() as conn:
                    for p in res.data:
                        if p.get("id") is None:
                            summary.skipped += 1
                            continue
                        if upsert_repository(conn, p).inserted:
                            summary.inserted += 1
                        else:
                            summary.updated += 1
            if not res.has_next:
                break
            page = int(res.next_page)
        log.info("Repositories sync done: group=%s fetched=%s pages=%s", group_id, summary.fetched, summary.pages)
        return summary
