from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List

from sqlalchemy.engine import Engine

from pmsync.config import GitLabSettings
from pmsync.db.connection import get_engine
from pmsync.errors import error_payload
from pmsync.gitlab.client import GitLabClient
from pmsync.gitlab.graphql import GitLabGraphQLClient
from pmsync.sync.cursors import CursorStore
from pmsync.sync.issues import IssueSynchronizer
from pmsync.sync.locks import ScopeLocks
from pmsync.sync.milestones import MilestoneSynchronizer
from pmsync.sync.notes import NoteSynchronizer
from pmsync.sync.reports import ReportSynchronizer
from pmsync.sync.repositories import RepositorySynchronizer
from pmsync.sync.summary import ProgressListener, SyncSummary

log = logging.getLogger("sync_runner")


class SyncRunner:
    """Entry points for every sync operation, sharing one cursor store and one lock table."""

    def __init__(
        self,
        engine: Engine,
        client: GitLabClient,
        graphql: GitLabGraphQLClient,
        group_id: int | None = None,
        cursors: CursorStore | None = None,
        locks: ScopeLocks | None = None,
        report_page_size: int = 100,
        report_lookback_days: int = 365,
    ) -> None:
        self.engine = engine
        self.cursors = cursors or CursorStore()
        self.locks = locks or ScopeLocks()
        self.repositories_sync = RepositorySynchronizer(engine, client, group_id=group_id)
        self.issues_sync = IssueSynchronizer(engine, client, self.cursors, self.locks)
        self.milestones_sync = MilestoneSynchronizer(engine, client, self.cursors, self.locks)
        self.notes_sync = NoteSynchronizer(engine, client, self.cursors, self.locks)
        self.reports_sync = ReportSynchronizer(
            engine, graphql, self.locks, page_size=report_page_size, lookback_days=report_lookback_days)

    @classmethod
    def from_config(cls, cfg: dict, engine: Engine | None = None) -> "SyncRunner":
        settings = GitLabSettings.from_config(cfg)
        reports = cfg.get("reports") or {}
        return cls(
            engine or get_engine(),
            GitLabClient(settings),
            GitLabGraphQLClient(settings),
            group_id=settings.group_id,
            report_page_size=int(reports.get("page_size", 100)),
            report_lookback_days=int(reports.get("default_lookback_days", 365)),
        )

    def repositories(self, gitlab_repo_id: int | None = None, project_id: int | None = None) -> SyncSummary:
        if gitlab_repo_id is not None:
            return self.repositories_sync.sync_one(gitlab_repo_id, project_id=project_id)
        return self.repositories_sync.sync_group()

    def issues(self, gitlab_repo_id: int, full: bool = False, since: datetime | None = None) -> SyncSummary:
        return self.issues_sync.sync(gitlab_repo_id, full=full, since=since)

    def issues_for_project(self, project_id: int, full: bool = False, since: datetime | None = None) -> SyncSummary:
        return self.issues_sync.sync_for_project(project_id, full=full, since=since)

    def issues_all(
        self,
        full: bool = False,
        assigned_only: bool = False,
        progress: ProgressListener | None = None,
    ) -> SyncSummary:
        return self.issues_sync.sync_all(full=full, assigned_only=assigned_only, progress=progress,
                                         repositories=self.repositories_sync)

    def milestones(self, gitlab_repo_id: int, full: bool = False, since: datetime | None = None) -> SyncSummary:
        return self.milestones_sync.sync(gitlab_repo_id, full=full, since=since)

    def notes(self, gitlab_repo_id: int, since: datetime | None = None) -> SyncSummary:
        return self.notes_sync.sync(gitlab_repo_id, since=since)

    def notes_issue(self, gitlab_repo_id: int, iid: int, since: datetime | None = None) -> SyncSummary:
        return self.notes_sync.sync_issue(gitlab_repo_id, iid, since=since)

    def reports_project(
        self,
        project_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        since_last: bool = False,
        progress: ProgressListener | None = None,
    ) -> SyncSummary:
        return self.reports_sync.sync_project(project_id, start=start, end=end,
                                              since_last=since_last, progress=progress)

    def reports_all(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        since_last: bool = False,
        progress: ProgressListener | None = None,
    ) -> SyncSummary:
        return self.reports_sync.sync_all(start=start, end=end, since_last=since_last, progress=progress)

    def purge_reports(self, project_ids: List[int] | None = None) -> int:
        return self.reports_sync.purge(project_ids)

    def sync_project_all(self, project_id: int, full: bool = False) -> Dict[str, Dict[str, Any]]:
        """Issues then reports for one project. A failing step does not stop the next one."""
        steps: List[tuple[str, Callable[[], SyncSummary]]] = [
            ("issues", lambda: self.issues_for_project(project_id, full=full)),
            ("reports", lambda: self.reports_project(project_id, since_last=not full)),
        ]
        out: Dict[str, Dict[str, Any]] = {}
        for name, step in steps:
            try:
                out[name] = {"status": "OK", "summary": step().as_dict()}
            except Exception as exc:
                log.warning("Project %s step %s failed: %s", project_id, name, exc)
                out[name] = {"status": "ERROR", "error": error_payload(exc)}
        return out
