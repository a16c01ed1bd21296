"""Report sync from GitLab GraphQL timelogs.

Structured timelogs avoid parsing note text. Every repository linked to the
project is walked with the ``after`` cursor until ``hasNextPage`` is false.
"""
from __future__ import annotations
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

from pmsync.costing.rates import ReportRow, insert_reports
from pmsync.db.dao import RepositoryLink, as_utc, delete_reports, last_report_spent_at, list_repositories_for_sync, parse_ts
from pmsync.errors import MappingError
from pmsync.gitlab.graphql import GitLabGraphQLClient, project_gid
from pmsync.sync.locks import ScopeLocks
from pmsync.sync.summary import ProgressListener, SyncSummary

log = logging.getLogger("sync.reports")

SCOPE_REPORTS = "reports"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def node_to_row(link: RepositoryLink, node: Optional[Dict[str, Any]]) -> Optional[ReportRow]:
    """Validated report row for one timelog node, or None when it is unusable."""
    if not node:
        return None
    try:
        spent_at = parse_ts(node.get("spentAt"))
        raw_seconds = node.get("timeSpent")
        seconds = int(round(float(raw_seconds))) if raw_seconds is not None else 0
        iid = (node.get("issue") or {}).get("iid")
        iid = int(iid) if iid is not None else None
    except (TypeError, ValueError) as exc:
        log.warning("Malformed timelog skipped repo=%s: %s", link.gitlab_repo_id, exc)
        return None
    username = ((node.get("user") or {}).get("username") or "").strip()
    if spent_at is None or seconds == 0 or not username:
        return None
    return ReportRow(
        repository_id=link.repository_id,
        issue_iid=iid,
        spent_at=spent_at,
        seconds=seconds,
        username=username,
        project_hourly_rate=link.project_hourly_rate,
    )


class ReportSynchronizer:
    def __init__(
        self,
        engine: Engine,
        graphql: GitLabGraphQLClient,
        locks: ScopeLocks | None = None,
        page_size: int = 100,
        lookback_days: int = 365,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.graphql = graphql
        self.locks = locks or ScopeLocks()
        self.page_size = page_size
        self.lookback_days = lookback_days
        self._clock = clock

    def sync_project(
        self,
        project_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        since_last: bool = False,
        progress: ProgressListener | None = None,
    ) -> SyncSummary:
        with self.engine.connect() as conn:
            links = list_repositories_for_sync(conn, project_id=project_id)
        if not links:
            raise MappingError(f"Project {project_id} has no repositories assigned")
        return self._sync_links(links, start, end, since_last, progress)

    def sync_all(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        since_last: bool = False,
        progress: ProgressListener | None = None,
    ) -> SyncSummary:
        with self.engine.connect() as conn:
            links = list_repositories_for_sync(conn, assigned_only=True)
        if not links:
            return SyncSummary()
        return self._sync_links(links, start, end, since_last, progress)

    def purge(self, project_ids: List[int] | None = None) -> int:
        with self.engine.begin() as conn:
            deleted = delete_reports(conn, project_ids)
        log.info("Purged %s reports projects=%s", deleted, project_ids or "all")
        return deleted

    def _sync_links(self, links, start, end, since_last, progress) -> SyncSummary:
        started = time.monotonic()
        progress = progress or ProgressListener()
        effective_end = as_utc(end) if end else as_utc(self._clock())
        progress.on_start(len(links))

        summary = SyncSummary()
        for processed, link in enumerate(links, start=1):
            progress.on_repo_start(link.gitlab_repo_id)
            repo_summary = self.sync_repository(link, as_utc(start), effective_end, since_last)
            summary.merge(repo_summary)
            progress.on_repo_done(processed, link.gitlab_repo_id, repo_summary)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        return summary

    def sync_repository(
        self,
        link: RepositoryLink,
        start: datetime | None,
        end: datetime,
        since_last: bool = False,
    ) -> SyncSummary:
        summary = SyncSummary()
        with self.locks.hold(link.repository_id, SCOPE_REPORTS):
            repo_from = start
            if since_last or start is None:
                with self.engine.connect() as conn:
                    repo_from = last_report_spent_at(conn, link.repository_id) or start
            if repo_from is None:
                repo_from = end - timedelta(days=self.lookback_days)
            if repo_from >= end:
                log.debug("Repo %s: start %s is not before %s, skipped", link.name, repo_from, end)
                return summary

            gid = project_gid(link.gitlab_repo_id)
            cursor = None
            while True:
                page = self.graphql.fetch_timelogs(gid, repo_from, end, cursor, self.page_size)
                summary.pages += 1
                summary.fetched += len(page.nodes)

                rows = []
                for node in page.nodes:
                    row = node_to_row(link, node)
                    if row is None:
                        summary.skipped += 1
                    else:
                        rows.append(row)
                if rows:
                    with self.engine.begin() as conn:
                        stats = insert_reports(conn, rows)
                    summary.inserted += stats.inserted
                    summary.skipped += stats.duplicates
                    summary.unpriced += stats.unpriced
                    summary.add_missing_usernames(stats.missing_usernames)

                if not (page.has_next_page and page.end_cursor):
                    break
                cursor = page.end_cursor

        log.info("Reports sync done: repo=%s fetched=%s inserted=%s skipped=%s pages=%s",
                 link.gitlab_repo_id, summary.fetched, summary.inserted, summary.skipped, summary.pages)
        return summary
