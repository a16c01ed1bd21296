from __future__ import annotations
import logging
import time
from datetime import datetime
from typing import List

from sqlalchemy.engine import Engine

from pmsync.costing.rates import ReportRow, insert_reports
from pmsync.db.dao import RepositoryLink, as_utc, find_repository, list_issue_iids, parse_ts
from pmsync.errors import MappingError
from pmsync.gitlab.client import GitLabClient
from pmsync.sync.cursors import SCOPE_NOTES, CursorStore
from pmsync.sync.locks import ScopeLocks
from pmsync.sync.summary import SyncSummary
from pmsync.sync.time_spent import parse_delta_seconds

log = logging.getLogger("sync.notes")


class NoteSynchronizer:
    """Derives time reports from "added/subtracted ... of time spent" system notes.

    Corrections are stored as negative rows next to the original entry; they
    are never netted.
    """

    def __init__(
        self,
        engine: Engine,
        client: GitLabClient,
        cursors: CursorStore | None = None,
        locks: ScopeLocks | None = None,
    ) -> None:
        self.engine = engine
        self.client = client
        self.cursors = cursors or CursorStore()
        self.locks = locks or ScopeLocks()

    def _resolve(self, gitlab_repo_id: int) -> RepositoryLink:
        with self.engine.connect() as conn:
            link = find_repository(conn, gitlab_repo_id)
        if link is None:
            raise MappingError(f"Repository not found locally: {gitlab_repo_id}")
        return link

    def sync(self, gitlab_repo_id: int, since: datetime | None = None) -> SyncSummary:
        started = time.monotonic()
        link = self._resolve(gitlab_repo_id)
        with self.locks.hold(link.repository_id, SCOPE_NOTES):
            with self.engine.connect() as conn:
                cutoff = as_utc(since) or self.cursors.get(conn, link.repository_id, SCOPE_NOTES)
                iids = list_issue_iids(conn, link.repository_id)
            log.info("Starting notes sync repo=%s since=%s issues=%s", gitlab_repo_id, cutoff, len(iids))

            summary = SyncSummary()
            for iid in iids:
                self._sync_issue(link, iid, cutoff, summary)
            # move cursor only when every issue went through
            with self.engine.begin() as conn:
                self.cursors.advance(conn, link.repository_id, SCOPE_NOTES)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Notes sync done: repo=%s fetched=%s inserted=%s pages=%s",
                 gitlab_repo_id, summary.fetched, summary.inserted, summary.pages)
        return summary

    def sync_issue(self, gitlab_repo_id: int, iid: int, since: datetime | None = None) -> SyncSummary:
        link = self._resolve(gitlab_repo_id)
        summary = SyncSummary()
        with self.locks.hold(link.repository_id, SCOPE_NOTES):
            self._sync_issue(link, iid, as_utc(since), summary)
        return summary

    def _sync_issue(self, link: RepositoryLink, iid: int, cutoff: datetime | None, summary: SyncSummary) -> None:
        page = 1
        while True:
            res = self.client.list_issue_notes_page(link.gitlab_repo_id, iid, page=page)
            summary.fetched += len(res.data)
            if res.data:
                summary.pages += 1

            rows: List[ReportRow] = []
            for note in res.data:
                if not note.get("system"):
                    continue
                delta = parse_delta_seconds(note.get("body"))
                if not delta:
                    continue
                try:
                    created_at = parse_ts(note.get("created_at"))
                except (TypeError, ValueError) as exc:
                    log.warning("Malformed note skipped repo=%s iid=%s id=%s: %s",
                                link.gitlab_repo_id, iid, note.get("id"), exc)
                    summary.skipped += 1
                    continue
                username = (note.get("author") or {}).get("username")
                if created_at is None or not username:
                    summary.skipped += 1
                    continue
                if cutoff is not None and created_at < cutoff:
                    continue
                rows.append(ReportRow(
                    repository_id=link.repository_id,
                    issue_iid=iid,
                    spent_at=created_at,
                    seconds=delta,
                    username=username,
                    project_hourly_rate=link.project_hourly_rate,
                ))

            if rows:
                with self.engine.begin() as conn:
                    stats = insert_reports(conn, rows)
                summary.inserted += stats.inserted
                summary.skipped += stats.duplicates
                summary.unpriced += stats.unpriced
                summary.add_missing_usernames(stats.missing_usernames)

            if not res.has_next:
                break
            page = int(res.next_page)
