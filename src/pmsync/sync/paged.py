from __future__ import annotations
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.engine import Connection, Engine

from pmsync.db.dao import RepositoryLink, UpsertResult, find_repository
from pmsync.errors import MappingError
from pmsync.gitlab.client import GitLabClient, Page
from pmsync.sync.cursors import CursorStore
from pmsync.sync.locks import ScopeLocks
from pmsync.sync.summary import SyncSummary


class PagedSynchronizer:
    """Page walk shared by issue and milestone sync.

    Each page is written in its own transaction. Incremental runs read the
    scope cursor as ``updated_after`` and advance it only after every page
    was applied; full runs leave it alone. Any exception aborts the run with
    the cursor untouched.
    """

    scope = ""
    logger_name = "sync"

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
        self.log = logging.getLogger(self.logger_name)

    def fetch_page(self, link: RepositoryLink, page: int, updated_after: datetime | None) -> Page:
        raise NotImplementedError

    def apply_record(self, conn: Connection, link: RepositoryLink, record: Dict[str, Any]) -> Optional[UpsertResult]:
        """Upsert one remote record; None means it was malformed and skipped."""
        raise NotImplementedError

    def check_link(self, link: RepositoryLink) -> None:
        pass

    def resolve(self, gitlab_repo_id: int) -> RepositoryLink:
        with self.engine.connect() as conn:
            link = find_repository(conn, gitlab_repo_id)
        if link is None:
            raise MappingError(f"Repository not found locally: {gitlab_repo_id}")
        self.check_link(link)
        return link

    def sync(self, gitlab_repo_id: int, full: bool = False, since: datetime | None = None) -> SyncSummary:
        started = time.monotonic()
        link = self.resolve(gitlab_repo_id)
        with self.locks.hold(link.repository_id, self.scope):
            updated_after = since
            if updated_after is None and not full:
                with self.engine.connect() as conn:
                    updated_after = self.cursors.get(conn, link.repository_id, self.scope)
            self.log.info("Starting %s sync repo=%s full=%s updated_after=%s",
                          self.scope, gitlab_repo_id, full, updated_after)

            summary = SyncSummary()
            page = 1
            while True:
                res = self.fetch_page(link, page, updated_after)
                summary.fetched += len(res.data)
                if res.data:
                    summary.pages += 1
                    with self.engine.begin() as conn:
                        for record in res.data:
                            result = self.apply_record(conn, link, record)
                            if result is None:
                                summary.skipped += 1
                            elif result.inserted:
                                summary.inserted += 1
                            else:
                                summary.updated += 1
                if not res.has_next:
                    break
                page = int(res.next_page)

            if not full:
                with self.engine.begin() as conn:
                    self.cursors.advance(conn, link.repository_id, self.scope)

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        self.log.info("%s sync done: repo=%s fetched=%s inserted=%s updated=%s skipped=%s pages=%s",
                      self.scope.capitalize(), gitlab_repo_id, summary.fetched, summary.inserted,
                      summary.updated, summary.skipped, summary.pages)
        return summary
