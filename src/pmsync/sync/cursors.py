from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Connection

from pmsync.db.dao import as_utc
from pmsync.db.schema import sync_cursor

log = logging.getLogger("sync.cursor")

SCOPE_ISSUES = "issues"
SCOPE_MILESTONES = "milestones"
SCOPE_NOTES = "notes"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CursorStore:
    """Last successful run time per (repository, scope).

    Advance is a plain "now" taken after the run finished, not the newest
    remote ``updated_at`` seen.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    def get(self, conn: Connection, repository_id: int, scope: str) -> Optional[datetime]:
        q = select(sync_cursor.c.last_run_at).where(
            sync_cursor.c.repository_id == repository_id,
            sync_cursor.c.scope == scope,
        )
        return as_utc(conn.execute(q).scalar_one_or_none())

    def advance(self, conn: Connection, repository_id: int, scope: str) -> datetime:
        now = as_utc(self._clock())
        where = and_(sync_cursor.c.repository_id == repository_id, sync_cursor.c.scope == scope)
        res = conn.execute(update(sync_cursor).where(where).values(last_run_at=now))
        if not res.rowcount:
            conn.execute(insert(sync_cursor).values(repository_id=repository_id, scope=scope, last_run_at=now))
        log.info("Cursor advanced repo=%s scope=%s last_run_at=%s", repository_id, scope, now.isoformat())
        return now
