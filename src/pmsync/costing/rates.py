"""Temporal hourly-rate resolution and report costing.

An intern's rate at a point in time comes from the level-history interval
covering that day. Repositories whose project is billed externally use the
project rate instead. Rows that cannot be priced are still stored, with a
NULL cost, so one unknown username never aborts a batch.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from pmsync.db.dao import as_utc, project_rate_for_repository
from pmsync.db.schema import intern, intern_level_history, level, report
from pmsync.errors import MappingError, ValidationError

log = logging.getLogger("costing")

HOURS_SCALE = Decimal("0.0001")
COST_SCALE = Decimal("0.01")


@dataclass(frozen=True)
class RateSlice:
    valid_from: date
    valid_to: Optional[date]
    hourly_rate: Decimal

    def covers(self, day: date) -> bool:
        if day < self.valid_from:
            return False
        return self.valid_to is None or day <= self.valid_to


@dataclass(frozen=True)
class ReportRow:
    repository_id: int
    issue_iid: Optional[int]
    spent_at: datetime
    seconds: int
    username: str
    project_hourly_rate: Optional[Decimal] = None


@dataclass
class ReportInsertStats:
    inserted: int = 0
    duplicates: int = 0
    unpriced: int = 0
    missing_usernames: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LevelAssignment:
    level_id: int
    valid_from: date
    valid_to: Optional[date] = None


def seconds_to_hours(seconds: int) -> Decimal:
    return (Decimal(seconds) / Decimal(3600)).quantize(HOURS_SCALE, rounding=ROUND_HALF_UP)


def compute_cost(hours: Decimal, rate: Optional[Decimal]) -> Optional[Decimal]:
    if rate is None:
        return None
    return (hours * Decimal(rate)).quantize(COST_SCALE, rounding=ROUND_HALF_UP)


def resolve_rate(slices: Sequence[RateSlice], day: date) -> Optional[Decimal]:
    for s in slices:
        if s.covers(day):
            return s.hourly_rate
    return None


def load_rate_timelines(conn: Connection, usernames: Iterable[str]) -> Dict[str, List[RateSlice]]:
    """Timelines keyed by username. Known interns without history map to []."""
    names = sorted({u for u in usernames if u})
    if not names:
        return {}
    timelines: Dict[str, List[RateSlice]] = {
        u: [] for u in conn.execute(select(intern.c.username).where(intern.c.username.in_(names))).scalars()
    }
    q = (
        select(intern.c.username, intern_level_history.c.valid_from,
               intern_level_history.c.valid_to, level.c.hourly_rate)
        .select_from(
            intern.join(intern_level_history, intern_level_history.c.intern_id == intern.c.id)
            .join(level, level.c.id == intern_level_history.c.level_id)
        )
        .where(intern.c.username.in_(names))
        .order_by(intern.c.username, intern_level_history.c.valid_from)
    )
    for r in conn.execute(q).mappings():
        timelines[r["username"]].append(RateSlice(r["valid_from"], r["valid_to"], r["hourly_rate"]))
    return timelines


def _insert_ignoring_duplicates(conn: Connection, values: dict) -> bool:
    dialect = conn.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert
        return conn.execute(pg_insert(report).values(**values).on_conflict_do_nothing()).rowcount > 0
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return conn.execute(sqlite_insert(report).values(**values).on_conflict_do_nothing()).rowcount > 0
    savepoint = conn.begin_nested()
    try:
        conn.execute(insert(report).values(**values))
    except IntegrityError:
        savepoint.rollback()
        return False
    savepoint.commit()
    return True


def insert_reports(conn: Connection, rows: Sequence[ReportRow]) -> ReportInsertStats:
    """Insert time reports, pricing each one at its ``spent_at`` day.

    Duplicates of the natural key are counted, not raised.
    """
    stats = ReportInsertStats()
    if not rows:
        return stats
    timelines = load_rate_timelines(conn, (r.username for r in rows))

    for row in rows:
        spent_at = as_utc(row.spent_at)
        slices = timelines.get(row.username)
        if slices is None and row.username not in stats.missing_usernames:
            stats.missing_usernames.append(row.username)
        intern_rate = resolve_rate(slices, spent_at.date()) if slices else None
        if slices and intern_rate is None:
            log.warning("No level covers %s for user %s, storing report without rate", spent_at.date(), row.username)
        effective = row.project_hourly_rate if row.project_hourly_rate is not None else intern_rate
        hours = seconds_to_hours(row.seconds)
        cost = compute_cost(hours, effective)

        inserted = _insert_ignoring_duplicates(conn, {
            "repository_id": row.repository_id,
            "issue_iid": row.issue_iid,
            "spent_at": spent_at,
            "time_spent_seconds": row.seconds,
            "time_spent_hours": hours,
            "username": row.username,
            "hourly_rate": intern_rate,
            "cost": cost,
        })
        if inserted:
            stats.inserted += 1
            if cost is None:
                stats.unpriced += 1
        else:
            stats.duplicates += 1
    return stats


def _intern_username(conn: Connection, intern_id: int) -> str:
    username = conn.execute(select(intern.c.username).where(intern.c.id == intern_id)).scalar_one_or_none()
    if username is None:
        raise MappingError(f"Intern not found: {intern_id}")
    return username


def recompute_costs_for_intern(conn: Connection, intern_id: int) -> int:
    """Re-price every report of one intern against the current timeline.

    Only rows whose rate or cost actually changes are written. Returns that count.
    """
    username = _intern_username(conn, intern_id)
    slices = load_rate_timelines(conn, [username]).get(username, [])
    project_rates: Dict[int, Optional[Decimal]] = {}

    rows = conn.execute(
        select(report.c.id, report.c.repository_id, report.c.spent_at,
               report.c.time_spent_seconds, report.c.hourly_rate, report.c.cost)
        .where(report.c.username == username)
    ).mappings().all()

    changed = 0
    for r in rows:
        repo_id = r["repository_id"]
        if repo_id not in project_rates:
            project_rates[repo_id] = project_rate_for_repository(conn, repo_id)
        intern_rate = resolve_rate(slices, as_utc(r["spent_at"]).date())
        effective = project_rates[repo_id] if project_rates[repo_id] is not None else intern_rate
        cost = compute_cost(seconds_to_hours(r["time_spent_seconds"]), effective)
        if intern_rate == r["hourly_rate"] and cost == r["cost"]:
            continue
        conn.execute(update(report).where(report.c.id == r["id"]).values(hourly_rate=intern_rate, cost=cost))
        changed += 1
    log.info("Recomputed %s report costs for intern %s", changed, username)
    return changed


def _ensure_level(conn: Connection, level_id: int) -> None:
    if conn.execute(select(level.c.id).where(level.c.id == level_id)).scalar_one_or_none() is None:
        raise ValidationError(f"Level {level_id} does not exist.", "level_not_found")


def change_level(conn: Connection, intern_id: int, level_id: int, effective_from: date) -> int:
    """Make ``level_id`` the intern's level from ``effective_from`` on, then re-price.

    The open interval is closed the day before. When it starts on the same day
    it is re-pointed to the new level instead. A date that falls inside an
    already closed interval is rejected, so intervals never overlap.
    """
    _intern_username(conn, intern_id)
    _ensure_level(conn, level_id)
    open_row = conn.execute(
        select(intern_level_history.c.id, intern_level_history.c.valid_from)
        .where(intern_level_history.c.intern_id == intern_id, intern_level_history.c.valid_to.is_(None))
    ).mappings().first()

    if open_row and open_row["valid_from"] > effective_from:
        raise ValidationError("Level change cannot predate the current level.", "level_change_before_current")
    closed_after = conn.execute(
        select(intern_level_history.c.id)
        .where(intern_level_history.c.intern_id == intern_id,
               intern_level_history.c.valid_to.is_not(None),
               intern_level_history.c.valid_to >= effective_from)
    ).first()
    if closed_after is not None:
        raise ValidationError("Level history contains overlapping periods.", "level_history_overlap")
    if open_row and open_row["valid_from"] == effective_from:
        conn.execute(update(intern_level_history)
                     .where(intern_level_history.c.id == open_row["id"])
                     .values(level_id=level_id))
    else:
        if open_row:
            conn.execute(update(intern_level_history)
                         .where(intern_level_history.c.id == open_row["id"])
                         .values(valid_to=effective_from - timedelta(days=1)))
        conn.execute(insert(intern_level_history).values(
            intern_id=intern_id, level_id=level_id, valid_from=effective_from, valid_to=None))

    conn.execute(update(intern).where(intern.c.id == intern_id).values(level_id=level_id))
    return recompute_costs_for_intern(conn, intern_id)


def normalize_level_history(entries: Sequence[LevelAssignment]) -> List[LevelAssignment]:
    if not entries:
        raise ValidationError("Level history must not be empty.", "level_history_required")
    for e in entries:
        if e.valid_from is None:
            raise ValidationError("valid_from is required.", "level_valid_from_required")
        if e.valid_to is not None and e.valid_to < e.valid_from:
            raise ValidationError("valid_to must not precede valid_from.", "level_period_invalid")
    ordered = sorted(entries, key=lambda e: e.valid_from)

    open_entries = [e for e in ordered if e.valid_to is None]
    if not open_entries:
        raise ValidationError("Exactly one level must be open.", "level_history_open_required")
    if len(open_entries) > 1:
        raise ValidationError("Only one level can be current.", "level_history_multiple_open")
    if ordered[-1].valid_to is not None:
        raise ValidationError("The current level must be the latest one.", "level_history_open_position")
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.valid_to is None or prev.valid_to >= cur.valid_from:
            raise ValidationError("Level history contains overlapping periods.", "level_history_overlap")
    return ordered


def replace_level_history(conn: Connection, intern_id: int, entries: Sequence[LevelAssignment]) -> int:
    """Replace the whole timeline (retroactive corrections) and re-price."""
    _intern_username(conn, intern_id)
    ordered = normalize_level_history(entries)
    for e in ordered:
        _ensure_level(conn, e.level_id)

    conn.execute(delete(intern_level_history).where(intern_level_history.c.intern_id == intern_id))
    for e in ordered:
        conn.execute(insert(intern_level_history).values(
            intern_id=intern_id, level_id=e.level_id, valid_from=e.valid_from, valid_to=e.valid_to))
    conn.execute(update(intern).where(intern.c.id == intern_id).values(level_id=ordered[-1].level_id))
    return recompute_costs_for_intern(conn, intern_id)
