from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from pmsync.errors import GitLabApiError, MappingError, SyncInProgressError
from pmsync.gitlab.client import Page
from pmsync.sync.cursors import SCOPE_ISSUES, CursorStore
from pmsync.sync.issues import IssueSynchronizer
from pmsync.sync.locks import ScopeLocks
from pmsync.sync.summary import ProgressListener

NOW = datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc)


def _issue(iid, title="Issue", state="opened", assignee="ana"):
    return {
        "id": 1000 + iid,
        "iid": iid,
        "title": f"{title} {iid}",
        "state": state,
        "assignees": [{"id": 7, "username": assignee}],
        "author": {"name": "Boss"},
        "labels": ["backend"],
        "due_date": "2025-07-01",
        "time_stats": {"time_estimate": 3600, "total_time_spent": 1800, "human_time_estimate": "1h"},
        "created_at": "2025-05-01T10:00:00Z",
        "updated_at": "2025-05-02T10:00:00Z",
    }


def _count(engine, sql):
    with engine.connect() as conn:
        return conn.execute(text(sql)).scalar()


def _cursor(engine, repository_id):
    with engine.connect() as conn:
        return CursorStore().get(conn, repository_id, SCOPE_ISSUES)


@pytest.fixture()
def syncer(db_engine, fake_gitlab):
    return IssueSynchronizer(db_engine, fake_gitlab, CursorStore(clock=lambda: NOW), ScopeLocks())


def test_second_run_updates_instead_of_inserting(db_engine, fake_gitlab, seed, syncer):
    seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [_issue(1), _issue(2)], [_issue(3)])

    first = syncer.sync(42, full=True)
    second = syncer.sync(42, full=True)

    assert (first.fetched, first.inserted, first.updated, first.pages) == (3, 3, 0, 2)
    assert (second.fetched, second.inserted, second.updated, second.pages) == (3, 0, 3, 2)
    assert _count(db_engine, "SELECT COUNT(*) FROM issue") == 3


def test_issue_fields_are_stored(db_engine, fake_gitlab, seed, syncer):
    rid = seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [_issue(5, state="closed", assignee="leo")])
    syncer.sync(42)
    with db_engine.connect() as conn:
        row = conn.execute(text("SELECT * FROM issue WHERE repository_id = :r AND iid = 5"), {"r": rid}).mappings().one()
    assert row["state"] == "closed"
    assert row["assignee_username"] == "leo"
    assert row["time_estimate_seconds"] == 3600
    assert row["total_time_spent_seconds"] == 1800


def test_null_next_page_means_single_fetch(fake_gitlab, seed, syncer):
    seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [_issue(1)])
    syncer.sync(42)
    assert [c for c in fake_gitlab.calls if c[0] == "issues"] == [("issues", 42, 1, None)]


def test_incremental_run_uses_and_advances_cursor(db_engine, fake_gitlab, seed, syncer):
    rid = seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [_issue(1)])

    syncer.sync(42)
    assert _cursor(db_engine, rid) == NOW

    fake_gitlab.calls.clear()
    syncer.sync(42)
    assert fake_gitlab.calls[0] == ("issues", 42, 1, NOW)


def test_full_run_leaves_cursor_untouched(db_engine, fake_gitlab, seed, syncer):
    rid = seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [_issue(1)])
    syncer.sync(42, full=True)
    assert _cursor(db_engine, rid) is None


def test_failed_page_keeps_cursor_and_committed_pages(db_engine, fake_gitlab, seed, syncer):
    rid = seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [_issue(1)], GitLabApiError(502, "down", path="/issues"))

    with pytest.raises(GitLabApiError):
        syncer.sync(42)

    assert _cursor(db_engine, rid) is None
    assert _count(db_engine, "SELECT COUNT(*) FROM issue") == 1


def test_explicit_since_overrides_cursor(fake_gitlab, seed, syncer):
    seed.repository(42)
    fake_gitlab.set_pages(("issues", 42), [])
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    syncer.sync(42, since=since)
    assert fake_gitlab.calls[0] == ("issues", 42, 1, since)


def test_unknown_repository_fails_fast(fake_gitlab, syncer):
    with pytest.raises(MappingError):
        syncer.sync(999)
    assert fake_gitlab.calls == []


def test_issue_without_iid_is_skipped(fake_gitlab, seed, syncer):
    seed.repository(42)
    broken = _issue(9)
    del broken["iid"]
    fake_gitlab.set_pages(("issues", 42), [_issue(1), broken])
    summary = syncer.sync(42)
    assert (summary.inserted, summary.skipped) == (1, 1)


def test_concurrent_sync_of_same_scope_is_rejected(db_engine, seed):
    seed.repository(42)
    entered = threading.Event()
    release = threading.Event()

    class BlockingGitLab:
        def list_issues_page(self, gitlab_project_id, page=1, updated_after=None):
            entered.set()
            release.wait(5)
            return Page()

    syncer = IssueSynchronizer(db_engine, BlockingGitLab())
    worker = threading.Thread(target=syncer.sync, args=(42,))
    worker.start()
    try:
        assert entered.wait(5)
        with pytest.raises(SyncInProgressError) as excinfo:
            syncer.sync(42)
        assert excinfo.value.code == "CONFLICT"
    finally:
        release.set()
        worker.join(5)


def test_sync_for_project_requires_repositories(seed, syncer):
    pid = seed.project("Empty")
    with pytest.raises(MappingError):
        syncer.sync_for_project(pid)


def test_sync_all_reports_progress(fake_gitlab, seed, syncer):
    pid = seed.project("P")
    seed.repository(1, project_id=pid)
    seed.repository(2)
    fake_gitlab.set_pages(("issues", 1), [_issue(1)])
    fake_gitlab.set_pages(("issues", 2), [_issue(1), _issue(2)])

    events = []

    class Recorder(ProgressListener):
        def on_start(self, total_repos):
            events.append(("start", total_repos))

        def on_repo_start(self, gitlab_repo_id):
            events.append(("repo", gitlab_repo_id))

        def on_repo_done(self, processed_repos, gitlab_repo_id, summary):
            events.append(("done", processed_repos, gitlab_repo_id, summary.inserted))

    total = syncer.sync_all(progress=Recorder())
    assert total.inserted == 3
    assert events == [("start", 2), ("repo", 1), ("done", 1, 1, 1), ("repo", 2), ("done", 2, 2, 2)]

    assigned = syncer.sync_all(assigned_only=True)
    assert assigned.fetched == 1
