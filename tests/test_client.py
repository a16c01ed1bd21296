from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import FakeGitLab, FakeResponse, FakeSession
from pmsync.errors import GitLabApiError
from pmsync.gitlab.client import GitLabClient


def _client(settings, responses):
    sleeps: list[float] = []
    session = FakeSession(responses)
    return GitLabClient(settings, session=session, sleep=sleeps.append), session, sleeps


def test_page_metadata_is_decoded(settings):
    client, session, _ = _client(settings, [
        FakeResponse(200, [{"iid": 1}, {"iid": 2}], headers={
            "X-Page": "1", "X-Total-Pages": "3", "X-Next-Page": "2", "X-Request-Id": "req-1",
        }),
    ])
    page = client.list_issues_page(42, page=1)

    assert [i["iid"] for i in page.data] == [1, 2]
    assert page.page == 1
    assert page.total_pages == 3
    assert page.next_page == "2"
    assert page.has_next
    assert page.request_id == "req-1"

    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://gitlab.example.com/api/v4/projects/42/issues"
    assert call["headers"] == {"PRIVATE-TOKEN": "t0ken"}
    assert call["params"] == {"per_page": 20, "state": "all", "page": 1}


def test_empty_next_page_header_ends_paging(settings):
    client, _, _ = _client(settings, [FakeResponse(200, [], headers={"X-Next-Page": ""})])
    page = client.list_project_milestones_page(7)
    assert page.data == []
    assert page.next_page is None
    assert not page.has_next


def test_updated_after_is_sent_as_iso(settings):
    client, session, _ = _client(settings, [FakeResponse(200, [])])
    since = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    client.list_issues_page(42, page=2, updated_after=since)
    assert session.calls[0]["params"]["updated_after"] == "2025-03-01T12:00:00+00:00"
    assert session.calls[0]["params"]["page"] == 2


def test_rate_limit_is_retried_until_exhausted(settings):
    client, session, sleeps = _client(settings, [
        FakeResponse(429, None, headers={"X-Request-Id": "rl-9"}, text="Retry later"),
    ])
    with pytest.raises(GitLabApiError) as excinfo:
        client.list_issues_page(42)

    err = excinfo.value
    assert len(session.calls) == settings.retry_max_attempts
    assert err.retries == settings.retry_max_attempts - 1
    assert err.status == 429
    assert err.code == "RATE_LIMITED"
    assert err.request_id == "rl-9"
    assert err.body == "Retry later"
    # linear backoff: unit * attempt
    assert sleeps == [0.5, 1.0]


def test_server_error_recovers_on_retry(settings):
    client, session, sleeps = _client(settings, [
        FakeResponse(502, None, text="bad gateway"),
        FakeResponse(200, [{"iid": 5}], headers={"X-Page": "1"}),
    ])
    page = client.list_issues_page(42)
    assert [i["iid"] for i in page.data] == [5]
    assert len(session.calls) == 2
    assert sleeps == [0.5]


def test_not_found_is_not_retried(settings):
    client, session, sleeps = _client(settings, [FakeResponse(404, None, text="404 Project Not Found")])
    with pytest.raises(GitLabApiError) as excinfo:
        client.get_project(999)
    assert len(session.calls) == 1
    assert sleeps == []
    assert excinfo.value.retries == 0
    assert excinfo.value.code == "NOT_FOUND"


def test_error_body_is_truncated(settings):
    client, _, _ = _client(settings, [FakeResponse(400, None, text="x" * 2000)])
    with pytest.raises(GitLabApiError) as excinfo:
        client.list_issues_page(1)
    assert len(excinfo.value.body) == 503
    assert excinfo.value.body.endswith("...")


def test_listing_endpoints_match_the_in_memory_client():
    def listings(cls):
        return sorted(name for name in vars(cls) if name.startswith("list_") and name.endswith("_page"))

    assert listings(GitLabClient) == listings(FakeGitLab) == [
        "list_group_projects_page",
        "list_issue_notes_page",
        "list_issues_page",
        "list_project_milestones_page",
    ]
