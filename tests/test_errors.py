from __future__ import annotations

import pytest
import requests

from pmsync.errors import (
    GitLabApiError,
    GraphQLError,
    MappingError,
    SyncInProgressError,
    ValidationError,
    error_payload,
)


@pytest.mark.parametrize(
    "status, code, http_status, retryable",
    [
        (429, "RATE_LIMITED", 503, True),
        (404, "NOT_FOUND", 404, False),
        (500, "GITLAB_UNAVAILABLE", 502, True),
        (503, "GITLAB_UNAVAILABLE", 502, True),
        (400, "BAD_REQUEST", 400, False),
        (403, "BAD_REQUEST", 400, False),
    ],
)
def test_gitlab_status_mapping(status, code, http_status, retryable):
    err = GitLabApiError(status, "body", request_id="abc", path="/x")
    assert err.code == code
    assert err.http_status == http_status
    assert err.retryable is retryable
    payload = error_payload(err)
    assert payload["code"] == code
    assert payload["http_status"] == http_status
    assert payload["request_id"] == "abc"
    assert payload["details"] == "body"


def test_local_errors():
    assert error_payload(MappingError("Repository not found locally: 5"))["http_status"] == 400
    assert error_payload(ValidationError("bad", "level_period_invalid"))["code"] == "VALIDATION"
    assert error_payload(SyncInProgressError(1, "issues"))["http_status"] == 409
    assert error_payload(GraphQLError("down"))["code"] == "GITLAB_UNAVAILABLE"


def test_timeout_and_unknown():
    assert error_payload(requests.Timeout("read timed out"))["code"] == "TIMEOUT"
    assert error_payload(requests.Timeout("read timed out"))["http_status"] == 504
    unknown = error_payload(RuntimeError("kaput"))
    assert (unknown["code"], unknown["http_status"]) == ("UNKNOWN", 500)
