"""Error taxonomy shared by synchronizers, job polling and synchronous callers."""
from __future__ import annotations
import logging
from typing import Any, Dict

import requests

log = logging.getLogger("errors")

BODY_LIMIT = 500


def truncate(value: str | None, limit: int = BODY_LIMIT) -> str:
    if not value:
        return ""
    return value if len(value) <= limit else value[:limit] + "..."


class SyncError(Exception):
    code = "UNKNOWN"
    http_status = 500


class MappingError(SyncError):
    """A referenced project or repository is not known locally."""
    code = "BAD_REQUEST"
    http_status = 400


class ValidationError(SyncError):
    code = "VALIDATION"
    http_status = 400

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class SyncInProgressError(SyncError):
    code = "CONFLICT"
    http_status = 409

    def __init__(self, repository_id: int, scope: str) -> None:
        super().__init__(f"Sync of scope '{scope}' already running for repository {repository_id}")
        self.repository_id = repository_id
        self.scope = scope


class GitLabApiError(SyncError):
    """Non-2xx answer from GitLab, raised after retries are exhausted."""

    def __init__(
        self,
        status: int,
        body: str | None = None,
        request_id: str | None = None,
        path: str | None = None,
        retries: int = 0,
    ) -> None:
        self.status = status
        self.body = truncate(body)
        self.request_id = request_id or None
        self.path = path
        self.retries = retries
        super().__init__(f"GitLab {status} on {path} (reqId={self.request_id})")

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500

    @property
    def code(self) -> str:  # type: ignore[override]
        if self.status == 429:
            return "RATE_LIMITED"
        if self.status == 404:
            return "NOT_FOUND"
        if self.status >= 500:
            return "GITLAB_UNAVAILABLE"
        return "BAD_REQUEST"

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return {"RATE_LIMITED": 503, "NOT_FOUND": 404, "GITLAB_UNAVAILABLE": 502}.get(self.code, 400)


class GraphQLError(SyncError):
    code = "GITLAB_UNAVAILABLE"
    http_status = 502


_MESSAGES = {
    "RATE_LIMITED": "GitLab rate limit hit, retry in a minute.",
    "NOT_FOUND": "Project or issue was not found in GitLab.",
    "GITLAB_UNAVAILABLE": "GitLab is currently unavailable, try again later.",
    "TIMEOUT": "GitLab did not answer in time, try again later.",
    "UNKNOWN": "Unexpected error.",
}


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Structured error body used by job polling and synchronous endpoints."""
    if isinstance(exc, GitLabApiError):
        return {
            "code": exc.code,
            "message": _MESSAGES.get(exc.code, "Invalid request."),
            "details": exc.body or None,
            "http_status": exc.http_status,
            "request_id": exc.request_id,
        }
    if isinstance(exc, requests.Timeout):
        return {
            "code": "TIMEOUT",
            "message": _MESSAGES["TIMEOUT"],
            "details": str(exc),
            "http_status": 504,
            "request_id": None,
        }
    if isinstance(exc, SyncError):
        return {
            "code": exc.code,
            "message": str(exc),
            "details": None,
            "http_status": exc.http_status,
            "request_id": None,
        }
    log.error("Unhandled exception: %s", exc, exc_info=exc)
    return {
        "code": "UNKNOWN",
        "message": _MESSAGES["UNKNOWN"],
        "details": str(exc),
        "http_status": 500,
        "request_id": None,
    }
