from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_incrementing

from pmsync.config import GitLabSettings
from pmsync.errors import GitLabApiError

log = logging.getLogger("gitlab")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GitLabApiError) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    status = getattr(exc, "status", None)
    req_id = getattr(exc, "request_id", None)
    wait_s = state.next_action.sleep if state.next_action else 0
    log.warning("GitLab %s (reqId=%s). Retrying in %sms (attempt %s)",
                status, req_id, int(wait_s * 1000), state.attempt_number)


def _int_header(headers, name: str, default: int = 0) -> int:
    try:
        return int(headers.get(name))
    except (TypeError, ValueError):
        return default


@dataclass
class Page:
    data: List[Dict[str, Any]] = field(default_factory=list)
    page: int = 0
    total_pages: int = 0
    next_page: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def has_next(self) -> bool:
        return bool(self.next_page)


class GitLabTransport:
    """HTTP plumbing shared by the REST and GraphQL clients.

    Rate-limit (429) and 5xx answers are retried with linear backoff
    (``retry_backoff_ms * attempt``) up to ``retry_max_attempts`` requests in
    total. The final error keeps its status, truncated body and request id,
    and records how many retries were spent on it.
    """

    def __init__(
        self,
        settings: GitLabSettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self._sleep = sleep
        self._headers = {"PRIVATE-TOKEN": settings.token} if settings.token else {}

    def _retrying(self) -> Retrying:
        unit = self.settings.retry_backoff_ms / 1000.0
        return Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.retry_max_attempts),
            wait=wait_incrementing(start=unit, increment=unit),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    def _send(self, method: str, url: str, path: str, **kwargs: Any):
        resp = self.session.request(
            method=method,
            url=url,
            headers=self._headers,
            timeout=self.settings.timeout_ms / 1000.0,
            **kwargs,
        )
        if resp.status_code >= 400:
            raise GitLabApiError(
                resp.status_code,
                body=resp.text,
                request_id=resp.headers.get("X-Request-Id"),
                path=path,
            )
        return resp

    def request(self, method: str, url: str, path: str, **kwargs: Any):
        attempts = 0

        def call():
            nonlocal attempts
            attempts += 1
            return self._send(method, url, path, **kwargs)

        try:
            return self._retrying()(call)
        except GitLabApiError as err:
            err.retries = attempts - 1
            log.warning("GitLab error %s (reqId=%s) body=%s path=%s retries=%s",
                        err.status, err.request_id, err.body, path, err.retries)
            raise


class GitLabClient(GitLabTransport):
    """Read-only GitLab REST v4 client. Every list call returns one page."""

    def get_page(self, path: str, params: Dict[str, Any] | None = None) -> Page:
        query = {"per_page": self.settings.per_page}
        query.update({k: v for k, v in (params or {}).items() if v is not None})
        resp = self.request("GET", f"{self.settings.api}{path}", path, params=query)
        body = resp.json() if resp.content else []
        if not isinstance(body, list):
            body = []
        return Page(
            data=body,
            page=_int_header(resp.headers, "X-Page"),
            total_pages=_int_header(resp.headers, "X-Total-Pages"),
            next_page=resp.headers.get("X-Next-Page") or None,
            request_id=resp.headers.get("X-Request-Id"),
        )

    def get_project(self, gitlab_project_id: int) -> Dict[str, Any]:
        path = f"/projects/{gitlab_project_id}"
        return self.request("GET", f"{self.settings.api}{path}", path).json()

    def list_group_projects_page(self, group_id: int, page: int | None = 1) -> Page:
        return self.get_page(f"/groups/{group_id}/projects", {"include_subgroups": "true", "page": page})

    def list_issues_page(self, gitlab_project_id: int, page: int | None = 1,
                         updated_after: datetime | None = None) -> Page:
        return self.get_page(f"/projects/{gitlab_project_id}/issues", {
            "state": "all",
            "page": page,
            "updated_after": updated_after.isoformat() if updated_after else None,
        })

    def list_project_milestones_page(self, gitlab_project_id: int, page: int | None = 1,
                                     updated_after: datetime | None = None) -> Page:
        return self.get_page(f"/projects/{gitlab_project_id}/milestones", {
            "state": "all",
            "page": page,
            "updated_after": updated_after.isoformat() if updated_after else None,
        })

    def list_issue_notes_page(self, gitlab_project_id: int, iid: int, page: int | None = 1) -> Page:
        return self.get_page(f"/projects/{gitlab_project_id}/issues/{iid}/notes", {
            "sort": "asc",
            "order_by": "created_at",
            "page": page,
        })
