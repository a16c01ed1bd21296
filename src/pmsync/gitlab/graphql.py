"""GitLab GraphQL access, limited to the ``timelogs`` connection.

REST has no equivalent endpoint for project timelogs, so report sync reads
them here. Pagination is cursor based (``after`` / ``pageInfo``).
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pmsync.errors import GraphQLError
from pmsync.gitlab.client import GitLabTransport

log = logging.getLogger("gitlab.graphql")

TIMELOG_QUERY = """
query ProjectTimelogsIssues(
  $projectId: ProjectID!,
  $from: Time!,
  $to: Time!,
  $first: Int = 100,
  $after: String
) {
  timelogs(
    projectId: $projectId
    startDate: $from
    endDate: $to
    first: $first
    after: $after
    sort: SPENT_AT_DESC
  ) {
    nodes {
      timeSpent
      spentAt
      summary
      user { username }
      issue { iid }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


def project_gid(gitlab_project_id: int) -> str:
    return f"gid://gitlab/Project/{gitlab_project_id}"


@dataclass
class TimelogPage:
    nodes: List[Optional[Dict[str, Any]]] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: Optional[str] = None


class GitLabGraphQLClient(GitLabTransport):

    def fetch_timelogs(
        self,
        gid: str,
        start: datetime,
        end: datetime,
        after: str | None = None,
        first: int = 100,
    ) -> TimelogPage:
        """Fetch one page of timelogs spent between ``start`` and ``end`` (inclusive)."""
        variables: Dict[str, Any] = {
            "projectId": gid,
            "from": start.isoformat(),
            "to": end.isoformat(),
            "first": first,
        }
        if after is not None:
            variables["after"] = after

        resp = self.request(
            "POST",
            self.settings.graphql_url,
            "/graphql",
            json={"query": TIMELOG_QUERY, "variables": variables},
        )
        body = resp.json() if resp.content else None
        if not body:
            raise GraphQLError("GitLab GraphQL returned empty body")
        errors = body.get("errors") or []
        if errors:
            message = next((e.get("message") for e in errors if e.get("message")), "Unknown GraphQL error")
            raise GraphQLError(f"GitLab GraphQL error: {message}")
        timelogs = (body.get("data") or {}).get("timelogs")
        if timelogs is None:
            raise GraphQLError("GitLab GraphQL response missing timelog data")

        page_info = timelogs.get("pageInfo") or {}
        return TimelogPage(
            nodes=list(timelogs.get("nodes") or []),
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )
