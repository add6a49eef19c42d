from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

import requests

from testflight_pm.config import ConfigError, HttpSettings, LinearSettings
from testflight_pm.models import FeedbackRecord, IssueContent, IssueRef, feedback_marker, has_feedback_marker
from testflight_pm.utils.http_utils import USER_AGENT, ApiError, send_with_retries

from .base import LinearIssueTracker
from .formatting import build_issue_body, build_issue_title

logger = logging.getLogger(__name__)

CRASH_PRIORITY = 2

_FIND_ISSUES_QUERY = """
query FindTestFlightIssues($filter: IssueFilter, $first: Int) {
  issues(filter: $filter, first: $first) {
    nodes { id identifier title url description }
  }
}
"""

_TEAM_LABELS_QUERY = """
query TeamLabels($teamId: String!) {
  team(id: $teamId) {
    labels(first: 250) { nodes { id name } }
  }
}
"""

_CREATE_ISSUE_MUTATION = """
mutation CreateIssue($input: IssueCreateInput!) {
  issueCreate(input: $input) {
    success
    issue { id identifier title url }
  }
}
"""

_CREATE_COMMENT_MUTATION = """
mutation CreateComment($input: CommentCreateInput!) {
  commentCreate(input: $input) { success }
}
"""


class LinearClient(LinearIssueTracker):
    def __init__(
        self,
        settings: LinearSettings,
        http: HttpSettings,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        missing = [name for name in ("api_token", "team_id") if not getattr(settings, name)]
        if missing:
            raise ConfigError(f"Linear integration is missing: {', '.join(missing)}")

        self.settings = settings
        self.http = http
        self._sleep = sleep
        self._label_ids: dict[str, str] | None = None
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": settings.api_token,
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            }
        )

    def find_duplicate(self, record: FeedbackRecord) -> IssueRef | None:
        marker = feedback_marker(record.id)
        data = self._graphql(
            _FIND_ISSUES_QUERY,
            {
                "filter": {
                    "team": {"id": {"eq": self.settings.team_id}},
                    "or": [
                        {"title": {"containsIgnoreCase": record.id}},
                        {"description": {"containsIgnoreCase": marker}},
                    ],
                },
                "first": 5,
            },
        )
        nodes = (data.get("issues") or {}).get("nodes") or []
        for node in nodes:
            if has_feedback_marker(node.get("description"), record.id):
                return _issue_ref(node)
        return None

    def create_issue(
        self,
        record: FeedbackRecord,
        labels: Sequence[str],
        *,
        assignee_id: str | None = None,
        project_id: str | None = None,
        overrides: IssueContent | None = None,
    ) -> IssueRef:
        issue_input: dict[str, Any] = {
            "teamId": self.settings.team_id,
            "title": overrides.title if overrides else build_issue_title(record),
            "description": overrides.body if overrides else build_issue_body(record),
            "priority": CRASH_PRIORITY if record.is_crash else self.settings.default_priority,
        }
        assignee_id = assignee_id or self.settings.assignee_id
        if assignee_id:
            issue_input["assigneeId"] = assignee_id
        project_id = project_id or self.settings.project_id
        if project_id:
            issue_input["projectId"] = project_id
        label_ids = self._resolve_label_ids(labels)
        if label_ids:
            issue_input["labelIds"] = label_ids

        data = self._graphql(_CREATE_ISSUE_MUTATION, {"input": issue_input})
        payload = data.get("issueCreate") or {}
        if not payload.get("success") or not payload.get("issue"):
            raise ApiError("Linear did not confirm issue creation")

        issue = _issue_ref(payload["issue"])
        logger.info("Created Linear issue %s for feedback %s", issue.display_name, record.id)
        return issue

    def add_comment(self, issue: IssueRef, body: str) -> None:
        data = self._graphql(_CREATE_COMMENT_MUTATION, {"input": {"issueId": issue.id, "body": body}})
        if not (data.get("commentCreate") or {}).get("success"):
            raise ApiError(f"Linear did not confirm the comment on {issue.display_name}")
        logger.info("Added comment to Linear issue %s", issue.display_name)

    def _resolve_label_ids(self, labels: Sequence[str]) -> list[str]:
        if not labels:
            return []
        if self._label_ids is None:
            data = self._graphql(_TEAM_LABELS_QUERY, {"teamId": self.settings.team_id})
            nodes = ((data.get("team") or {}).get("labels") or {}).get("nodes") or []
            self._label_ids = {str(node["name"]).lower(): str(node["id"]) for node in nodes if node.get("name")}

        resolved: list[str] = []
        for label in labels:
            label_id = self._label_ids.get(label.lower())
            if label_id is None:
                logger.debug("Linear team has no label named %r; skipping it", label)
            elif label_id not in resolved:
                resolved.append(label_id)
        return resolved

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = send_with_retries(
            self.session,
            "POST",
            self.settings.api_url,
            retries=self.http.retries,
            retry_delay_seconds=self.http.retry_delay_ms / 1000,
            timeout_seconds=self.http.timeout_seconds,
            sleep=self._sleep,
            json={"query": query, "variables": variables},
        )
        payload = response.json()
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(str(error.get("message", error)) for error in errors if isinstance(error, dict))
            raise ApiError(f"Linear GraphQL error: {messages or errors}")
        return payload.get("data") or {}


def _issue_ref(node: dict[str, Any]) -> IssueRef:
    return IssueRef(
        id=str(node.get("id", "")),
        url=node.get("url") or "",
        title=node.get("title") or "",
        identifier=node.get("identifier"),
    )
