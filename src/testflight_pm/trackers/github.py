from __future__ import annotations

import logging
import re
import time
from datetime import timedelta
from typing import Any, Callable, Sequence

import requests

from testflight_pm.config import ConfigError, GitHubSettings, HttpSettings
from testflight_pm.models import (
    FeedbackRecord,
    GitHubDuplicateMatch,
    IssueContent,
    IssueCreationResult,
    IssueRef,
    feedback_marker,
    has_feedback_marker,
)
from testflight_pm.utils.datetime_utils import utcnow
from testflight_pm.utils.http_utils import USER_AGENT, send_with_retries

from .base import GitHubIssueTracker
from .formatting import build_issue_body, build_issue_title

logger = logging.getLogger(__name__)

_SEARCH_EXCERPT_LENGTH = 50
_MAX_RATE_LIMIT_WAIT_SECONDS = 3600


class GitHubClient(GitHubIssueTracker):
    def __init__(
        self,
        settings: GitHubSettings,
        http: HttpSettings,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        missing = [name for name in ("token", "owner", "repo") if not getattr(settings, name)]
        if missing:
            raise ConfigError(f"GitHub integration is missing: {', '.join(missing)}")

        self.settings = settings
        self.http = http
        self._sleep = sleep
        self._rate_limits: dict[str, tuple[int, int]] = {}
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {settings.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": USER_AGENT,
            }
        )

    @property
    def repo_slug(self) -> str:
        return f"{self.settings.owner}/{self.settings.repo}"

    def find_duplicate(self, record: FeedbackRecord) -> GitHubDuplicateMatch:
        """Look for an issue with this record's id marker, then for similar content.

        Search terms are ANDed by GitHub, so the marker and the content terms
        go into separate queries.
        """
        for item in self._search([f'"{_escape_search_term(feedback_marker(record.id))}"']):
            if has_feedback_marker(item.get("body"), record.id):
                return GitHubDuplicateMatch(
                    is_duplicate=True,
                    confidence=1.0,
                    reasons=["Exact TestFlight ID match found in issue body"],
                    existing_issue=_issue_ref(item),
                )

        content_terms: list[str] = []
        exception_type = record.crash_data.exception_type if record.is_crash and record.crash_data else None
        if exception_type:
            content_terms.append(f'"{_escape_search_term(exception_type)}"')
        elif record.feedback_text:
            excerpt = " ".join(record.feedback_text.split())[:_SEARCH_EXCERPT_LENGTH]
            content_terms.append(f'"{_escape_search_term(excerpt)}"')
        if not content_terms:
            return GitHubDuplicateMatch(is_duplicate=False, confidence=0.0, reasons=["No matching GitHub issue"])

        for item in self._search(content_terms):
            if _content_matches(record, item):
                return GitHubDuplicateMatch(
                    is_duplicate=True,
                    confidence=0.7,
                    reasons=[f"Content similarity detected with #{item.get('number')}"],
                    existing_issue=_issue_ref(item),
                )

        return GitHubDuplicateMatch(is_duplicate=False, confidence=0.0, reasons=["No similar issues found in GitHub"])

    def create_issue(
        self,
        record: FeedbackRecord,
        labels: Sequence[str],
        *,
        overrides: IssueContent | None = None,
    ) -> IssueCreationResult:
        payload = {
            "title": overrides.title if overrides else build_issue_title(record),
            "body": overrides.body if overrides else build_issue_body(record),
            "labels": list(labels),
        }
        response = self._request("POST", f"/repos/{self.repo_slug}/issues", json=payload)
        issue = _issue_ref(response.json())
        logger.info("Created GitHub issue %s for feedback %s", issue.display_name, record.id)
        return IssueCreationResult(
            issue=issue,
            was_existing=False,
            action="created",
            message=f"Created new issue {issue.display_name}",
        )

    def add_comment(self, issue: IssueRef, body: str) -> None:
        if issue.number is None:
            raise ValueError(f"GitHub issue {issue.id} has no number to comment on")
        self._request("POST", f"/repos/{self.repo_slug}/issues/{issue.number}/comments", json={"body": body})
        logger.info("Added comment to GitHub issue %s", issue.display_name)

    def _search(self, terms: list[str]) -> list[dict[str, Any]]:
        since = (utcnow() - timedelta(days=self.settings.duplicate_detection_days)).date().isoformat()
        query = " ".join([f"repo:{self.repo_slug}", "is:issue", f"created:>={since}", *terms])
        response = self._request(
            "GET",
            "/search/issues",
            params={"q": query, "sort": "created", "order": "desc", "per_page": 5},
        )
        items = response.json().get("items")
        return [item for item in items or [] if isinstance(item, dict)]

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        resource = "search" if path.startswith("/search/") else "core"
        self._wait_for_rate_limit(resource)
        response = send_with_retries(
            self.session,
            method,
            f"{self.settings.api_url}{path}",
            retries=self.http.retries,
            retry_delay_seconds=self.http.retry_delay_ms / 1000,
            timeout_seconds=self.http.timeout_seconds,
            sleep=self._sleep,
            **kwargs,
        )
        self._update_rate_limit(response, resource)
        return response

    def _update_rate_limit(self, response: requests.Response, resource: str) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining is None or reset is None:
            return
        try:
            self._rate_limits[response.headers.get("X-RateLimit-Resource", resource)] = (int(remaining), int(reset))
        except ValueError:
            logger.debug("Ignoring malformed rate limit headers: %s / %s", remaining, reset)

    def _wait_for_rate_limit(self, resource: str) -> None:
        if resource not in self._rate_limits:
            return
        remaining, reset = self._rate_limits[resource]
        # The search API allows only a few dozen calls per minute, so only core keeps a reserve.
        reserve = self.settings.rate_limit_reserve if resource == "core" else 0
        if remaining > reserve:
            return

        wait_seconds = reset - int(utcnow().timestamp())
        if 0 < wait_seconds <= _MAX_RATE_LIMIT_WAIT_SECONDS:
            logger.warning(
                "GitHub %s rate limit low (%d remaining); waiting %ds for reset",
                resource,
                remaining,
                wait_seconds,
            )
            self._sleep(wait_seconds)
        del self._rate_limits[resource]


def _issue_ref(item: dict[str, Any]) -> IssueRef:
    return IssueRef(
        id=str(item.get("id", "")),
        url=item.get("html_url") or "",
        title=item.get("title") or "",
        number=item.get("number"),
    )


def _content_matches(record: FeedbackRecord, item: dict[str, Any]) -> bool:
    title = item.get("title") or ""
    body = item.get("body") or ""

    exception_type = record.crash_data.exception_type if record.is_crash and record.crash_data else None
    if exception_type:
        return exception_type in title or exception_type in body

    text = record.feedback_text
    if not text:
        return False
    words = text.lower().split(" ")
    issue_text = f"{title} {body}".lower()
    matching = sum(1 for word in words if len(word) > 3 and word in issue_text)
    return matching >= min(3, len(words) * 0.3)


def _escape_search_term(term: str) -> str:
    return re.sub(r"(['\"\\])", r"\\\1", term)
