from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from testflight_pm.models import FeedbackRecord, GitHubDuplicateMatch, IssueContent, IssueCreationResult, IssueRef


class GitHubIssueTracker(ABC):
    @abstractmethod
    def find_duplicate(self, record: FeedbackRecord) -> GitHubDuplicateMatch:
        """Search recent issues for one that already tracks this feedback."""

    @abstractmethod
    def create_issue(
        self,
        record: FeedbackRecord,
        labels: Sequence[str],
        *,
        overrides: IssueContent | None = None,
    ) -> IssueCreationResult:
        """Open an issue for the feedback record.

        ``overrides`` replaces the standard title and body when given.
        """

    @abstractmethod
    def add_comment(self, issue: IssueRef, body: str) -> None:
        """Append a comment to an existing issue."""


class LinearIssueTracker(ABC):
    @abstractmethod
    def find_duplicate(self, record: FeedbackRecord) -> IssueRef | None:
        """Return the issue carrying this record's id marker, if any."""

    @abstractmethod
    def create_issue(
        self,
        record: FeedbackRecord,
        labels: Sequence[str],
        *,
        assignee_id: str | None = None,
        project_id: str | None = None,
        overrides: IssueContent | None = None,
    ) -> IssueRef:
        """Create an issue in the configured team.

        ``assignee_id`` and ``project_id`` fall back to the configured
        defaults; ``overrides`` replaces the standard title and description.
        """

    @abstractmethod
    def add_comment(self, issue: IssueRef, body: str) -> None:
        """Append a comment to an existing issue."""
