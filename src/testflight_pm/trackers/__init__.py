"""Issue tracker clients."""

from .base import GitHubIssueTracker, LinearIssueTracker
from .formatting import (
    build_duplicate_comment,
    build_issue_body,
    build_issue_title,
    build_labels,
    render_issue_preview,
)
from .github import GitHubClient
from .linear import LinearClient

__all__ = [
    "GitHubClient",
    "GitHubIssueTracker",
    "LinearClient",
    "LinearIssueTracker",
    "build_duplicate_comment",
    "build_issue_body",
    "build_issue_title",
    "build_labels",
    "render_issue_preview",
]
