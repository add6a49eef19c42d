"""Duplicate detection and at-most-once issue creation."""

from .creator import IdempotentIssueCreator
from .detector import DuplicateDetector, SearchOutcome, SearchTimeoutError

__all__ = ["DuplicateDetector", "IdempotentIssueCreator", "SearchOutcome", "SearchTimeoutError"]
