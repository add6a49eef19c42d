from __future__ import annotations

import logging
import time
from typing import Any

from testflight_pm.config import IdempotencySettings, LabelSettings
from testflight_pm.enhancement import BudgetExceededError, IssueEnhancer
from testflight_pm.models import (
    CreateIssueOptions,
    CreateIssueResult,
    DuplicateDetectionResult,
    FeedbackRecord,
    IssueContent,
    IssueCreationResult,
)
from testflight_pm.store import StateStore
from testflight_pm.trackers.base import GitHubIssueTracker, LinearIssueTracker
from testflight_pm.trackers.formatting import build_duplicate_comment, build_issue_title, build_labels
from testflight_pm.utils.datetime_utils import isoformat_utc, utcnow

from .detector import DuplicateDetector

logger = logging.getLogger(__name__)


class IdempotentIssueCreator:
    """Creates issues for feedback at most once.

    Each call runs its stages in order and stops at the first one that
    settles the outcome: processed-state lookup, platform duplicate search,
    optional LLM enhancement, issue creation on each requested platform, and
    recording the id as processed. Platform and LLM failures are reported in
    the result, never raised.
    """

    def __init__(
        self,
        detector: DuplicateDetector,
        settings: IdempotencySettings,
        *,
        label_settings: LabelSettings | None = None,
        state_store: StateStore | None = None,
        github: GitHubIssueTracker | None = None,
        linear: LinearIssueTracker | None = None,
        enhancer: IssueEnhancer | None = None,
    ) -> None:
        self.detector = detector
        self.settings = settings
        self.label_settings = label_settings or LabelSettings()
        self.state_store = state_store
        self.github = github
        self.linear = linear
        self.enhancer = enhancer

    @property
    def tracks_state(self) -> bool:
        return self.settings.enable_state_tracking and self.state_store is not None

    def create_issue_with_duplicate_protection(
        self,
        record: FeedbackRecord,
        options: CreateIssueOptions | None = None,
    ) -> CreateIssueResult:
        options = options or CreateIssueOptions()
        started = time.perf_counter()
        result = CreateIssueResult(
            duplicate_detection=DuplicateDetectionResult.not_found("none", []),
            dry_run=options.dry_run,
        )

        if self.tracks_state:
            state_result = self.detector.check_state(record)
            if state_result.is_duplicate:
                logger.info("Feedback %s already processed; skipping", record.id)
                result.duplicate_detection = state_result
                result.duplicate_handled = True
                return _finish(result, started)

        if not options.skip_duplicate_detection:
            detection = self.detector.perform_comprehensive_duplicate_check(record, include_state=False)
            result.duplicate_detection = detection
            if self.detector.is_actionable(detection):
                logger.info(
                    "Feedback %s duplicates %s issue %s (confidence %.2f)",
                    record.id,
                    detection.platform,
                    detection.existing_issue.display_name if detection.existing_issue else "?",
                    detection.confidence,
                )
                result.duplicate_handled = True
                if not options.dry_run:
                    self._comment_on_existing_issue(record, detection, result)
                return _finish(result, started)
            if detection.is_duplicate:
                result.warnings.append(
                    f"Weak {detection.platform} match (confidence {detection.confidence:.2f} below "
                    f"{self.settings.confidence_threshold:.2f}); creating a new issue"
                )

        labels = build_labels(record, self.label_settings, options.additional_labels)
        platforms = _requested_platforms(options.platform)

        if options.dry_run:
            for platform in platforms:
                result.warnings.append(f"Dry run: would create {_display(platform)} issue '{build_issue_title(record)}'")
            return _finish(result, started)

        content: IssueContent | None = None
        if self.enhancer is not None:
            content = self._enhance(self.enhancer, record, labels, result)
            if content is None and result.errors:
                return _finish(result, started)
        if content is not None:
            labels = list(content.labels)

        if "github" in platforms:
            self._create_on_github(record, labels, content, result)
        if "linear" in platforms:
            self._create_on_linear(record, labels, content, result)

        if result.processed_by and self.settings.enable_state_tracking and self.state_store is not None:
            self._record_processed(self.state_store, record, options.action_run_id, result)

        return _finish(result, started)

    def get_statistics(self) -> dict[str, Any]:
        stats = self.state_store.get_stats().to_dict() if self.state_store else None
        return {
            "state_tracking": stats,
            "configuration": {
                "enable_state_tracking": self.settings.enable_state_tracking,
                "enable_github_duplicate_detection": self.settings.enable_github_duplicate_detection,
                "enable_linear_duplicate_detection": self.settings.enable_linear_duplicate_detection,
                "retry_attempts": self.settings.retry_attempts,
                "retry_delay_ms": self.settings.retry_delay_ms,
                "search_timeout_ms": self.settings.search_timeout_ms,
                "confidence_threshold": self.settings.confidence_threshold,
                "github_configured": self.github is not None,
                "linear_configured": self.linear is not None,
            },
            "llm_enhancement": self.enhancer.get_statistics() if self.enhancer else None,
            "last_updated": isoformat_utc(utcnow()),
        }

    def _enhance(
        self,
        enhancer: IssueEnhancer,
        record: FeedbackRecord,
        labels: list[str],
        result: CreateIssueResult,
    ) -> IssueContent | None:
        try:
            content = enhancer.enhance(record, labels)
        except BudgetExceededError as exc:
            logger.info("Skipping LLM enhancement for %s: %s", record.id, exc)
            result.warnings.append(f"LLM enhancement: {exc}; standard issue format used")
            return None
        except Exception as exc:  # noqa: BLE001
            if not enhancer.settings.fallback_to_standard:
                logger.error("LLM enhancement failed for %s and fallback is disabled: %s", record.id, exc)
                result.errors.append(f"LLM enhancement: {exc}")
                return None
            logger.warning("LLM enhancement failed for %s; using the standard issue format: %s", record.id, exc)
            result.warnings.append(f"LLM enhancement: {exc}; standard issue format used")
            return None
        result.enhanced = True
        return content

    def _record_processed(
        self,
        state_store: StateStore,
        record: FeedbackRecord,
        run_id: str | None,
        result: CreateIssueResult,
    ) -> None:
        try:
            state_store.mark_as_processed([record.id], run_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to record feedback %s as processed: %s", record.id, exc)
            result.warnings.append(f"State tracking: {exc}")

    def _create_on_github(
        self,
        record: FeedbackRecord,
        labels: list[str],
        content: IssueContent | None,
        result: CreateIssueResult,
    ) -> None:
        if self.github is None:
            result.errors.append("GitHub: client not configured")
            return
        try:
            result.github = self.github.create_issue(record, labels, overrides=content)
        except Exception as exc:  # noqa: BLE001
            logger.error("GitHub issue creation failed for %s: %s", record.id, exc)
            result.errors.append(f"GitHub: {exc}")
            return
        result.processed_by.append("github")

    def _create_on_linear(
        self,
        record: FeedbackRecord,
        labels: list[str],
        content: IssueContent | None,
        result: CreateIssueResult,
    ) -> None:
        if self.linear is None:
            result.errors.append("Linear: client not configured")
            return
        try:
            issue = self.linear.create_issue(record, labels, overrides=content)
        except Exception as exc:  # noqa: BLE001
            logger.error("Linear issue creation failed for %s: %s", record.id, exc)
            result.errors.append(f"Linear: {exc}")
            return
        result.linear = IssueCreationResult(
            issue=issue,
            was_existing=False,
            action="created",
            message=f"Created new Linear issue {issue.display_name}",
        )
        result.processed_by.append("linear")

    def _comment_on_existing_issue(
        self,
        record: FeedbackRecord,
        detection: DuplicateDetectionResult,
        result: CreateIssueResult,
    ) -> None:
        issue = detection.existing_issue
        if issue is None:
            return

        tracker: GitHubIssueTracker | LinearIssueTracker | None = None
        if detection.platform == "github":
            tracker = self.github
        elif detection.platform == "linear":
            tracker = self.linear
        if tracker is None:
            return

        try:
            tracker.add_comment(issue, build_duplicate_comment(record, detection))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to comment on existing issue %s: %s", issue.display_name, exc)
            result.warnings.append(f"Could not comment on existing issue {issue.display_name}: {exc}")
            return

        updated = IssueCreationResult(
            issue=issue,
            was_existing=True,
            action="comment_added",
            message=f"Added comment to existing issue {issue.display_name}",
        )
        if detection.platform == "github":
            result.github = updated
        else:
            result.linear = updated


def _requested_platforms(platform: str) -> list[str]:
    if platform == "both":
        return ["github", "linear"]
    return [platform]


def _display(platform: str) -> str:
    return "GitHub" if platform == "github" else "Linear"


def _finish(result: CreateIssueResult, started: float) -> CreateIssueResult:
    result.total_duration_ms = round((time.perf_counter() - started) * 1000, 2)
    return result
