from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from testflight_pm.config import IdempotencySettings
from testflight_pm.models import DuplicateDetectionResult, FeedbackRecord, GitHubDuplicateMatch, IssueRef
from testflight_pm.store import StateStore
from testflight_pm.trackers.base import GitHubIssueTracker, LinearIssueTracker
from testflight_pm.utils.datetime_utils import isoformat_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SearchTimeoutError(TimeoutError):
    """A platform duplicate search did not answer within its time budget."""


@dataclass(slots=True)
class SearchOutcome(Generic[T]):
    value: T | None = None
    error: Exception | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None


class DuplicateDetector:
    """Answers "does an issue for this feedback already exist?".

    The state store is asked first. GitHub and Linear are then searched
    independently, each with its own retry loop and per-attempt timeout. A
    search that keeps failing counts as "no duplicate" and never blocks issue
    creation.
    """

    def __init__(
        self,
        settings: IdempotencySettings,
        *,
        state_store: StateStore | None = None,
        github: GitHubIssueTracker | None = None,
        linear: LinearIssueTracker | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.github = github
        self.linear = linear
        self._sleep = sleep

    def is_actionable(self, result: DuplicateDetectionResult) -> bool:
        return result.is_duplicate and result.confidence >= self.settings.confidence_threshold

    def check_state(self, record: FeedbackRecord) -> DuplicateDetectionResult:
        started = time.perf_counter()
        if not self.settings.enable_state_tracking or self.state_store is None:
            return DuplicateDetectionResult.not_found("state", ["State tracking disabled"])

        try:
            processed = self.state_store.is_processed(record.id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("State duplicate check failed for %s: %s", record.id, exc)
            return DuplicateDetectionResult.not_found("state", [f"State check failed: {exc}"])

        if not processed:
            result = DuplicateDetectionResult.not_found("state", ["Not found in state tracking"])
        else:
            stats = self.state_store.get_stats()
            result = DuplicateDetectionResult(
                is_duplicate=True,
                platform="state",
                confidence=1.0,
                reasons=[
                    f"Feedback ID {record.id} already processed",
                    f"Last processed: {isoformat_utc(stats.last_processed_at) or 'unknown'}",
                    f"Run ID: {stats.action_run_id or 'unknown'}",
                ],
            )
        result.search_duration_ms = _elapsed_ms(started)
        return result

    def perform_comprehensive_duplicate_check(
        self,
        record: FeedbackRecord,
        *,
        include_state: bool = True,
    ) -> DuplicateDetectionResult:
        started = time.perf_counter()

        if include_state:
            state_result = self.check_state(record)
            if state_result.is_duplicate:
                return state_result

        results: list[DuplicateDetectionResult] = []
        if self.settings.enable_github_duplicate_detection and self.github is not None:
            results.append(self._check_github(self.github, record))
        if self.settings.enable_linear_duplicate_detection and self.linear is not None:
            results.append(self._check_linear(self.linear, record))

        merged = _merge_results(results)
        merged.search_duration_ms = _elapsed_ms(started)
        return merged

    def _check_github(self, tracker: GitHubIssueTracker, record: FeedbackRecord) -> DuplicateDetectionResult:
        outcome: SearchOutcome[GitHubDuplicateMatch] = self._search_with_retries(
            "GitHub", tracker.find_duplicate, record
        )
        if not outcome.ok:
            return DuplicateDetectionResult.not_found(
                "github",
                [f"GitHub search failed after {outcome.attempts} attempt(s): {outcome.error}"],
            )

        match = outcome.value
        if match is None or not match.is_duplicate or match.existing_issue is None:
            reasons = list(match.reasons) if match is not None and match.reasons else ["No duplicate found in GitHub"]
            return DuplicateDetectionResult.not_found("github", reasons)

        return DuplicateDetectionResult(
            is_duplicate=True,
            platform="github",
            confidence=match.confidence,
            reasons=list(match.reasons) or [f"Found matching GitHub issue {match.existing_issue.display_name}"],
            existing_issue=match.existing_issue,
        )

    def _check_linear(self, tracker: LinearIssueTracker, record: FeedbackRecord) -> DuplicateDetectionResult:
        outcome: SearchOutcome[IssueRef | None] = self._search_with_retries("Linear", tracker.find_duplicate, record)
        if not outcome.ok:
            return DuplicateDetectionResult.not_found(
                "linear",
                [f"Linear search failed after {outcome.attempts} attempt(s): {outcome.error}"],
            )

        issue = outcome.value
        if issue is None:
            return DuplicateDetectionResult.not_found("linear", ["No duplicate found in Linear"])

        # Linear matches only on the exact id marker, so any hit is certain.
        return DuplicateDetectionResult(
            is_duplicate=True,
            platform="linear",
            confidence=1.0,
            reasons=[f"Found exact match in Linear: {issue.display_name}"],
            existing_issue=issue,
        )

    def _search_with_retries(
        self,
        platform_name: str,
        search: Callable[[FeedbackRecord], T],
        record: FeedbackRecord,
    ) -> SearchOutcome[T]:
        attempts = self.settings.retry_attempts + 1
        outcome: SearchOutcome[T] = SearchOutcome(error=RuntimeError("search never ran"), attempts=0)

        for attempt in range(attempts):
            outcome = self._search_once(search, record)
            outcome.attempts = attempt + 1
            if outcome.ok:
                return outcome

            logger.warning(
                "%s duplicate search for %s failed (attempt %d/%d): %s",
                platform_name,
                record.id,
                attempt + 1,
                attempts,
                outcome.error,
            )
            if attempt + 1 < attempts:
                self._sleep(self.settings.retry_delay_ms * (2**attempt) / 1000)

        return outcome

    def _search_once(self, search: Callable[[FeedbackRecord], T], record: FeedbackRecord) -> SearchOutcome[T]:
        timeout_seconds = self.settings.search_timeout_ms / 1000
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duplicate-search")
        try:
            future = executor.submit(search, record)
            try:
                return SearchOutcome(value=future.result(timeout=timeout_seconds))
            except FutureTimeoutError:
                future.cancel()
                return SearchOutcome(
                    error=SearchTimeoutError(f"Search timeout after {self.settings.search_timeout_ms}ms")
                )
            except Exception as exc:  # noqa: BLE001
                return SearchOutcome(error=exc)
        finally:
            # A timed-out search keeps running in the background; do not wait for it.
            executor.shutdown(wait=False, cancel_futures=True)


def _merge_results(results: list[DuplicateDetectionResult]) -> DuplicateDetectionResult:
    best: DuplicateDetectionResult | None = None
    for result in results:
        if result.is_duplicate and (best is None or result.confidence > best.confidence):
            best = result

    if best is None:
        return DuplicateDetectionResult.not_found("none", [reason for result in results for reason in result.reasons])

    for result in results:
        if result is best:
            continue
        for reason in result.reasons:
            if reason not in best.reasons:
                best.reasons.append(reason)
    return best


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
