from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from testflight_pm.filters import Filter
from testflight_pm.idempotency import IdempotentIssueCreator
from testflight_pm.models import CreateIssueOptions, CreateIssueResult, FeedbackRecord, Platform, ProcessingWindow
from testflight_pm.sources import Source
from testflight_pm.store import StateStore
from testflight_pm.trackers.formatting import build_issue_title
from testflight_pm.utils.datetime_utils import isoformat_utc
from testflight_pm.window import ProcessingWindowCalculator

logger = logging.getLogger(__name__)

PreviewCallback = Callable[[FeedbackRecord, CreateIssueResult], None]


@dataclass(slots=True)
class RecordOutcome:
    feedback_id: str
    feedback_type: str
    outcome: str
    issue_urls: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunStats:
    window: ProcessingWindow | None = None
    fetched: int = 0
    new: int = 0
    already_processed: int = 0
    filtered_out: int = 0
    created: int = 0
    partial: int = 0
    duplicates: int = 0
    failed: int = 0
    dry_run_previews: int = 0
    issues_created: int = 0
    issues_updated: int = 0
    crashes_processed: int = 0
    feedback_processed: int = 0
    enhanced: int = 0
    llm_requests: int = 0
    llm_cost_usd: float = 0.0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    outcomes: list[RecordOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def record(self, record: FeedbackRecord, result: CreateIssueResult) -> None:
        outcome = result.outcome
        if outcome == "created":
            self.created += 1
        elif outcome == "partial":
            self.partial += 1
        elif outcome == "duplicate":
            self.duplicates += 1
        elif outcome == "dry_run":
            self.dry_run_previews += 1
        else:
            self.failed += 1

        self.issues_created += len(result.processed_by)
        self.issues_updated += sum(
            1 for created in (result.github, result.linear) if created is not None and created.was_existing
        )
        if result.enhanced:
            self.enhanced += 1
        if outcome != "failed":
            if record.is_crash:
                self.crashes_processed += 1
            else:
                self.feedback_processed += 1

        self.errors.extend(f"{record.id}: {error}" for error in result.errors)
        self.warnings.extend(f"{record.id}: {warning}" for warning in result.warnings)
        self.outcomes.append(
            RecordOutcome(
                feedback_id=record.id,
                feedback_type=record.type,
                outcome=outcome,
                issue_urls=result.issue_urls,
            )
        )

    def summary(self) -> dict[str, Any]:
        return {
            "window": None
            if self.window is None
            else {
                "start_time": isoformat_utc(self.window.start_time),
                "end_time": isoformat_utc(self.window.end_time),
                "rationale": self.window.rationale,
            },
            "fetched": self.fetched,
            "new": self.new,
            "already_processed": self.already_processed,
            "filtered_out": self.filtered_out,
            "created": self.created,
            "partial": self.partial,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "dry_run_previews": self.dry_run_previews,
            "issues_created": self.issues_created,
            "issues_updated": self.issues_updated,
            "enhanced": self.enhanced,
            "llm_requests_made": self.llm_requests,
            "llm_cost_incurred": round(self.llm_cost_usd, 6),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "outcomes": [
                {
                    "feedback_id": item.feedback_id,
                    "type": item.feedback_type,
                    "outcome": item.outcome,
                    "issue_urls": item.issue_urls,
                }
                for item in self.outcomes
            ],
        }

    def action_outputs(self) -> dict[str, str]:
        return {
            "issues_created": str(self.issues_created),
            "issues_updated": str(self.issues_updated),
            "crashes_processed": str(self.crashes_processed),
            "feedback_processed": str(self.feedback_processed),
            "llm_requests_made": str(self.llm_requests),
            "llm_cost_incurred": f"{self.llm_cost_usd:.4f}",
            "processing_summary": json.dumps(self.summary()),
        }


class FeedbackProcessingService:
    def __init__(
        self,
        *,
        source: Source | None,
        window_calculator: ProcessingWindowCalculator | None,
        state_store: StateStore | None,
        creator: IdempotentIssueCreator,
        filter_engine: Filter,
        platform: Platform,
        dry_run: bool,
        run_id: str | None = None,
        explicit_since: str | None = None,
        explicit_frequency: str | None = None,
        max_issues_per_run: int = 50,
        preview_callback: PreviewCallback | None = None,
    ) -> None:
        self.source = source
        self.window_calculator = window_calculator
        self.state_store = state_store
        self.creator = creator
        self.filter_engine = filter_engine
        self.platform = platform
        self.dry_run = dry_run
        self.run_id = run_id
        self.explicit_since = explicit_since
        self.explicit_frequency = explicit_frequency
        self.max_issues_per_run = max_issues_per_run
        self.preview_callback = preview_callback or _default_preview

    def run_once(self) -> RunStats:
        if self.source is None or self.window_calculator is None:
            raise RuntimeError("run_once needs a source and a window calculator")
        stats = RunStats()
        try:
            self._fetch_and_process(self.source, self.window_calculator, stats)
        finally:
            self._save_state(stats)
            self._collect_llm_usage(stats)
        return stats

    def process_records(self, records: Sequence[FeedbackRecord]) -> RunStats:
        """Push already-fetched feedback (e.g. a webhook delivery) through the pipeline."""
        stats = RunStats(fetched=len(records))
        try:
            self._process(records, stats)
        finally:
            self._save_state(stats)
            self._collect_llm_usage(stats)
        return stats

    def _fetch_and_process(
        self,
        source: Source,
        window_calculator: ProcessingWindowCalculator,
        stats: RunStats,
    ) -> None:
        window = window_calculator.calculate_optimal_window(self.explicit_since, self.explicit_frequency)
        stats.window = window
        logger.info(
            "Processing window %s -> %s (%s)",
            isoformat_utc(window.start_time),
            isoformat_utc(window.end_time),
            window.rationale,
        )

        try:
            records = source.fetch(window.start_time, window.end_time)
        except Exception as exc:  # noqa: BLE001
            message = f"source {source.source_id} fetch failed: {exc}"
            logger.exception(message)
            stats.errors.append(message)
            return

        stats.fetched = len(records)
        logger.info("Source %s returned %d records", source.source_id, stats.fetched)
        self._process(records, stats)

    def _process(self, records: Sequence[FeedbackRecord], stats: RunStats) -> None:
        unprocessed = self.state_store.filter_unprocessed(records) if self.state_store else list(records)
        stats.new = len(unprocessed)
        stats.already_processed = stats.fetched - stats.new
        logger.info("%d new feedback record(s) to process", stats.new)

        handled = 0
        for record in unprocessed:
            if handled >= self.max_issues_per_run:
                message = f"Reached issue limit ({self.max_issues_per_run}); remaining feedback left for the next run"
                logger.info(message)
                stats.warnings.append(message)
                return

            filter_result = self.filter_engine.evaluate(record)
            if not filter_result.matched:
                stats.filtered_out += 1
                logger.info("Skipping %s: %s", record.id, filter_result.reason_text())
                continue

            options = CreateIssueOptions(platform=self.platform, action_run_id=self.run_id, dry_run=self.dry_run)
            try:
                result = self.creator.create_issue_with_duplicate_protection(record, options)
            except Exception as exc:  # noqa: BLE001
                message = f"failed to process {record.id}: {exc}"
                logger.exception(message)
                stats.errors.append(message)
                stats.failed += 1
                continue

            stats.record(record, result)
            if result.outcome in {"created", "partial", "dry_run"}:
                handled += 1
            if self.dry_run and result.outcome == "dry_run":
                self.preview_callback(record, result)
            elif result.duplicate_handled and result.duplicate_detection.platform in {"github", "linear"}:
                self._remember_duplicate(record, stats)

    def _remember_duplicate(self, record: FeedbackRecord, stats: RunStats) -> None:
        if self.dry_run or self.state_store is None:
            return
        try:
            self.state_store.mark_as_processed([record.id], self.run_id)
        except Exception as exc:  # noqa: BLE001
            message = f"{record.id}: failed to record duplicate as processed: {exc}"
            logger.warning(message)
            stats.warnings.append(message)

    def _collect_llm_usage(self, stats: RunStats) -> None:
        enhancer = self.creator.enhancer
        if enhancer is None:
            return
        stats.llm_requests = enhancer.usage.requests
        stats.llm_cost_usd = enhancer.usage.cost_usd

    def _save_state(self, stats: RunStats) -> None:
        if self.dry_run or self.state_store is None or not self.state_store.dirty:
            return
        try:
            self.state_store.save_state()
        except Exception as exc:  # noqa: BLE001
            message = f"failed to save processed state: {exc}"
            logger.exception(message)
            stats.errors.append(message)


def _default_preview(record: FeedbackRecord, result: CreateIssueResult) -> None:
    print(f"[DRY RUN] WOULD CREATE: {build_issue_title(record)}")
    print(f"  Feedback ID: {record.id} ({record.type})")
    print(f"  Submitted: {isoformat_utc(record.submitted_at)}")
    for warning in result.warnings:
        print(f"  {warning}")
    print("")
