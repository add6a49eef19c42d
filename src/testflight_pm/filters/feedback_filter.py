from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from testflight_pm.config import ProcessingSettings
from testflight_pm.models import FeedbackRecord


@dataclass(slots=True)
class FilterResult:
    matched: bool
    reasons: list[str] = field(default_factory=list)

    def reason_text(self) -> str:
        return "; ".join(self.reasons) if self.reasons else "no specific reason"


class Filter(ABC):
    @abstractmethod
    def evaluate(self, record: FeedbackRecord) -> FilterResult:
        """Decide whether a feedback record should be turned into an issue."""

    def matches(self, record: FeedbackRecord) -> bool:
        return self.evaluate(record).matched


class FeedbackFilter(Filter):
    """Applies the crash/feedback switches and the minimum text length for screenshot feedback."""

    def __init__(self, settings: ProcessingSettings) -> None:
        self.settings = settings

    def evaluate(self, record: FeedbackRecord) -> FilterResult:
        if record.is_crash:
            return self._evaluate_crash(record)
        return self._evaluate_screenshot(record)

    def _evaluate_crash(self, record: FeedbackRecord) -> FilterResult:
        if not self.settings.enable_crash_processing:
            return FilterResult(matched=False, reasons=["crash processing disabled"])
        exception = record.crash_data.exception_type if record.crash_data else None
        return FilterResult(matched=True, reasons=[f"crash: {exception or 'unknown exception'}"])

    def _evaluate_screenshot(self, record: FeedbackRecord) -> FilterResult:
        if not self.settings.enable_feedback_processing:
            return FilterResult(matched=False, reasons=["feedback processing disabled"])

        text = " ".join(record.feedback_text.split())
        image_count = len(record.screenshot_data.images) if record.screenshot_data else 0
        minimum = self.settings.min_feedback_length
        if len(text) < minimum and not image_count:
            return FilterResult(
                matched=False,
                reasons=[f"feedback text too short ({len(text)} < {minimum} characters)"],
            )

        reasons = [f"feedback text: {len(text)} characters"]
        if image_count:
            reasons.append(f"screenshots: {image_count}")
        return FilterResult(matched=True, reasons=reasons)
