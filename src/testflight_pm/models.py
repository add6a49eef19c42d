from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

FeedbackType = Literal["crash", "screenshot"]
Platform = Literal["github", "linear", "both"]
DetectionSource = Literal["github", "linear", "state", "none"]

FEEDBACK_ID_MARKER = "TestFlight ID:"


def feedback_marker(feedback_id: str) -> str:
    return f"{FEEDBACK_ID_MARKER} {feedback_id}"


def has_feedback_marker(text: str | None, feedback_id: str) -> bool:
    """True when ``text`` carries the marker for exactly this id (not a longer one)."""
    if not text:
        return False
    pattern = re.escape(feedback_marker(feedback_id)) + r"(?![\w-])"
    return re.search(pattern, text) is not None


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    family: str = "unknown"
    model: str = "unknown"
    os_version: str = "unknown"
    locale: str = "unknown"


@dataclass(frozen=True, slots=True)
class CrashLog:
    url: str
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class CrashData:
    trace: str
    crash_type: str = "crash"
    exception_type: str | None = None
    exception_message: str | None = None
    logs: tuple[CrashLog, ...] = ()


@dataclass(frozen=True, slots=True)
class ScreenshotImage:
    url: str
    file_name: str
    file_size: int = 0
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ScreenshotData:
    text: str | None = None
    images: tuple[ScreenshotImage, ...] = ()
    annotation_count: int = 0


@dataclass(frozen=True, slots=True)
class FeedbackRecord:
    id: str
    type: FeedbackType
    submitted_at: datetime
    app_version: str
    build_number: str
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    bundle_id: str = ""
    crash_data: CrashData | None = None
    screenshot_data: ScreenshotData | None = None
    tester_email: str | None = None

    @property
    def is_crash(self) -> bool:
        return self.type == "crash"

    @property
    def feedback_text(self) -> str:
        if self.screenshot_data and self.screenshot_data.text:
            return self.screenshot_data.text
        return ""


@dataclass(slots=True)
class IssueRef:
    id: str
    url: str
    title: str
    number: int | None = None
    identifier: str | None = None

    @property
    def display_name(self) -> str:
        if self.number is not None:
            return f"#{self.number}"
        return self.identifier or self.id


@dataclass(slots=True)
class IssueCreationResult:
    issue: IssueRef
    was_existing: bool
    action: str
    message: str


@dataclass(frozen=True, slots=True)
class IssueContent:
    """Title, body and labels to file instead of the standard rendering."""

    title: str
    body: str
    labels: tuple[str, ...] = ()


@dataclass(slots=True)
class GitHubDuplicateMatch:
    is_duplicate: bool
    confidence: float
    reasons: list[str] = field(default_factory=list)
    existing_issue: IssueRef | None = None


@dataclass(slots=True)
class DuplicateDetectionResult:
    is_duplicate: bool
    platform: DetectionSource
    confidence: float
    reasons: list[str] = field(default_factory=list)
    existing_issue: IssueRef | None = None
    search_duration_ms: float = 0.0

    @classmethod
    def not_found(cls, platform: DetectionSource, reasons: list[str]) -> DuplicateDetectionResult:
        return cls(is_duplicate=False, platform=platform, confidence=0.0, reasons=list(reasons))


@dataclass(slots=True)
class ProcessingWindow:
    start_time: datetime
    end_time: datetime
    duration_hours: float
    buffer_minutes: float
    rationale: str


@dataclass(slots=True)
class CreateIssueOptions:
    platform: Platform = "both"
    skip_duplicate_detection: bool = False
    action_run_id: str | None = None
    dry_run: bool = False
    additional_labels: tuple[str, ...] = ()


@dataclass(slots=True)
class CreateIssueResult:
    duplicate_detection: DuplicateDetectionResult
    processed_by: list[str] = field(default_factory=list)
    github: IssueCreationResult | None = None
    linear: IssueCreationResult | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duplicate_handled: bool = False
    dry_run: bool = False
    enhanced: bool = False
    total_duration_ms: float = 0.0

    @property
    def outcome(self) -> str:
        if self.duplicate_handled:
            return "duplicate"
        if self.dry_run:
            return "dry_run"
        if self.processed_by and self.errors:
            return "partial"
        if self.processed_by:
            return "created"
        return "failed"

    @property
    def issue_urls(self) -> list[str]:
        urls = [result.issue.url for result in (self.github, self.linear) if result is not None]
        return [url for url in urls if url]
