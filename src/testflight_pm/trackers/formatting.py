from __future__ import annotations

from typing import Iterable, Sequence

from testflight_pm.config import LabelSettings
from testflight_pm.models import DuplicateDetectionResult, FeedbackRecord, feedback_marker
from testflight_pm.utils.datetime_utils import format_datetime, isoformat_utc

_TITLE_EXCERPT_LENGTH = 40


def _type_icon(record: FeedbackRecord) -> str:
    return "💥" if record.is_crash else "📱"


def _type_label(record: FeedbackRecord) -> str:
    return "Crash Report" if record.is_crash else "User Feedback"


def build_issue_title(record: FeedbackRecord) -> str:
    title = f"{_type_icon(record)} {_type_label(record)}: {record.app_version} ({record.build_number})"

    if record.is_crash and record.crash_data and record.crash_data.exception_type:
        return f"{title} - {record.crash_data.exception_type}"

    text = " ".join(record.feedback_text.split())
    if text:
        excerpt = text[:_TITLE_EXCERPT_LENGTH]
        suffix = "..." if len(text) > _TITLE_EXCERPT_LENGTH else ""
        return f"{title} - {excerpt}{suffix}"
    return title


def build_issue_body(record: FeedbackRecord) -> str:
    """Markdown body shared by GitHub and Linear issues.

    The footer carries the ``TestFlight ID: <id>`` marker that duplicate
    searches on both platforms look for.
    """
    device = record.device_info
    submitted = isoformat_utc(record.submitted_at)
    lines = [
        f"## {_type_icon(record)} {_type_label(record)} from TestFlight",
        "",
        "| Field | Value |",
        "|-------|-------|",
        f"| **TestFlight ID** | `{record.id}` |",
        f"| **App Version** | {record.app_version} (Build {record.build_number}) |",
        f"| **Submitted** | {submitted} |",
        f"| **Device** | {device.model} |",
        f"| **OS Version** | {device.os_version} |",
        f"| **Locale** | {device.locale} |",
        "",
    ]

    crash = record.crash_data
    if record.is_crash and crash is not None:
        lines.extend(["### 🔍 Crash Details", "", f"**Type:** {crash.crash_type}", ""])
        if crash.exception_type:
            lines.extend([f"**Exception:** `{crash.exception_type}`", ""])
        if crash.exception_message:
            lines.extend(["**Message:**", "```", crash.exception_message, "```", ""])
        lines.extend(["### Stack Trace", "```", crash.trace or "(no stack trace provided)", "```", ""])
        if crash.logs:
            lines.append("### Crash Logs")
            for index, log in enumerate(crash.logs, start=1):
                expires = f" (expires: {format_datetime(log.expires_at)})" if log.expires_at else ""
                lines.append(f"- [Crash Log {index}]({log.url}){expires}")
            lines.append("")

    screenshot = record.screenshot_data
    if screenshot is not None:
        lines.extend(["### 📝 User Feedback", ""])
        if screenshot.text:
            quoted = screenshot.text.replace("\n", "\n> ")
            lines.extend(["**Feedback Text:**", f"> {quoted}", ""])
        if screenshot.images:
            lines.extend([f"**Screenshots:** {len(screenshot.images)} attached", ""])
            for image in screenshot.images:
                lines.append(f"- [{image.file_name}]({image.url})")
            lines.append("")
        if screenshot.annotation_count:
            lines.extend([f"**Annotations:** {screenshot.annotation_count} user annotation(s)", ""])

    lines.extend(
        [
            "### 🛠️ Technical Information",
            "",
            "<details>",
            "<summary>Device & Environment Details</summary>",
            "",
            f"- **Device Family:** {device.family}",
            f"- **Device Model:** {device.model}",
            f"- **OS Version:** {device.os_version}",
            f"- **Locale:** {device.locale}",
            f"- **Bundle ID:** {record.bundle_id or 'unknown'}",
            f"- **Submission Time:** {submitted}",
            "",
            "</details>",
            "",
            "---",
            f"*Automatically created from TestFlight feedback. {feedback_marker(record.id)}*",
        ]
    )
    return "\n".join(lines)


def build_labels(
    record: FeedbackRecord,
    settings: LabelSettings,
    additional: Iterable[str] = (),
) -> list[str]:
    type_labels = settings.crash_labels if record.is_crash else settings.feedback_labels
    labels: dict[str, None] = {}
    for label in [*settings.default_labels, *type_labels, *settings.additional_labels, *additional]:
        normalized = label.strip()
        if normalized:
            labels.setdefault(normalized, None)
    return list(labels)


def build_duplicate_comment(record: FeedbackRecord, detection: DuplicateDetectionResult) -> str:
    device = record.device_info
    lines = [
        f"{_type_icon(record)} **Additional TestFlight {record.type} report detected**",
        "",
        f"**{feedback_marker(record.id)}**",
        f"**Submitted:** {isoformat_utc(record.submitted_at)}",
        f"**App Version:** {record.app_version} (Build {record.build_number})",
        f"**Device:** {device.model} ({device.os_version})",
        f"**Detection:** Found by duplicate detection (confidence: {detection.confidence:.2f})",
    ]
    if record.feedback_text:
        quoted = record.feedback_text.replace("\n", "\n> ")
        lines.extend(["", "**User Feedback:**", f"> {quoted}"])
    lines.extend(["", "*This feedback was detected as a duplicate and no new issue was created.*"])
    return "\n".join(lines)


def render_issue_preview(record: FeedbackRecord, labels: Sequence[str], platforms: Sequence[str]) -> str:
    header = [
        f"[dry-run] {', '.join(platforms) or 'no platform'}: {build_issue_title(record)}",
        f"labels: {', '.join(labels) or '(none)'}",
        "",
    ]
    return "\n".join(header) + build_issue_body(record)
