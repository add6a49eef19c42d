"""Processing window selection.

A run fetches feedback submitted inside ``[start_time, end_time)``. The width
of that range follows how often the action runs: each cadence maps to a
window a little longer than the cadence itself plus an overlap buffer, so
consecutive runs never leave a gap. Re-fetched items are filtered out later by
the state store.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from testflight_pm.config import RunContext, WindowSettings
from testflight_pm.models import ProcessingWindow
from testflight_pm.store import StateStore
from testflight_pm.utils.datetime_utils import isoformat_utc, parse_datetime_utc, utcnow

logger = logging.getLogger(__name__)

FREQUENCIES = (
    "manual",
    "continuous",
    "hourly",
    "every-2-hours",
    "every-4-hours",
    "every-6-hours",
    "every-12-hours",
    "daily",
    "weekly",
)

# frequency -> (duration hours, buffer minutes, rationale)
_FREQUENCY_WINDOWS: dict[str, tuple[float, float, str]] = {
    "continuous": (0.25, 5, "Continuous monitoring with minimal overlap"),
    "hourly": (1.5, 15, "Hourly schedule with 30-minute overlap"),
    "every-2-hours": (2.5, 15, "2-hour schedule with 30-minute overlap"),
    "every-4-hours": (4.5, 30, "4-hour schedule with 30-minute overlap"),
    "every-6-hours": (6.5, 30, "6-hour schedule with 30-minute overlap"),
    "every-12-hours": (12.5, 30, "12-hour schedule with 30-minute overlap"),
    "daily": (25, 60, "Daily schedule with 1-hour overlap"),
    "weekly": (168 + 24, 120, "Weekly schedule with 1-day overlap"),
}

# upper bound of hours since the previous run -> (frequency, confidence)
_HISTORY_BANDS: tuple[tuple[float, str, float], ...] = (
    (1.5, "hourly", 0.8),
    (3, "every-2-hours", 0.7),
    (6, "every-4-hours", 0.6),
    (12, "every-6-hours", 0.5),
    (36, "daily", 0.7),
)

_RELATIVE_TIME = re.compile(r"^(\d+)([mhd])$", re.IGNORECASE)
_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400}


class InvalidTimeError(ValueError):
    """Raised when an explicit ``since`` value cannot be understood."""


@dataclass(slots=True)
class ScheduleDetection:
    frequency: str
    confidence: float
    reasons: list[str] = field(default_factory=list)
    # hours since the previous recorded run, when known
    observed_gap_hours: float = 0.0


def parse_relative_time(value: str, now: datetime) -> datetime:
    """Turn ``"30m"``, ``"24h"`` or ``"7d"`` into an absolute time before ``now``."""
    match = _RELATIVE_TIME.match(value.strip())
    if not match:
        raise InvalidTimeError(f"Invalid relative time format: {value!r}")
    amount = int(match.group(1))
    unit = match.group(2).lower()
    try:
        return now - timedelta(seconds=amount * _UNIT_SECONDS[unit])
    except OverflowError:
        # Further back than datetime can represent; callers clamp to max lookback.
        return datetime.min.replace(tzinfo=timezone.utc)


def parse_since(value: str, now: datetime) -> datetime:
    text = value.strip()
    if _RELATIVE_TIME.match(text):
        return parse_relative_time(text, now)
    parsed = parse_datetime_utc(text)
    if parsed is None:
        raise InvalidTimeError(f"Not an ISO-8601 timestamp or relative duration: {value!r}")
    return parsed


class ProcessingWindowCalculator:
    def __init__(
        self,
        settings: WindowSettings,
        *,
        state_store: StateStore | None = None,
        run_context: RunContext | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.run_context = run_context or RunContext()
        self._clock = clock

    def calculate_optimal_window(
        self,
        explicit_since: str | None = None,
        explicit_frequency: str | None = None,
    ) -> ProcessingWindow:
        now = self._clock()
        observed_gap_hours = 0.0

        if explicit_since:
            return self._window_from_explicit_time(explicit_since, now)

        if explicit_frequency and explicit_frequency in FREQUENCIES:
            frequency = explicit_frequency
        else:
            if explicit_frequency:
                logger.warning("Unknown schedule frequency %r; detecting instead", explicit_frequency)
            if self.settings.enable_adaptive_windows:
                detection = self.detect_schedule_frequency()
                logger.info(
                    "Detected %s schedule (confidence %.2f): %s",
                    detection.frequency,
                    detection.confidence,
                    "; ".join(detection.reasons),
                )
                frequency = detection.frequency
                observed_gap_hours = detection.observed_gap_hours
            else:
                frequency = "manual"

        return self._window_for_frequency(frequency, now, observed_gap_hours)

    def detect_schedule_frequency(self) -> ScheduleDetection:
        try:
            from_context = self._detect_from_run_context()
            if from_context is not None:
                return from_context

            from_history = self._detect_from_history()
            if from_history is not None:
                return from_history

            if self.run_context.in_github_actions and self.run_context.event_name == "workflow_dispatch":
                return ScheduleDetection(
                    frequency="manual",
                    confidence=0.9,
                    reasons=["Triggered via workflow_dispatch", "No processing history available"],
                )

            return ScheduleDetection(
                frequency="daily",
                confidence=0.5,
                reasons=["No clear pattern detected", "Using conservative daily default"],
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to detect schedule frequency: %s", exc)
            return ScheduleDetection(
                frequency="daily",
                confidence=0.3,
                reasons=[f"Detection failed: {exc}", "Using safe daily default"],
            )

    def get_diagnostics(self) -> dict[str, Any]:
        detection = self.detect_schedule_frequency()
        window = self._window_for_frequency(detection.frequency, self._clock(), detection.observed_gap_hours)
        stats = self.state_store.get_stats().to_dict() if self.state_store else None
        return {
            "settings": asdict(self.settings),
            "detected_schedule": asdict(detection),
            "recommended_window": {
                "start_time": isoformat_utc(window.start_time),
                "end_time": isoformat_utc(window.end_time),
                "duration_hours": window.duration_hours,
                "buffer_minutes": window.buffer_minutes,
                "rationale": window.rationale,
            },
            "state": stats,
        }

    def _window_for_frequency(
        self,
        frequency: str,
        now: datetime,
        observed_gap_hours: float = 0.0,
    ) -> ProcessingWindow:
        if frequency in _FREQUENCY_WINDOWS:
            duration_hours, buffer_minutes, rationale = _FREQUENCY_WINDOWS[frequency]
        else:
            duration_hours = self.settings.default_lookback_hours
            buffer_minutes = self.settings.buffer_minutes
            rationale = "Manual trigger using default lookback period"

        if not self.settings.overlap_prevention:
            buffer_minutes = 0

        if observed_gap_hours > duration_hours:
            duration_hours = observed_gap_hours
            rationale += f", widened to the {observed_gap_hours:.1f}h since the last run"

        duration = self._clamp_span(timedelta(hours=duration_hours))
        span = self._clamp_span(duration + timedelta(minutes=buffer_minutes))
        applied_buffer = (span - duration).total_seconds() / 60
        if applied_buffer > 0:
            rationale += f" ({applied_buffer:g}min buffer applied)"

        return ProcessingWindow(
            start_time=now - span,
            end_time=now,
            duration_hours=duration.total_seconds() / 3600,
            buffer_minutes=applied_buffer,
            rationale=rationale,
        )

    def _window_from_explicit_time(self, explicit_since: str, now: datetime) -> ProcessingWindow:
        try:
            start_time = parse_since(explicit_since, now)
            rationale = f"Explicit time provided: {explicit_since}"
        except InvalidTimeError as exc:
            logger.warning("%s. Using the default %sh lookback.", exc, self.settings.default_lookback_hours)
            start_time = now - timedelta(hours=self.settings.default_lookback_hours)
            rationale = f"Invalid explicit time {explicit_since!r}; default lookback used"

        earliest = now - timedelta(hours=self.settings.max_lookback_hours)
        latest = now - timedelta(minutes=self.settings.min_lookback_minutes)
        if start_time < earliest:
            logger.warning("Explicit time too far back. Limiting to %s hours.", self.settings.max_lookback_hours)
            start_time = earliest
        if start_time > latest:
            logger.warning(
                "Explicit time too recent. Setting to %s minutes ago.",
                self.settings.min_lookback_minutes,
            )
            start_time = latest

        return ProcessingWindow(
            start_time=start_time,
            end_time=now,
            duration_hours=(now - start_time).total_seconds() / 3600,
            buffer_minutes=0,
            rationale=rationale,
        )

    def _clamp_span(self, span: timedelta) -> timedelta:
        minimum = timedelta(minutes=self.settings.min_lookback_minutes)
        maximum = timedelta(hours=self.settings.max_lookback_hours)
        return min(max(span, minimum), maximum)

    def _detect_from_run_context(self) -> ScheduleDetection | None:
        context = self.run_context
        if not context.in_github_actions or context.event_name != "schedule":
            return None

        reasons = ["Running in GitHub Actions", "Triggered via scheduled event"]
        name = (context.workflow or "").lower()
        if name:
            reasons.append(f"Workflow: {context.workflow}")
        if "hourly" in name:
            return ScheduleDetection("hourly", 0.8, reasons)
        if "6" in name and "hour" in name:
            return ScheduleDetection("every-6-hours", 0.8, reasons)
        if "daily" in name:
            return ScheduleDetection("daily", 0.8, reasons)
        if "weekly" in name:
            return ScheduleDetection("weekly", 0.8, reasons)
        return None

    def _detect_from_history(self) -> ScheduleDetection | None:
        if self.state_store is None:
            return None

        stats = self.state_store.get_stats()
        if stats.total_processed <= 0 or stats.last_processed_at is None:
            return None

        hours_since = (self._clock() - stats.last_processed_at).total_seconds() / 3600
        reasons = [
            f"Total processed: {stats.total_processed}",
            f"Hours since last run: {hours_since:.1f}",
        ]

        frequency, confidence = "weekly", 0.4
        for upper_bound, band_frequency, band_confidence in _HISTORY_BANDS:
            if hours_since <= upper_bound:
                frequency, confidence = band_frequency, band_confidence
                break
        reasons.append(f"Gap since last run suggests {frequency} schedule")

        if stats.action_run_id:
            reasons.append(f"Automated execution detected (run id {stats.action_run_id})")
            confidence += 0.1
        if stats.total_processed < 10:
            reasons.append("Low processing volume")
            confidence = max(0.3, confidence - 0.1)

        return ScheduleDetection(
            frequency,
            round(min(1.0, max(0.1, confidence)), 2),
            reasons,
            observed_gap_hours=hours_since,
        )
