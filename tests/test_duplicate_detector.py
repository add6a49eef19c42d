from __future__ import annotations

import threading
from datetime import datetime, timezone

from fakes import FakeGitHub, FakeLinear, RecordingSleep, crash_record, github_issue, linear_issue
from testflight_pm.config import IdempotencySettings
from testflight_pm.idempotency import DuplicateDetector, SearchTimeoutError
from testflight_pm.models import FeedbackRecord, GitHubDuplicateMatch
from testflight_pm.store import JsonFileStateBackend, StateStore


def _fixed_clock() -> datetime:
    return datetime(2026, 3, 1, tzinfo=timezone.utc)


def _store(tmp_path) -> StateStore:
    return StateStore(JsonFileStateBackend(str(tmp_path / "state.json")), clock=_fixed_clock)


def test_state_hit_short_circuits_platform_searches(tmp_path) -> None:
    store = _store(tmp_path)
    store.mark_as_processed(["fb-1"], run_id="77")
    github = FakeGitHub()
    detector = DuplicateDetector(IdempotencySettings(), state_store=store, github=github)

    result = detector.perform_comprehensive_duplicate_check(crash_record("fb-1"))

    assert result.is_duplicate
    assert result.platform == "state"
    assert result.confidence == 1.0
    assert "Feedback ID fb-1 already processed" in result.reasons
    assert "Run ID: 77" in result.reasons
    assert github.searches == []


def test_check_state_reports_disabled_tracking(tmp_path) -> None:
    detector = DuplicateDetector(IdempotencySettings(enable_state_tracking=False), state_store=_store(tmp_path))

    result = detector.check_state(crash_record())

    assert not result.is_duplicate
    assert result.reasons == ["State tracking disabled"]


def test_linear_hit_beats_weaker_github_match() -> None:
    github = FakeGitHub(
        match=GitHubDuplicateMatch(
            is_duplicate=True,
            confidence=0.7,
            reasons=["Content similarity detected with #42"],
            existing_issue=github_issue(42),
        )
    )
    linear = FakeLinear(existing=linear_issue("IOS-7"))
    detector = DuplicateDetector(IdempotencySettings(), github=github, linear=linear)

    result = detector.perform_comprehensive_duplicate_check(crash_record())

    assert result.platform == "linear"
    assert result.confidence == 1.0
    assert result.existing_issue is not None and result.existing_issue.identifier == "IOS-7"
    assert "Found exact match in Linear: IOS-7" in result.reasons
    assert "Content similarity detected with #42" in result.reasons


def test_equal_confidence_keeps_github_result() -> None:
    github = FakeGitHub(
        match=GitHubDuplicateMatch(is_duplicate=True, confidence=1.0, existing_issue=github_issue(5))
    )
    linear = FakeLinear(existing=linear_issue())
    detector = DuplicateDetector(IdempotencySettings(), github=github, linear=linear)

    result = detector.perform_comprehensive_duplicate_check(crash_record())

    assert result.platform == "github"
    assert result.reasons[0] == "Found matching GitHub issue #5"


def test_no_duplicate_collects_every_reason() -> None:
    detector = DuplicateDetector(IdempotencySettings(), github=FakeGitHub(), linear=FakeLinear())

    result = detector.perform_comprehensive_duplicate_check(crash_record(), include_state=False)

    assert not result.is_duplicate
    assert result.platform == "none"
    assert "No duplicate found in Linear" in result.reasons


def test_disabled_platform_detection_skips_search() -> None:
    github = FakeGitHub()
    settings = IdempotencySettings(enable_github_duplicate_detection=False)
    detector = DuplicateDetector(settings, github=github)

    detector.perform_comprehensive_duplicate_check(crash_record())

    assert github.searches == []


def test_unconfigured_trackers_are_not_searched() -> None:
    linear = FakeLinear(existing=linear_issue("IOS-7"))
    detector = DuplicateDetector(IdempotencySettings(), github=None, linear=linear)

    result = detector.perform_comprehensive_duplicate_check(crash_record("fb-1"), include_state=False)

    assert result.is_duplicate
    assert result.platform == "linear"
    assert linear.searches == ["fb-1"]
    assert DuplicateDetector(IdempotencySettings()).perform_comprehensive_duplicate_check(crash_record()).reasons == []


def test_failed_search_is_retried_with_exponential_backoff() -> None:
    sleep = RecordingSleep()
    github = FakeGitHub(search_error=RuntimeError("502 from search"))
    detector = DuplicateDetector(
        IdempotencySettings(retry_attempts=2, retry_delay_ms=100),
        github=github,
        sleep=sleep,
    )

    result = detector.perform_comprehensive_duplicate_check(crash_record())

    assert len(github.searches) == 3
    assert sleep.calls == [0.1, 0.2]
    assert not result.is_duplicate
    assert result.reasons == ["GitHub search failed after 3 attempt(s): 502 from search"]


def test_search_recovers_on_retry() -> None:
    class FlakyGitHub(FakeGitHub):
        def find_duplicate(self, record: FeedbackRecord) -> GitHubDuplicateMatch:
            self.searches.append(record.id)
            if len(self.searches) == 1:
                raise ConnectionError("reset by peer")
            return GitHubDuplicateMatch(is_duplicate=True, confidence=1.0, existing_issue=github_issue(9))

    sleep = RecordingSleep()
    detector = DuplicateDetector(IdempotencySettings(retry_delay_ms=50), github=FlakyGitHub(), sleep=sleep)

    result = detector.perform_comprehensive_duplicate_check(crash_record())

    assert result.is_duplicate
    assert sleep.calls == [0.05]


def test_slow_search_times_out() -> None:
    release = threading.Event()

    class StuckLinear(FakeLinear):
        def find_duplicate(self, record: FeedbackRecord):
            release.wait(5)
            return linear_issue()

    detector = DuplicateDetector(
        IdempotencySettings(retry_attempts=0, search_timeout_ms=50),
        linear=StuckLinear(),
        sleep=RecordingSleep(),
    )
    try:
        outcome = detector._search_once(detector.linear.find_duplicate, crash_record())
        result = detector.perform_comprehensive_duplicate_check(crash_record())
    finally:
        release.set()

    assert isinstance(outcome.error, SearchTimeoutError)
    assert not result.is_duplicate
    assert "Search timeout after 50ms" in result.reasons[0]


def test_confidence_threshold_is_inclusive() -> None:
    detector = DuplicateDetector(IdempotencySettings(confidence_threshold=0.7))
    github = FakeGitHub(
        match=GitHubDuplicateMatch(is_duplicate=True, confidence=0.7, existing_issue=github_issue())
    )
    result = DuplicateDetector(IdempotencySettings(), github=github).perform_comprehensive_duplicate_check(
        crash_record()
    )

    assert detector.is_actionable(result)
    result.confidence = 0.69
    assert not detector.is_actionable(result)
