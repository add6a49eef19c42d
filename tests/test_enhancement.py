from __future__ import annotations

import httpx
import pytest
from openai import APIConnectionError, RateLimitError

from fakes import FakeChatClient, RecordingSleep, crash_record, enhancement_reply, screenshot_record
from testflight_pm.config import CodebaseSettings, LLMSettings
from testflight_pm.enhancement import (
    BudgetExceededError,
    ChatReply,
    CodebaseContextScanner,
    EnhancementError,
    IssueEnhancer,
    estimate_cost,
    extract_patterns,
    parse_enhancement,
)
from testflight_pm.models import CrashData, feedback_marker

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def _rate_limited() -> RateLimitError:
    response = httpx.Response(429, request=httpx.Request("POST", OPENAI_URL))
    return RateLimitError("Rate limit reached", response=response, body=None)


def _enhancer(replies, *, scanner=None, **settings) -> tuple[IssueEnhancer, FakeChatClient, RecordingSleep]:
    client = FakeChatClient(replies)
    sleep = RecordingSleep()
    enhancer = IssueEnhancer(LLMSettings(enabled=True, **settings), client, scanner=scanner, sleep=sleep)
    return enhancer, client, sleep


def test_parse_enhancement_accepts_fenced_json() -> None:
    issue = parse_enhancement(
        '```json\n{"title": "  Crash   on launch ", "summary": "Boom.", '
        '"reproduction_steps": ["Open app", ""], "labels": ["Startup"]}\n```'
    )

    assert issue.title == "Crash on launch"
    assert issue.summary == "Boom."
    assert issue.reproduction_steps == ["Open app"]
    assert issue.labels == ["startup"]


@pytest.mark.parametrize(
    "text",
    ["not json at all", "[1, 2, 3]", '{"summary": "no title"}', '{"title": "   "}'],
)
def test_parse_enhancement_rejects_unusable_replies(text: str) -> None:
    with pytest.raises(EnhancementError):
        parse_enhancement(text)


def test_estimate_cost_uses_model_rates_and_expensive_fallback() -> None:
    assert estimate_cost("gpt-4o-mini", 1000, 1000) == pytest.approx(0.00075)
    assert estimate_cost("some-new-model", 1000, 1000) == pytest.approx(estimate_cost("gpt-4", 1000, 1000))


def test_enhanced_issue_keeps_standard_body_and_marker() -> None:
    enhancer, client, _ = _enhancer([enhancement_reply(labels=["checkout", "feedback", "ui", "payments", "extra"])])
    record = screenshot_record("fb-2")

    content = enhancer.enhance(record, ["testflight", "feedback"])

    assert content.title == "Checkout button unresponsive after 2.4.0 update"
    assert content.body.startswith("## Summary")
    assert "## Steps to Reproduce\n\n1. Add an item to the cart\n2. Tap Checkout" in content.body
    assert feedback_marker("fb-2") in content.body
    assert "| **TestFlight ID** | `fb-2` |" in content.body
    assert content.labels == ("testflight", "feedback", "checkout", "ui", "payments")
    assert "The checkout button does nothing" in client.prompts[0]
    assert "do not repeat: testflight, feedback" in client.prompts[0]


def test_usage_is_accumulated_across_issues() -> None:
    enhancer, _, _ = _enhancer([enhancement_reply(), enhancement_reply()])

    enhancer.enhance(screenshot_record("fb-2"), [])
    enhancer.enhance(screenshot_record("fb-3"), [])

    assert enhancer.usage.requests == 2
    assert enhancer.usage.prompt_tokens == 2000
    assert enhancer.usage.completion_tokens == 400
    assert enhancer.usage.cost_usd == pytest.approx(2 * estimate_cost("gpt-4o-mini", 1000, 200))
    stats = enhancer.get_statistics()
    assert stats["model"] == "gpt-4o-mini"
    assert stats["usage"]["requests"] == 2


def test_cost_cap_stops_further_requests() -> None:
    enhancer, client, _ = _enhancer([enhancement_reply(), enhancement_reply()], max_cost_per_run=0.0002)

    enhancer.enhance(screenshot_record("fb-2"), [])
    with pytest.raises(BudgetExceededError):
        enhancer.enhance(screenshot_record("fb-3"), [])

    assert len(client.prompts) == 1
    assert enhancer.budget_remaining == 0


def test_zero_budget_never_calls_the_llm() -> None:
    enhancer, client, _ = _enhancer([enhancement_reply()], max_cost_per_run=0)

    with pytest.raises(BudgetExceededError):
        enhancer.enhance(screenshot_record(), [])

    assert client.prompts == []


def test_rate_limit_is_retried_with_backoff() -> None:
    enhancer, client, sleep = _enhancer([_rate_limited(), _rate_limited(), enhancement_reply()], max_retries=2)

    content = enhancer.enhance(screenshot_record(), [])

    assert content.title.startswith("Checkout button")
    assert sleep.calls == [1, 2]
    assert len(client.prompts) == 3
    assert enhancer.usage.requests == 3


def test_rate_limit_exhausting_retries_raises() -> None:
    enhancer, _, sleep = _enhancer([_rate_limited(), _rate_limited()], max_retries=1)

    with pytest.raises(EnhancementError, match="Rate limited after 2 attempts"):
        enhancer.enhance(screenshot_record(), [])

    assert sleep.calls == [1]


def test_api_error_is_wrapped_without_retry() -> None:
    error = APIConnectionError(request=httpx.Request("POST", OPENAI_URL))
    enhancer, client, sleep = _enhancer([error, enhancement_reply()])

    with pytest.raises(EnhancementError, match="API error"):
        enhancer.enhance(screenshot_record(), [])

    assert len(client.prompts) == 1
    assert sleep.calls == []


def test_invalid_reply_raises_but_is_still_counted() -> None:
    enhancer, _, _ = _enhancer([ChatReply(text="Sorry, I can't help with that.", prompt_tokens=10)])

    with pytest.raises(EnhancementError):
        enhancer.enhance(screenshot_record(), [])

    assert enhancer.usage.requests == 1


def _write(path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _checkout_crash():
    return crash_record(
        "fb-1",
        crash_data=CrashData(
            trace=(
                "0 CoreFoundation 0x1a2b __exceptionPreprocess\n"
                "1 Shop 0x1c2d -[CheckoutViewController viewDidLoad] (CheckoutViewController.m:42)\n"
                "2 Shop 0x1e2f PaymentManager.submitOrder (PaymentManager.swift:118)"
            ),
            exception_type="NSInvalidArgumentException",
        ),
    )


def test_extract_patterns_from_crash_trace() -> None:
    patterns = extract_patterns(_checkout_crash())

    assert "CheckoutViewController" in patterns
    assert "viewDidLoad" in patterns
    assert "PaymentManager" in patterns
    assert "submitOrder" in patterns
    assert len({pattern.lower() for pattern in patterns}) == len(patterns)


def test_extract_patterns_from_feedback_text() -> None:
    record = screenshot_record(text="The checkout button on ProfileSettingsView is cut off")

    patterns = extract_patterns(record)

    assert "ProfileSettingsView" in patterns
    assert "checkout" in patterns
    assert "button" in patterns
    assert "the" not in patterns


def test_scanner_finds_related_code_and_skips_ignored_dirs(tmp_path) -> None:
    _write(tmp_path / "Shop" / "Checkout" / "CheckoutViewController.m", "@implementation CheckoutViewController\n")
    _write(tmp_path / "Shop" / "Payments" / "PaymentManager.swift", "final class PaymentManager {\n  func submitOrder() {}\n}\n")
    _write(tmp_path / "Pods" / "Vendor" / "PaymentManager.swift", "class PaymentManager {}\n")
    _write(tmp_path / "Tests" / "PaymentManagerTests.swift", "let manager = PaymentManager()\n")
    _write(tmp_path / "README.md", "PaymentManager docs\n")

    scanner = CodebaseContextScanner(CodebaseSettings(root=str(tmp_path)))
    areas = scanner.find_relevant_areas(_checkout_crash())

    paths = {area.path for area in areas}
    assert paths == {"Shop/Checkout/CheckoutViewController.m", "Shop/Payments/PaymentManager.swift"}
    submit = next(area for area in areas if area.pattern == "submitOrder")
    assert submit.line == 2
    assert submit.snippet == "func submitOrder() {}"
    assert all(0 <= area.confidence <= 1 for area in areas)
    assert [area.confidence for area in areas] == sorted((area.confidence for area in areas), reverse=True)


def test_scanner_can_include_tests_and_caps_results(tmp_path) -> None:
    _write(tmp_path / "Tests" / "PaymentManagerTests.swift", "let manager = PaymentManager()\n")
    for index in range(6):
        _write(tmp_path / "Shop" / f"Screen{index}.swift", "PaymentManager().submitOrder()\n")

    scanner = CodebaseContextScanner(CodebaseSettings(root=str(tmp_path), depth="light", include_tests=True))
    areas = scanner.find_relevant_areas(_checkout_crash())

    assert len(areas) == 5
    all_areas = CodebaseContextScanner(CodebaseSettings(root=str(tmp_path), depth="deep", include_tests=True))
    assert "Tests/PaymentManagerTests.swift" in {area.path for area in all_areas.find_relevant_areas(_checkout_crash())}


def test_scanner_without_patterns_or_root_finds_nothing(tmp_path) -> None:
    scanner = CodebaseContextScanner(CodebaseSettings(root=str(tmp_path / "missing")))

    assert scanner.find_relevant_areas(_checkout_crash()) == []
    assert CodebaseContextScanner(CodebaseSettings(root=str(tmp_path))).find_relevant_areas(screenshot_record(text="")) == []


def test_code_context_reaches_prompt_and_body(tmp_path) -> None:
    _write(tmp_path / "Shop" / "PaymentManager.swift", "final class PaymentManager {}\n")
    scanner = CodebaseContextScanner(CodebaseSettings(root=str(tmp_path)))
    enhancer, client, _ = _enhancer([enhancement_reply()], scanner=scanner)

    content = enhancer.enhance(_checkout_crash(), ["bug"])

    assert "Possibly related code:" in client.prompts[0]
    assert "Shop/PaymentManager.swift:1" in client.prompts[0]
    assert "## Related Code" in content.body
    assert "`Shop/PaymentManager.swift:1` (PaymentManager)" in content.body
    assert enhancer.get_statistics()["codebase_analysis"] is True
