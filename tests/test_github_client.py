from __future__ import annotations

import time

import pytest

from fakes import FakeResponse, FakeSession, RecordingSleep, crash_record, github_issue, screenshot_record
from testflight_pm.config import ConfigError, GitHubSettings, HttpSettings
from testflight_pm.models import IssueContent, IssueRef
from testflight_pm.trackers import GitHubClient
from testflight_pm.utils.http_utils import ApiError


def _client(session: FakeSession, sleep: RecordingSleep | None = None) -> GitHubClient:
    return GitHubClient(
        GitHubSettings(token="ghp_test", owner="acme", repo="app", api_url="https://gh.test"),
        HttpSettings(retries=0, retry_delay_ms=0),
        session=session,
        sleep=sleep or RecordingSleep(),
    )


def _item(number: int, body: str, title: str = "Some issue") -> dict:
    return {"id": 1000 + number, "number": number, "title": title, "body": body, "html_url": f"https://github.com/acme/app/issues/{number}"}


def test_missing_settings_are_a_config_error() -> None:
    with pytest.raises(ConfigError, match="token"):
        GitHubClient(GitHubSettings(owner="acme", repo="app"), HttpSettings())


def test_session_carries_auth_and_api_version() -> None:
    session = FakeSession()
    _client(session)

    assert session.headers["Authorization"] == "Bearer ghp_test"
    assert session.headers["X-GitHub-Api-Version"] == "2022-11-28"


def test_exact_marker_match_is_certain() -> None:
    body = "Crash details\n*Automatically created from TestFlight feedback. TestFlight ID: fb-1*"
    session = FakeSession([FakeResponse({"items": [_item(42, body)]})])

    match = _client(session).find_duplicate(crash_record("fb-1"))

    assert match.is_duplicate
    assert match.confidence == 1.0
    assert match.existing_issue is not None and match.existing_issue.number == 42
    query = session.calls[0]["params"]["q"]
    assert query.startswith("repo:acme/app is:issue created:>=")
    assert query.endswith('"TestFlight ID: fb-1"')
    assert session.calls[0]["url"] == "https://gh.test/search/issues"


def test_longer_id_is_not_an_exact_match_but_content_can_be() -> None:
    session = FakeSession(
        [
            FakeResponse({"items": [_item(7, "TestFlight ID: fb-10")]}),
            FakeResponse({"items": [_item(8, "stack trace", title="Crash - EXC_BAD_ACCESS")]}),
        ]
    )

    match = _client(session).find_duplicate(crash_record("fb-1"))

    assert match.is_duplicate
    assert match.confidence == 0.7
    assert match.existing_issue is not None and match.existing_issue.number == 8
    assert session.calls[1]["params"]["q"].endswith('"EXC_BAD_ACCESS"')


def test_feedback_content_search_uses_text_excerpt() -> None:
    session = FakeSession(
        [
            FakeResponse({"items": []}),
            FakeResponse({"items": [_item(3, "unrelated words only")]}),
        ]
    )

    match = _client(session).find_duplicate(screenshot_record(text='The "checkout" button does nothing'))

    assert not match.is_duplicate
    assert match.reasons == ["No similar issues found in GitHub"]
    assert session.calls[1]["params"]["q"].endswith('"The \\"checkout\\" button does nothing"')


def test_create_issue_posts_title_body_and_labels() -> None:
    session = FakeSession([FakeResponse(_item(101, "body"), status_code=201)])

    result = _client(session).create_issue(crash_record("fb-1"), ["bug", "crash"])

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://gh.test/repos/acme/app/issues"
    assert call["json"]["labels"] == ["bug", "crash"]
    assert call["json"]["title"].startswith("💥 Crash Report")
    assert "TestFlight ID: fb-1" in call["json"]["body"]
    assert result.action == "created"
    assert result.message == "Created new issue #101"
    assert result.issue.url == "https://github.com/acme/app/issues/101"


def test_create_issue_uses_override_title_and_body() -> None:
    session = FakeSession([FakeResponse(_item(101, "body"), status_code=201)])
    content = IssueContent(title="Checkout crash on launch", body="## Summary\n\nenhanced")

    _client(session).create_issue(crash_record("fb-1"), ["bug", "ui"], overrides=content)

    payload = session.calls[0]["json"]
    assert payload["title"] == "Checkout crash on launch"
    assert payload["body"] == "## Summary\n\nenhanced"
    assert payload["labels"] == ["bug", "ui"]


def test_add_comment_targets_issue_number() -> None:
    session = FakeSession([FakeResponse({"id": 1}, status_code=201)])

    _client(session).add_comment(github_issue(42), "again")

    assert session.calls[0]["url"] == "https://gh.test/repos/acme/app/issues/42/comments"
    assert session.calls[0]["json"] == {"body": "again"}


def test_add_comment_needs_issue_number() -> None:
    with pytest.raises(ValueError):
        _client(FakeSession()).add_comment(IssueRef(id="1", url="", title="x"), "again")


def test_client_errors_raise_api_error() -> None:
    session = FakeSession([FakeResponse({"message": "Validation Failed"}, status_code=422)])

    with pytest.raises(ApiError) as excinfo:
        _client(session).create_issue(crash_record(), [])

    assert excinfo.value.status == 422
    assert "Validation Failed" in str(excinfo.value)


def test_low_core_rate_limit_waits_for_reset() -> None:
    reset = int(time.time()) + 30
    sleep = RecordingSleep()
    session = FakeSession(
        [
            FakeResponse(
                _item(101, "body"),
                status_code=201,
                headers={"X-RateLimit-Remaining": "50", "X-RateLimit-Reset": str(reset), "X-RateLimit-Resource": "core"},
            ),
            FakeResponse({"id": 1}, status_code=201),
        ]
    )
    client = _client(session, sleep)

    client.create_issue(crash_record(), [])
    client.add_comment(github_issue(101), "more")

    assert len(sleep.calls) == 1
    assert 0 < sleep.calls[0] <= 30


def test_search_rate_limit_has_no_reserve() -> None:
    reset = int(time.time()) + 30
    sleep = RecordingSleep()
    headers = {"X-RateLimit-Remaining": "5", "X-RateLimit-Reset": str(reset), "X-RateLimit-Resource": "search"}
    session = FakeSession(
        [
            FakeResponse({"items": []}, headers=headers),
            FakeResponse({"items": []}, headers=headers),
        ]
    )

    _client(session, sleep).find_duplicate(crash_record())

    assert sleep.calls == []
