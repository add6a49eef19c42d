from __future__ import annotations

import pytest

from fakes import FakeResponse, FakeSession, RecordingSleep, crash_record, linear_issue, screenshot_record
from testflight_pm.config import ConfigError, HttpSettings, LinearSettings
from testflight_pm.models import IssueContent
from testflight_pm.trackers import LinearClient
from testflight_pm.trackers.linear import CRASH_PRIORITY
from testflight_pm.utils.http_utils import ApiError

LABELS = {
    "data": {
        "team": {
            "labels": {
                "nodes": [
                    {"id": "lbl-bug", "name": "Bug"},
                    {"id": "lbl-crash", "name": "crash"},
                    {"id": "lbl-feedback", "name": "Feedback"},
                ]
            }
        }
    }
}


def _client(session: FakeSession, **settings) -> LinearClient:
    return LinearClient(
        LinearSettings(api_token="lin_api_test", team_id="team-1", api_url="https://linear.test/graphql", **settings),
        HttpSettings(retries=0, retry_delay_ms=0),
        session=session,
        sleep=RecordingSleep(),
    )


def _created(identifier: str = "IOS-12") -> FakeResponse:
    return FakeResponse(
        {
            "data": {
                "issueCreate": {
                    "success": True,
                    "issue": {
                        "id": f"uuid-{identifier}",
                        "identifier": identifier,
                        "title": "t",
                        "url": f"https://linear.app/acme/issue/{identifier}",
                    },
                }
            }
        }
    )


def test_missing_settings_are_a_config_error() -> None:
    with pytest.raises(ConfigError, match="team_id"):
        LinearClient(LinearSettings(api_token="x"), HttpSettings())


def test_api_key_is_sent_without_bearer_prefix() -> None:
    session = FakeSession()
    _client(session)

    assert session.headers["Authorization"] == "lin_api_test"


def test_find_duplicate_requires_exact_marker() -> None:
    session = FakeSession(
        [
            FakeResponse(
                {
                    "data": {
                        "issues": {
                            "nodes": [
                                {"id": "a", "identifier": "IOS-1", "title": "x", "url": "u1", "description": "TestFlight ID: fb-10"},
                                {"id": "b", "identifier": "IOS-2", "title": "y", "url": "u2", "description": "TestFlight ID: fb-1"},
                            ]
                        }
                    }
                }
            )
        ]
    )

    issue = _client(session).find_duplicate(crash_record("fb-1"))

    assert issue is not None and issue.identifier == "IOS-2"
    variables = session.calls[0]["json"]["variables"]
    assert variables["filter"]["team"] == {"id": {"eq": "team-1"}}
    assert {"description": {"containsIgnoreCase": "TestFlight ID: fb-1"}} in variables["filter"]["or"]


def test_find_duplicate_returns_none_without_match() -> None:
    session = FakeSession([FakeResponse({"data": {"issues": {"nodes": []}}})])

    assert _client(session).find_duplicate(crash_record()) is None


def test_crash_issue_uses_crash_priority_and_known_labels() -> None:
    session = FakeSession([FakeResponse(LABELS), _created()])

    issue = _client(session).create_issue(crash_record(), ["bug", "crash", "testflight"])

    issue_input = session.calls[1]["json"]["variables"]["input"]
    assert issue_input["priority"] == CRASH_PRIORITY
    assert issue_input["labelIds"] == ["lbl-bug", "lbl-crash"]
    assert issue_input["teamId"] == "team-1"
    assert "TestFlight ID: fb-1" in issue_input["description"]
    assert issue.identifier == "IOS-12"
    assert issue.display_name == "IOS-12"


def test_team_labels_are_fetched_once() -> None:
    session = FakeSession([FakeResponse(LABELS), _created("IOS-1"), _created("IOS-2")])
    client = _client(session)

    client.create_issue(screenshot_record("fb-a"), ["feedback"])
    client.create_issue(screenshot_record("fb-b"), ["feedback"])

    assert len(session.calls) == 3
    second_input = session.calls[2]["json"]["variables"]["input"]
    assert second_input["labelIds"] == ["lbl-feedback"]
    assert second_input["priority"] == 3


def test_assignee_and_project_default_to_settings() -> None:
    session = FakeSession([FakeResponse(LABELS), _created()])

    _client(session, assignee_id="user-1", project_id="proj-1").create_issue(crash_record(), [])

    issue_input = session.calls[1]["json"]["variables"]["input"]
    assert issue_input["assigneeId"] == "user-1"
    assert issue_input["projectId"] == "proj-1"


def test_explicit_assignee_and_project_win_over_settings() -> None:
    session = FakeSession([FakeResponse(LABELS), _created()])

    _client(session, assignee_id="user-1").create_issue(crash_record(), [], assignee_id="user-2", project_id="proj-2")

    issue_input = session.calls[1]["json"]["variables"]["input"]
    assert issue_input["assigneeId"] == "user-2"
    assert issue_input["projectId"] == "proj-2"


def test_no_assignee_or_project_leaves_them_out() -> None:
    session = FakeSession([FakeResponse(LABELS), _created()])

    _client(session).create_issue(crash_record(), [])

    issue_input = session.calls[1]["json"]["variables"]["input"]
    assert "assigneeId" not in issue_input
    assert "projectId" not in issue_input


def test_overrides_replace_title_and_description() -> None:
    session = FakeSession([FakeResponse(LABELS), _created()])
    content = IssueContent(title="Checkout crash", body="## Summary\n\nTestFlight ID: fb-1", labels=("bug",))

    _client(session).create_issue(crash_record(), ["bug"], overrides=content)

    issue_input = session.calls[1]["json"]["variables"]["input"]
    assert issue_input["title"] == "Checkout crash"
    assert issue_input["description"] == "## Summary\n\nTestFlight ID: fb-1"
    assert issue_input["labelIds"] == ["lbl-bug"]


def test_graphql_errors_raise_api_error() -> None:
    session = FakeSession([FakeResponse({"errors": [{"message": "Entity not found: Team"}]})])

    with pytest.raises(ApiError, match="Entity not found"):
        _client(session).find_duplicate(crash_record())


def test_unconfirmed_issue_creation_raises() -> None:
    session = FakeSession([FakeResponse({"data": {"issueCreate": {"success": False}}})])

    with pytest.raises(ApiError):
        _client(session).create_issue(crash_record(), [])


def test_add_comment() -> None:
    session = FakeSession([FakeResponse({"data": {"commentCreate": {"success": True}}})])

    _client(session).add_comment(linear_issue("IOS-7"), "seen again")

    assert session.calls[0]["json"]["variables"] == {"input": {"issueId": "uuid-IOS-7", "body": "seen again"}}
