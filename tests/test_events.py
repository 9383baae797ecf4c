from __future__ import annotations

import json
import re
from typing import Callable

from pydantic import ValidationError
import pytest

from cascademerge.events import (
    PayloadError,
    classify_trigger,
    decode_payload,
    parse_cascade_event,
)
from cascademerge.models import Repository


def _merged_payload() -> dict[str, object]:
    return {
        "repository": {
            "name": "Widgets",
            "full_name": "acme/widgets",
            "owner": {"username": "acme"},
        },
        "pullrequest": {
            "id": 12,
            "source": {"branch": {"name": "feature/fix"}},
            "destination": {"branch": {"name": "release/1.0"}},
            "author": {"uuid": "{author}"},
            "reviewers": [{"uuid": "{reviewer}"}, {"uuid": "{author}"}, {"display_name": "bot"}],
            "merge_commit": {"hash": "abc123"},
        },
    }


def test_classify_trigger() -> None:
    assert classify_trigger("pullrequest:fulfilled") == "pull_request_merged"
    assert classify_trigger(" pullrequest:fulfilled ") == "pull_request_merged"
    assert classify_trigger("repo:commit_status_updated") == "other"
    assert classify_trigger("something:unknown") == "other"
    assert classify_trigger(None) == "other"


def test_parse_merged_event() -> None:
    event = parse_cascade_event("pullrequest:fulfilled", _merged_payload())

    assert event.trigger == "pull_request_merged"
    assert event.repository == Repository(owner="acme", slug="widgets")
    assert event.source_branch == "feature/fix"
    assert event.destination_branch == "release/1.0"
    assert event.reviewers == ("{author}", "{reviewer}")
    assert event.merge_commit == "abc123"


def test_parse_event_without_merge_commit() -> None:
    payload = _merged_payload()
    pull_request = payload["pullrequest"]
    assert isinstance(pull_request, dict)
    pull_request["merge_commit"] = None

    assert parse_cascade_event("pullrequest:fulfilled", payload).merge_commit is None


def test_parse_status_event_without_pull_request() -> None:
    payload = {
        "repository": {"full_name": "acme/widgets"},
        "commit_status": {"state": "SUCCESSFUL"},
    }

    event = parse_cascade_event("repo:commit_status_updated", payload)

    assert event.trigger == "other"
    assert event.repository.full_name == "acme/widgets"
    assert event.source_branch is None
    assert event.reviewers == ()


def test_parse_repository_falls_back_to_workspace_and_name() -> None:
    payload = {"repository": {"name": "widgets", "workspace": {"slug": "acme"}}}
    assert parse_cascade_event(None, payload).repository == Repository("acme", "widgets")

    payload = {"repository": {"name": "widgets", "owner": {"username": "acme"}}}
    assert parse_cascade_event(None, payload).repository == Repository("acme", "widgets")


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"repository": "acme/widgets"},
        {"repository": {"name": "widgets"}},
        {"repository": {"full_name": "acme"}},
    ],
)
def test_parse_rejects_unidentifiable_repository(payload: dict[str, object]) -> None:
    with pytest.raises(PayloadError, match="repository"):
        parse_cascade_event(None, payload)


def test_parse_merged_event_requires_pull_request_branches() -> None:
    with pytest.raises(PayloadError, match="pullrequest is required"):
        parse_cascade_event("pullrequest:fulfilled", {"repository": {"full_name": "a/b"}})

    payload = _merged_payload()
    pull_request = payload["pullrequest"]
    assert isinstance(pull_request, dict)
    pull_request["destination"] = {"branch": {}}
    with pytest.raises(PayloadError, match="destination.branch.name"):
        parse_cascade_event("pullrequest:fulfilled", payload)


def test_decode_payload() -> None:
    assert decode_payload(json.dumps({"a": 1}).encode("utf-8")) == {"a": 1}
    with pytest.raises(PayloadError, match="not valid JSON"):
        decode_payload(b"{not json")
    with pytest.raises(PayloadError, match="not valid JSON"):
        decode_payload(b"\xff\xfe")
    with pytest.raises(PayloadError, match="JSON object"):
        decode_payload(b"[1, 2]")


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (
            lambda pr: pr.update(destination={"branch": {"name": 7}}),
            "pullrequest.destination.branch.name: Input should be a valid string",
        ),
        (lambda pr: pr.update(reviewers=["junk"]), "pullrequest.reviewers.0"),
        (lambda pr: pr.update(author="someone"), "pullrequest.author"),
    ],
)
def test_parse_maps_validation_errors_to_payload_error(
    mutate: Callable[[dict[str, object]], None], message: str
) -> None:
    payload = _merged_payload()
    pull_request = payload["pullrequest"]
    assert isinstance(pull_request, dict)
    mutate(pull_request)

    with pytest.raises(PayloadError, match=re.escape(message)) as excinfo:
        parse_cascade_event("pullrequest:fulfilled", payload)
    assert isinstance(excinfo.value.__cause__, ValidationError)


def test_parse_missing_repository_names_the_field() -> None:
    with pytest.raises(PayloadError, match="^repository is required$"):
        parse_cascade_event("pullrequest:fulfilled", {"pullrequest": {}})


def test_parse_strips_whitespace_and_ignores_blank_values() -> None:
    payload = _merged_payload()
    pull_request = payload["pullrequest"]
    assert isinstance(pull_request, dict)
    pull_request["source"] = {"branch": {"name": "  feature/fix  "}}
    pull_request["author"] = {"uuid": "   "}
    pull_request["merge_commit"] = {"hash": ""}

    event = parse_cascade_event("pullrequest:fulfilled", payload)

    assert event.source_branch == "feature/fix"
    assert event.reviewers == ("{reviewer}", "{author}")
    assert event.merge_commit is None
