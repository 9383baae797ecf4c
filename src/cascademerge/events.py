"""Typed parsing of Bitbucket webhook notifications.

Payloads are validated once, at ingress, so handlers never navigate raw JSON.
Only the fields the cascade reads are modelled; everything else Bitbucket
sends is ignored.
"""

from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, ValidationError

from cascademerge.models import CascadeEvent, Repository, TriggerKind


PULL_REQUEST_MERGED_EVENT_KEY = "pullrequest:fulfilled"


class PayloadError(ValueError):
    pass


class _PayloadModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class BranchRef(_PayloadModel):
    name: str | None = None


class PullRequestEndpoint(_PayloadModel):
    branch: BranchRef | None = None

    def branch_name(self) -> str | None:
        return (self.branch.name or None) if self.branch else None


class Account(_PayloadModel):
    uuid: str | None = None


class MergeCommit(_PayloadModel):
    hash: str | None = None


class PullRequestPayload(_PayloadModel):
    source: PullRequestEndpoint | None = None
    destination: PullRequestEndpoint | None = None
    author: Account | None = None
    reviewers: list[Account] | None = None
    merge_commit: MergeCommit | None = None

    def reviewer_uuids(self) -> tuple[str, ...]:
        """Author first, then reviewers, without duplicates."""
        accounts = [self.author, *(self.reviewers or [])]
        uuids: list[str] = []
        for account in accounts:
            if account is not None and account.uuid and account.uuid not in uuids:
                uuids.append(account.uuid)
        return tuple(uuids)


class Workspace(_PayloadModel):
    slug: str | None = None


class Owner(_PayloadModel):
    username: str | None = None


class RepositoryPayload(_PayloadModel):
    full_name: str | None = None
    name: str | None = None
    slug: str | None = None
    workspace: Workspace | None = None
    owner: Owner | None = None

    def to_repository(self) -> Repository:
        if self.full_name and self.full_name.count("/") == 1:
            owner, slug = self.full_name.split("/")
            if owner and slug:
                return Repository(owner=owner, slug=slug)

        owner = (self.workspace.slug if self.workspace else None) or (
            self.owner.username if self.owner else None
        )
        slug = self.slug or self.name
        if not owner or not slug:
            raise PayloadError("repository must identify its owner and name")
        return Repository(owner=owner, slug=slug)


class WebhookPayload(_PayloadModel):
    repository: RepositoryPayload
    pullrequest: PullRequestPayload | None = None


def classify_trigger(event_key: str | None) -> TriggerKind:
    if event_key is not None and event_key.strip() == PULL_REQUEST_MERGED_EVENT_KEY:
        return "pull_request_merged"
    return "other"


def decode_payload(body: bytes) -> dict[str, object]:
    try:
        decoded = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PayloadError(f"Webhook body is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise PayloadError("Webhook body must be a JSON object")
    return decoded


def parse_cascade_event(event_key: str | None, payload: dict[str, object]) -> CascadeEvent:
    trigger = classify_trigger(event_key)
    try:
        webhook = WebhookPayload.model_validate(payload)
    except ValidationError as exc:
        raise PayloadError(_describe_validation_error(exc)) from exc
    repository = webhook.repository.to_repository()

    pull_request = webhook.pullrequest
    if pull_request is None:
        if trigger == "pull_request_merged":
            raise PayloadError("pullrequest is required for pullrequest:fulfilled events")
        return CascadeEvent(trigger=trigger, repository=repository)

    source = pull_request.source.branch_name() if pull_request.source else None
    destination = pull_request.destination.branch_name() if pull_request.destination else None
    if trigger == "pull_request_merged" and (not source or not destination):
        raise PayloadError(
            "pullrequest.source.branch.name and pullrequest.destination.branch.name are required"
        )

    merge_commit = pull_request.merge_commit
    return CascadeEvent(
        trigger=trigger,
        repository=repository,
        source_branch=source,
        destination_branch=destination,
        reviewers=pull_request.reviewer_uuids(),
        merge_commit=(merge_commit.hash or None) if merge_commit else None,
    )


def _describe_validation_error(exc: ValidationError) -> str:
    # Only the first error is reported.
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"]) or "payload"
    if error["type"] == "missing":
        return f"{location} is required"
    return f"{location}: {error['msg']}"
