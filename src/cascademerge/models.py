from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


TriggerKind = Literal["pull_request_merged", "other"]
MergeStrategy = Literal["merge_commit", "squash", "fast_forward"]


@dataclass(frozen=True)
class Repository:
    owner: str
    slug: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.slug}"


@dataclass(frozen=True)
class CascadeEvent:
    trigger: TriggerKind
    repository: Repository
    source_branch: str | None = None
    destination_branch: str | None = None
    reviewers: tuple[str, ...] = ()
    merge_commit: str | None = None


@dataclass(frozen=True)
class PullRequest:
    pr_id: int
    title: str
    source_branch: str
    destination_branch: str
    html_url: str = ""


@dataclass(frozen=True)
class BitbucketIdentity:
    """A credential set the gateway can act as.

    Either ``token`` (OAuth bearer) or ``username`` + ``password`` (app password)
    is populated.
    """

    name: str
    username: str | None = None
    password: str | None = None
    token: str | None = None

    def __repr__(self) -> str:
        return f"BitbucketIdentity(name={self.name!r}, username={self.username!r})"
