from __future__ import annotations

from abc import ABC, abstractmethod

from cascademerge.models import BitbucketIdentity, PullRequest, Repository


class PlatformError(RuntimeError):
    """A hosting-platform call was rejected or could not be made."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AlreadyApprovedError(PlatformError):
    """The acting identity has already approved the pull request."""


class CascadePlatform(ABC):
    """Hosting-platform operations the cascade core depends on."""

    @abstractmethod
    def list_branches(self, repo: Repository, name_filter: str) -> list[str]:
        """List branches whose release line (parent directory) is exactly ``name_filter``."""

    @abstractmethod
    def get_development_branch_name(self, repo: Repository) -> str | None:
        """Return the repository's configured development branch, or None if unset."""

    @abstractmethod
    def find_open_pull_request(
        self, repo: Repository, *, source: str, destination: str
    ) -> PullRequest | None:
        """Find an open pull request for exactly this source -> destination pair."""

    @abstractmethod
    def find_open_pull_requests_by_title_marker(
        self, repo: Repository, marker: str
    ) -> list[PullRequest]:
        """List open pull requests whose title contains ``marker``."""

    @abstractmethod
    def create_pull_request(
        self,
        repo: Repository,
        *,
        source: str,
        destination: str,
        title: str,
        description: str,
        reviewers: tuple[str, ...],
    ) -> PullRequest:
        """Open a pull request as the primary identity."""

    @abstractmethod
    def approve_pull_request(
        self, identity: BitbucketIdentity, repo: Repository, pull_request: PullRequest
    ) -> None:
        """Approve as ``identity``; raise AlreadyApprovedError if it already approved."""

    @abstractmethod
    def merge_pull_request(
        self, identity: BitbucketIdentity, repo: Repository, pull_request: PullRequest
    ) -> None:
        """Merge as ``identity``; raise on rejection."""
