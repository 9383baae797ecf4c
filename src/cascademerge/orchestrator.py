from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import threading
from typing import Hashable, Iterator, Literal

from cascademerge.models import BitbucketIdentity, PullRequest, Repository
from cascademerge.observability import log_event
from cascademerge.platform import AlreadyApprovedError, CascadePlatform


LOGGER = logging.getLogger("cascademerge.orchestrator")
DEFAULT_MARKER = "#AutomaticCascade"

CascadeStage = Literal["approve", "merge"]


@dataclass(frozen=True)
class ForwardPullRequest:
    pull_request: PullRequest
    created: bool


class CascadeMergeError(RuntimeError):
    """Approval or merge of a cascade pull request was rejected."""

    def __init__(
        self,
        message: str,
        *,
        pull_request: PullRequest,
        stage: CascadeStage,
        merged: tuple[PullRequest, ...],
    ) -> None:
        super().__init__(message)
        self.pull_request = pull_request
        self.stage = stage
        self.merged = merged


class KeyedLocks:
    """One mutex per key; entries are dropped once no thread holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


def render_cascade_title(marker: str, source: str, destination: str) -> str:
    return f"{marker} {source} -> {destination}"


def render_cascade_description(
    marker: str, source: str, destination: str, merge_commit: str | None
) -> str:
    description = (
        f"{marker} {source} -> {destination}, this branch will automatically be merged on "
        "successful build result+approval"
    )
    if merge_commit:
        description += f"\n\nTriggered by merge commit {merge_commit}."
    return description


class CascadeOrchestrator:
    def __init__(
        self,
        platform: CascadePlatform,
        *,
        primary: BitbucketIdentity,
        approvers: tuple[BitbucketIdentity, ...] = (),
        marker: str = DEFAULT_MARKER,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._platform = platform
        self._primary = primary
        self._approvers = approvers
        self._marker = marker
        self._locks = locks or KeyedLocks()

    @property
    def marker(self) -> str:
        return self._marker

    def approving_identities(self) -> tuple[BitbucketIdentity, ...]:
        identities: list[BitbucketIdentity] = [self._primary]
        for approver in self._approvers:
            if approver not in identities:
                identities.append(approver)
        return tuple(identities)

    def ensure_forward_pull_request(
        self,
        repo: Repository,
        *,
        source: str,
        destination: str,
        reviewers: tuple[str, ...] = (),
        merge_commit: str | None = None,
    ) -> ForwardPullRequest | None:
        if source == destination:
            log_event(
                LOGGER,
                "cascade_pr_skipped",
                repo_full_name=repo.full_name,
                source=source,
                destination=destination,
                reason="source_is_destination",
            )
            return None

        with self._locks.hold((repo.full_name, source, destination)):
            existing = self._platform.find_open_pull_request(
                repo, source=source, destination=destination
            )
            if existing is not None:
                log_event(
                    LOGGER,
                    "cascade_pr_exists",
                    repo_full_name=repo.full_name,
                    pr_id=existing.pr_id,
                    source=source,
                    destination=destination,
                )
                return ForwardPullRequest(pull_request=existing, created=False)

            created = self._platform.create_pull_request(
                repo,
                source=source,
                destination=destination,
                title=render_cascade_title(self._marker, source, destination),
                description=render_cascade_description(
                    self._marker, source, destination, merge_commit
                ),
                reviewers=reviewers,
            )
        log_event(
            LOGGER,
            "cascade_pr_created",
            repo_full_name=repo.full_name,
            pr_id=created.pr_id,
            pr_url=created.html_url,
            source=source,
            destination=destination,
            merge_commit=merge_commit,
            reviewer_count=len(reviewers),
        )
        return ForwardPullRequest(pull_request=created, created=True)

    def approve_and_merge_cascade_pull_requests(self, repo: Repository) -> tuple[PullRequest, ...]:
        pull_requests = self._platform.find_open_pull_requests_by_title_marker(repo, self._marker)
        log_event(
            LOGGER,
            "cascade_prs_fetched",
            repo_full_name=repo.full_name,
            count=len(pull_requests),
        )
        merged: list[PullRequest] = []
        for pull_request in pull_requests:
            self._approve_all(repo, pull_request, merged=tuple(merged))
            try:
                self._platform.merge_pull_request(self._primary, repo, pull_request)
            except Exception as exc:
                raise self._failure(repo, pull_request, "merge", exc, merged=tuple(merged)) from exc
            merged.append(pull_request)
            log_event(
                LOGGER,
                "cascade_pr_merged",
                repo_full_name=repo.full_name,
                pr_id=pull_request.pr_id,
                source=pull_request.source_branch,
                destination=pull_request.destination_branch,
            )
        return tuple(merged)

    def _approve_all(
        self,
        repo: Repository,
        pull_request: PullRequest,
        *,
        merged: tuple[PullRequest, ...],
    ) -> None:
        for identity in self.approving_identities():
            try:
                self._platform.approve_pull_request(identity, repo, pull_request)
            except AlreadyApprovedError:
                log_event(
                    LOGGER,
                    "cascade_pr_already_approved",
                    repo_full_name=repo.full_name,
                    pr_id=pull_request.pr_id,
                    identity=identity.name,
                )
                continue
            except Exception as exc:
                raise self._failure(repo, pull_request, "approve", exc, merged=merged) from exc
            log_event(
                LOGGER,
                "cascade_pr_approved",
                repo_full_name=repo.full_name,
                pr_id=pull_request.pr_id,
                identity=identity.name,
            )

    def _failure(
        self,
        repo: Repository,
        pull_request: PullRequest,
        stage: CascadeStage,
        exc: Exception,
        *,
        merged: tuple[PullRequest, ...],
    ) -> CascadeMergeError:
        log_event(
            LOGGER,
            "cascade_pr_failed",
            repo_full_name=repo.full_name,
            pr_id=pull_request.pr_id,
            stage=stage,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return CascadeMergeError(
            f"Could not {stage} cascade pull request #{pull_request.pr_id} "
            f"in {repo.full_name}: {exc}",
            pull_request=pull_request,
            stage=stage,
            merged=merged,
        )
