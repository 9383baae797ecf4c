from __future__ import annotations

from dataclasses import dataclass
import logging

from cascademerge.cascade import CascadeResolver
from cascademerge.models import CascadeEvent, PullRequest
from cascademerge.observability import log_event, logging_repo_context
from cascademerge.orchestrator import CascadeOrchestrator, ForwardPullRequest
from cascademerge.platform import CascadePlatform
from cascademerge.versioning import release_line


LOGGER = logging.getLogger("cascademerge.dispatcher")


@dataclass(frozen=True)
class MergeOutcome:
    target: str | None
    forward: ForwardPullRequest | None


class EventDispatcher:
    """Routes one parsed event to the merge path or the re-check path."""

    def __init__(
        self,
        *,
        platform: CascadePlatform,
        resolver: CascadeResolver,
        orchestrator: CascadeOrchestrator,
        release_branch_prefix: str,
    ) -> None:
        self._platform = platform
        self._resolver = resolver
        self._orchestrator = orchestrator
        self._release_branch_prefix = release_branch_prefix

    def handle_event(self, event: CascadeEvent) -> MergeOutcome | tuple[PullRequest, ...]:
        with logging_repo_context(event.repository.full_name):
            if event.trigger == "pull_request_merged":
                return self.on_merge(event)
            return self.try_merge(event)

    def on_merge(self, event: CascadeEvent) -> MergeOutcome:
        repo = event.repository
        destination = event.destination_branch or ""
        source = event.source_branch or ""
        if not destination.startswith(self._release_branch_prefix):
            log_event(
                LOGGER,
                "cascade_merge_ignored",
                repo_full_name=repo.full_name,
                source=source,
                destination=destination,
                reason="destination_not_release_branch",
            )
            return MergeOutcome(target=None, forward=None)

        log_event(
            LOGGER,
            "cascade_merge_received",
            repo_full_name=repo.full_name,
            source=source,
            destination=destination,
            merge_commit=event.merge_commit,
        )
        siblings = self._platform.list_branches(repo, release_line(destination))
        target = self._resolver.resolve(repo, destination, siblings)
        forward = self._orchestrator.ensure_forward_pull_request(
            repo,
            source=destination,
            destination=target,
            reviewers=event.reviewers,
            merge_commit=event.merge_commit,
        )
        return MergeOutcome(target=target, forward=forward)

    def try_merge(self, event: CascadeEvent) -> tuple[PullRequest, ...]:
        log_event(LOGGER, "cascade_recheck_started", repo_full_name=event.repository.full_name)
        merged = self._orchestrator.approve_and_merge_cascade_pull_requests(event.repository)
        log_event(
            LOGGER,
            "cascade_recheck_finished",
            repo_full_name=event.repository.full_name,
            merged_count=len(merged),
        )
        return merged
