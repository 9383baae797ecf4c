from __future__ import annotations

import logging
from typing import Protocol, Sequence

from cascademerge.models import Repository
from cascademerge.observability import log_event
from cascademerge.versioning import compare_branch_versions, sort_branches_by_version


LOGGER = logging.getLogger("cascademerge.cascade")


class DevelopmentBranchSource(Protocol):
    def get_development_branch_name(self, repo: Repository) -> str | None: ...


def next_release_branch(merged_destination: str, siblings: Sequence[str]) -> str | None:
    """Return the lowest sibling strictly newer than ``merged_destination``.

    ``None`` means the merged branch is already the newest release in its line.
    """
    for candidate in sort_branches_by_version(siblings):
        if compare_branch_versions(merged_destination, candidate) < 0:
            return candidate
    return None


class CascadeResolver:
    def __init__(self, platform: DevelopmentBranchSource, *, default_development_branch: str):
        self._platform = platform
        self._default_development_branch = default_development_branch

    def resolve(
        self, repo: Repository, merged_destination: str, siblings: Sequence[str]
    ) -> str:
        target = next_release_branch(merged_destination, siblings)
        if target is not None:
            log_event(
                LOGGER,
                "cascade_target_resolved",
                repo_full_name=repo.full_name,
                merged_destination=merged_destination,
                target=target,
                target_kind="release",
                sibling_count=len(siblings),
            )
            return target

        target = self.development_branch(repo)
        log_event(
            LOGGER,
            "cascade_target_resolved",
            repo_full_name=repo.full_name,
            merged_destination=merged_destination,
            target=target,
            target_kind="development",
            sibling_count=len(siblings),
        )
        return target

    def development_branch(self, repo: Repository) -> str:
        try:
            name = self._platform.get_development_branch_name(repo)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "development_branch_lookup_failed",
                repo_full_name=repo.full_name,
                fallback=self._default_development_branch,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._default_development_branch
        if not name:
            log_event(
                LOGGER,
                "development_branch_not_configured",
                repo_full_name=repo.full_name,
                fallback=self._default_development_branch,
            )
            return self._default_development_branch
        return name
