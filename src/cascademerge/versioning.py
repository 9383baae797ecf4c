"""Ordering of release branches by the version in their last path segment.

Components are compared as strings, not numbers: ``release/10`` sorts before
``release/9`` because ``"10" < "9"``. Pre-release text such as ``-alpha`` stays
attached to its component and takes part in the same string comparison. A
shorter version is padded with ``"0"`` components, so ``release/1.0`` and
``release/1.0.0`` compare equal.
"""

from __future__ import annotations

from functools import cmp_to_key
from itertools import zip_longest
from typing import Iterable


_IMPLICIT_COMPONENT = "0"


def version_suffix(branch: str) -> str:
    trimmed = branch.rstrip("/")
    if not trimmed:
        return ""
    return trimmed.rsplit("/", 1)[-1]


def version_components(branch: str) -> tuple[str, ...]:
    return tuple(version_suffix(branch).split("."))


def release_line(branch: str) -> str:
    """Directory holding ``branch``; siblings in the same release line share it."""
    trimmed = branch.rstrip("/")
    if "/" not in trimmed:
        return "."
    return trimmed.rsplit("/", 1)[0] or "/"


def compare_branch_versions(left: str, right: str) -> int:
    for left_part, right_part in zip_longest(
        version_components(left),
        version_components(right),
        fillvalue=_IMPLICIT_COMPONENT,
    ):
        if left_part < right_part:
            return -1
        if left_part > right_part:
            return 1
    return 0


branch_version_key = cmp_to_key(compare_branch_versions)


def sort_branches_by_version(branches: Iterable[str]) -> list[str]:
    # sorted() is stable, so equal versions keep their listing order.
    return sorted(branches, key=branch_version_key)
