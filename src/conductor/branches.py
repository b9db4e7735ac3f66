from __future__ import annotations

import re
from collections.abc import Callable

BRANCH_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")
_SLUG_NON_ALLOWED = re.compile(r"[^a-z0-9-]+")
_SLUG_MULTI_DASH = re.compile(r"-{2,}")


class BranchNameError(ValueError):
    """Raised when a branch name is invalid or no free variant exists."""


def normalize_slug(value: str) -> str:
    slug = value.strip().lower()
    if slug.endswith(".md"):
        slug = slug[:-3]
    slug = _SLUG_NON_ALLOWED.sub("-", slug)
    slug = _SLUG_MULTI_DASH.sub("-", slug).strip("-")
    return slug or "task"


def derive_branch_name(task_name: str, prefix: str = "feature/") -> str:
    return f"{prefix}{normalize_slug(task_name)}"


def validate_branch_name(name: str) -> str:
    if not name or not BRANCH_NAME_PATTERN.match(name):
        raise BranchNameError(f"Invalid branch name: {name!r}")
    return name


def resolve_unique_branch(
    name: str,
    exists: Callable[[str], bool],
    max_suffix: int = 100,
) -> str:
    """Return ``name`` or the first free ``name-N`` for N in 1..max_suffix."""
    validate_branch_name(name)
    if not exists(name):
        return name
    for suffix in range(1, max_suffix + 1):
        candidate = f"{name}-{suffix}"
        if not exists(candidate):
            return candidate
    raise BranchNameError(
        f"No free branch name for {name!r} within {max_suffix} suffixes."
    )
