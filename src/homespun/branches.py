"""Branch-name and label conventions.

Branches follow ``{group}/{type}/{branch-id}+{linked-id}``; the linked issue
id is everything after the last ``+``. Issues linked to a pull request carry
the label ``hsp:pr-{number}``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

PR_LABEL_PREFIX = "hsp:pr-"
DEFAULT_GROUP = "issues"

_NON_ALNUM = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUNS = re.compile(r"-+")


def extract_linked_id(branch_name: str | None) -> str | None:
    """Return the id after the last ``+``, or ``None`` when absent or empty."""
    if not branch_name or not branch_name.strip():
        return None
    plus = branch_name.rfind("+")
    if plus < 0 or plus >= len(branch_name) - 1:
        return None
    return branch_name[plus + 1:]


def extract_group(branch_name: str | None) -> str | None:
    if not branch_name:
        return None
    parts = branch_name.split("/")
    return parts[0] if len(parts) >= 2 else None


def extract_type(branch_name: str | None) -> str | None:
    if not branch_name:
        return None
    parts = branch_name.split("/")
    return parts[1] if len(parts) >= 2 else None


def sanitize_for_branch(text: str) -> str:
    if not text or not text.strip():
        return "<title>"
    sanitized = text.lower().replace(" ", "-").replace("_", "-")
    sanitized = _NON_ALNUM.sub("", sanitized)
    sanitized = _HYPHEN_RUNS.sub("-", sanitized)
    return sanitized.strip("-")


def generate_branch_name(
    linked_id: str,
    change_type: str,
    title: str,
    *,
    group: str | None = None,
    branch_id: str | None = None,
) -> str:
    """Build ``{group}/{type}/{branch-id}+{linked-id}``.

    ``branch_id`` defaults to the sanitized title, ``group`` to ``issues``.
    """
    bid = branch_id.strip() if branch_id and branch_id.strip() else sanitize_for_branch(title)
    grp = group.strip() if group and group.strip() else DEFAULT_GROUP
    return f"{grp}/{change_type.lower()}/{bid}+{linked_id}"


def get_pr_label(pr_number: int) -> str:
    return f"{PR_LABEL_PREFIX}{pr_number}"


def parse_pr_number(label: str | None) -> int | None:
    """Parse ``hsp:pr-{n}``. Only a canonical decimal that round-trips is accepted."""
    if not label or not label.startswith(PR_LABEL_PREFIX):
        return None
    number_part = label[len(PR_LABEL_PREFIX):]
    if not number_part.isascii() or not number_part.isdigit():
        return None
    number = int(number_part)
    if str(number) != number_part:
        return None
    return number


def is_pr_label(label: str | None) -> bool:
    return bool(label) and label.startswith(PR_LABEL_PREFIX)


def has_pr_label(labels: Iterable[str] | None) -> bool:
    return any(is_pr_label(label) for label in labels or ())
