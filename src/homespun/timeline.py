"""Pull request timeline calculation.

Every work item gets a scalar position ``t`` on a single timeline:

- merged pull requests are ranked by merge time, most recent ``0``, each
  older one a step further into the past (``-1``, ``-2``, ...);
- closed-but-unmerged pull requests slot in next to the merge that
  immediately preceded their close;
- every open pull request sits at ``1`` (the present);
- planned roadmap changes sit at ``depth + 2`` (the future).

All functions here are pure and deterministic.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from homespun.branches import extract_group, extract_type
from homespun.errors import InvalidArgumentError

OPEN_TIME = 1
FUTURE_OFFSET = 2
# Closed pull requests without a close timestamp sort after everything else.
UNKNOWN_CLOSE_TIME = -(2**31) + 1


class PullRequestStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    CHECKS_FAILING = "checks_failing"
    CONFLICT = "conflict"
    READY_FOR_MERGING = "ready_for_merging"
    MERGED = "merged"
    CLOSED = "closed"

    @property
    def is_open(self) -> bool:
        return self not in (PullRequestStatus.MERGED, PullRequestStatus.CLOSED)

    @property
    def is_closed(self) -> bool:
        return not self.is_open


@dataclass(slots=True)
class PullRequestInfo:
    """Timeline view of a pull request owned by the store."""

    number: int
    title: str
    status: PullRequestStatus
    created_at: datetime | None = None
    merged_at: datetime | None = None
    closed_at: datetime | None = None
    branch_name: str | None = None

    @property
    def group(self) -> str | None:
        return extract_group(self.branch_name)

    @property
    def type(self) -> str | None:
        return extract_type(self.branch_name)

    def is_valid(self) -> bool:
        if self.status == PullRequestStatus.MERGED and self.merged_at is None:
            return False
        if self.status.is_open and self.merged_at is not None:
            return False
        return True


def ensure_valid(pr: PullRequestInfo) -> PullRequestInfo:
    """Return *pr* unchanged, or raise if it breaks the merge-timestamp invariant."""
    if not pr.is_valid():
        if pr.status == PullRequestStatus.MERGED:
            raise InvalidArgumentError(f"PR #{pr.number} is merged but has no merge timestamp")
        raise InvalidArgumentError(f"PR #{pr.number} is open but carries a merge timestamp")
    return pr


def _merge_order(merged_prs: Iterable[PullRequestInfo]) -> list[PullRequestInfo]:
    """Merged PRs, most recent merge first; equal timestamps by descending number."""
    with_time = [pr for pr in merged_prs if pr.merged_at is not None]
    return sorted(with_time, key=lambda pr: (pr.merged_at, pr.number), reverse=True)


def calculate_times_for_merged_prs(merged_prs: Iterable[PullRequestInfo]) -> dict[int, int]:
    """Map PR number to its timeline value: ``0`` for the latest merge, then ``-1``, ``-2``..."""
    return {pr.number: -index for index, pr in enumerate(_merge_order(merged_prs))}


def calculate_time_for_open_pr(pr: PullRequestInfo) -> int:
    if not pr.status.is_open:
        raise InvalidArgumentError(f"PR #{pr.number} is not open (status: {pr.status})")
    return OPEN_TIME


def calculate_time_for_closed_pr(
    closed_pr: PullRequestInfo,
    merged_prs: Iterable[PullRequestInfo],
) -> int:
    """Place a closed-but-unmerged PR relative to the merge history.

    The PR lands just behind the most recent merge that happened at or
    before its close time: ``-(index + 1)`` where ``index`` is that merge's
    position in the descending ordering.
    """
    if closed_pr.status != PullRequestStatus.CLOSED:
        raise InvalidArgumentError(f"PR #{closed_pr.number} is not closed (status: {closed_pr.status})")

    if closed_pr.closed_at is None:
        return UNKNOWN_CLOSE_TIME

    ordered = _merge_order(merged_prs)
    for index, merged in enumerate(ordered):
        if closed_pr.closed_at >= merged.merged_at:
            return -(index + 1)

    return -(len(ordered) + 1)


def calculate_time_for_future_change(depth: int) -> int:
    if depth < 0:
        raise InvalidArgumentError(f"Roadmap depth must be non-negative, got {depth}")
    return depth + FUTURE_OFFSET


def calculate_time(
    pr: PullRequestInfo,
    all_merged_prs: Iterable[PullRequestInfo] | None = None,
) -> int | None:
    """Dispatch on status. Returns ``None`` when merge context is needed but absent."""
    if pr.status.is_open:
        return OPEN_TIME

    if all_merged_prs is None:
        return None

    if pr.status == PullRequestStatus.MERGED:
        return calculate_times_for_merged_prs(all_merged_prs).get(pr.number)

    return calculate_time_for_closed_pr(pr, all_merged_prs)


def build_timeline(prs: Iterable[PullRequestInfo]) -> list[tuple[PullRequestInfo, int]]:
    """Compute ``t`` for every PR in one pass and sort by it (ties by number)."""
    items = list(prs)
    merged = [pr for pr in items if pr.status == PullRequestStatus.MERGED]
    merged_times = calculate_times_for_merged_prs(merged)

    result: list[tuple[PullRequestInfo, int]] = []
    for pr in items:
        if pr.status == PullRequestStatus.MERGED:
            t = merged_times.get(pr.number)
        else:
            t = calculate_time(pr, merged)
        if t is not None:
            result.append((pr, t))

    result.sort(key=lambda pair: (pair[1], pair[0].number))
    return result


# ---------------------------------------------------------------------------
# Roadmap (future changes)
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RoadmapChange:
    """A planned change; children build on their parent."""

    id: str
    title: str = ""
    group: str = ""
    type: str = "feature"
    children: list[RoadmapChange] = field(default_factory=list)


def collect_future_changes(
    roots: Iterable[RoadmapChange],
    depth: int = 0,
) -> Iterator[tuple[RoadmapChange, int, int]]:
    """Yield ``(change, t, depth)`` depth-first, parents before children."""
    for change in roots:
        yield change, calculate_time_for_future_change(depth), depth
        if change.children:
            yield from collect_future_changes(change.children, depth + 1)
