"""Persistent store contract and issue/pull-request linking.

The store itself lives outside this package; only the narrow contract the
linking service needs is declared here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from homespun.agents.types import utc_now
from homespun.branches import extract_linked_id, get_pr_label

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Project:
    id: str
    name: str
    local_path: str
    default_branch: str = "main"


@dataclass(slots=True)
class PullRequestRecord:
    id: str
    project_id: str
    title: str
    branch_name: str | None = None
    pr_number: int | None = None
    linked_issue_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


class DataStore(Protocol):
    def get_project(self, project_id: str) -> Project | None: ...

    def get_pull_request(self, pull_request_id: str) -> PullRequestRecord | None: ...

    async def update_pull_request(self, pull_request: PullRequestRecord) -> None: ...

    async def remove_pull_request(self, pull_request_id: str) -> None: ...


class IssueTracker(Protocol):
    async def add_label(self, project_path: str, issue_id: str, label: str) -> bool: ...

    async def close_issue(self, project_path: str, issue_id: str, reason: str | None = None) -> bool: ...


class IssueLinker:
    """Links pull requests to issues by branch name and labels the issue."""

    def __init__(self, store: DataStore, tracker: IssueTracker | None = None) -> None:
        self._store = store
        self._tracker = tracker

    async def link_pull_request_to_issue(
        self,
        project_id: str,
        pull_request_id: str,
        issue_id: str,
        pr_number: int,
    ) -> bool:
        project = self._store.get_project(project_id)
        if project is None:
            logger.warning("Cannot link PR to issue: project %s not found", project_id)
            return False
        pull_request = self._store.get_pull_request(pull_request_id)
        if pull_request is None:
            logger.warning("Cannot link PR to issue: pull request %s not found", pull_request_id)
            return False
        if pull_request.linked_issue_id:
            logger.debug("PR %s already linked to issue %s", pull_request_id, pull_request.linked_issue_id)
            return True

        pull_request.linked_issue_id = issue_id
        pull_request.updated_at = utc_now()
        await self._store.update_pull_request(pull_request)
        logger.info("Linked PR %s to issue %s", pull_request_id, issue_id)

        if self._tracker is not None:
            label = get_pr_label(pr_number)
            try:
                added = await self._tracker.add_label(project.local_path, issue_id, label)
            except Exception as exc:
                logger.warning("Failed to add label %s to issue %s: %s", label, issue_id, exc)
                added = False
            if added:
                logger.info("Added label %s to issue %s", label, issue_id)
            else:
                logger.warning("Label %s not added to issue %s, but PR link was stored", label, issue_id)
        return True

    async def try_link_by_branch_name(self, project_id: str, pull_request_id: str) -> str | None:
        """Return the linked issue id, linking from the branch name if needed."""
        pull_request = self._store.get_pull_request(pull_request_id)
        if pull_request is None:
            logger.warning("Cannot link by branch: pull request %s not found", pull_request_id)
            return None
        if pull_request.linked_issue_id:
            return pull_request.linked_issue_id
        if pull_request.pr_number is None:
            logger.debug("Cannot link PR %s by branch: no PR number", pull_request_id)
            return None

        issue_id = extract_linked_id(pull_request.branch_name)
        if not issue_id:
            logger.debug("No issue id in branch name %s", pull_request.branch_name)
            return None

        linked = await self.link_pull_request_to_issue(project_id, pull_request_id, issue_id, pull_request.pr_number)
        return issue_id if linked else None

    async def close_linked_issue(self, project_id: str, pull_request_id: str, reason: str | None = None) -> bool:
        project = self._store.get_project(project_id)
        pull_request = self._store.get_pull_request(pull_request_id)
        if project is None or pull_request is None:
            logger.warning("Cannot close linked issue: project %s or PR %s not found", project_id, pull_request_id)
            return False
        if not pull_request.linked_issue_id or self._tracker is None:
            return False

        closed = await self._tracker.close_issue(project.local_path, pull_request.linked_issue_id, reason)
        if closed:
            logger.info("Closed issue %s linked to PR %s", pull_request.linked_issue_id, pull_request_id)
        else:
            logger.warning("Failed to close issue %s linked to PR %s", pull_request.linked_issue_id, pull_request_id)
        return closed
