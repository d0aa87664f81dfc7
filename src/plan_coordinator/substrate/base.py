"""Abstract interface to the shared issue tracker.

The substrate is the only mutable state peers share: one issue body per plan plus
its assignee list, with no transactions and no compare-and-swap. Every method is a
suspension point and every failure is raised as :class:`SubstrateError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from ..models import Collaborator, IssueSnapshot, PullRequestInfo, RepoRef


class Substrate(ABC):
    """Issue/PR/branch operations the coordination engine relies on."""

    # Issues ---------------------------------------------------------------

    @abstractmethod
    def get_issue(self, repo: RepoRef, issue_number: int) -> IssueSnapshot:
        """Return a fresh snapshot of the issue (body, assignees, labels, state)."""

    @abstractmethod
    def list_plan_issues(self, repo: RepoRef) -> list[IssueSnapshot]:
        """Return open issues labelled as plans, oldest first."""

    @abstractmethod
    def create_issue(self, repo: RepoRef, title: str, body: str, labels: Iterable[str] = ()) -> IssueSnapshot:
        ...

    @abstractmethod
    def add_assignee(self, repo: RepoRef, issue_number: int, login: str) -> None:
        ...

    @abstractmethod
    def remove_assignee(self, repo: RepoRef, issue_number: int, login: str) -> None:
        ...

    @abstractmethod
    def update_issue_body(self, repo: RepoRef, issue_number: int, body: str) -> None:
        ...

    @abstractmethod
    def set_labels(self, repo: RepoRef, issue_number: int, labels: Iterable[str]) -> None:
        """Replace the issue's label set."""

    @abstractmethod
    def close_issue(self, repo: RepoRef, issue_number: int) -> None:
        ...

    @abstractmethod
    def post_comment(self, repo: RepoRef, issue_number: int, body: str) -> None:
        ...

    @abstractmethod
    def assignment_times(self, repo: RepoRef, issue_number: int) -> dict[str, datetime]:
        """Return the latest assignment timestamp per currently relevant login.

        Used only as a tie-break hint; an empty mapping is always acceptable.
        """

    # Branches and pull requests ------------------------------------------

    @abstractmethod
    def list_remote_branches(self, repo: RepoRef) -> list[str]:
        ...

    @abstractmethod
    def delete_branch(self, repo: RepoRef, branch: str) -> None:
        ...

    @abstractmethod
    def create_pull_request(
        self,
        repo: RepoRef,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequestInfo:
        ...

    @abstractmethod
    def list_pull_requests(
        self,
        repo: RepoRef,
        *,
        head: Optional[str] = None,
        state: str = "all",
    ) -> list[PullRequestInfo]:
        """List pull requests, optionally filtered by head branch name and state."""

    @abstractmethod
    def request_reviewers(self, repo: RepoRef, pr_number: int, reviewers: Iterable[str]) -> None:
        ...

    @abstractmethod
    def list_collaborators(self, repo: RepoRef) -> list[Collaborator]:
        ...

    @abstractmethod
    def clone_url(self, repo: RepoRef) -> str:
        """Return a URL (or local path) ``git clone`` can fetch the repository from."""
