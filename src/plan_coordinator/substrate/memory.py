"""In-memory issue tracker used by tests and dry runs.

Writes can be made eventually consistent: with ``propagation_delay`` set, a write
issued at time ``t`` only becomes visible to reads at ``t + delay``. Together with
:class:`FakeClock`, whose ``sleep`` fires scheduled callbacks, this lets tests play
out two peers racing for the same task without threads.
"""

from __future__ import annotations

import copy
import heapq
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger

from ..constants import PLAN_LABEL
from ..errors import SubstrateError
from ..git_utils import _git_delete_remote_branch, _git_remote_heads
from ..models import Collaborator, IssueSnapshot, PullRequestInfo, RepoRef
from .base import Substrate


class FakeClock:
    """Deterministic clock; ``sleep`` advances time and runs due callbacks."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._queue: list[tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        heapq.heappush(self._queue, (self._elapsed + max(0.0, delay), next(self._seq), callback))

    def sleep(self, seconds: float) -> None:
        target = self._elapsed + max(0.0, seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, callback = heapq.heappop(self._queue)
            self._elapsed = max(self._elapsed, due)
            callback()
        # Callbacks may sleep themselves and push the clock past ``target``.
        self._elapsed = max(self._elapsed, target)

    advance = sleep


@dataclass
class _IssueRecord:
    number: int
    title: str
    body: str
    assignees: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    state: str = "open"
    comments: list[str] = field(default_factory=list)
    assigned_at: dict[str, datetime] = field(default_factory=dict)


@dataclass
class _RepoRecord:
    issues: dict[int, _IssueRecord] = field(default_factory=dict)
    branches: set[str] = field(default_factory=set)
    pulls: list[PullRequestInfo] = field(default_factory=list)
    collaborators: list[Collaborator] = field(default_factory=list)
    clone_url: Optional[str] = None
    next_number: int = 1


class InMemorySubstrate(Substrate):
    """Dict-backed substrate with injectable latency, lost writes and failures."""

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        *,
        propagation_delay: float = 0.0,
        author: str = "coordinator",
    ) -> None:
        self.clock = clock or FakeClock()
        self.propagation_delay = propagation_delay
        self.author = author
        self._repos: dict[str, _RepoRecord] = {}
        self._pending: list[tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()
        self._failures: dict[str, list[int]] = {}
        self._lost_assignee_writes: list[Optional[str]] = []
        self.calls: list[tuple[str, tuple]] = []
        self.deleted_branches: list[str] = []
        self.reviewer_requests: dict[int, list[str]] = {}

    # Test setup helpers ---------------------------------------------------

    def add_repo(
        self,
        repo: RepoRef,
        *,
        clone_url: Optional[str] = None,
        collaborators: Iterable[Collaborator] = (),
    ) -> None:
        record = self._repo(repo)
        record.clone_url = clone_url
        record.collaborators = list(collaborators)

    def seed_issue(
        self,
        repo: RepoRef,
        title: str,
        body: str,
        *,
        labels: Iterable[str] = (PLAN_LABEL,),
        assignees: Iterable[str] = (),
    ) -> int:
        record = self._repo(repo)
        number = record.next_number
        record.next_number += 1
        issue = _IssueRecord(number=number, title=title, body=body, labels=list(labels))
        for login in assignees:
            issue.assignees.append(login)
            issue.assigned_at[login] = self.clock.now()
        record.issues[number] = issue
        return number

    def add_branch(self, repo: RepoRef, branch: str) -> None:
        self._repo(repo).branches.add(branch)

    def add_pull_request(self, repo: RepoRef, pull_request: PullRequestInfo) -> None:
        self._repo(repo).pulls.append(pull_request)

    def merge_pull_request(self, repo: RepoRef, number: int) -> PullRequestInfo:
        """Mark a pull request merged and closed, the way a reviewer's merge would."""
        for pull_request in self._repo(repo).pulls:
            if pull_request.number == number:
                pull_request.state = "closed"
                pull_request.merged = True
                return copy.deepcopy(pull_request)
        raise KeyError(f"No pull request #{number} in {repo}")

    def fail_next(self, operation: str, count: int = 1, status_code: int = 502) -> None:
        """Make the next ``count`` calls of ``operation`` raise ``SubstrateError``."""
        self._failures.setdefault(operation, []).extend([status_code] * count)

    def lose_next_assignee_writes(self, count: int = 1, login: Optional[str] = None) -> None:
        """Acknowledge the next assignee writes without ever applying them."""
        self._lost_assignee_writes.extend([login] * count)

    def comments(self, repo: RepoRef, issue_number: int) -> list[str]:
        self._settle()
        return list(self._issue(repo, issue_number).comments)

    def raw_issue(self, repo: RepoRef, issue_number: int) -> IssueSnapshot:
        """Return the issue with every pending write applied, regardless of time."""
        self._flush()
        return self._snapshot(self._issue(repo, issue_number))

    # Internals ------------------------------------------------------------

    def _repo(self, repo: RepoRef) -> _RepoRecord:
        return self._repos.setdefault(repo.full_name, _RepoRecord())

    def _issue(self, repo: RepoRef, issue_number: int) -> _IssueRecord:
        issue = self._repo(repo).issues.get(issue_number)
        if issue is None:
            raise SubstrateError(
                f"Issue {repo}#{issue_number} not found",
                operation="get_issue",
                status_code=404,
            )
        return issue

    def _enter(self, operation: str, *args: object) -> None:
        self.calls.append((operation, args))
        queue = self._failures.get(operation)
        if queue:
            status_code = queue.pop(0)
            raise SubstrateError(
                f"Injected failure for {operation}",
                operation=operation,
                status_code=status_code,
            )

    def _write(self, apply: Callable[[], None]) -> None:
        if self.propagation_delay <= 0:
            self._settle()
            apply()
            return
        visible_at = self.clock.time() + self.propagation_delay
        heapq.heappush(self._pending, (visible_at, next(self._seq), apply))

    def _settle(self) -> None:
        now = self.clock.time()
        while self._pending and self._pending[0][0] <= now:
            _, _, apply = heapq.heappop(self._pending)
            apply()

    def _flush(self) -> None:
        while self._pending:
            _, _, apply = heapq.heappop(self._pending)
            apply()

    @staticmethod
    def _snapshot(issue: _IssueRecord) -> IssueSnapshot:
        return IssueSnapshot(
            number=issue.number,
            title=issue.title,
            body=issue.body,
            assignees=list(issue.assignees),
            labels=list(issue.labels),
            state=issue.state,
            url=None,
        )

    # Substrate API --------------------------------------------------------

    def get_issue(self, repo: RepoRef, issue_number: int) -> IssueSnapshot:
        self._enter("get_issue", repo, issue_number)
        self._settle()
        return self._snapshot(self._issue(repo, issue_number))

    def list_plan_issues(self, repo: RepoRef) -> list[IssueSnapshot]:
        self._enter("list_plan_issues", repo)
        self._settle()
        issues = sorted(self._repo(repo).issues.values(), key=lambda i: i.number)
        return [
            self._snapshot(issue)
            for issue in issues
            if issue.state == "open" and PLAN_LABEL in issue.labels
        ]

    def create_issue(self, repo: RepoRef, title: str, body: str, labels: Iterable[str] = ()) -> IssueSnapshot:
        self._enter("create_issue", repo, title)
        number = self.seed_issue(repo, title, body, labels=labels)
        return self._snapshot(self._issue(repo, number))

    def add_assignee(self, repo: RepoRef, issue_number: int, login: str) -> None:
        self._enter("add_assignee", repo, issue_number, login)
        issue = self._issue(repo, issue_number)
        if self._lost_assignee_writes and self._lost_assignee_writes[0] in (None, login):
            self._lost_assignee_writes.pop(0)
            logger.debug("Dropping assignee write for {} on {}#{}", login, repo, issue_number)
            return
        written_at = self.clock.now()

        def apply() -> None:
            if login not in issue.assignees:
                issue.assignees.append(login)
                issue.assigned_at[login] = written_at

        self._write(apply)

    def remove_assignee(self, repo: RepoRef, issue_number: int, login: str) -> None:
        self._enter("remove_assignee", repo, issue_number, login)
        issue = self._issue(repo, issue_number)

        def apply() -> None:
            if login in issue.assignees:
                issue.assignees.remove(login)
            issue.assigned_at.pop(login, None)

        self._write(apply)

    def update_issue_body(self, repo: RepoRef, issue_number: int, body: str) -> None:
        self._enter("update_issue_body", repo, issue_number)
        issue = self._issue(repo, issue_number)

        def apply() -> None:
            issue.body = body

        self._write(apply)

    def set_labels(self, repo: RepoRef, issue_number: int, labels: Iterable[str]) -> None:
        self._enter("set_labels", repo, issue_number)
        issue = self._issue(repo, issue_number)
        issue.labels = list(dict.fromkeys(labels))

    def close_issue(self, repo: RepoRef, issue_number: int) -> None:
        self._enter("close_issue", repo, issue_number)
        self._issue(repo, issue_number).state = "closed"

    def post_comment(self, repo: RepoRef, issue_number: int, body: str) -> None:
        self._enter("post_comment", repo, issue_number)
        self._issue(repo, issue_number).comments.append(body)

    def assignment_times(self, repo: RepoRef, issue_number: int) -> dict[str, datetime]:
        self._enter("assignment_times", repo, issue_number)
        self._settle()
        return dict(self._issue(repo, issue_number).assigned_at)

    def list_remote_branches(self, repo: RepoRef) -> list[str]:
        self._enter("list_remote_branches", repo)
        record = self._repo(repo)
        branches = set(record.branches)
        if record.clone_url and Path(record.clone_url).exists():
            branches.update(_git_remote_heads(record.clone_url))
        return sorted(branches)

    def delete_branch(self, repo: RepoRef, branch: str) -> None:
        self._enter("delete_branch", repo, branch)
        record = self._repo(repo)
        record.branches.discard(branch)
        if record.clone_url and Path(record.clone_url).exists():
            _git_delete_remote_branch(record.clone_url, branch)
        self.deleted_branches.append(branch)

    def create_pull_request(
        self,
        repo: RepoRef,
        *,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> PullRequestInfo:
        self._enter("create_pull_request", repo, head)
        record = self._repo(repo)
        number = record.next_number
        record.next_number += 1
        pull_request = PullRequestInfo(
            number=number,
            url=f"https://github.com/{repo.full_name}/pull/{number}",
            head=head,
            base=base,
            title=title,
            body=body,
            author=self.author,
        )
        record.pulls.append(pull_request)
        return copy.deepcopy(pull_request)

    def list_pull_requests(
        self,
        repo: RepoRef,
        *,
        head: Optional[str] = None,
        state: str = "all",
    ) -> list[PullRequestInfo]:
        self._enter("list_pull_requests", repo, head, state)
        pulls = self._repo(repo).pulls
        return [
            copy.deepcopy(pr)
            for pr in pulls
            if (head is None or pr.head == head) and (state == "all" or pr.state == state)
        ]

    def request_reviewers(self, repo: RepoRef, pr_number: int, reviewers: Iterable[str]) -> None:
        self._enter("request_reviewers", repo, pr_number)
        self.reviewer_requests.setdefault(pr_number, []).extend(reviewers)

    def list_collaborators(self, repo: RepoRef) -> list[Collaborator]:
        self._enter("list_collaborators", repo)
        return list(self._repo(repo).collaborators)

    def clone_url(self, repo: RepoRef) -> str:
        record = self._repo(repo)
        return record.clone_url or f"https://github.com/{repo.full_name}.git"
