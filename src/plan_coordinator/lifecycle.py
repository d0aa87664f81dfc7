"""Report task outcomes on the plan issue and drive tasks and plans to completion.

Completion is merge-gated: the only path that writes ``completed`` is
:meth:`LifecycleReporter.handle_pull_request_merged`. Passing every gate and
opening a pull request leaves a task ``in_progress``.
"""

from __future__ import annotations

import re
from typing import Optional, Union

from loguru import logger

from .claims import ClaimProtocol
from .constants import PLAN_LABEL, PLAN_MARKER, PLAN_STATUS_LABEL_PREFIX, QUALITY_REVIEW_CHECKLIST
from .errors import SubstrateError
from .git_utils import task_number_from_branch
from .models import (
    IssueSnapshot,
    MergeOutcome,
    Plan,
    PlanDefinition,
    PlanStatus,
    PullRequestInfo,
    RepoRef,
    TaskStatus,
)
from .plan_codec import generate_plan_markdown
from .utils import task_key

_PART_OF_RE = re.compile(r"Part of #(?P<number>\d+)", re.IGNORECASE)


def plan_issue_from_pull_request(pull_request: PullRequestInfo) -> Optional[int]:
    match = _PART_OF_RE.search(pull_request.body or "")
    return int(match.group("number")) if match else None


class LifecycleReporter:
    """Post progress/blocked/failed reports and handle merges for one agent."""

    def __init__(self, claims: ClaimProtocol) -> None:
        self.claims = claims
        self.substrate = claims.substrate
        self.username = claims.username
        self._reported_dependencies: set[tuple[str, int, int, str]] = set()

    def _comment(self, repo: RepoRef, issue_number: int, body: str) -> bool:
        try:
            self.substrate.post_comment(repo, issue_number, body)
        except SubstrateError as exc:
            logger.warning("Failed to comment on {}#{}: {}", repo, issue_number, exc)
            return False
        return True

    def _remove_assignee(self, repo: RepoRef, issue_number: int, task_number: int, login: str) -> None:
        self.claims.release_assignee(repo, issue_number, task_number, login)

    def _release_guard(self, repo: RepoRef, issue_number: int, task_number: int) -> None:
        self.claims.guard.release(task_key(repo.full_name, issue_number, task_number))

    # ------------------------------------------------------------------
    # Task reports
    # ------------------------------------------------------------------

    def report_task_progress(self, repo: RepoRef, issue_number: int, task_number: int, message: str) -> bool:
        return self._comment(repo, issue_number, f"**Task {task_number} progress** (@{self.username})\n\n{message}")

    def _report_stopped(
        self,
        repo: RepoRef,
        issue_number: int,
        task_number: int,
        *,
        heading: str,
        reason: str,
        relabel: bool,
    ) -> bool:
        updated = self.claims.fresh_update_task(
            repo,
            issue_number,
            task_number,
            status=TaskStatus.BLOCKED,
            assignee=None,
        )
        if not updated:
            logger.warning("Failed to mark task {} blocked in the plan body", task_number)
        if relabel:
            self.update_plan_status(repo, issue_number, PlanStatus.BLOCKED)
        self._comment(
            repo,
            issue_number,
            f"**Task {task_number} {heading}** (@{self.username})\n\n{reason}\n\n"
            "The task is marked `blocked` and can be claimed again by any agent.",
        )
        self._remove_assignee(repo, issue_number, task_number, self.username)
        self._release_guard(repo, issue_number, task_number)
        return updated

    def report_task_blocked(self, repo: RepoRef, issue_number: int, task_number: int, reason: str) -> bool:
        logger.info("Reporting task {} blocked: {}", task_number, reason)
        return self._report_stopped(
            repo, issue_number, task_number, heading="is blocked", reason=reason, relabel=True
        )

    def report_task_failed(self, repo: RepoRef, issue_number: int, task_number: int, reason: str) -> bool:
        logger.error("Reporting task {} failed: {}", task_number, reason)
        return self._report_stopped(
            repo, issue_number, task_number, heading="failed", reason=reason, relabel=False
        )

    def report_unresolved_dependencies(self, repo: RepoRef, issue_number: int, plan: Plan) -> int:
        """Explain each dependency that can never be satisfied, once per process.

        Returns the number of comments posted.
        """
        posted = 0
        for record in plan.unresolved_dependencies:
            key = (repo.full_name, issue_number, record.task_number, record.reference.lower())
            if key in self._reported_dependencies:
                continue
            body = (
                f"**Task {record.task_number} cannot start** (@{self.username})\n\n"
                f"Dependency `{record.reference}`: {record.reason}. "
                "Edit the task's **Dependencies:** line to name an existing task."
            )
            if self._comment(repo, issue_number, body):
                self._reported_dependencies.add(key)
                posted += 1
        return posted

    # ------------------------------------------------------------------
    # Merge handling
    # ------------------------------------------------------------------

    def _resolve_plan_issue(self, repo: RepoRef, pull_request: PullRequestInfo) -> Optional[int]:
        number = plan_issue_from_pull_request(pull_request)
        if number is not None:
            return number
        issues = self.substrate.list_plan_issues(repo)
        return issues[0].number if issues else None

    def handle_pull_request_merged(self, repo: RepoRef, pull_request: PullRequestInfo) -> MergeOutcome:
        """Mark the pull request's task completed and finish the plan if it was the last one."""
        task_number = task_number_from_branch(pull_request.head)
        if task_number is None:
            return MergeOutcome(handled=False, error=f"'{pull_request.head}' is not a task branch")
        if not pull_request.merged:
            return MergeOutcome(
                handled=False,
                task_number=task_number,
                error=f"pull request #{pull_request.number} is not merged",
            )

        try:
            issue_number = self._resolve_plan_issue(repo, pull_request)
        except SubstrateError as exc:
            return MergeOutcome(handled=False, task_number=task_number, error=str(exc))
        if issue_number is None:
            return MergeOutcome(handled=False, task_number=task_number, error="no open plan issue found")

        logger.info("PR #{} merged; completing task {} of {}#{}", pull_request.number, task_number, repo, issue_number)
        try:
            self.substrate.delete_branch(repo, pull_request.head)
        except SubstrateError as exc:
            logger.warning("Failed to delete merged branch {}: {}", pull_request.head, exc)

        try:
            plan = self.claims.fetch_fresh_plan(repo, issue_number)
        except SubstrateError as exc:
            return MergeOutcome(handled=False, task_number=task_number, issue_number=issue_number, error=str(exc))
        task = plan.task(task_number) if plan else None
        if task is None:
            return MergeOutcome(
                handled=False,
                task_number=task_number,
                issue_number=issue_number,
                error=f"task {task_number} not found in plan #{issue_number}",
            )
        previous_assignee: Optional[str] = task.assignee

        if not self.claims.fresh_update_task(
            repo, issue_number, task_number, status=TaskStatus.COMPLETED, assignee=None
        ):
            return MergeOutcome(
                handled=False,
                task_number=task_number,
                issue_number=issue_number,
                error="failed to write completed status to the plan body",
            )
        self._remove_assignee(repo, issue_number, task_number, previous_assignee or self.username)
        self._release_guard(repo, issue_number, task_number)
        self._comment(
            repo,
            issue_number,
            f"**Task {task_number}: {task.title}** is complete. Merged in #{pull_request.number}.",
        )

        plan_complete = False
        try:
            fresh = self.claims.fetch_fresh_plan(repo, issue_number)
        except SubstrateError as exc:
            logger.warning("Could not re-read plan #{} after merge: {}", issue_number, exc)
            fresh = None
        if fresh is not None and fresh.status == PlanStatus.COMPLETE:
            self.complete_plan(repo, issue_number)
            plan_complete = True
        return MergeOutcome(
            handled=True,
            task_number=task_number,
            issue_number=issue_number,
            plan_complete=plan_complete,
        )

    # ------------------------------------------------------------------
    # Plan level
    # ------------------------------------------------------------------

    def complete_plan(self, repo: RepoRef, issue_number: int) -> None:
        logger.info("All tasks complete; finalizing plan {}#{}", repo, issue_number)
        self._comment(repo, issue_number, "All tasks in this plan are complete.")
        checklist = "\n".join(f"- [ ] {item}" for item in QUALITY_REVIEW_CHECKLIST)
        self._comment(repo, issue_number, f"**Quality review**\n\n{checklist}")
        self.update_plan_status(repo, issue_number, PlanStatus.COMPLETE)
        try:
            self.substrate.close_issue(repo, issue_number)
        except SubstrateError as exc:
            logger.warning("Failed to close completed plan {}#{}: {}", repo, issue_number, exc)

    def update_plan_status(
        self,
        repo: RepoRef,
        issue_number: int,
        status: Union[PlanStatus, str],
    ) -> bool:
        """Swap the ``plan:<status>`` label, keeping unrelated labels."""
        value = PlanStatus(status).value
        try:
            current = self.substrate.get_issue(repo, issue_number).labels
        except SubstrateError as exc:
            logger.warning("Could not read labels of {}#{}: {}", repo, issue_number, exc)
            current = []
        labels = [label for label in current if label != PLAN_LABEL and not label.startswith(PLAN_STATUS_LABEL_PREFIX)]
        labels = [PLAN_LABEL, f"{PLAN_STATUS_LABEL_PREFIX}{value}", *labels]
        try:
            self.substrate.set_labels(repo, issue_number, labels)
        except SubstrateError as exc:
            logger.warning("Failed to set plan status {} on {}#{}: {}", value, repo, issue_number, exc)
            return False
        return True

    def create_plan(self, repo: RepoRef, definition: PlanDefinition) -> IssueSnapshot:
        """Open a new plan issue; raises ``SubstrateError`` when creation fails."""
        body = generate_plan_markdown(definition)
        issue = self.substrate.create_issue(
            repo,
            f"{PLAN_MARKER} {definition.title}",
            body,
            labels=[PLAN_LABEL, f"{PLAN_STATUS_LABEL_PREFIX}{PlanStatus.ACTIVE.value}"],
        )
        logger.info("Created plan {}#{} with {} task(s)", repo, issue.number, len(definition.tasks))
        return issue
