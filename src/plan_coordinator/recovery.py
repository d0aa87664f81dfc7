"""Recover tasks whose owner went away.

Two situations are handled:

* **Stuck tasks**: a task stays ``claimed``/``in_progress`` under the same
  assignee for longer than ``stuck_task_timeout_seconds`` and no open pull
  request exists for it. The task is reset to ``pending`` for retry.
* **Orphaned branches**: a ``blocked``, unassigned task whose feature branch
  reached the remote but never got a pull request (the agent died between
  Gate 4 and opening the PR). The branch is re-verified and published.

Retry counts survive status transitions so a task that keeps failing is left
for a human after ``max_task_retries`` attempts.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from .claims import ClaimProtocol
from .config import RecoverySettings
from .errors import SubstrateError
from .git_utils import _git_checkout_remote_branch, candidate_branch_names, task_branch_prefix
from .logging_utils import format_gate_failure
from .models import ACTIVE_STATUSES, Plan, RecoveryOutcome, RepoRef, Task, TaskStatus
from .utils import task_key


@dataclass
class _TaskTracking:
    assignee: Optional[str] = None
    first_seen: Optional[float] = None
    retry_count: int = 0
    abandon_notified: bool = False


class StuckTaskTracker:
    """Watch active tasks across cycles and reset the ones that stopped moving.

    Args:
        claims: Claim protocol used for fresh body patches.
        settings: Timeout and retry limits.
        clock: Monotonic time source; tests pass ``FakeClock.time``.
    """

    def __init__(
        self,
        claims: ClaimProtocol,
        settings: Optional[RecoverySettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.claims = claims
        self.substrate = claims.substrate
        self.settings = settings or RecoverySettings()
        self._clock = clock
        self._tracked: dict[str, _TaskTracking] = {}

    def _entry(self, key: str) -> _TaskTracking:
        entry = self._tracked.get(key)
        if entry is None:
            entry = _TaskTracking()
            self._tracked[key] = entry
        return entry

    def retry_count(self, repo: RepoRef, issue_number: int, task_number: int) -> int:
        entry = self._tracked.get(task_key(repo.full_name, issue_number, task_number))
        return entry.retry_count if entry else 0

    def record_retry(self, repo: RepoRef, issue_number: int, task_number: int) -> int:
        entry = self._entry(task_key(repo.full_name, issue_number, task_number))
        entry.retry_count += 1
        return entry.retry_count

    def retries_exhausted(self, repo: RepoRef, issue_number: int, task_number: int) -> bool:
        return self.retry_count(repo, issue_number, task_number) >= self.settings.max_task_retries

    def notify_abandoned(self, repo: RepoRef, issue_number: int, task: Task) -> bool:
        """Post the manual-intervention notice once per task; True when posted now."""
        entry = self._entry(task_key(repo.full_name, issue_number, task.number))
        if entry.abandon_notified:
            return False
        try:
            self.substrate.post_comment(
                repo,
                issue_number,
                f"**Task {task.number}: {task.title}** has failed {entry.retry_count} times and "
                "will not be retried automatically. Manual intervention may be needed.",
            )
        except SubstrateError as exc:
            logger.warning("Failed to post abandon notice for task {}: {}", task.number, exc)
            return False
        entry.abandon_notified = True
        return True

    def observe(self, repo: RepoRef, issue_number: int, plan: Plan) -> list[Task]:
        """Update tracking from ``plan`` and return the tasks past the stuck timeout."""
        now = self._clock()
        stuck: list[Task] = []
        for task in plan.tasks:
            entry = self._entry(task_key(repo.full_name, issue_number, task.number))
            if task.status not in ACTIVE_STATUSES or not task.assignee:
                entry.first_seen = None
                entry.assignee = None
                continue
            if entry.first_seen is None or (entry.assignee or "").lower() != task.assignee.lower():
                entry.first_seen = now
                entry.assignee = task.assignee
                continue
            if now - entry.first_seen >= self.settings.stuck_task_timeout_seconds:
                stuck.append(task)
        return stuck

    def _has_open_pull_request(self, repo: RepoRef, task: Task) -> bool:
        prefix = task_branch_prefix(task.number)
        pull_requests = self.substrate.list_pull_requests(repo, state="open")
        return any(pr.head.startswith(prefix) or pr.head == f"task/{task.number}" for pr in pull_requests)

    def recover_stuck_tasks(self, repo: RepoRef, issue_number: int, plan: Plan) -> list[int]:
        """Reset stuck tasks of ``plan`` to ``pending``; returns the reset task numbers."""
        reset: list[int] = []
        for task in self.observe(repo, issue_number, plan):
            entry = self._entry(task_key(repo.full_name, issue_number, task.number))
            try:
                has_pr = self._has_open_pull_request(repo, task)
            except SubstrateError as exc:
                logger.warning("Could not list pull requests for stuck task {}: {}", task.number, exc)
                continue
            if has_pr:
                logger.debug("Task {} has an open pull request; waiting for review", task.number)
                entry.first_seen = self._clock()
                continue

            minutes = int(self.settings.stuck_task_timeout_seconds // 60)
            logger.warning(
                "Task {} stuck under {} for over {} minutes; resetting to pending",
                task.number,
                task.assignee,
                minutes,
            )
            if not self.claims.fresh_update_task(
                repo,
                issue_number,
                task.number,
                status=TaskStatus.PENDING,
                assignee=None,
                expected_assignee=task.assignee,
            ):
                continue
            if task.assignee:
                self.claims.release_assignee(repo, issue_number, task.number, task.assignee)
            try:
                self.substrate.post_comment(
                    repo,
                    issue_number,
                    f"**Task {task.number} timed out** (assigned to @{task.assignee} for over "
                    f"{minutes} minutes with no pull request). Reset to `pending` for retry.",
                )
            except SubstrateError as exc:
                logger.warning("Failed to post timeout comment for task {}: {}", task.number, exc)
            entry.retry_count += 1
            entry.first_seen = None
            entry.assignee = None
            reset.append(task.number)
        return reset


class OrphanRecovery:
    """Publish task branches that were pushed but never got a pull request.

    Uses the executor's workspace, gate and pull request helpers so a recovered
    task passes through the same gates as a freshly executed one.
    """

    def __init__(self, executor, tracker: StuckTaskTracker) -> None:
        self.executor = executor
        self.tracker = tracker
        self.claims: ClaimProtocol = executor.claims
        self.lifecycle = executor.lifecycle
        self.substrate = executor.substrate

    def find_orphan_branch(self, repo: RepoRef, task: Task) -> Optional[str]:
        """Return the remote branch holding ``task``'s work when no PR was ever opened for it."""
        branches = self.substrate.list_remote_branches(repo)
        remote = set(branches)
        branch = next((name for name in candidate_branch_names(task.number, task.title) if name in remote), None)
        if branch is None:
            prefix = task_branch_prefix(task.number)
            matches = [name for name in branches if name.startswith(prefix)]
            if len(matches) == 1:
                branch = matches[0]
            elif len(matches) > 1:
                logger.warning("Several branches match task {}: {}; skipping", task.number, ", ".join(matches))
                return None
        if branch is None:
            return None
        if self.substrate.list_pull_requests(repo, head=branch, state="all"):
            return None
        return branch

    def candidates(self, plan: Plan) -> list[Task]:
        return [task for task in plan.tasks if task.status == TaskStatus.BLOCKED and not task.assignee]

    def recover(self, repo: RepoRef, issue_number: int, plan: Plan, task: Task) -> RecoveryOutcome:
        """Claim ``task`` again, re-verify its orphaned branch and open the pull request."""
        if self.tracker.retries_exhausted(repo, issue_number, task.number):
            self.tracker.notify_abandoned(repo, issue_number, task)
            return RecoveryOutcome(recovered=False, task_number=task.number, error="retry limit reached")

        try:
            branch = self.find_orphan_branch(repo, task)
        except SubstrateError as exc:
            return RecoveryOutcome(recovered=False, task_number=task.number, error=str(exc))
        if branch is None:
            return RecoveryOutcome(recovered=False, task_number=task.number)

        logger.info("Found orphaned branch {} for task {}; recovering", branch, task.number)
        claim = self.claims.claim_task(repo, issue_number, task.number, plan)
        if not claim.success:
            return RecoveryOutcome(recovered=False, task_number=task.number, branch=branch, error=claim.error)
        self.claims.mark_in_progress(repo, issue_number, task.number)

        def fail(reason: str) -> RecoveryOutcome:
            self.tracker.record_retry(repo, issue_number, task.number)
            self.lifecycle.report_task_failed(repo, issue_number, task.number, reason)
            return RecoveryOutcome(recovered=False, task_number=task.number, branch=branch, error=reason)

        workspace, error = self.executor.prepare_workspace(repo)
        if workspace is None:
            return fail(error)
        ok, error = _git_checkout_remote_branch(workspace, branch)
        if not ok:
            return fail(f"could not check out orphaned branch '{branch}': {error}")

        run_dir = self.executor.run_dir(repo, issue_number, task.number)
        report = self.executor.gate_pipeline(repo, workspace, branch, run_dir).run()
        if not report.passed:
            failure = report.failure
            if failure is None:
                return fail("gate pipeline did not finish")
            return fail(format_gate_failure(failure.gate.label, failure.reason, failure.detail))

        try:
            pull_request = self.executor.open_pull_request(
                repo, issue_number, plan, task, branch, report, recovered=True
            )
        except SubstrateError as exc:
            return fail(f"Opening a pull request for orphaned branch `{branch}` failed: {exc}")

        reviewers = self.executor.request_reviewers(repo, pull_request)
        self.executor.announce_pull_request(repo, issue_number, task, pull_request, reviewers, report)
        logger.info("Recovered task {} as {}", task.number, pull_request.url)
        return RecoveryOutcome(recovered=True, task_number=task.number, branch=branch, pull_request=pull_request)

    def recover_plan(self, repo: RepoRef, issue_number: int, plan: Plan) -> Optional[RecoveryOutcome]:
        """Recover at most one orphan of ``plan``; None when nothing was attempted."""
        for task in self.candidates(plan):
            outcome = self.recover(repo, issue_number, plan, task)
            if outcome.recovered or outcome.branch is not None:
                return outcome
        return None
