"""Claim tasks on the shared plan issue without a central lock.

The substrate offers no compare-and-swap, so a claim is a best-effort protocol:

1. check the (possibly stale) local snapshot, then an in-process guard;
2. re-read the issue and abort if anyone else already holds the task;
3. write our assignee entry, then patch our task's Status/Assignee lines;
4. wait for writes to propagate and re-read the assignee list. Several
   contenders are settled by a deterministic tie-break every peer computes the
   same way; the losers remove themselves. An assignee write that never shows
   up is retried a bounded number of times, then reported as a failure.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from loguru import logger

from .config import ConsensusSettings
from .errors import ClaimConflict, CoordinationError, StaleRead, SubstrateError
from .models import ACTIVE_STATUSES, CLAIMABLE_STATUSES, ClaimResult, Plan, RepoRef, TaskStatus
from .plan_codec import UNSET, are_dependencies_met, parse_plan, update_task_in_plan_body
from .substrate import Substrate
from .utils import task_key


class ClaimGuard:
    """Process-local record of tasks this process is claiming or holds.

    Keys are ``owner/repo#issue/task-N``. The guard is never persisted and
    means nothing to other processes.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def acquire(self, key: str) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        self._held.discard(key)

    def __contains__(self, key: str) -> bool:
        return key in self._held

    def __len__(self) -> int:
        return len(self._held)


def _failure(error: CoordinationError | str, *, claimed_by: Optional[str] = None) -> ClaimResult:
    if isinstance(error, CoordinationError):
        return ClaimResult(
            success=False,
            claimed=False,
            claimed_by=claimed_by or getattr(error, "claimed_by", None),
            error=str(error),
            error_type=error.error_type,
        )
    return ClaimResult(success=False, claimed=False, claimed_by=claimed_by, error=error)


class ClaimProtocol:
    """Claim, release and update tasks of a plan issue on behalf of one agent.

    Args:
        substrate: Issue tracker adapter.
        username: Login this agent is assigned as.
        settings: Consensus timings; defaults when omitted.
        guard: Shared in-process guard (one per process).
        sleep: Wait function; tests pass ``FakeClock.sleep``.
        clock: Monotonic time source used for ``verify_seconds``.
    """

    def __init__(
        self,
        substrate: Substrate,
        username: str,
        settings: Optional[ConsensusSettings] = None,
        guard: Optional[ClaimGuard] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not username:
            raise ValueError("A username is required to claim tasks")
        self.substrate = substrate
        self.username = username
        self.settings = settings or ConsensusSettings()
        self.guard = guard if guard is not None else ClaimGuard()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Fresh reads and scoped writes
    # ------------------------------------------------------------------

    def fetch_fresh_plan(self, repo: RepoRef, issue_number: int) -> Optional[Plan]:
        """Read the issue now and parse it; raises ``SubstrateError`` on transport failure."""
        snapshot = self.substrate.get_issue(repo, issue_number)
        plan = parse_plan(snapshot.body, snapshot.title)
        if plan is not None:
            self.forget_completed(repo, issue_number, plan)
        return plan

    def forget_completed(self, repo: RepoRef, issue_number: int, plan: Plan) -> None:
        """Drop guard keys of tasks the plan already shows as completed.

        Merges handled by another process never release our keys otherwise.
        """
        for task in plan.tasks:
            key = task_key(repo.full_name, issue_number, task.number)
            if task.status == TaskStatus.COMPLETED and key in self.guard:
                logger.debug("Task {} is completed; releasing {}", task.number, key)
                self.guard.release(key)

    def fresh_update_task(
        self,
        repo: RepoRef,
        issue_number: int,
        task_number: int,
        *,
        status: Any = UNSET,
        assignee: Any = UNSET,
        expected_assignee: Any = UNSET,
    ) -> bool:
        """Re-read the body and patch one task block.

        ``expected_assignee`` (a login or ``None``) skips the write unless the
        task currently names that assignee. Returns True when the body on the
        substrate reflects the requested values.
        """
        try:
            snapshot = self.substrate.get_issue(repo, issue_number)
        except SubstrateError as exc:
            logger.warning("Fresh read of {}#{} failed: {}", repo, issue_number, exc)
            return False

        if expected_assignee is not UNSET:
            plan = parse_plan(snapshot.body, snapshot.title)
            task = plan.task(task_number) if plan else None
            current = (task.assignee or "").lower() if task else ""
            if current != (expected_assignee or "").lower():
                logger.debug(
                    "Skipping patch of task {}: assignee is '{}', expected '{}'",
                    task_number,
                    current,
                    expected_assignee,
                )
                return False

        patched = update_task_in_plan_body(snapshot.body, task_number, status=status, assignee=assignee)
        if patched == snapshot.body:
            return True
        try:
            self.substrate.update_issue_body(repo, issue_number, patched)
        except SubstrateError as exc:
            logger.warning("Updating task {} in {}#{} failed: {}", task_number, repo, issue_number, exc)
            return False
        return True

    def mark_in_progress(self, repo: RepoRef, issue_number: int, task_number: int) -> bool:
        return self.fresh_update_task(
            repo,
            issue_number,
            task_number,
            status=TaskStatus.IN_PROGRESS,
            assignee=self.username,
        )

    def release_assignee(
        self,
        repo: RepoRef,
        issue_number: int,
        task_number: int,
        login: Optional[str] = None,
    ) -> bool:
        """Remove ``login`` (default: us) from the issue assignees.

        The assignee list is shared by every task of the plan, so the entry is
        kept while the fresh body still records ``login`` on another active
        task, or when the body cannot be read. Returns True when removed.
        """
        login = login or self.username
        try:
            plan = self.fetch_fresh_plan(repo, issue_number)
        except SubstrateError as exc:
            logger.warning("Keeping {} assigned to {}#{}; fresh read failed: {}", login, repo, issue_number, exc)
            return False
        if plan is not None:
            owned = [
                t.number
                for t in plan.tasks
                if t.number != task_number
                and t.status in ACTIVE_STATUSES
                and (t.assignee or "").lower() == login.lower()
            ]
            if owned:
                logger.info("Keeping {} assigned to {}#{}; still owns task(s) {}", login, repo, issue_number, owned)
                return False
        try:
            self.substrate.remove_assignee(repo, issue_number, login)
        except SubstrateError as exc:
            logger.warning("Failed to remove assignee {} from {}#{}: {}", login, repo, issue_number, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim_task(self, repo: RepoRef, issue_number: int, task_number: int, plan: Plan) -> ClaimResult:
        """Try to become the single owner of ``task_number``.

        Never raises for expected failures; the returned :class:`ClaimResult`
        carries ``claimed_by`` when another peer holds the task.
        """
        logger.info("Attempting to claim task {} on {}#{} as {}", task_number, repo, issue_number, self.username)

        task = plan.task(task_number)
        if task is None:
            return _failure(f"Task {task_number} not found in plan")
        if task.status not in CLAIMABLE_STATUSES:
            return _failure(f"Task {task_number} is not claimable (status: {task.status.value})")
        if task.assignee:
            return _failure(
                ClaimConflict(f"Task {task_number} already claimed by {task.assignee}", claimed_by=task.assignee)
            )
        if not are_dependencies_met(task, plan):
            completed = plan.completed_references()
            unmet = [dep for dep in task.dependencies if dep not in completed]
            return _failure(f"Task {task_number} has unmet dependencies: {', '.join(unmet)}")

        key = task_key(repo.full_name, issue_number, task_number)
        if not self.guard.acquire(key):
            logger.info("Blocked duplicate claim attempt for {}", key)
            return _failure(f"Task {task_number} is already being claimed by this process")

        result = self._claim_guarded(repo, issue_number, task_number, task.title)
        if not result.success:
            self.guard.release(key)
        return result

    def _claim_guarded(self, repo: RepoRef, issue_number: int, task_number: int, title: str) -> ClaimResult:
        me = self.username.lower()
        try:
            fresh = self.fetch_fresh_plan(repo, issue_number)
        except SubstrateError as exc:
            return _failure(exc)
        fresh_task = fresh.task(task_number) if fresh else None
        if fresh_task is None:
            return _failure(StaleRead(f"Task {task_number} is no longer in the plan"))
        if fresh_task.assignee and fresh_task.assignee.lower() != me:
            logger.info("Task {} already claimed by {} (fresh read)", task_number, fresh_task.assignee)
            return _failure(
                ClaimConflict(
                    f"Task {task_number} already claimed by {fresh_task.assignee}",
                    claimed_by=fresh_task.assignee,
                )
            )
        if fresh_task.status not in CLAIMABLE_STATUSES and not fresh_task.assignee:
            return _failure(
                StaleRead(f"Task {task_number} is no longer claimable (status: {fresh_task.status.value})")
            )

        try:
            self.substrate.add_assignee(repo, issue_number, self.username)
        except SubstrateError as exc:
            logger.warning("Assignee write for task {} failed: {}", task_number, exc)
            return _failure(exc)

        if not self.fresh_update_task(
            repo, issue_number, task_number, status=TaskStatus.CLAIMED, assignee=self.username
        ):
            logger.warning("Claimed task {} but failed to update the plan body", task_number)

        started = self._clock()
        try:
            contenders = self._settle_contenders(repo, issue_number, task_number)
        except (ClaimConflict, SubstrateError) as exc:
            logger.warning("Claim on task {} not confirmed: {}", task_number, exc)
            self._abandon(repo, issue_number, task_number)
            result = _failure(exc)
            result.verify_seconds = self._clock() - started
            return result
        verify_seconds = self._clock() - started

        winner = self._tie_break(repo, issue_number, contenders)
        logger.info(
            "Consensus for task {}: contenders={} winner={} ({:.1f}s)",
            task_number,
            contenders,
            winner,
            verify_seconds,
        )
        if winner.lower() != me:
            self._yield_to(repo, issue_number, task_number, winner)
            return ClaimResult(
                success=False,
                claimed=False,
                claimed_by=winner,
                error=f"Task {task_number} claimed by {winner} (tie-break)",
                error_type=ClaimConflict.__name__,
                contenders=contenders,
                verify_seconds=verify_seconds,
            )

        self._confirm_body(repo, issue_number, task_number)
        self._announce(repo, issue_number, task_number, title)
        logger.info("Successfully claimed task {} on {}#{}", task_number, repo, issue_number)
        return ClaimResult(
            success=True,
            claimed=True,
            claimed_by=self.username,
            contenders=contenders,
            verify_seconds=verify_seconds,
        )

    def _read_contenders(self, repo: RepoRef, issue_number: int, task_number: int) -> list[str]:
        """Assignees contending for ``task_number``.

        A login recorded on this task always counts. A login recorded only on
        another active task is busy and does not count, except ourselves while
        this task's body entry is still empty.
        """
        snapshot = self.substrate.get_issue(repo, issue_number)
        plan = parse_plan(snapshot.body, snapshot.title)
        holder = ""
        busy: set[str] = set()
        if plan:
            target = plan.task(task_number)
            holder = (target.assignee or "").lower() if target else ""
            busy = {
                t.assignee.lower()
                for t in plan.tasks
                if t.number != task_number and t.assignee and t.status in ACTIVE_STATUSES
            }
        me = self.username.lower()
        contenders = []
        for login in snapshot.assignees:
            key = login.lower()
            if key == holder or key not in busy or (key == me and not holder):
                contenders.append(login)
        return contenders

    def _reread(self, repo: RepoRef, issue_number: int, task_number: int, previous: list[str]) -> list[str]:
        try:
            return self._read_contenders(repo, issue_number, task_number)
        except SubstrateError as exc:
            logger.warning("Verification re-read failed (keeping previous result): {}", exc)
            return previous

    def _settle_contenders(self, repo: RepoRef, issue_number: int, task_number: int) -> list[str]:
        """Run the delayed verification reads until the contender set is usable.

        Raises:
            ClaimConflict: our assignee write never became visible after retries.
            SubstrateError: the first verification read failed.
        """
        settings = self.settings
        self._sleep(settings.delay_seconds)
        contenders = self._read_contenders(repo, issue_number, task_number)
        retries_left = settings.lost_write_retries

        while True:
            if len(contenders) > 1:
                logger.info("Contested claim on task {}: {}", task_number, contenders)
                self._sleep(settings.contest_extension_seconds)
                return self._reread(repo, issue_number, task_number, contenders) or contenders
            if contenders:
                return contenders

            logger.warning("Claim on task {} not visible yet; extending verification", task_number)
            self._sleep(settings.propagation_extension_seconds)
            contenders = self._reread(repo, issue_number, task_number, contenders)
            if contenders:
                continue
            if retries_left <= 0:
                raise ClaimConflict(f"Assignee write for task {task_number} was lost; claim not confirmed")
            retries_left -= 1
            logger.warning("Assignee write for task {} lost; retrying", task_number)
            self.substrate.add_assignee(repo, issue_number, self.username)
            self._sleep(settings.delay_seconds)
            contenders = self._reread(repo, issue_number, task_number, contenders)

    def _tie_break(self, repo: RepoRef, issue_number: int, contenders: list[str]) -> str:
        """Pick the winner every peer agrees on.

        Earliest assignment timestamp when every contender has one and the
        earliest is unique; otherwise the smallest lower-cased login.
        """
        if len(contenders) == 1:
            return contenders[0]
        try:
            times = {login.lower(): at for login, at in self.substrate.assignment_times(repo, issue_number).items()}
        except SubstrateError as exc:
            logger.debug("Assignment times unavailable: {}", exc)
            times = {}
        stamps = [times.get(login.lower()) for login in contenders]
        if all(stamp is not None for stamp in stamps):
            earliest = min(stamps)
            if stamps.count(earliest) == 1:
                return contenders[stamps.index(earliest)]
        return min(contenders, key=lambda login: login.lower())

    def _yield_to(self, repo: RepoRef, issue_number: int, task_number: int, winner: str) -> None:
        logger.info("Yielding task {} to {}", task_number, winner)
        self.release_assignee(repo, issue_number, task_number)
        self.fresh_update_task(
            repo,
            issue_number,
            task_number,
            status=TaskStatus.CLAIMED,
            assignee=winner,
            expected_assignee=self.username,
        )

    def _abandon(self, repo: RepoRef, issue_number: int, task_number: int) -> None:
        self.release_assignee(repo, issue_number, task_number)
        self.fresh_update_task(
            repo,
            issue_number,
            task_number,
            status=TaskStatus.PENDING,
            assignee=None,
            expected_assignee=self.username,
        )

    def _confirm_body(self, repo: RepoRef, issue_number: int, task_number: int) -> None:
        try:
            fresh = self.fetch_fresh_plan(repo, issue_number)
        except SubstrateError as exc:
            logger.warning("Could not re-check plan body for task {}: {}", task_number, exc)
            return
        task = fresh.task(task_number) if fresh else None
        if task is None or (task.assignee or "").lower() != self.username.lower():
            logger.info("Plan body for task {} was clobbered; re-writing claim", task_number)
            self.fresh_update_task(
                repo, issue_number, task_number, status=TaskStatus.CLAIMED, assignee=self.username
            )

    def _announce(self, repo: RepoRef, issue_number: int, task_number: int, title: str) -> None:
        try:
            self.substrate.post_comment(
                repo,
                issue_number,
                f"Claiming **Task {task_number}: {title}**. I will open a pull request when it is done.",
            )
        except SubstrateError as exc:
            logger.warning("Failed to post claim comment for task {}: {}", task_number, exc)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_task(
        self,
        repo: RepoRef,
        issue_number: int,
        task_number: int,
        reason: Optional[str] = None,
    ) -> bool:
        """Give a claim back: remove our assignee entry and reset the task to pending."""
        self.release_assignee(repo, issue_number, task_number)
        updated = self.fresh_update_task(
            repo,
            issue_number,
            task_number,
            status=TaskStatus.PENDING,
            assignee=None,
            expected_assignee=self.username,
        )
        message = f"Releasing **Task {task_number}**."
        if reason:
            message += f"\n\nReason: {reason}"
        try:
            self.substrate.post_comment(repo, issue_number, message)
        except SubstrateError as exc:
            logger.warning("Failed to post release comment for task {}: {}", task_number, exc)
        self.guard.release(task_key(repo.full_name, issue_number, task_number))
        return updated
