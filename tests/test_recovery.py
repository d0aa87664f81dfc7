"""Tests for stuck-task resets and orphaned-branch recovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import run_git
from plan_coordinator.claims import ClaimProtocol
from plan_coordinator.config import RecoverySettings
from plan_coordinator.executor import TaskExecutor
from plan_coordinator.lifecycle import LifecycleReporter
from plan_coordinator.models import Collaborator, PullRequestInfo, TaskStatus
from plan_coordinator.peers import PeerRegistry
from plan_coordinator.plan_codec import parse_plan, update_task_in_plan_body
from plan_coordinator.recovery import OrphanRecovery, StuckTaskTracker
from plan_coordinator.substrate import FakeClock, InMemorySubstrate

BRANCH = "task-1-wire-the-parser"


def _claims(substrate: InMemorySubstrate, username: str = "alice") -> ClaimProtocol:
    return ClaimProtocol(substrate, username, sleep=substrate.clock.sleep, clock=substrate.clock.time)


def _plan(substrate, repo, number):
    issue = substrate.raw_issue(repo, number)
    return parse_plan(issue.body, issue.title)


class TestStuckTaskTracker:
    @pytest.fixture()
    def setup(self, repo, sample_plan_body):
        substrate = InMemorySubstrate(FakeClock())
        body = update_task_in_plan_body(sample_plan_body, 1, status=TaskStatus.IN_PROGRESS, assignee="bob")
        number = substrate.seed_issue(repo, "[PLAN] Widget parser", body, assignees=["bob"])
        tracker = StuckTaskTracker(
            _claims(substrate),
            RecoverySettings(stuck_task_timeout_seconds=1800, max_task_retries=3),
            clock=substrate.clock.time,
        )
        return substrate, number, tracker

    def test_task_is_reset_after_timeout(self, repo, setup):
        substrate, number, tracker = setup

        assert tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number)) == []
        substrate.clock.advance(1000)
        assert tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number)) == []
        substrate.clock.advance(900)
        assert tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number)) == [1]

        plan = _plan(substrate, repo, number)
        assert (plan.task(1).status, plan.task(1).assignee) == (TaskStatus.PENDING, None)
        assert substrate.raw_issue(repo, number).assignees == []
        assert "**Task 1 timed out**" in substrate.comments(repo, number)[-1]
        assert tracker.retry_count(repo, number, 1) == 1

    def test_open_pull_request_keeps_task(self, repo, setup):
        substrate, number, tracker = setup
        substrate.add_pull_request(repo, PullRequestInfo(number=50, url="u", head=BRANCH))

        tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number))
        substrate.clock.advance(3600)

        assert tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number)) == []
        assert _plan(substrate, repo, number).task(1).assignee == "bob"

    def test_new_assignee_restarts_the_timer(self, repo, setup, sample_plan_body):
        substrate, number, tracker = setup
        tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number))
        substrate.clock.advance(1700)
        body = update_task_in_plan_body(
            substrate.raw_issue(repo, number).body, 1, status=TaskStatus.CLAIMED, assignee="carol"
        )
        substrate.update_issue_body(repo, number, body)
        tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number))
        substrate.clock.advance(200)

        assert tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number)) == []

    def test_retry_count_survives_status_changes(self, repo, setup):
        substrate, number, tracker = setup
        tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number))
        substrate.clock.advance(1800)
        tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number))

        # Pending now; observing it must not forget the retry.
        tracker.recover_stuck_tasks(repo, number, _plan(substrate, repo, number))

        assert tracker.retry_count(repo, number, 1) == 1
        assert not tracker.retries_exhausted(repo, number, 1)


class TestOrphanRecovery:
    @pytest.fixture()
    def setup(self, repo, sample_plan_body, bare_remote, tmp_path: Path):
        substrate = InMemorySubstrate(FakeClock())
        substrate.add_repo(repo, clone_url=str(bare_remote), collaborators=[Collaborator("carol", can_push=True)])
        body = update_task_in_plan_body(sample_plan_body, 1, status=TaskStatus.BLOCKED, assignee=None)
        number = substrate.seed_issue(repo, "[PLAN] Widget parser", body)

        claims = _claims(substrate)

        def never_run(*args, **kwargs):
            raise AssertionError("recovery must not start the coding agent")

        executor = TaskExecutor(
            claims,
            LifecycleReporter(claims),
            PeerRegistry(tmp_path / "state"),
            workrepos_dir=tmp_path / "workrepos",
            runs_dir=tmp_path / "runs",
            run_agent=never_run,
        )
        tracker = StuckTaskTracker(claims, clock=substrate.clock.time)
        return substrate, number, OrphanRecovery(executor, tracker)

    @staticmethod
    def _push_branch(bare_remote, clone_of, branch: str = BRANCH, *, with_commit: bool = True) -> None:
        work = clone_of(bare_remote, f"dead-agent-{branch.replace('/', '-')}")
        run_git(work, "checkout", "-b", branch)
        if with_commit:
            (work / "parser.py").write_text("def parse(text):\n    return text.split()\n")
            run_git(work, "add", "parser.py")
            run_git(work, "commit", "-m", "task(1): Wire the parser")
        run_git(work, "push", "origin", branch)

    def test_find_orphan_branch_prefers_canonical_name(self, repo, setup, bare_remote, clone_of):
        substrate, number, recovery = setup
        self._push_branch(bare_remote, clone_of)
        task = _plan(substrate, repo, number).task(1)

        assert recovery.find_orphan_branch(repo, task) == BRANCH

    def test_branch_with_pull_request_is_not_orphaned(self, repo, setup, bare_remote, clone_of):
        substrate, number, recovery = setup
        self._push_branch(bare_remote, clone_of)
        substrate.add_pull_request(repo, PullRequestInfo(number=7, url="u", head=BRANCH, state="closed"))

        assert recovery.find_orphan_branch(repo, _plan(substrate, repo, number).task(1)) is None

    def test_ambiguous_prefix_match_is_skipped(self, repo, setup):
        substrate, number, recovery = setup
        substrate.add_branch(repo, "task-1-first-try")
        substrate.add_branch(repo, "task-1-second-try")

        assert recovery.find_orphan_branch(repo, _plan(substrate, repo, number).task(1)) is None

    def test_unique_prefix_match_is_used(self, repo, setup):
        substrate, number, recovery = setup
        substrate.add_branch(repo, "task-1-older-naming")
        substrate.add_branch(repo, "task-10-unrelated")

        assert recovery.find_orphan_branch(repo, _plan(substrate, repo, number).task(1)) == "task-1-older-naming"

    def test_recover_opens_pull_request(self, repo, setup, bare_remote, clone_of):
        substrate, number, recovery = setup
        self._push_branch(bare_remote, clone_of)
        plan = _plan(substrate, repo, number)

        outcome = recovery.recover(repo, number, plan, plan.task(1))

        assert outcome.recovered, outcome.error
        pr = outcome.pull_request
        assert pr.title == "task(1): Wire the parser"
        assert pr.head == BRANCH
        assert "(recovered from orphaned branch)" in pr.body
        assert f"Part of #{number}" in pr.body
        assert substrate.reviewer_requests[pr.number] == ["carol"]
        task = _plan(substrate, repo, number).task(1)
        assert (task.status, task.assignee) == (TaskStatus.IN_PROGRESS, "alice")
        assert "**Task 1 progress**" in substrate.comments(repo, number)[-1]

    def test_recover_plan_does_nothing_without_orphans(self, repo, setup):
        substrate, number, recovery = setup
        assert recovery.recover_plan(repo, number, _plan(substrate, repo, number)) is None
        assert _plan(substrate, repo, number).task(1).status == TaskStatus.BLOCKED

    def test_gate_failure_during_recovery_counts_a_retry(self, repo, setup, bare_remote, clone_of):
        substrate, number, recovery = setup
        self._push_branch(bare_remote, clone_of, with_commit=False)
        plan = _plan(substrate, repo, number)

        outcome = recovery.recover(repo, number, plan, plan.task(1))

        assert not outcome.recovered
        assert "Gate 1" in outcome.error
        assert recovery.tracker.retry_count(repo, number, 1) == 1
        task = _plan(substrate, repo, number).task(1)
        assert (task.status, task.assignee) == (TaskStatus.BLOCKED, None)

    def test_exhausted_retries_ask_for_help_once(self, repo, setup, bare_remote, clone_of):
        substrate, number, recovery = setup
        self._push_branch(bare_remote, clone_of)
        for _ in range(3):
            recovery.tracker.record_retry(repo, number, 1)
        plan = _plan(substrate, repo, number)

        first = recovery.recover(repo, number, plan, plan.task(1))
        second = recovery.recover(repo, number, plan, plan.task(1))

        assert not first.recovered and not second.recovered
        notices = [c for c in substrate.comments(repo, number) if "Manual intervention may be needed" in c]
        assert len(notices) == 1
        assert not substrate.list_pull_requests(repo)
