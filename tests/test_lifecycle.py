"""Tests for lifecycle reports, merge-gated completion and plan completion."""

from __future__ import annotations

import pytest

from plan_coordinator.claims import ClaimProtocol
from plan_coordinator.lifecycle import LifecycleReporter, plan_issue_from_pull_request
from plan_coordinator.models import (
    PlanDefinition,
    PlanStatus,
    PullRequestInfo,
    TaskDefinition,
    TaskStatus,
)
from plan_coordinator.plan_codec import get_claimable_tasks, parse_plan, update_task_in_plan_body
from plan_coordinator.substrate import FakeClock, InMemorySubstrate
from plan_coordinator.utils import task_key

BRANCH = "task-1-wire-the-parser"


@pytest.fixture()
def substrate() -> InMemorySubstrate:
    return InMemorySubstrate(FakeClock())


@pytest.fixture()
def reporter(substrate) -> LifecycleReporter:
    claims = ClaimProtocol(substrate, "alice", sleep=substrate.clock.sleep, clock=substrate.clock.time)
    return LifecycleReporter(claims)


def _seed_in_progress(substrate, repo, body, task_number=1, labels=("plan", "plan:active")) -> int:
    body = update_task_in_plan_body(body, task_number, status=TaskStatus.IN_PROGRESS, assignee="alice")
    return substrate.seed_issue(repo, "[PLAN] Widget parser", body, labels=labels, assignees=["alice"])


def _pull_request(number: int, head: str = BRANCH, *, issue: int | None = None, merged: bool = True):
    body = "Implements the parser."
    if issue is not None:
        body += f"\n\n---\nPart of #{issue}"
    return PullRequestInfo(
        number=number,
        url=f"https://github.com/acme/widgets/pull/{number}",
        head=head,
        body=body,
        state="closed" if merged else "open",
        merged=merged,
    )


def _plan(substrate, repo, number):
    issue = substrate.raw_issue(repo, number)
    return parse_plan(issue.body, issue.title)


class TestPlanIssueFromPullRequest:
    def test_reads_part_of_reference(self):
        assert plan_issue_from_pull_request(_pull_request(9, issue=4)) == 4

    def test_missing_reference(self):
        assert plan_issue_from_pull_request(_pull_request(9)) is None


class TestMergeHandling:
    def test_unmerged_pull_request_never_completes(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body)
        before = substrate.raw_issue(repo, number).body

        outcome = reporter.handle_pull_request_merged(repo, _pull_request(20, issue=number, merged=False))

        assert not outcome.handled
        assert outcome.task_number == 1
        assert substrate.raw_issue(repo, number).body == before

    def test_non_task_branch_is_ignored(self, reporter, repo):
        outcome = reporter.handle_pull_request_merged(repo, _pull_request(20, head="feature/login"))
        assert not outcome.handled
        assert outcome.task_number is None

    def test_merge_completes_task_and_unlocks_dependents(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body)
        substrate.add_branch(repo, BRANCH)
        reporter.claims.guard.acquire(task_key(repo.full_name, number, 1))

        outcome = reporter.handle_pull_request_merged(repo, _pull_request(20, issue=number))

        assert outcome.handled
        assert (outcome.task_number, outcome.issue_number, outcome.plan_complete) == (1, number, False)
        plan = _plan(substrate, repo, number)
        assert (plan.task(1).status, plan.task(1).assignee) == (TaskStatus.COMPLETED, None)
        assert [t.number for t in get_claimable_tasks(plan)] == [2]
        assert substrate.raw_issue(repo, number).assignees == []
        assert substrate.deleted_branches == [BRANCH]
        assert BRANCH not in substrate.list_remote_branches(repo)
        assert any("Merged in #20" in c for c in substrate.comments(repo, number))
        assert len(reporter.claims.guard) == 0

    def test_merge_keeps_assignee_who_still_owns_another_task(self, substrate, reporter, repo, sample_plan_body):
        body = update_task_in_plan_body(sample_plan_body, 3, status=TaskStatus.IN_PROGRESS, assignee="alice")
        number = _seed_in_progress(substrate, repo, body)

        outcome = reporter.handle_pull_request_merged(repo, _pull_request(20, issue=number))

        assert outcome.handled
        plan = _plan(substrate, repo, number)
        assert plan.task(1).status == TaskStatus.COMPLETED
        assert (plan.task(3).status, plan.task(3).assignee) == (TaskStatus.IN_PROGRESS, "alice")
        assert substrate.raw_issue(repo, number).assignees == ["alice"]

    def test_plan_issue_falls_back_to_first_open_plan(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body)

        outcome = reporter.handle_pull_request_merged(repo, _pull_request(20))

        assert outcome.handled
        assert outcome.issue_number == number

    def test_branch_deletion_failure_is_not_fatal(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body)
        substrate.fail_next("delete_branch")

        outcome = reporter.handle_pull_request_merged(repo, _pull_request(20, issue=number))

        assert outcome.handled
        assert _plan(substrate, repo, number).task(1).status == TaskStatus.COMPLETED

    def test_last_merge_completes_and_closes_plan(self, substrate, reporter, repo, sample_plan_body):
        body = update_task_in_plan_body(sample_plan_body, 1, status=TaskStatus.COMPLETED)
        body = update_task_in_plan_body(body, 2, status=TaskStatus.COMPLETED)
        number = _seed_in_progress(substrate, repo, body, task_number=3)

        outcome = reporter.handle_pull_request_merged(
            repo, _pull_request(21, head="task-3-document-the-format", issue=number)
        )

        assert outcome.handled and outcome.plan_complete
        issue = substrate.raw_issue(repo, number)
        assert issue.state == "closed"
        assert issue.labels[:2] == ["plan", "plan:complete"]
        comments = substrate.comments(repo, number)
        assert any("All tasks in this plan are complete" in c for c in comments)
        assert any(c.startswith("**Quality review**") and "- [ ]" in c for c in comments)
        assert _plan(substrate, repo, number).status == PlanStatus.COMPLETE


class TestReports:
    def test_blocked_report_frees_task_and_relabels(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body, labels=("plan", "plan:active", "area:parser"))
        reporter.claims.guard.acquire(task_key(repo.full_name, number, 1))

        assert reporter.report_task_blocked(repo, number, 1, "Gate 2 (tests) failed: 3 tests failing")

        plan = _plan(substrate, repo, number)
        assert (plan.task(1).status, plan.task(1).assignee) == (TaskStatus.BLOCKED, None)
        assert [t.number for t in get_claimable_tasks(plan)] == [1]
        issue = substrate.raw_issue(repo, number)
        assert issue.assignees == []
        assert issue.labels == ["plan", "plan:blocked", "area:parser"]
        last = substrate.comments(repo, number)[-1]
        assert last.startswith("**Task 1 is blocked** (@alice)")
        assert "3 tests failing" in last
        assert len(reporter.claims.guard) == 0

    def test_failed_report_keeps_plan_label(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body)

        reporter.report_task_failed(repo, number, 1, "git clone failed")

        assert _plan(substrate, repo, number).task(1).status == TaskStatus.BLOCKED
        assert substrate.raw_issue(repo, number).labels == ["plan", "plan:active"]
        assert "**Task 1 failed**" in substrate.comments(repo, number)[-1]

    def test_progress_report_is_a_comment_only(self, substrate, reporter, repo, sample_plan_body):
        number = _seed_in_progress(substrate, repo, sample_plan_body)
        before = substrate.raw_issue(repo, number).body

        assert reporter.report_task_progress(repo, number, 1, "Opened PR #5")

        assert substrate.raw_issue(repo, number).body == before
        assert substrate.comments(repo, number)[-1] == "**Task 1 progress** (@alice)\n\nOpened PR #5"


class TestPlanLevel:
    def test_create_plan_opens_labelled_issue(self, substrate, reporter, repo):
        definition = PlanDefinition(
            title="Search",
            goal="Add search",
            context="Users asked",
            tasks=(TaskDefinition(title="Index documents", description="Build the index"),),
        )

        issue = reporter.create_plan(repo, definition)

        assert issue.title == "[PLAN] Search"
        assert issue.labels == ["plan", "plan:active"]
        plan = parse_plan(issue.body, issue.title)
        assert [t.title for t in plan.tasks] == ["Index documents"]
        assert [i.number for i in substrate.list_plan_issues(repo)] == [issue.number]

    def test_update_plan_status_swaps_only_status_label(self, substrate, reporter, repo, sample_plan_body):
        number = substrate.seed_issue(
            repo, "[PLAN] Widget parser", sample_plan_body, labels=("priority:high", "plan", "plan:blocked")
        )

        assert reporter.update_plan_status(repo, number, "active")

        assert substrate.raw_issue(repo, number).labels == ["plan", "plan:active", "priority:high"]
