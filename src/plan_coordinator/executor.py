"""Execute one claimed task: fresh clone, coding agent, gates, pull request."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .claims import ClaimProtocol
from .config import GateSettings, WorkerSettings
from .constants import BLOCKED_OUTPUT_MARKERS, DEFAULT_MAX_REVIEWERS
from .errors import CommandTimeout, SubstrateError
from .gates import GatePipeline
from .git_utils import _git_clone, _git_commit_all, _git_create_branch, task_branch_name
from .lifecycle import LifecycleReporter
from .logging_utils import format_gate_failure
from .models import (
    ExecutionOutcome,
    Gate,
    GateReport,
    Plan,
    PullRequestInfo,
    RepoRef,
    Task,
    WorkerRunResult,
)
from .peers import PeerRegistry, select_reviewers
from .prompts import build_task_prompt
from .worker import run_coding_agent

AgentRunner = Callable[..., WorkerRunResult]


def pull_request_title(task: Task) -> str:
    return f"task({task.number}): {task.title}"


def pull_request_body(
    plan: Plan,
    task: Task,
    issue_number: int,
    report: GateReport,
    *,
    recovered: bool = False,
) -> str:
    verification = report.verification
    files = verification.files_changed if verification else []
    lines = [
        f"## Task {task.number} from plan #{issue_number}",
        "",
        f"**Plan:** {plan.title}",
        f"**Goal:** {plan.goal}",
        "",
        "### Changes" + (" (recovered from orphaned branch)" if recovered else ""),
        verification.diff_stat if verification else "",
        "",
        f"**Files changed ({len(files)}):**",
        *[f"- `{path}`" for path in files],
        "",
        f"**Tests:** {report.tests.summary() if report.tests else 'None found'}",
        "",
        "---",
        f"Part of #{issue_number}",
    ]
    if recovered:
        lines.extend(
            [
                "",
                "_This branch was pushed earlier but its pull request was never opened._",
            ]
        )
    return "\n".join(lines)


def is_blocked_output(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in BLOCKED_OUTPUT_MARKERS)


class TaskExecutor:
    """Run a claimed task end to end and report the outcome on the plan issue."""

    def __init__(
        self,
        claims: ClaimProtocol,
        lifecycle: LifecycleReporter,
        peers: PeerRegistry,
        *,
        workrepos_dir: Path,
        runs_dir: Path,
        gate_settings: Optional[GateSettings] = None,
        worker_settings: Optional[WorkerSettings] = None,
        max_reviewers: int = DEFAULT_MAX_REVIEWERS,
        run_agent: AgentRunner = run_coding_agent,
    ) -> None:
        self.claims = claims
        self.lifecycle = lifecycle
        self.peers = peers
        self.substrate = claims.substrate
        self.username = claims.username
        self.workrepos_dir = workrepos_dir
        self.runs_dir = runs_dir
        self.gate_settings = gate_settings or GateSettings()
        self.worker_settings = worker_settings or WorkerSettings()
        self.max_reviewers = max_reviewers
        self.run_agent = run_agent

    # ------------------------------------------------------------------
    # Shared helpers (also used by orphan recovery)
    # ------------------------------------------------------------------

    def workspace_path(self, repo: RepoRef) -> Path:
        return self.workrepos_dir / f"{repo.owner}-{repo.name}"

    def run_dir(self, repo: RepoRef, issue_number: int, task_number: int) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return self.runs_dir / f"{repo.owner}-{repo.name}-{issue_number}-task-{task_number}" / stamp

    def prepare_workspace(self, repo: RepoRef) -> tuple[Optional[Path], str]:
        """Fresh-clone the repository; returns ``(path, error)``."""
        workspace = self.workspace_path(repo)
        ok, error = _git_clone(self.substrate.clone_url(repo), workspace)
        if not ok:
            return None, f"git clone failed: {error}"
        return workspace, ""

    def gate_pipeline(self, repo: RepoRef, workspace: Path, branch: str, log_dir: Path) -> GatePipeline:
        return GatePipeline(self.substrate, repo, workspace, branch, self.gate_settings, log_dir)

    def open_pull_request(
        self,
        repo: RepoRef,
        issue_number: int,
        plan: Plan,
        task: Task,
        branch: str,
        report: GateReport,
        *,
        recovered: bool = False,
    ) -> PullRequestInfo:
        """Open the task's pull request; only call after Gate 4 passed."""
        if not report.passed:
            raise ValueError("Refusing to open a pull request before every gate has passed")
        return self.substrate.create_pull_request(
            repo,
            title=pull_request_title(task),
            body=pull_request_body(plan, task, issue_number, report, recovered=recovered),
            head=branch,
            base=self.gate_settings.base_branch,
        )

    def request_reviewers(self, repo: RepoRef, pull_request: PullRequestInfo) -> list[str]:
        reviewers = select_reviewers(
            self.peers,
            self.substrate,
            repo,
            exclude=[self.username, pull_request.author],
            max_reviewers=self.max_reviewers,
        )
        if not reviewers:
            return []
        try:
            self.substrate.request_reviewers(repo, pull_request.number, reviewers)
        except SubstrateError as exc:
            logger.warning("Failed to request reviewers on PR #{}: {}", pull_request.number, exc)
            return []
        return reviewers

    def announce_pull_request(
        self,
        repo: RepoRef,
        issue_number: int,
        task: Task,
        pull_request: PullRequestInfo,
        reviewers: list[str],
        report: GateReport,
    ) -> None:
        files = report.verification.files_changed if report.verification else []
        lines = [
            f"Opened {pull_request.url} for **Task {task.number}: {task.title}**.",
            "",
            f"Files changed: {len(files)}",
            f"Tests: {report.tests.summary() if report.tests else 'None found'}",
        ]
        if reviewers:
            lines.append(f"Reviewers: {', '.join('@' + login for login in reviewers)}")
        lines.extend(["", "The task stays `in_progress` until the pull request is merged."])
        self.lifecycle.report_task_progress(repo, issue_number, task.number, "\n".join(lines))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _fail(
        self,
        repo: RepoRef,
        issue_number: int,
        task: Task,
        reason: str,
        *,
        blocked: bool = False,
        branch: Optional[str] = None,
        report: Optional[GateReport] = None,
    ) -> ExecutionOutcome:
        if blocked:
            self.lifecycle.report_task_blocked(repo, issue_number, task.number, reason)
        else:
            self.lifecycle.report_task_failed(repo, issue_number, task.number, reason)
        return ExecutionOutcome(
            task_number=task.number,
            success=False,
            blocked=blocked,
            branch=branch,
            gate_report=report,
            error=reason,
        )

    def execute(self, repo: RepoRef, issue_number: int, plan: Plan, task: Task) -> ExecutionOutcome:
        """Run a task this agent has already claimed.

        Every failure is reported on the plan issue (task set to ``blocked`` and
        unassigned) and returned; nothing is raised for expected failures.
        """
        branch = task_branch_name(task.number, task.title)
        logger.info("Executing task {} of {}#{} on {}", task.number, repo, issue_number, branch)

        workspace, error = self.prepare_workspace(repo)
        if workspace is None:
            return self._fail(repo, issue_number, task, error, branch=branch)
        ok, error = _git_create_branch(workspace, branch)
        if not ok:
            return self._fail(repo, issue_number, task, f"could not create branch '{branch}': {error}", branch=branch)

        if not self.claims.mark_in_progress(repo, issue_number, task.number):
            logger.warning("Could not mark task {} in_progress; continuing", task.number)

        run_dir = self.run_dir(repo, issue_number, task.number)
        prompt = build_task_prompt(plan, task, repo, branch)
        try:
            run = self.run_agent(
                self.worker_settings.command,
                prompt,
                workspace,
                run_dir,
                timeout_seconds=self.worker_settings.timeout_seconds,
                kill_grace_seconds=self.worker_settings.kill_grace_seconds,
            )
        except ValueError as exc:
            return self._fail(repo, issue_number, task, f"coding agent misconfigured: {exc}", branch=branch)

        if run.timed_out:
            reason = str(CommandTimeout(run.command, self.worker_settings.timeout_seconds))
            return self._fail(repo, issue_number, task, reason, branch=branch)
        if run.exit_code != 0:
            tail = run.output_tail.strip()
            reason = f"Coding agent exited with code {run.exit_code}."
            if tail:
                reason += f"\n\n```\n{tail[-1500:]}\n```"
            return self._fail(repo, issue_number, task, reason, blocked=is_blocked_output(tail), branch=branch)

        if _git_commit_all(workspace, pull_request_title(task)):
            logger.info("Committed changes the coding agent left uncommitted")

        report = self.gate_pipeline(repo, workspace, branch, run_dir).run()
        if not report.passed:
            failure = report.failure
            gate = failure.gate if failure else Gate.BRANCH_IDENTITY
            reason = format_gate_failure(gate.label, failure.reason if failure else "gate pipeline did not finish",
                                         failure.detail if failure else None)
            return self._fail(
                repo,
                issue_number,
                task,
                reason,
                blocked=gate == Gate.TESTS,
                branch=branch,
                report=report,
            )

        try:
            pull_request = self.open_pull_request(repo, issue_number, plan, task, branch, report)
        except SubstrateError as exc:
            reason = f"All gates passed and `{branch}` is pushed, but opening the pull request failed: {exc}"
            return self._fail(repo, issue_number, task, reason, branch=branch, report=report)

        reviewers = self.request_reviewers(repo, pull_request)
        self.announce_pull_request(repo, issue_number, task, pull_request, reviewers, report)
        logger.info("Task {} published as {}", task.number, pull_request.url)
        return ExecutionOutcome(
            task_number=task.number,
            success=True,
            branch=branch,
            pull_request=pull_request,
            gate_report=report,
            reviewers=reviewers,
        )
