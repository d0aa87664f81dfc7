"""One agent's work cycle across the watched repositories."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .claims import ClaimGuard, ClaimProtocol
from .config import (
    get_consensus_settings,
    get_gate_settings,
    get_github_settings,
    get_max_reviewers,
    get_recovery_settings,
    get_watched_repos,
    get_worker_settings,
    get_workrepos_dir,
    load_coordinator_config,
)
from .constants import RUNS_DIR, STATE_DIR_NAME
from .errors import SubstrateError
from .executor import AgentRunner, TaskExecutor
from .lifecycle import LifecycleReporter
from .logging_utils import pretty
from .models import ExecutionOutcome, MergeOutcome, Plan, PullRequestInfo, RecoveryOutcome, RepoRef
from .peers import PeerRegistry
from .plan_codec import get_claimable_tasks, parse_plan
from .recovery import OrphanRecovery, StuckTaskTracker
from .substrate import GitHubSubstrate, Substrate
from .worker import run_coding_agent


@dataclass
class CycleSummary:
    """What one ``run_once`` call did."""

    plans_seen: int = 0
    recovered: list[RecoveryOutcome] = field(default_factory=list)
    reset_tasks: list[str] = field(default_factory=list)
    claimed: Optional[str] = None
    execution: Optional[ExecutionOutcome] = None
    errors: list[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return not (self.recovered or self.reset_tasks or self.claimed)

    def to_dict(self) -> dict[str, Any]:
        execution = self.execution
        return {
            "plans_seen": self.plans_seen,
            "recovered": [
                {
                    "task": o.task_number,
                    "recovered": o.recovered,
                    "branch": o.branch,
                    "pull_request": o.pull_request.url if o.pull_request else None,
                    "error": o.error,
                }
                for o in self.recovered
            ],
            "reset_tasks": list(self.reset_tasks),
            "claimed": self.claimed,
            "execution": None
            if execution is None
            else {
                "task": execution.task_number,
                "success": execution.success,
                "blocked": execution.blocked,
                "branch": execution.branch,
                "pull_request": execution.pull_request.url if execution.pull_request else None,
                "reviewers": list(execution.reviewers),
                "error": execution.error,
            },
            "errors": list(self.errors),
        }


class PlanCoordinator:
    """Recover, claim and execute plan tasks for one agent.

    Each cycle does at most one orphan recovery and executes at most one task.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        repos: list[RepoRef],
        *,
        stuck_tracker: Optional[StuckTaskTracker] = None,
    ) -> None:
        self.executor = executor
        self.claims = executor.claims
        self.lifecycle = executor.lifecycle
        self.substrate = executor.substrate
        self.repos = list(repos)
        self.stuck_tracker = stuck_tracker or StuckTaskTracker(self.claims)
        self.orphans = OrphanRecovery(executor, self.stuck_tracker)

    def _open_plans(self, repo: RepoRef) -> list[tuple[int, Plan]]:
        plans: list[tuple[int, Plan]] = []
        for issue in self.substrate.list_plan_issues(repo):
            plan = parse_plan(issue.body, issue.title)
            if plan is None:
                logger.debug("Issue {}#{} is labelled as a plan but does not parse", repo, issue.number)
                continue
            self.claims.forget_completed(repo, issue.number, plan)
            plans.append((issue.number, plan))
        return plans

    def run_once(self) -> CycleSummary:
        summary = CycleSummary()
        recovered_this_cycle = False
        for repo in self.repos:
            try:
                plans = self._open_plans(repo)
            except SubstrateError as exc:
                logger.warning("Could not list plans of {}: {}", repo, exc)
                summary.errors.append(f"{repo}: {exc}")
                continue
            summary.plans_seen += len(plans)

            for issue_number, plan in plans:
                self.lifecycle.report_unresolved_dependencies(repo, issue_number, plan)
                if not recovered_this_cycle:
                    outcome = self.orphans.recover_plan(repo, issue_number, plan)
                    if outcome is not None:
                        summary.recovered.append(outcome)
                        recovered_this_cycle = True
                        if outcome.error:
                            summary.errors.append(f"{repo}#{issue_number} task {outcome.task_number}: {outcome.error}")

                reset = self.stuck_tracker.recover_stuck_tasks(repo, issue_number, plan)
                summary.reset_tasks.extend(f"{repo}#{issue_number}/task-{n}" for n in reset)

            if summary.claimed is not None:
                continue
            for issue_number, _ in plans:
                if self._claim_and_execute(repo, issue_number, summary):
                    break

        if summary.idle:
            logger.info("Nothing to do this cycle ({} open plan(s))", summary.plans_seen)
        return summary

    def _claim_and_execute(self, repo: RepoRef, issue_number: int, summary: CycleSummary) -> bool:
        # Recovery and resets above may have rewritten the body.
        try:
            plan = self.claims.fetch_fresh_plan(repo, issue_number)
        except SubstrateError as exc:
            summary.errors.append(f"{repo}#{issue_number}: {exc}")
            return False
        if plan is None:
            return False

        for task in get_claimable_tasks(plan):
            result = self.claims.claim_task(repo, issue_number, task.number, plan)
            if not result.success:
                logger.info("Could not claim task {}: {}", task.number, result.error)
                continue
            summary.claimed = f"{repo}#{issue_number}/task-{task.number}"
            summary.execution = self.executor.execute(repo, issue_number, plan, task)
            if summary.execution.error:
                summary.errors.append(f"{summary.claimed}: {summary.execution.error}")
            return True
        return False

    def handle_merge_event(self, repo: RepoRef, pull_request: PullRequestInfo) -> MergeOutcome:
        return self.lifecycle.handle_pull_request_merged(repo, pull_request)

    def run_forever(self, interval_seconds: float, sleep: Callable[[float], None] = time.sleep) -> None:
        while True:
            summary = self.run_once()
            logger.debug("Cycle summary:\n{}", pretty(summary.to_dict()))
            if summary.errors:
                logger.warning("Cycle finished with {} error(s)", len(summary.errors))
            sleep(interval_seconds)


def build_coordinator(
    project_dir: Path,
    *,
    substrate: Optional[Substrate] = None,
    username: Optional[str] = None,
    run_agent: AgentRunner = run_coding_agent,
) -> PlanCoordinator:
    """Wire a :class:`PlanCoordinator` from ``.plan_coordinator/config.yaml``.

    Raises:
        ValueError: when the configuration is unreadable, or no username or
            GitHub token is available.
    """
    project_dir = project_dir.resolve()
    config, err = load_coordinator_config(project_dir)
    if err:
        raise ValueError(err)

    github = get_github_settings(config)
    username = username or github.username
    if not username:
        raise ValueError("No username configured (set github.username in the config file)")
    if substrate is None:
        token = github.token()
        if not token:
            raise ValueError(f"No GitHub token found in ${github.token_env}")
        substrate = GitHubSubstrate(token, api_url=github.api_url)

    state_dir = project_dir / STATE_DIR_NAME
    claims = ClaimProtocol(substrate, username, get_consensus_settings(config), guard=ClaimGuard())
    lifecycle = LifecycleReporter(claims)
    executor = TaskExecutor(
        claims,
        lifecycle,
        PeerRegistry(state_dir),
        workrepos_dir=get_workrepos_dir(config, project_dir),
        runs_dir=state_dir / RUNS_DIR,
        gate_settings=get_gate_settings(config),
        worker_settings=get_worker_settings(config),
        max_reviewers=get_max_reviewers(config),
        run_agent=run_agent,
    )
    tracker = StuckTaskTracker(claims, get_recovery_settings(config))
    return PlanCoordinator(executor, get_watched_repos(config), stuck_tracker=tracker)
