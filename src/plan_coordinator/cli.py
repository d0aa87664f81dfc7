"""Command line entrypoint for the plan coordinator."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from . import coordinator as coordinator_module
from .errors import SubstrateError
from .io_utils import _load_data_with_error
from .models import Plan, PlanDefinition, RepoRef, TaskDefinition
from .plan_codec import are_dependencies_met, generate_plan_markdown, get_claimable_tasks, parse_plan

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

console = Console()


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _report_error(args: argparse.Namespace, message: str) -> None:
    if args.json:
        _write_json({"ok": False, "error": message})
    else:
        console.print(f"[red]{message}[/red]")


def _repo(value: str) -> RepoRef:
    try:
        return RepoRef.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plan-coordinator",
        description="Coordinate coding agents working on shared plan issues",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Directory holding .plan_coordinator/ (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("parse", "Parse a plan and print its tasks"),
        ("claimable", "List the tasks that can be claimed right now"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("source", nargs="?", type=Path, help="Markdown file with the plan body ('-' for stdin)")
        cmd.add_argument("--repo", type=_repo, help="owner/repo to read the plan issue from")
        cmd.add_argument("--issue", type=int, help="Plan issue number")

    for name, help_text in (("claim", "Claim a task"), ("release", "Release a claimed task")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--repo", type=_repo, required=True)
        cmd.add_argument("--issue", type=int, required=True)
        cmd.add_argument("--task", type=int, required=True)
        if name == "release":
            cmd.add_argument("--reason", type=str, default=None)

    run_once = sub.add_parser("run-once", help="Run one recover/claim/execute cycle")
    run_once.add_argument(
        "--loop",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Keep cycling, sleeping this long between cycles",
    )

    merged = sub.add_parser("merged", help="Complete the task of a merged pull request")
    merged.add_argument("--repo", type=_repo, required=True)
    merged.add_argument("--branch", type=str, required=True, help="Head branch of the merged pull request")

    recover = sub.add_parser("recover", help="Recover orphaned branches and stuck tasks of a plan")
    recover.add_argument("--repo", type=_repo, required=True)
    recover.add_argument("--issue", type=int, required=True)

    create = sub.add_parser("create-plan", help="Open a plan issue from a YAML definition")
    create.add_argument("definition", type=Path, help="YAML file with title, goal, context, tasks")
    create.add_argument("--repo", type=_repo, help="owner/repo to open the issue in")
    create.add_argument("--dry-run", action="store_true", help="Print the rendered body instead")
    return parser


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _plan_table(plan: Plan, *, claimable_only: bool = False) -> Table:
    table = Table(title=f"{plan.title} ({plan.status.value})")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Assignee")
    table.add_column("Depends on")
    table.add_column("Ready")
    tasks = get_claimable_tasks(plan) if claimable_only else plan.tasks
    for task in tasks:
        table.add_row(
            str(task.number),
            task.title,
            task.status.value,
            f"@{task.assignee}" if task.assignee else "-",
            ", ".join(task.dependencies) or "none",
            "yes" if are_dependencies_met(task, plan) else "no",
        )
    return table


def _print_plan_warnings(plan: Plan) -> None:
    for record in plan.unresolved_dependencies:
        console.print(
            f"[yellow]Task {record.task_number}: unresolved dependency '{record.reference}' ({record.reason})[/yellow]"
        )
    for collision in plan.dependency_collisions:
        console.print(f"[yellow]{collision}[/yellow]")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _load_plan(args: argparse.Namespace) -> tuple[Optional[Plan], str]:
    if args.repo is not None and args.issue is not None:
        coordinator = coordinator_module.build_coordinator(args.project_dir)
        snapshot = coordinator.substrate.get_issue(args.repo, args.issue)
        body, title = snapshot.body, snapshot.title
    elif args.source is not None:
        if str(args.source) == "-":
            body = sys.stdin.read()
        else:
            try:
                body = args.source.read_text()
            except OSError as exc:
                return None, f"Unable to read {args.source}: {exc}"
        title = ""
    else:
        return None, "Pass a plan file or --repo/--issue"
    plan = parse_plan(body, title)
    if plan is None:
        return None, "Not a plan: no [PLAN] marker found"
    return plan, ""


def _parse_command(args: argparse.Namespace, *, claimable_only: bool) -> int:
    plan, err = _load_plan(args)
    if plan is None:
        _report_error(args, err)
        return EXIT_FAILED

    if args.json:
        if claimable_only:
            _write_json({"ok": True, "claimable": [t.number for t in get_claimable_tasks(plan)]})
        else:
            _write_json({"ok": True, "plan": plan.to_dict()})
        return EXIT_OK
    console.print(_plan_table(plan, claimable_only=claimable_only))
    _print_plan_warnings(plan)
    return EXIT_OK


def _claim_command(args: argparse.Namespace) -> int:
    coordinator = coordinator_module.build_coordinator(args.project_dir)
    claims = coordinator.claims
    plan = claims.fetch_fresh_plan(args.repo, args.issue)
    if plan is None:
        msg = f"{args.repo}#{args.issue} is not a plan issue"
        _report_error(args, msg)
        return EXIT_FAILED

    result = claims.claim_task(args.repo, args.issue, args.task, plan)
    if args.json:
        _write_json(
            {
                "ok": result.success,
                "claimed_by": result.claimed_by,
                "contenders": result.contenders,
                "error": result.error,
                "error_type": result.error_type,
                "verify_seconds": result.verify_seconds,
            }
        )
    elif result.success:
        console.print(f"[green]Claimed task {args.task}[/green] (verified in {result.verify_seconds:.1f}s)")
    else:
        console.print(f"[red]Claim failed:[/red] {result.error}")
    return EXIT_OK if result.success else EXIT_FAILED


def _release_command(args: argparse.Namespace) -> int:
    coordinator = coordinator_module.build_coordinator(args.project_dir)
    ok = coordinator.claims.release_task(args.repo, args.issue, args.task, args.reason)
    if args.json:
        _write_json({"ok": ok})
    else:
        console.print(f"Released task {args.task}" if ok else f"[red]Could not release task {args.task}[/red]")
    return EXIT_OK if ok else EXIT_FAILED


def _run_once_command(args: argparse.Namespace) -> int:
    coordinator = coordinator_module.build_coordinator(args.project_dir)
    if args.loop is not None:
        coordinator.run_forever(args.loop)
        return EXIT_OK

    summary = coordinator.run_once()
    if args.json:
        _write_json(summary.to_dict())
    else:
        table = Table(title="Cycle summary")
        table.add_column("Item")
        table.add_column("Result")
        table.add_row("Open plans", str(summary.plans_seen))
        for outcome in summary.recovered:
            result = outcome.pull_request.url if outcome.pull_request else (outcome.error or "skipped")
            table.add_row(f"Recovered task {outcome.task_number}", result)
        for key in summary.reset_tasks:
            table.add_row("Reset stuck task", key)
        if summary.execution is not None:
            execution = summary.execution
            result = execution.pull_request.url if execution.pull_request else (execution.error or "failed")
            table.add_row(f"Executed {summary.claimed}", result)
        elif not summary.recovered:
            table.add_row("Claimed", "nothing claimable")
        console.print(table)
        for error in summary.errors:
            console.print(f"[red]{error}[/red]")
    failed = summary.execution is not None and not summary.execution.success
    return EXIT_FAILED if failed else EXIT_OK


def _merged_command(args: argparse.Namespace) -> int:
    coordinator = coordinator_module.build_coordinator(args.project_dir)
    pull_requests = coordinator.substrate.list_pull_requests(args.repo, head=args.branch, state="closed")
    merged = next((pr for pr in pull_requests if pr.merged), None)
    if merged is None:
        msg = f"No merged pull request found for branch {args.branch}"
        _report_error(args, msg)
        return EXIT_FAILED

    outcome = coordinator.handle_merge_event(args.repo, merged)
    if args.json:
        _write_json(
            {
                "ok": outcome.handled,
                "task": outcome.task_number,
                "issue": outcome.issue_number,
                "plan_complete": outcome.plan_complete,
                "error": outcome.error,
            }
        )
    elif outcome.handled:
        console.print(f"[green]Task {outcome.task_number} completed[/green] in plan #{outcome.issue_number}")
        if outcome.plan_complete:
            console.print("[green]Plan complete and closed[/green]")
    else:
        console.print(f"[red]Merge not handled:[/red] {outcome.error}")
    return EXIT_OK if outcome.handled else EXIT_FAILED


def _recover_command(args: argparse.Namespace) -> int:
    coordinator = coordinator_module.build_coordinator(args.project_dir)
    plan = coordinator.claims.fetch_fresh_plan(args.repo, args.issue)
    if plan is None:
        msg = f"{args.repo}#{args.issue} is not a plan issue"
        _report_error(args, msg)
        return EXIT_FAILED

    outcome = coordinator.orphans.recover_plan(args.repo, args.issue, plan)
    reset = coordinator.stuck_tracker.recover_stuck_tasks(args.repo, args.issue, plan)
    if args.json:
        _write_json(
            {
                "ok": outcome is None or outcome.recovered,
                "recovered_task": outcome.task_number if outcome and outcome.recovered else None,
                "pull_request": outcome.pull_request.url if outcome and outcome.pull_request else None,
                "error": outcome.error if outcome else None,
                "reset_tasks": reset,
            }
        )
    else:
        if outcome is None:
            console.print("No orphaned branches found")
        elif outcome.recovered and outcome.pull_request is not None:
            console.print(f"[green]Recovered task {outcome.task_number}[/green]: {outcome.pull_request.url}")
        else:
            console.print(f"[red]Recovery of task {outcome.task_number} failed:[/red] {outcome.error}")
        for number in reset:
            console.print(f"Reset stuck task {number} to pending")
    return EXIT_FAILED if outcome is not None and not outcome.recovered else EXIT_OK


def _definition_from_yaml(path: Path) -> tuple[Optional[PlanDefinition], str]:
    data, err = _load_data_with_error(path, {})
    if err:
        return None, err
    tasks_raw = data.get("tasks")
    if not data.get("title") or not isinstance(tasks_raw, list) or not tasks_raw:
        return None, f"{path} needs a title and a non-empty tasks list"
    tasks: list[TaskDefinition] = []
    for index, raw in enumerate(tasks_raw, start=1):
        if not isinstance(raw, dict) or not raw.get("title"):
            return None, f"Task entry {index} needs a title"
        tasks.append(
            TaskDefinition(
                title=str(raw["title"]),
                description=str(raw.get("description") or ""),
                estimate=str(raw["estimate"]) if raw.get("estimate") else None,
                dependencies=tuple(str(d) for d in raw.get("dependencies") or ()),
                files=tuple(str(f) for f in raw.get("files") or ()),
            )
        )
    return (
        PlanDefinition(
            title=str(data["title"]),
            goal=str(data.get("goal") or ""),
            context=str(data.get("context") or ""),
            tasks=tuple(tasks),
            verification=tuple(str(v) for v in data.get("verification") or ()),
        ),
        "",
    )


def _create_plan_command(args: argparse.Namespace) -> int:
    definition, err = _definition_from_yaml(args.definition)
    if definition is None:
        _report_error(args, err)
        return EXIT_USAGE

    if args.dry_run:
        body = generate_plan_markdown(definition)
        if args.json:
            _write_json({"ok": True, "body": body})
        else:
            sys.stdout.write(body + "\n")
        return EXIT_OK
    if args.repo is None:
        msg = "--repo is required unless --dry-run is given"
        _report_error(args, msg)
        return EXIT_USAGE

    coordinator = coordinator_module.build_coordinator(args.project_dir)
    issue = coordinator.lifecycle.create_plan(args.repo, definition)
    if args.json:
        _write_json({"ok": True, "issue": issue.number, "url": issue.url})
    else:
        console.print(f"[green]Created plan[/green] {args.repo}#{issue.number}")
    return EXIT_OK


_COMMANDS = {
    "parse": lambda args: _parse_command(args, claimable_only=False),
    "claimable": lambda args: _parse_command(args, claimable_only=True),
    "claim": _claim_command,
    "release": _release_command,
    "run-once": _run_once_command,
    "merged": _merged_command,
    "recover": _recover_command,
    "create-plan": _create_plan_command,
}


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.log_level)
    try:
        return _COMMANDS[args.command](args)
    except ValueError as exc:
        # Configuration problems surface from build_coordinator.
        _report_error(args, str(exc))
        return EXIT_USAGE
    except SubstrateError as exc:
        logger.error("{} failed: {}", args.command, exc)
        _report_error(args, str(exc))
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
