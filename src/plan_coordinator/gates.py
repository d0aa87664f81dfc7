"""Verification gates a task's work product must pass before a pull request exists.

Gates run strictly in order and the pipeline is fail-closed: the first failing
gate stops the run and later gates are never invoked.

| Gate | Check |
|------|-------|
| 0 | working tree is on the task's feature branch |
| 1 | at least one commit beyond base and a non-empty diff |
| 2 | declared tests pass (absent tooling does not block) |
| 3 | ``git push -u origin <branch>`` succeeds |
| 4 | the substrate lists the branch as a remote branch |
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .config import GateSettings
from .constants import COMMAND_NOT_FOUND_EXIT_CODE, TOOLING_ABSENT_MARKERS, TRUNK_BRANCHES
from .errors import GateFailure, SubstrateError
from .git_utils import _git_current_branch, _git_push, verify_git_changes
from .io_utils import _read_log_tail
from .logging_utils import summarize_pytest_failures, summarize_test_output
from .models import Gate, GateOutcome, GateReport, RepoRef, TestResult
from .substrate import Substrate
from .worker import _run_command

_NPM_PLACEHOLDER_MARKER = "no test specified"
_PYTEST_COMMAND = "python -m pytest -q"


# ---------------------------------------------------------------------------
# Test detection (Gate 2)
# ---------------------------------------------------------------------------

def _npm_test_declared(workspace: Path) -> bool:
    package_json = workspace / "package.json"
    if not package_json.exists():
        return False
    try:
        data = json.loads(package_json.read_text())
    except (OSError, ValueError) as exc:
        logger.info("Unable to read package.json ({}); skipping npm tests", exc)
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    script = scripts.get("test") if isinstance(scripts, dict) else None
    return isinstance(script, str) and bool(script.strip()) and _NPM_PLACEHOLDER_MARKER not in script


def _pytest_declared(workspace: Path) -> bool:
    if (workspace / "pytest.ini").exists() or (workspace / "conftest.py").exists():
        return True
    markers = {
        "pyproject.toml": "[tool.pytest",
        "setup.cfg": "[tool:pytest]",
        "tox.ini": "[pytest]",
    }
    for name, marker in markers.items():
        path = workspace / name
        try:
            if path.exists() and marker in path.read_text():
                return True
        except OSError:
            continue
    return False


def detect_test_command(workspace: Path, settings: GateSettings) -> Optional[str]:
    """Return the command that runs the project's declared tests, if any."""
    if settings.test_command:
        return settings.test_command
    if _npm_test_declared(workspace):
        return "npm test"
    if _pytest_declared(workspace):
        return _PYTEST_COMMAND
    return None


def is_tooling_absent(exit_code: Optional[int], output: str) -> bool:
    """Tell a missing test runner apart from failing tests."""
    if exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
        return True
    lowered = (output or "").lower()
    return any(marker in lowered for marker in TOOLING_ABSENT_MARKERS)


def run_tests_if_present(workspace: Path, settings: GateSettings, log_path: Path) -> TestResult:
    """Run the declared tests with ``CI=true`` under ``settings.test_timeout_seconds``.

    Args:
        workspace: Repository checkout to run in.
        settings: Gate configuration (explicit command, timeout, excerpt size).
        log_path: File that receives combined stdout/stderr.

    Returns:
        A :class:`TestResult`. ``tests_run`` is False both when nothing is declared
        and when the test tooling is not installed.
    """
    command = detect_test_command(workspace, settings)
    if not command:
        logger.info("No test command declared in {}; skipping tests", workspace)
        return TestResult()

    logger.info("Running tests: {} (timeout {}s)", command, settings.test_timeout_seconds)
    run = _run_command(
        command,
        workspace,
        log_path,
        timeout_seconds=settings.test_timeout_seconds,
        env={"CI": "true"},
    )
    output = _read_log_tail(log_path, settings.test_output_chars)
    exit_code = run["exit_code"]
    result = TestResult(tests_exist=True, command=command, exit_code=exit_code, output=output)

    if run["timed_out"]:
        result.tests_run = True
        result.timed_out = True
        logger.warning("Tests timed out after {}s", settings.test_timeout_seconds)
        return result
    if exit_code != 0 and is_tooling_absent(exit_code, output):
        result.tooling_absent = True
        logger.warning("Test tooling not installed; treating tests as not run")
        return result

    result.tests_run = True
    result.tests_passed = exit_code == 0
    logger.info("Tests {}", "passed" if result.tests_passed else f"failed (exit {exit_code})")
    return result


# ---------------------------------------------------------------------------
# Gate checks
# ---------------------------------------------------------------------------

def check_branch_identity(workspace: Path, branch: str, base_branch: str) -> None:
    current = _git_current_branch(workspace)
    if current is None:
        raise GateFailure(Gate.BRANCH_IDENTITY, "could not determine the current branch")
    if current in TRUNK_BRANCHES or current == base_branch:
        raise GateFailure(Gate.BRANCH_IDENTITY, f"working tree is on trunk branch '{current}', not '{branch}'")
    if current != branch:
        raise GateFailure(Gate.BRANCH_IDENTITY, f"working tree is on '{current}', expected '{branch}'")


def check_publish(workspace: Path, branch: str) -> None:
    ok, output = _git_push(workspace, branch)
    if not ok:
        raise GateFailure(Gate.PUBLISH, f"git push of '{branch}' failed", detail=output or None)


def check_publish_durability(substrate: Substrate, repo: RepoRef, branch: str) -> None:
    try:
        branches = substrate.list_remote_branches(repo)
    except SubstrateError as exc:
        raise GateFailure(Gate.PUBLISH_DURABILITY, f"could not list remote branches: {exc}") from exc
    if branch not in branches:
        raise GateFailure(
            Gate.PUBLISH_DURABILITY,
            f"branch '{branch}' is not on the remote after push",
        )


class GatePipeline:
    """Run gates 0-4 for one task checkout, stopping at the first failure."""

    def __init__(
        self,
        substrate: Substrate,
        repo: RepoRef,
        workspace: Path,
        branch: str,
        settings: GateSettings,
        log_dir: Path,
    ) -> None:
        self.substrate = substrate
        self.repo = repo
        self.workspace = workspace
        self.branch = branch
        self.settings = settings
        self.log_dir = log_dir

    def _gate_branch(self, report: GateReport) -> None:
        check_branch_identity(self.workspace, self.branch, self.settings.base_branch)

    def _gate_evidence(self, report: GateReport) -> None:
        verification = verify_git_changes(self.workspace, self.settings.base_branch)
        report.verification = verification
        if not verification.has_commits:
            raise GateFailure(Gate.EVIDENCE, f"no commits beyond '{self.settings.base_branch}'")
        if not verification.has_changes:
            raise GateFailure(Gate.EVIDENCE, f"no file changes compared to '{self.settings.base_branch}'")

    def _gate_tests(self, report: GateReport) -> None:
        result = run_tests_if_present(self.workspace, self.settings, self.log_dir / "tests.log")
        report.tests = result
        if result.timed_out:
            raise GateFailure(
                Gate.TESTS,
                f"tests timed out after {self.settings.test_timeout_seconds}s",
                detail=summarize_test_output(result.output, self.settings.test_output_chars),
            )
        if result.tests_run and not result.tests_passed:
            failed = summarize_pytest_failures(result.output)["failed"]
            reason = f"tests failed (`{result.command}` exited {result.exit_code})"
            if failed:
                reason += ": " + ", ".join(failed)
            raise GateFailure(
                Gate.TESTS,
                reason,
                detail=summarize_test_output(result.output, self.settings.test_output_chars),
            )

    def _gate_publish(self, report: GateReport) -> None:
        check_publish(self.workspace, self.branch)

    def _gate_durability(self, report: GateReport) -> None:
        check_publish_durability(self.substrate, self.repo, self.branch)

    def _checks(self) -> list[tuple[Gate, Callable[[GateReport], None]]]:
        return [
            (Gate.BRANCH_IDENTITY, self._gate_branch),
            (Gate.EVIDENCE, self._gate_evidence),
            (Gate.TESTS, self._gate_tests),
            (Gate.PUBLISH, self._gate_publish),
            (Gate.PUBLISH_DURABILITY, self._gate_durability),
        ]

    def run(self, start: Gate = Gate.BRANCH_IDENTITY) -> GateReport:
        """Run every gate from ``start`` onward and return the ordered report."""
        report = GateReport()
        for gate, check in self._checks():
            if gate < start:
                continue
            try:
                check(report)
            except GateFailure as exc:
                report.outcomes.append(GateOutcome(gate=gate, passed=False, reason=exc.reason, detail=exc.detail))
                logger.warning("{} failed for {}: {}", gate.label, self.branch, exc.reason)
                return report
            report.outcomes.append(GateOutcome(gate=gate, passed=True))
            logger.debug("{} passed for {}", gate.label, self.branch)
        return report
