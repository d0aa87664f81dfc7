"""Define plan/task state and the structured results emitted by the coordinator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class TaskStatus(str, Enum):
    """Per-task status written into the plan body."""

    PENDING = "pending"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    @classmethod
    def parse(cls, value: str) -> Optional["TaskStatus"]:
        normalized = (value or "").strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            return None


CLAIMABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.BLOCKED})
ACTIVE_STATUSES = frozenset({TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS})


class PlanStatus(str, Enum):
    """Plan-level status derived from its tasks; never stored on its own."""

    ACTIVE = "active"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class Gate(int, Enum):
    """Ordered verification gates a task passes before a pull request is opened."""

    BRANCH_IDENTITY = 0
    EVIDENCE = 1
    TESTS = 2
    PUBLISH = 3
    PUBLISH_DURABILITY = 4

    @property
    def label(self) -> str:
        return f"Gate {self.value} ({self.name.lower().replace('_', ' ')})"


@dataclass
class VerificationItem:
    checked: bool
    text: str


@dataclass
class Task:
    """One unit of work inside a plan."""

    number: int
    title: str
    status: TaskStatus = TaskStatus.PENDING
    assignee: Optional[str] = None
    estimate: Optional[str] = None
    dependencies: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    description: str = ""

    @property
    def reference(self) -> str:
        return f"Task {self.number}"


@dataclass
class UnresolvedDependencyRecord:
    """A dependency reference that matched no task title (permanently unsatisfiable)."""

    task_number: int
    reference: str
    reason: str


@dataclass
class Plan:
    """Structured view of a plan issue body."""

    title: str
    goal: str = ""
    context: str = ""
    tasks: list[Task] = field(default_factory=list)
    verification: list[VerificationItem] = field(default_factory=list)
    raw_body: str = ""
    unresolved_dependencies: list[UnresolvedDependencyRecord] = field(default_factory=list)
    dependency_collisions: list[str] = field(default_factory=list)

    @property
    def status(self) -> PlanStatus:
        if self.tasks and all(t.status == TaskStatus.COMPLETED for t in self.tasks):
            return PlanStatus.COMPLETE
        if any(t.status == TaskStatus.BLOCKED for t in self.tasks):
            return PlanStatus.BLOCKED
        return PlanStatus.ACTIVE

    def task(self, number: int) -> Optional[Task]:
        for task in self.tasks:
            if task.number == number:
                return task
        return None

    def completed_references(self) -> set[str]:
        return {t.reference for t in self.tasks if t.status == TaskStatus.COMPLETED}

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("raw_body", None)
        data["status"] = self.status.value
        for task in data["tasks"]:
            task["status"] = TaskStatus(task["status"]).value
        return data


@dataclass(frozen=True)
class TaskDefinition:
    """Input used to render a brand-new plan task."""

    title: str
    description: str
    estimate: Optional[str] = None
    dependencies: tuple[str, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlanDefinition:
    title: str
    goal: str
    context: str
    tasks: tuple[TaskDefinition, ...]
    verification: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Substrate records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RepoRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "RepoRef":
        owner, sep, name = (value or "").strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError(f"Expected 'owner/repo', got: {value!r}")
        return cls(owner=owner, name=name)

    def __str__(self) -> str:
        return self.full_name


@dataclass
class IssueSnapshot:
    number: int
    title: str
    body: str
    assignees: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    state: str = "open"
    url: Optional[str] = None


@dataclass
class PullRequestInfo:
    number: int
    url: str
    head: str
    base: str = "main"
    title: str = ""
    body: str = ""
    state: str = "open"
    merged: bool = False
    author: Optional[str] = None


@dataclass(frozen=True)
class Collaborator:
    login: str
    can_push: bool = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ClaimResult:
    """Outcome of one claim attempt."""

    success: bool
    claimed: bool
    claimed_by: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    contenders: list[str] = field(default_factory=list)
    verify_seconds: float = 0.0


@dataclass
class GitVerification:
    has_commits: bool = False
    has_changes: bool = False
    commit_count: int = 0
    files_changed: list[str] = field(default_factory=list)
    diff_stat: str = ""


@dataclass
class TestResult:
    """Outcome of the conditional test gate."""

    __test__ = False

    tests_exist: bool = False
    tests_run: bool = False
    tests_passed: bool = False
    timed_out: bool = False
    tooling_absent: bool = False
    command: Optional[str] = None
    exit_code: Optional[int] = None
    output: str = ""

    def summary(self) -> str:
        if not self.tests_exist:
            return "None found"
        if self.tooling_absent:
            return "Not run (test tooling not installed)"
        if not self.tests_run:
            return "Not run"
        if self.timed_out:
            return "Timed out"
        return "Passed" if self.tests_passed else "Failed"


@dataclass
class GateOutcome:
    gate: Gate
    passed: bool
    reason: str = ""
    detail: Optional[str] = None


@dataclass
class GateReport:
    """Ordered results of the gate pipeline; stops at the first failure."""

    outcomes: list[GateOutcome] = field(default_factory=list)
    verification: Optional[GitVerification] = None
    tests: Optional[TestResult] = None

    @property
    def passed(self) -> bool:
        return bool(self.outcomes) and all(o.passed for o in self.outcomes) and (
            self.outcomes[-1].gate == Gate.PUBLISH_DURABILITY
        )

    @property
    def failure(self) -> Optional[GateOutcome]:
        for outcome in self.outcomes:
            if not outcome.passed:
                return outcome
        return None

    @property
    def gates_run(self) -> list[Gate]:
        return [o.gate for o in self.outcomes]


@dataclass(frozen=True)
class WorkerRunResult:
    command: str
    stdout_path: str
    stderr_path: str
    start_time: str
    end_time: str
    runtime_seconds: int
    exit_code: int
    timed_out: bool
    output_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class ExecutionOutcome:
    task_number: int
    success: bool
    blocked: bool = False
    branch: Optional[str] = None
    pull_request: Optional[PullRequestInfo] = None
    gate_report: Optional[GateReport] = None
    reviewers: list[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class MergeOutcome:
    handled: bool
    task_number: Optional[int] = None
    issue_number: Optional[int] = None
    plan_complete: bool = False
    error: Optional[str] = None


@dataclass
class RecoveryOutcome:
    recovered: bool
    task_number: Optional[int] = None
    branch: Optional[str] = None
    pull_request: Optional[PullRequestInfo] = None
    error: Optional[str] = None
