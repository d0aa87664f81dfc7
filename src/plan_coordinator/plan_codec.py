"""Convert plan issue bodies to and from the structured Plan/Task model.

The plan grammar is narrow and fully owned by this project, so parsing is an
explicit line-oriented state machine rather than a general markdown parser:

* a section state (none/goal/context/tasks/verification) driven by ``## Header`` lines;
* a nested task state inside ``## Tasks`` driven by ``### Task N: Title`` lines.

Writes never re-render the whole body. ``update_task_in_plan_body`` patches the
Status/Assignee lines of a single task block and leaves every other byte alone,
so concurrent peers editing different tasks do not clobber each other.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from loguru import logger

from .constants import DEFAULT_VERIFICATION_ITEMS, PLAN_MARKER, UNASSIGNED_PLACEHOLDER
from .errors import UnresolvedDependency
from .models import (
    CLAIMABLE_STATUSES,
    Plan,
    PlanDefinition,
    Task,
    TaskStatus,
    UnresolvedDependencyRecord,
    VerificationItem,
)

_SECTION_NAMES = {"goal", "context", "tasks", "verification"}

_TASK_HEADER_RE = re.compile(r"^###\s+Task\s+(?P<number>\d+)\s*:\s*(?P<title>.*)$")
_META_RE = re.compile(
    r"^\*\*(?P<key>Status|Assignee|Estimate|Dependencies|Files|Description):\*\*\s*(?P<value>.*)$"
)
_STATUS_LINE_RE = re.compile(r"^(?P<indent>\s*)\*\*Status:\*\*")
_ASSIGNEE_LINE_RE = re.compile(r"^(?P<indent>\s*)\*\*Assignee:\*\*")
_FILE_BULLET_RE = re.compile(r"^[-*]\s+`(?P<path>[^`]+)`")
_INLINE_PATH_RE = re.compile(r"`([^`]+)`")
_CHECKBOX_RE = re.compile(r"^[-*]\s+\[(?P<mark>[ xX])\]\s*(?P<text>.+)$")
_DEP_NUMBER_RE = re.compile(r"^(?:task[-\s]?#?|#)?(?P<number>\d+)$", re.IGNORECASE)
_CANONICAL_REF_RE = re.compile(r"^Task (?P<number>\d+)$")

_NO_VALUE = {"", "none", "n/a", "-", UNASSIGNED_PLACEHOLDER.lower()}


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def task_reference(number: int) -> str:
    """Return the canonical dependency reference for a task number."""
    return f"Task {int(number)}"


def _section_name(trimmed: str) -> str:
    if not trimmed.startswith("## "):
        return "none"
    name = trimmed[3:].strip().split(" ", 1)[0].lower()
    return name if name in _SECTION_NAMES else "none"


def _is_section_header(trimmed: str) -> bool:
    """Only the plan sections switch sections; other `## ` headings are task prose."""
    return _section_name(trimmed) != "none"


def _next_nonblank(lines: list[str], index: int) -> Optional[str]:
    for line in lines[index + 1:]:
        if line.strip():
            return line.strip()
    return None


def _separator_ends_block(lines: list[str], index: int) -> bool:
    """Return True when the ``---`` at ``index`` is followed by another task header."""
    following = _next_nonblank(lines, index)
    return following is not None and bool(_TASK_HEADER_RE.match(following))


def _is_task_separator(lines: list[str], index: int) -> bool:
    following = _next_nonblank(lines, index)
    if following is None:
        return True
    return bool(_TASK_HEADER_RE.match(following)) or _is_section_header(following)


def _has_plan_marker(body: str, title: str) -> bool:
    if (title or "").strip().startswith(PLAN_MARKER):
        return True
    return any(line.strip().startswith(f"# {PLAN_MARKER}") for line in body.split("\n"))


def _plan_title(body: str, title: str) -> str:
    cleaned = (title or "").replace(PLAN_MARKER, "").strip()
    if cleaned:
        return cleaned
    for line in body.split("\n"):
        stripped = line.strip()
        if stripped.startswith(f"# {PLAN_MARKER}"):
            return stripped[len(f"# {PLAN_MARKER}"):].strip()
    return ""


def _normalize_assignee(value: str) -> Optional[str]:
    cleaned = (value or "").strip()
    if cleaned.lower() in _NO_VALUE:
        return None
    return cleaned.lstrip("@").strip() or None


def _normalize_dependency_token(token: str) -> str:
    match = _DEP_NUMBER_RE.match(token.strip())
    if match:
        return task_reference(int(match.group("number")))
    return token.strip()


def _split_dependencies(value: str) -> list[str]:
    """First pass: comma split only, numeric forms become ``Task N``."""
    cleaned = (value or "").strip()
    if cleaned.lower() in _NO_VALUE:
        return []
    tokens = [token.strip() for token in cleaned.split(",")]
    return [_normalize_dependency_token(token) for token in tokens if token]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

@dataclass
class _TaskBuilder:
    task: Task
    mode: str = "meta"  # meta | files | description
    description_lines: list[str] = field(default_factory=list)

    def finish(self) -> Task:
        self.task.description = "\n".join(self.description_lines).strip()
        return self.task


def _apply_metadata(builder: _TaskBuilder, key: str, value: str) -> None:
    task = builder.task
    if key == "Status":
        status = TaskStatus.parse(value)
        if status is None:
            logger.warning(
                "Task {} has unknown status '{}'; treating as pending",
                task.number,
                value.strip(),
            )
            status = TaskStatus.PENDING
        task.status = status
        builder.mode = "meta"
    elif key == "Assignee":
        task.assignee = _normalize_assignee(value)
        builder.mode = "meta"
    elif key == "Estimate":
        task.estimate = value.strip() or None
        builder.mode = "meta"
    elif key == "Dependencies":
        task.dependencies = _split_dependencies(value)
        builder.mode = "meta"
    elif key == "Files":
        task.files.extend(path.strip() for path in _INLINE_PATH_RE.findall(value) if path.strip())
        builder.mode = "files"
    elif key == "Description":
        builder.mode = "description"
        if value.strip():
            builder.description_lines.append(value)


def parse_plan(body: str, title: str) -> Optional[Plan]:
    """Parse a plan issue into a :class:`Plan`.

    Args:
        body: Issue body markdown.
        title: Issue title.

    Returns:
        The parsed plan, or ``None`` when the issue carries no ``[PLAN]`` marker
        (or the body is empty).
    """
    if not body:
        logger.warning("Cannot parse empty plan body")
        return None
    if not _has_plan_marker(body, title):
        logger.debug("Issue is not a plan (no {} marker)", PLAN_MARKER)
        return None

    lines = body.split("\n")
    plan = Plan(title=_plan_title(body, title), raw_body=body)
    goal_parts: list[str] = []
    context_parts: list[str] = []
    section = "none"
    current: Optional[_TaskBuilder] = None

    def flush() -> None:
        nonlocal current
        if current is not None:
            plan.tasks.append(current.finish())
            current = None

    for index, line in enumerate(lines):
        trimmed = line.strip()

        if _is_section_header(trimmed):
            flush()
            section = _section_name(trimmed)
            continue

        if section == "goal":
            if trimmed:
                goal_parts.append(trimmed)
        elif section == "context":
            if trimmed:
                context_parts.append(trimmed)
        elif section == "verification":
            match = _CHECKBOX_RE.match(trimmed)
            if match:
                plan.verification.append(
                    VerificationItem(checked=match.group("mark").lower() == "x", text=match.group("text").strip())
                )
        elif section == "tasks":
            header = _TASK_HEADER_RE.match(trimmed)
            if header:
                flush()
                current = _TaskBuilder(
                    task=Task(number=int(header.group("number")), title=header.group("title").strip())
                )
                continue
            if current is None:
                continue
            if trimmed == "---" and _is_task_separator(lines, index):
                current.mode = "meta"
                continue
            if current.mode == "description":
                current.description_lines.append(line)
                continue
            meta = _META_RE.match(trimmed)
            if meta:
                _apply_metadata(current, meta.group("key"), meta.group("value"))
                continue
            if current.mode == "files":
                bullet = _FILE_BULLET_RE.match(trimmed)
                if bullet:
                    current.task.files.append(bullet.group("path").strip())
                    continue
                if trimmed:
                    current.mode = "meta"
            current.description_lines.append(line)

    flush()
    plan.goal = " ".join(goal_parts)
    plan.context = "\n".join(context_parts)
    _resolve_dependencies(plan)

    logger.debug(
        "Parsed plan '{}' ({} tasks, status={})",
        plan.title,
        len(plan.tasks),
        plan.status.value,
    )
    return plan


# ---------------------------------------------------------------------------
# Dependency resolution (second pass)
# ---------------------------------------------------------------------------

def _match_title(fragment: str, candidates: list[Task]) -> tuple[Optional[Task], bool]:
    """Match free text to a task title.

    Exact (case-insensitive) match wins; otherwise the longest substring match in
    either direction. Returns ``(task, collided)`` where ``collided`` means several
    titles tied and nothing was chosen.
    """
    needle = fragment.strip().rstrip(".").strip().lower()
    if not needle:
        return None, False

    exact = [t for t in candidates if t.title.strip().lower() == needle]
    if len(exact) == 1:
        return exact[0], False
    if len(exact) > 1:
        return None, True

    scored: list[tuple[int, Task]] = []
    for task in candidates:
        title = task.title.strip().lower()
        if not title:
            continue
        if needle in title or title in needle:
            scored.append((min(len(needle), len(title)), task))
    if not scored:
        return None, False
    best = max(score for score, _ in scored)
    top = [task for score, task in scored if score == best]
    if len(top) > 1:
        return None, True
    return top[0], False


def _resolve_fragment(fragment: str, candidates: list[Task]) -> tuple[Optional[str], bool]:
    normalized = _normalize_dependency_token(fragment)
    if _CANONICAL_REF_RE.match(normalized):
        return normalized, False
    task, collided = _match_title(fragment, candidates)
    return (task.reference if task else None), collided


def _resolve_reference(raw: str, candidates: list[Task]) -> tuple[Optional[list[str]], bool]:
    """Resolve prose to task references; ``;``-separated lists are tried fragment by fragment first."""
    split_collided = False
    if ";" in raw:
        resolved: list[str] = []
        for fragment in (part.strip() for part in raw.split(";")):
            if not fragment:
                continue
            reference, fragment_collided = _resolve_fragment(fragment, candidates)
            split_collided = split_collided or fragment_collided
            if reference is None:
                resolved = []
                break
            resolved.append(reference)
        if resolved:
            return resolved, False

    task, collided = _match_title(raw, candidates)
    if task is not None:
        return [task.reference], False
    return None, collided or split_collided


def _resolve_dependencies(plan: Plan) -> None:
    numbers = {t.number for t in plan.tasks}
    for task in plan.tasks:
        if not task.dependencies:
            continue
        candidates = [t for t in plan.tasks if t.number != task.number]
        resolved: list[str] = []
        for dependency in task.dependencies:
            canonical = _CANONICAL_REF_RE.match(dependency)
            if canonical:
                if int(canonical.group("number")) not in numbers:
                    _record_unresolved(plan, task, dependency, "references a task number that is not in the plan")
                resolved.append(dependency)
                continue

            references, collided = _resolve_reference(dependency, candidates)
            if references:
                logger.debug(
                    "Resolved dependency '{}' of task {} to {}",
                    dependency,
                    task.number,
                    ", ".join(references),
                )
                resolved.extend(references)
                continue

            if collided:
                message = (
                    f"Task {task.number} dependency '{dependency}' matches several task titles equally well"
                )
                plan.dependency_collisions.append(message)
                logger.warning("Ambiguous dependency reference: {}", message)
                _record_unresolved(plan, task, dependency, "ambiguous: several task titles match")
            else:
                _record_unresolved(plan, task, dependency, "no matching task title")
            resolved.append(dependency)

        task.dependencies = list(dict.fromkeys(resolved))


def _record_unresolved(plan: Plan, task: Task, reference: str, reason: str) -> None:
    error = UnresolvedDependency(task.number, reference, reason)
    plan.unresolved_dependencies.append(
        UnresolvedDependencyRecord(task_number=error.task_number, reference=error.reference, reason=error.reason)
    )
    logger.warning("{}; task stays blocked until the plan is fixed", error)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _render_assignee(assignee: Optional[str]) -> str:
    return f"@{assignee}" if assignee else UNASSIGNED_PLACEHOLDER


def serialize_task(task: Task) -> str:
    """Render one task block; round-trips through :func:`parse_plan`."""
    lines = [
        f"### Task {task.number}: {task.title}",
        f"**Status:** {TaskStatus(task.status).value}",
        f"**Assignee:** {_render_assignee(task.assignee)}",
    ]
    if task.estimate:
        lines.append(f"**Estimate:** {task.estimate}")
    lines.append(f"**Dependencies:** {', '.join(task.dependencies) if task.dependencies else 'none'}")
    if task.files:
        lines.append("**Files:**")
        lines.extend(f"- `{path}`" for path in task.files)
    lines.append("")
    lines.append("**Description:**")
    lines.append(task.description)
    return "\n".join(lines)


def _render_plan(
    title: str,
    goal: str,
    context: str,
    tasks: Iterable[Task],
    verification: Iterable[VerificationItem],
) -> str:
    lines = [f"# {PLAN_MARKER} {title}", "", "## Goal", goal, "", "## Context", context, "", "## Tasks", ""]
    for task in tasks:
        lines.append(serialize_task(task))
        lines.extend(["", "---", ""])
    lines.append("## Verification")
    lines.extend(f"- [{'x' if item.checked else ' '}] {item.text}" for item in verification)
    return "\n".join(lines)


def serialize_plan(plan: Plan) -> str:
    """Render a whole plan body from its structured form."""
    return _render_plan(plan.title, plan.goal, plan.context, plan.tasks, plan.verification)


def generate_plan_markdown(definition: PlanDefinition) -> str:
    """Render the body of a brand-new plan issue; every task starts pending."""
    tasks = [
        Task(
            number=index,
            title=item.title,
            estimate=item.estimate,
            dependencies=[_normalize_dependency_token(dep) for dep in item.dependencies if dep.strip()],
            files=list(item.files),
            description=item.description,
        )
        for index, item in enumerate(definition.tasks, start=1)
    ]
    items = definition.verification or DEFAULT_VERIFICATION_ITEMS
    verification = [VerificationItem(checked=False, text=text) for text in items]
    return _render_plan(definition.title, definition.goal, definition.context, tasks, verification)


# ---------------------------------------------------------------------------
# Scoped patching
# ---------------------------------------------------------------------------

def _task_block_bounds(lines: list[str], task_number: int) -> Optional[tuple[int, int]]:
    """Return ``(header_index, end_index)`` for a task block, end exclusive."""
    start: Optional[int] = None
    for index, line in enumerate(lines):
        trimmed = line.strip()
        if start is None:
            header = _TASK_HEADER_RE.match(trimmed)
            if header and int(header.group("number")) == task_number:
                start = index
            continue
        if _TASK_HEADER_RE.match(trimmed) or _is_section_header(trimmed):
            return start, index
        if trimmed == "---" and _separator_ends_block(lines, index):
            return start, index
    if start is None:
        return None
    return start, len(lines)


def _rewrite_line(original: str, indent: str, content: str) -> str:
    suffix = "\r" if original.endswith("\r") else ""
    return f"{indent}{content}{suffix}"


def update_task_in_plan_body(
    body: str,
    task_number: int,
    *,
    status: Union[TaskStatus, str, Any] = UNSET,
    assignee: Union[str, None, Any] = UNSET,
) -> str:
    """Patch the Status/Assignee lines of one task block.

    Args:
        body: Current plan body (should be freshly read).
        task_number: Task whose block is patched.
        status: New status, or ``UNSET`` to leave it.
        assignee: New assignee login, ``None`` to clear, or ``UNSET`` to leave it.

    Returns:
        The patched body. Lines outside the target block are byte-identical.
    """
    if status is UNSET and assignee is UNSET:
        return body

    lines = body.split("\n")
    bounds = _task_block_bounds(lines, task_number)
    if bounds is None:
        logger.warning("Task {} not found in plan body; nothing patched", task_number)
        return body
    start, end = bounds

    status_line = None if status is UNSET else f"**Status:** {TaskStatus(status).value}"
    assignee_line = None if assignee is UNSET else f"**Assignee:** {_render_assignee(assignee)}"

    patched = list(lines)
    for index in range(start + 1, end):
        line = patched[index]
        if status_line is not None:
            match = _STATUS_LINE_RE.match(line)
            if match:
                patched[index] = _rewrite_line(line, match.group("indent"), status_line)
                status_line = None
                continue
        if assignee_line is not None:
            match = _ASSIGNEE_LINE_RE.match(line)
            if match:
                patched[index] = _rewrite_line(line, match.group("indent"), assignee_line)
                assignee_line = None

    missing = [text for text in (status_line, assignee_line) if text is not None]
    if missing:
        header = lines[start]
        suffix = "\r" if header.endswith("\r") else ""
        patched[start + 1:start + 1] = [f"{text}{suffix}" for text in missing]

    return "\n".join(patched)


# ---------------------------------------------------------------------------
# Claimability
# ---------------------------------------------------------------------------

def are_dependencies_met(task: Task, plan: Plan) -> bool:
    """Return True when every dependency of ``task`` is a completed task."""
    if not task.dependencies:
        return True
    completed = plan.completed_references()
    return all(dep in completed for dep in task.dependencies)


def is_claimable(task: Task, completed: set[str]) -> bool:
    if task.status not in CLAIMABLE_STATUSES:
        return False
    if task.assignee:
        return False
    return all(dep in completed for dep in task.dependencies)


def get_claimable_tasks(plan: Plan) -> list[Task]:
    """Return tasks that are pending/blocked, unassigned and dependency-free."""
    completed = plan.completed_references()
    return [task for task in plan.tasks if is_claimable(task, completed)]
