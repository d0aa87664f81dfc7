"""Build the prompt handed to the coding agent for a claimed task."""

from __future__ import annotations

from .models import Plan, RepoRef, Task


def build_task_prompt(plan: Plan, task: Task, repo: RepoRef, branch: str) -> str:
    """Render the instructions for one task of a plan."""
    if task.files:
        files_block = "Files to modify:\n" + "\n".join(f"- `{path}`" for path in task.files)
    else:
        files_block = "Files: determine them from the task description."
    deps_block = ""
    if task.dependencies:
        deps_block = f"\nCompleted dependencies: {', '.join(task.dependencies)}\n"
    return f"""You are working in a fresh clone of {repo.full_name}, on branch `{branch}`.

Plan: {plan.title}
Goal: {plan.goal}

Your task is Task {task.number}: {task.title}
{deps_block}
{files_block}

Description:
{task.description or "(no description provided)"}

Rules:
- Stay on branch `{branch}`. Do not switch to or push any other branch.
- Commit your work with clear messages. Uncommitted changes are not counted.
- Do not push, open pull requests or edit the plan issue; the coordinator does that
  after verifying your commits.
- Run the project's tests if it has any and fix failures you introduce.
- If you cannot finish, explain what is blocking you (for example a missing
  dependency) in your final output and stop.
"""
