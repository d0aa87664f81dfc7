"""Shared fixtures: git identity, local bare remotes and sample plans."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from plan_coordinator.models import RepoRef  # noqa: E402

SAMPLE_PLAN = """# [PLAN] Widget parser

## Goal
Parse widget files into structured records.

## Context
Widgets are stored as plain text.

## Tasks

### Task 1: Wire the parser
**Status:** pending
**Assignee:** (empty if unclaimed)
**Estimate:** 2h
**Dependencies:** none
**Files:**
- `widget/parser.py`

**Description:**
Implement the widget parser.

---

### Task 2: Add the CLI command
**Status:** pending
**Assignee:** (empty if unclaimed)
**Dependencies:** Wire the parser
**Files:**
- `widget/cli.py`

**Description:**
Expose the parser on the command line.

---

### Task 3: Document the format
**Status:** pending
**Assignee:** (empty if unclaimed)
**Dependencies:** Task 1, Task 2

**Description:**
Write docs/format.md.

---

## Verification
- [ ] All tasks completed
- [x] Tests pass
"""


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Agent")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "agent@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Agent")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "agent@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture()
def repo() -> RepoRef:
    return RepoRef("acme", "widgets")


@pytest.fixture()
def sample_plan_body() -> str:
    return SAMPLE_PLAN


@pytest.fixture()
def bare_remote(tmp_path: Path) -> Path:
    """A bare repository with one commit on ``main``, usable as ``origin``."""
    remote = tmp_path / "remote.git"
    run_git(tmp_path, "init", "--bare", "-b", "main", str(remote))
    seed = tmp_path / "seed"
    run_git(tmp_path, "clone", str(remote), str(seed))
    run_git(seed, "checkout", "-B", "main")
    (seed / "README.md").write_text("# widgets\n")
    run_git(seed, "add", "README.md")
    run_git(seed, "commit", "-m", "initial commit")
    run_git(seed, "push", "origin", "main")
    return remote


@pytest.fixture()
def clone_of(tmp_path: Path) -> Callable[[Path, str], Path]:
    def _clone(remote: Path, name: str = "work") -> Path:
        dest = tmp_path / name
        run_git(tmp_path, "clone", str(remote), str(dest))
        return dest

    return _clone
