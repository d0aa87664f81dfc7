"""Provide small git helpers used by the gate pipeline and recovery."""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import BRANCH_SLUG_MAX_CHARS
from .models import GitVerification
from .utils import slugify

_TASK_BRANCH_RE = re.compile(r"^task-(?P<number>\d+)-")
_LEGACY_TASK_BRANCH_RE = re.compile(r"^task/(?P<number>\d+)$")


# ---------------------------------------------------------------------------
# Branch naming
# ---------------------------------------------------------------------------

def task_branch_prefix(task_number: int) -> str:
    return f"task-{int(task_number)}-"


def task_branch_name(task_number: int, title: str) -> str:
    """Return the canonical feature branch: ``task-<N>-<slug>`` with a capped slug."""
    return f"{task_branch_prefix(task_number)}{slugify(title, BRANCH_SLUG_MAX_CHARS)}"


def candidate_branch_names(task_number: int, title: str) -> list[str]:
    """Canonical name first, then names older peers may have pushed."""
    names = [
        task_branch_name(task_number, title),
        f"{task_branch_prefix(task_number)}{slugify(title)}",
        f"task/{int(task_number)}",
    ]
    return list(dict.fromkeys(names))


def task_number_from_branch(ref: str) -> Optional[int]:
    """Extract the task number from a ``task-<N>-...`` or ``task/<N>`` ref."""
    name = (ref or "").strip()
    if name.startswith("refs/heads/"):
        name = name[len("refs/heads/"):]
    match = _TASK_BRANCH_RE.match(name) or _LEGACY_TASK_BRANCH_RE.match(name)
    if not match:
        return None
    return int(match.group("number"))


# ---------------------------------------------------------------------------
# Local repository helpers
# ---------------------------------------------------------------------------

def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )


def _git_output(result: subprocess.CompletedProcess) -> str:
    return "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())


def _git_clone(url: str, dest: Path) -> tuple[bool, str]:
    """Fresh-clone ``url`` into ``dest``, removing any previous checkout first."""
    if dest.exists():
        logger.info("Removing existing workspace for fresh clone: {}", dest)
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    result = subprocess.run(
        ["git", "clone", url, str(dest)],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return False, _redact(_git_output(result), url)
    return True, ""


def _redact(text: str, url: str) -> str:
    """Strip credentials embedded in a clone URL from git output."""
    match = re.match(r"^(?P<scheme>https?://)(?P<creds>[^@/]+)@", url)
    if not match:
        return text
    return text.replace(match.group("creds"), "***")


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    return _git(project_dir, "show-ref", "--verify", f"refs/heads/{branch}").returncode == 0


def _git_create_branch(project_dir: Path, branch: str) -> tuple[bool, str]:
    if _git_current_branch(project_dir) == branch:
        return True, ""
    if _git_branch_exists(project_dir, branch):
        result = _git(project_dir, "checkout", branch)
    else:
        result = _git(project_dir, "checkout", "-b", branch)
    if result.returncode != 0:
        return False, _git_output(result)
    logger.info("On feature branch {} in {}", branch, project_dir)
    return True, ""


def _git_checkout_remote_branch(project_dir: Path, branch: str) -> tuple[bool, str]:
    fetch = _git(project_dir, "fetch", "origin", branch)
    if fetch.returncode != 0:
        return False, _git_output(fetch)
    result = _git(project_dir, "checkout", "-B", branch, f"origin/{branch}")
    if result.returncode != 0:
        return False, _git_output(result)
    return True, ""


def _git_has_changes(project_dir: Path) -> bool:
    result = _git(project_dir, "status", "--porcelain")
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_commit_all(project_dir: Path, message: str) -> bool:
    """Commit any uncommitted work the coding agent left behind."""
    if not _git_has_changes(project_dir):
        return False
    add = _git(project_dir, "add", "-A")
    if add.returncode != 0:
        logger.warning("git add failed: {}", _git_output(add))
        return False
    commit = _git(project_dir, "commit", "-m", message)
    if commit.returncode != 0:
        logger.warning("git commit failed: {}", _git_output(commit))
        return False
    return True


def _resolve_base_ref(project_dir: Path, base_branch: str) -> str:
    for ref in (base_branch, f"origin/{base_branch}"):
        if _git(project_dir, "rev-parse", "--verify", "--quiet", ref).returncode == 0:
            return ref
    return base_branch


def verify_git_changes(project_dir: Path, base_branch: str) -> GitVerification:
    """Count commits beyond ``base_branch`` and collect the diff against it."""
    verification = GitVerification()
    base = _resolve_base_ref(project_dir, base_branch)

    log = _git(project_dir, "log", f"{base}..HEAD", "--oneline")
    if log.returncode == 0:
        commits = [line for line in log.stdout.splitlines() if line.strip()]
        verification.commit_count = len(commits)
        verification.has_commits = bool(commits)

    names = _git(project_dir, "diff", "--name-only", f"{base}...HEAD")
    if names.returncode == 0:
        verification.files_changed = [line.strip() for line in names.stdout.splitlines() if line.strip()]
        verification.has_changes = bool(verification.files_changed)

    shortstat = _git(project_dir, "diff", "--shortstat", f"{base}...HEAD")
    if shortstat.returncode == 0:
        verification.diff_stat = shortstat.stdout.strip()

    logger.info(
        "Git verification: {} commit(s), {} file(s) changed",
        verification.commit_count,
        len(verification.files_changed),
    )
    return verification


def _git_push(project_dir: Path, branch: str) -> tuple[bool, str]:
    result = _git(project_dir, "push", "-u", "origin", branch)
    if result.returncode != 0:
        return False, _git_output(result)
    return True, ""


# ---------------------------------------------------------------------------
# Remote helpers (local bare repositories in tests and dry runs)
# ---------------------------------------------------------------------------

def _git_remote_heads(url: str) -> list[str]:
    result = subprocess.run(
        ["git", "ls-remote", "--heads", url],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        logger.warning("git ls-remote failed for {}: {}", url, _git_output(result))
        return []
    heads = []
    for line in result.stdout.splitlines():
        _, _, ref = line.partition("\t")
        if ref.startswith("refs/heads/"):
            heads.append(ref[len("refs/heads/"):])
    return heads


def _git_delete_remote_branch(bare_repo: str, branch: str) -> None:
    result = _git(Path(bare_repo), "update-ref", "-d", f"refs/heads/{branch}")
    if result.returncode != 0:
        logger.warning("Unable to delete {} in {}: {}", branch, bare_repo, _git_output(result))
