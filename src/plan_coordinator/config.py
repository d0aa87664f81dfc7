"""Load optional coordinator configuration from `.plan_coordinator/config.yaml`."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_BASE_BRANCH,
    DEFAULT_CONSENSUS_CONTEST_EXTENSION_SECONDS,
    DEFAULT_CONSENSUS_DELAY_SECONDS,
    DEFAULT_CONSENSUS_PROPAGATION_EXTENSION_SECONDS,
    DEFAULT_GITHUB_API_URL,
    DEFAULT_GITHUB_TOKEN_ENV,
    DEFAULT_LOST_WRITE_RETRIES,
    DEFAULT_MAX_REVIEWERS,
    DEFAULT_MAX_TASK_RETRIES,
    DEFAULT_STUCK_TASK_TIMEOUT_SECONDS,
    DEFAULT_TEST_OUTPUT_CHARS,
    DEFAULT_TEST_TIMEOUT_SECONDS,
    DEFAULT_WORKER_COMMAND,
    DEFAULT_WORKER_KILL_GRACE_SECONDS,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
    WORKREPOS_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .models import RepoRef


@dataclass(frozen=True)
class GitHubSettings:
    username: Optional[str] = None
    token_env: str = DEFAULT_GITHUB_TOKEN_ENV
    api_url: str = DEFAULT_GITHUB_API_URL

    def token(self) -> Optional[str]:
        return os.environ.get(self.token_env) or None


@dataclass(frozen=True)
class ConsensusSettings:
    """Timings of the two-phase claim verification."""

    delay_seconds: float = DEFAULT_CONSENSUS_DELAY_SECONDS
    contest_extension_seconds: float = DEFAULT_CONSENSUS_CONTEST_EXTENSION_SECONDS
    propagation_extension_seconds: float = DEFAULT_CONSENSUS_PROPAGATION_EXTENSION_SECONDS
    lost_write_retries: int = DEFAULT_LOST_WRITE_RETRIES


@dataclass(frozen=True)
class GateSettings:
    base_branch: str = DEFAULT_BASE_BRANCH
    test_command: Optional[str] = None
    test_timeout_seconds: int = DEFAULT_TEST_TIMEOUT_SECONDS
    test_output_chars: int = DEFAULT_TEST_OUTPUT_CHARS


@dataclass(frozen=True)
class WorkerSettings:
    command: str = DEFAULT_WORKER_COMMAND
    timeout_seconds: int = DEFAULT_WORKER_TIMEOUT_SECONDS
    kill_grace_seconds: int = DEFAULT_WORKER_KILL_GRACE_SECONDS


@dataclass(frozen=True)
class RecoverySettings:
    stuck_task_timeout_seconds: int = DEFAULT_STUCK_TASK_TIMEOUT_SECONDS
    max_task_retries: int = DEFAULT_MAX_TASK_RETRIES


def load_coordinator_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional coordinator config file.

    Args:
        project_dir: Directory holding the `.plan_coordinator` state directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = _get_nested(config, name)
    return raw if isinstance(raw, dict) else {}


def _number(raw: Any, default: float, *, key: str, minimum: float = 0) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid config value for {}: {!r}", key, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range config value for {}: {!r}", key, raw)
        return default
    return value


def _text(raw: Any, default: Optional[str]) -> Optional[str]:
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return default


def get_github_settings(config: dict[str, Any]) -> GitHubSettings:
    raw = _section(config, "github")
    return GitHubSettings(
        username=_text(raw.get("username"), None),
        token_env=_text(raw.get("token_env"), DEFAULT_GITHUB_TOKEN_ENV) or DEFAULT_GITHUB_TOKEN_ENV,
        api_url=_text(raw.get("api_url"), DEFAULT_GITHUB_API_URL) or DEFAULT_GITHUB_API_URL,
    )


def get_consensus_settings(config: dict[str, Any]) -> ConsensusSettings:
    """Extract claim-consensus timings, falling back to defaults per key."""
    raw = _section(config, "consensus")
    return ConsensusSettings(
        delay_seconds=_number(raw.get("delay_seconds"), DEFAULT_CONSENSUS_DELAY_SECONDS, key="consensus.delay_seconds"),
        contest_extension_seconds=_number(
            raw.get("contest_extension_seconds"),
            DEFAULT_CONSENSUS_CONTEST_EXTENSION_SECONDS,
            key="consensus.contest_extension_seconds",
        ),
        propagation_extension_seconds=_number(
            raw.get("propagation_extension_seconds"),
            DEFAULT_CONSENSUS_PROPAGATION_EXTENSION_SECONDS,
            key="consensus.propagation_extension_seconds",
        ),
        lost_write_retries=int(
            _number(raw.get("lost_write_retries"), DEFAULT_LOST_WRITE_RETRIES, key="consensus.lost_write_retries")
        ),
    )


def get_gate_settings(config: dict[str, Any]) -> GateSettings:
    raw = _section(config, "gates")
    return GateSettings(
        base_branch=_text(raw.get("base_branch"), DEFAULT_BASE_BRANCH) or DEFAULT_BASE_BRANCH,
        test_command=_text(raw.get("test_command"), None),
        test_timeout_seconds=int(
            _number(raw.get("test_timeout_seconds"), DEFAULT_TEST_TIMEOUT_SECONDS, key="gates.test_timeout_seconds", minimum=1)
        ),
        test_output_chars=int(
            _number(raw.get("test_output_chars"), DEFAULT_TEST_OUTPUT_CHARS, key="gates.test_output_chars", minimum=1)
        ),
    )


def get_worker_settings(config: dict[str, Any]) -> WorkerSettings:
    raw = _section(config, "worker")
    return WorkerSettings(
        command=_text(raw.get("command"), DEFAULT_WORKER_COMMAND) or DEFAULT_WORKER_COMMAND,
        timeout_seconds=int(
            _number(raw.get("timeout_seconds"), DEFAULT_WORKER_TIMEOUT_SECONDS, key="worker.timeout_seconds", minimum=1)
        ),
        kill_grace_seconds=int(
            _number(raw.get("kill_grace_seconds"), DEFAULT_WORKER_KILL_GRACE_SECONDS, key="worker.kill_grace_seconds")
        ),
    )


def get_recovery_settings(config: dict[str, Any]) -> RecoverySettings:
    raw = _section(config, "recovery")
    return RecoverySettings(
        stuck_task_timeout_seconds=int(
            _number(
                raw.get("stuck_task_timeout_seconds"),
                DEFAULT_STUCK_TASK_TIMEOUT_SECONDS,
                key="recovery.stuck_task_timeout_seconds",
                minimum=1,
            )
        ),
        max_task_retries=int(
            _number(raw.get("max_task_retries"), DEFAULT_MAX_TASK_RETRIES, key="recovery.max_task_retries", minimum=1)
        ),
    )


def get_max_reviewers(config: dict[str, Any]) -> int:
    raw = _section(config, "reviewers")
    return int(_number(raw.get("max"), DEFAULT_MAX_REVIEWERS, key="reviewers.max"))


def get_watched_repos(config: dict[str, Any]) -> list[RepoRef]:
    """Return the `owner/repo` entries under `repos`, skipping malformed ones."""
    raw = _get_nested(config, "repos")
    if not isinstance(raw, list):
        return []
    repos: list[RepoRef] = []
    for entry in raw:
        try:
            repos.append(RepoRef.parse(str(entry)))
        except ValueError as exc:
            logger.warning("Skipping watched repo entry: {}", exc)
    return repos


def get_workrepos_dir(config: dict[str, Any], project_dir: Path) -> Path:
    raw = _text(_get_nested(config, "paths", "workrepos"), None)
    if raw:
        path = Path(raw).expanduser()
        return path if path.is_absolute() else (project_dir / path).resolve()
    return (project_dir / STATE_DIR_NAME / WORKREPOS_DIR_NAME).resolve()
