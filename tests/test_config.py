"""Tests for loading `.plan_coordinator/config.yaml`."""

from __future__ import annotations

from pathlib import Path

import yaml

from plan_coordinator.config import (
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
from plan_coordinator.constants import DEFAULT_CONSENSUS_DELAY_SECONDS, DEFAULT_WORKER_COMMAND
from plan_coordinator.models import RepoRef


def _write(project_dir: Path, text: str) -> None:
    state = project_dir / ".plan_coordinator"
    state.mkdir(parents=True, exist_ok=True)
    (state / "config.yaml").write_text(text)


class TestLoadConfig:
    def test_missing_file_is_empty_config(self, tmp_path):
        assert load_coordinator_config(tmp_path) == ({}, None)

    def test_invalid_yaml_is_reported(self, tmp_path):
        _write(tmp_path, "consensus: [1, 2\n")
        config, err = load_coordinator_config(tmp_path)
        assert config == {}
        assert err and "YAMLError" in err

    def test_non_mapping_is_reported(self, tmp_path):
        _write(tmp_path, "- just\n- a list\n")
        _, err = load_coordinator_config(tmp_path)
        assert "expected mapping" in err


class TestSettings:
    def test_full_config(self, tmp_path):
        _write(
            tmp_path,
            yaml.safe_dump(
                {
                    "github": {"username": "alice", "token_env": "AGENT_TOKEN"},
                    "consensus": {"delay_seconds": 2, "lost_write_retries": 3},
                    "gates": {"base_branch": "trunk", "test_command": "make test", "test_timeout_seconds": 30},
                    "worker": {"command": "codex exec -", "timeout_seconds": 90},
                    "recovery": {"stuck_task_timeout_seconds": 600, "max_task_retries": 5},
                    "reviewers": {"max": 1},
                    "repos": ["acme/widgets", "acme/gadgets"],
                    "paths": {"workrepos": "clones"},
                }
            ),
        )
        config, err = load_coordinator_config(tmp_path)
        assert err is None

        github = get_github_settings(config)
        assert (github.username, github.token_env) == ("alice", "AGENT_TOKEN")
        consensus = get_consensus_settings(config)
        assert consensus.delay_seconds == 2.0
        assert consensus.lost_write_retries == 3
        gates = get_gate_settings(config)
        assert (gates.base_branch, gates.test_command, gates.test_timeout_seconds) == ("trunk", "make test", 30)
        worker = get_worker_settings(config)
        assert (worker.command, worker.timeout_seconds) == ("codex exec -", 90)
        recovery = get_recovery_settings(config)
        assert (recovery.stuck_task_timeout_seconds, recovery.max_task_retries) == (600, 5)
        assert get_max_reviewers(config) == 1
        assert get_watched_repos(config) == [RepoRef("acme", "widgets"), RepoRef("acme", "gadgets")]
        assert get_workrepos_dir(config, tmp_path) == (tmp_path / "clones").resolve()

    def test_defaults_when_sections_missing(self, tmp_path):
        config: dict = {}
        assert get_consensus_settings(config).delay_seconds == DEFAULT_CONSENSUS_DELAY_SECONDS
        assert get_worker_settings(config).command == DEFAULT_WORKER_COMMAND
        assert get_gate_settings(config).test_command is None
        assert get_watched_repos(config) == []
        assert get_workrepos_dir(config, tmp_path) == (tmp_path / ".plan_coordinator" / ".workrepos").resolve()

    def test_invalid_values_fall_back_per_key(self):
        config = {
            "consensus": {"delay_seconds": "soon", "contest_extension_seconds": -1},
            "gates": {"test_timeout_seconds": 0},
            "recovery": "not a mapping",
        }
        consensus = get_consensus_settings(config)
        assert consensus.delay_seconds == DEFAULT_CONSENSUS_DELAY_SECONDS
        assert consensus.contest_extension_seconds == 3.0
        assert get_gate_settings(config).test_timeout_seconds == 120
        assert get_recovery_settings(config).max_task_retries == 3

    def test_malformed_repo_entries_are_skipped(self):
        assert get_watched_repos({"repos": ["acme/widgets", "widgets", "a/b/c"]}) == [RepoRef("acme", "widgets")]

    def test_token_comes_from_environment(self, monkeypatch):
        monkeypatch.setenv("AGENT_TOKEN", "t0k3n")
        assert get_github_settings({"github": {"token_env": "AGENT_TOKEN"}}).token() == "t0k3n"
        monkeypatch.delenv("AGENT_TOKEN")
        assert get_github_settings({"github": {"token_env": "AGENT_TOKEN"}}).token() is None
