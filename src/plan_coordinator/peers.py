"""Remember fellow agents and pick pull request reviewers from them."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional

from filelock import FileLock
from loguru import logger

from .constants import DEFAULT_MAX_REVIEWERS, PEERS_FILE, PEERS_LOCK_FILE
from .errors import SubstrateError
from .io_utils import _load_data_with_error, _save_data
from .models import RepoRef
from .substrate import Substrate
from .utils import _now_iso


class PeerRegistry:
    """YAML-backed registry of peer logins under the state directory.

    Concurrent agents on the same machine share the file, so every
    read-modify-write happens under a ``filelock.FileLock``.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / PEERS_FILE
        self.lock = FileLock(str(state_dir / PEERS_LOCK_FILE))

    def _load(self) -> dict[str, Any]:
        data, err = _load_data_with_error(self.path, {})
        if err:
            logger.warning("Ignoring unreadable peer registry: {}", err)
            return {"peers": {}}
        peers = data.get("peers")
        if not isinstance(peers, dict):
            data["peers"] = {}
        return data

    def register_peer(self, login: str, source: str, context: Optional[str] = None) -> None:
        """Record ``login`` as a peer, updating ``last_seen`` when already known."""
        login = (login or "").strip().lstrip("@")
        if not login:
            return
        key = login.lower()
        now = _now_iso()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self.lock:
            data = self._load()
            entry = data["peers"].get(key)
            if entry is None:
                entry = {"login": login, "source": source, "first_seen": now, "contexts": []}
                data["peers"][key] = entry
                logger.info("Discovered new peer {} via {}", login, source)
            entry["last_seen"] = now
            contexts = entry.setdefault("contexts", [])
            if context and context not in contexts:
                contexts.append(context)
            _save_data(self.path, data)

    def peer_logins(self) -> list[str]:
        if not self.path.exists():
            return []
        with self.lock:
            data = self._load()
        return [str(entry.get("login") or key) for key, entry in data["peers"].items() if isinstance(entry, dict)]

    def is_peer(self, login: str) -> bool:
        return (login or "").lower() in {peer.lower() for peer in self.peer_logins()}


def select_reviewers(
    registry: PeerRegistry,
    substrate: Substrate,
    repo: RepoRef,
    *,
    exclude: Iterable[Optional[str]],
    max_reviewers: int = DEFAULT_MAX_REVIEWERS,
) -> list[str]:
    """Choose up to ``max_reviewers`` peers, falling back to collaborators with push access.

    Collaborators picked through the fallback are registered as peers so later
    pull requests find them directly.
    """
    excluded = {login.lower() for login in exclude if login}
    chosen: list[str] = []

    def take(candidates: Iterable[str]) -> None:
        for login in candidates:
            if len(chosen) >= max_reviewers:
                return
            if login.lower() in excluded or login.lower() in {c.lower() for c in chosen}:
                continue
            chosen.append(login)

    take(registry.peer_logins())
    if chosen:
        return chosen

    try:
        collaborators = substrate.list_collaborators(repo)
    except SubstrateError as exc:
        logger.warning("Could not list collaborators of {}: {}", repo, exc)
        return chosen
    take(c.login for c in collaborators if c.can_push)
    for login in chosen:
        registry.register_peer(login, "collaborator", repo.full_name)
    return chosen
