"""Provide utility helpers for timestamps and identifiers."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Optional

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_DASH_RE = re.compile(r"[\s_/,:;.-]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(text: Optional[str], max_chars: Optional[int] = None) -> str:
    """Build a lowercase, dash-separated identifier safe for branch names.

    Args:
        text: Free text such as a task title.
        max_chars: Optional cap on the slug length; trailing dashes are trimmed.

    Returns:
        The slug, or ``"untitled"`` when nothing usable remains.
    """
    if not text or not str(text).strip():
        return "untitled"
    normalized = unicodedata.normalize("NFKD", str(text)).encode("ascii", "ignore").decode("ascii")
    lowered = _SLUG_DASH_RE.sub("-", normalized.lower())
    slug = _SLUG_STRIP_RE.sub("", lowered)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    if max_chars is not None and len(slug) > max_chars:
        slug = slug[:max_chars].rstrip("-")
    return slug or "untitled"


def task_key(workspace: str, issue_number: int, task_number: int) -> str:
    """Return the process-local key for a task: ``owner/repo#issue/task-N``."""
    return f"{workspace}#{issue_number}/task-{task_number}"
