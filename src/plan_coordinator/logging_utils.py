"""Format gate failures and test logs for issue comments."""

import json
import re
from typing import Any

from .constants import DEFAULT_TEST_OUTPUT_CHARS

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_FAILED_NODEID_RE = re.compile(r"^FAILED\s+(?P<nodeid>\S+)", re.M)
_ASSERT_RE = re.compile(r"^(E\s+.+)$", re.M)


def summarize_test_output(output: str, max_chars: int = DEFAULT_TEST_OUTPUT_CHARS) -> str:
    """Return the tail of a test log with ANSI colour codes stripped.

    Args:
        output: Raw combined stdout/stderr of the test command.
        max_chars: Maximum characters kept (from the end of the log).

    Returns:
        The trimmed excerpt, prefixed with a note when it was truncated.
    """
    cleaned = _ANSI_RE.sub("", output or "").strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return "... (truncated)\n" + cleaned[-max_chars:]


def summarize_pytest_failures(log_text: str, max_failed: int = 5) -> dict[str, object]:
    if not log_text:
        return {"failed": [], "first_error": None}
    failed: list[str] = []
    for match in _FAILED_NODEID_RE.finditer(log_text):
        nodeid = match.group("nodeid").strip()
        if nodeid and nodeid not in failed:
            failed.append(nodeid)
        if len(failed) >= max_failed:
            break
    m_err = _ASSERT_RE.search(log_text)
    return {"failed": failed, "first_error": m_err.group(1).strip() if m_err else None}


def format_gate_failure(label: str, reason: str, detail: str | None = None) -> str:
    """Render a gate failure as a markdown comment body."""
    lines = [f"**{label} failed:** {reason}"]
    if detail:
        lines.extend(["", "```", detail.strip(), "```"])
    return "\n".join(lines)


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
