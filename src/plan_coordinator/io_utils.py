"""Read and write the small durable files kept under the state directory."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load YAML and return (data, error_message).

    Parse/IO failures are reported instead of raised so callers can refuse to
    overwrite a corrupted file.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected mapping, got {type(data).__name__}"
    return data, None


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w") as handle:
        yaml.safe_dump(
            data,
            handle,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _save_data(path: Path, data: dict[str, Any]) -> None:
    _atomic_write_yaml(path, data)


def _read_text_tail(path: Path, *, max_chars: int = 4000, encoding: str = "utf-8") -> str:
    """Read the last ``max_chars`` characters of a text file without loading all of it."""
    if max_chars <= 0 or not path.exists():
        return ""
    try:
        with open(path, "rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            # Overshoot in bytes to account for multi-byte encodings.
            max_bytes = min(size, max_chars * 4)
            handle.seek(-max_bytes, os.SEEK_END)
            data = handle.read()
    except OSError:
        return ""
    text = data.decode(encoding, errors="replace")
    return text if len(text) <= max_chars else text[-max_chars:]


def _read_log_tail(path: Path, max_chars: int = 4000) -> str:
    return _read_text_tail(path, max_chars=max_chars)
