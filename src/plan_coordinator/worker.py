"""Run the coding agent and test commands as bounded subprocesses."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import DEFAULT_WORKER_KILL_GRACE_SECONDS, TIMEOUT_EXIT_CODE
from .io_utils import _read_log_tail
from .models import WorkerRunResult
from .utils import _now_iso

_PLACEHOLDERS = ("{prompt}", "{prompt_file}", "-")


def _stream_pipe(pipe: Any, file_path: Path) -> None:
    with open(file_path, "w") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
    pipe.close()


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


def _terminate(process: subprocess.Popen, grace_seconds: float) -> None:
    """SIGTERM the process group, then SIGKILL whatever is left after ``grace_seconds``."""
    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process {} ignored SIGTERM; killing", process.pid)
    # Children of the agent share its group and may outlive it.
    _signal_group(process, signal.SIGKILL)
    process.wait()


def _build_command(command: str, values: dict[str, str]) -> list[str]:
    try:
        return [part.format(**values) for part in shlex.split(command)]
    except KeyError as exc:
        raise ValueError(f"Unknown placeholder in worker command: {exc}") from exc


def run_coding_agent(
    command: str,
    prompt: str,
    project_dir: Path,
    run_dir: Path,
    *,
    timeout_seconds: int,
    kill_grace_seconds: int = DEFAULT_WORKER_KILL_GRACE_SECONDS,
) -> WorkerRunResult:
    """Run the coding agent in ``project_dir`` under an absolute wall-clock limit.

    The command template may reference ``{prompt}``, ``{prompt_file}``,
    ``{project_dir}`` and ``{run_dir}``; a bare ``-`` argument means the prompt is
    written to stdin. On timeout the agent's process group gets SIGTERM,
    then SIGKILL after ``kill_grace_seconds``. A timed-out run is a failure regardless of output.
    """
    run_dir.mkdir(parents=True, exist_ok=True)
    prompt_path = run_dir / "prompt.txt"
    prompt_path.write_text(prompt)

    parts = shlex.split(command)
    if not any(token in part for part in parts for token in _PLACEHOLDERS):
        raise ValueError("Worker command must include {prompt}, {prompt_file}, or '-' to accept stdin input.")
    expects_stdin = "-" in parts and "{prompt}" not in command and "{prompt_file}" not in command
    command_parts = _build_command(
        command,
        {
            "prompt": prompt,
            "prompt_file": str(prompt_path),
            "project_dir": str(project_dir),
            "run_dir": str(run_dir),
        },
    )

    stdout_path = run_dir / "stdout.log"
    stderr_path = run_dir / "stderr.log"
    start_time = time.monotonic()
    start_iso = _now_iso()
    timed_out = False

    logger.info("Starting coding agent in {} (timeout {}s)", project_dir, timeout_seconds)
    try:
        process = subprocess.Popen(
            command_parts,
            cwd=project_dir,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            start_new_session=True,
        )
    except OSError as exc:
        stderr_path.write_text(f"Failed to start worker: {exc}\n")
        return WorkerRunResult(
            command=" ".join(parts),
            stdout_path=str(stdout_path),
            stderr_path=str(stderr_path),
            start_time=start_iso,
            end_time=_now_iso(),
            runtime_seconds=0,
            exit_code=127,
            timed_out=False,
            output_tail=str(exc),
        )

    stdout_thread = threading.Thread(target=_stream_pipe, args=(process.stdout, stdout_path), daemon=True)
    stderr_thread = threading.Thread(target=_stream_pipe, args=(process.stderr, stderr_path), daemon=True)
    stdout_thread.start()
    stderr_thread.start()

    if process.stdin:
        try:
            if expects_stdin:
                process.stdin.write(prompt)
                process.stdin.flush()
            process.stdin.close()
        except BrokenPipeError:
            pass

    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("Coding agent exceeded {}s; terminating", timeout_seconds)
        _terminate(process, kill_grace_seconds)

    stdout_thread.join(timeout=5)
    stderr_thread.join(timeout=5)

    exit_code = process.returncode if process.returncode is not None else -1
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE
    tail = "\n".join(
        text for text in (_read_log_tail(stdout_path, 2000), _read_log_tail(stderr_path, 2000)) if text.strip()
    )
    return WorkerRunResult(
        command=" ".join(parts),
        stdout_path=str(stdout_path),
        stderr_path=str(stderr_path),
        start_time=start_iso,
        end_time=_now_iso(),
        runtime_seconds=int(time.monotonic() - start_time),
        exit_code=exit_code,
        timed_out=timed_out,
        output_tail=tail,
    )


def _run_command(
    command: str,
    project_dir: Path,
    log_path: Path,
    *,
    timeout_seconds: Optional[int] = None,
    env: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    merged_env = {**os.environ, **(env or {})}
    with open(log_path, "w") as handle:
        process = subprocess.Popen(
            command,
            cwd=project_dir,
            shell=True,
            stdout=handle,
            stderr=subprocess.STDOUT,
            text=True,
            env=merged_env,
            start_new_session=True,
        )
        try:
            exit_code = process.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            # Signal the whole session so test runners spawned by the shell die too.
            _signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=DEFAULT_WORKER_KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                _signal_group(process, signal.SIGKILL)
                process.wait()
            handle.write(f"\n[coordinator] Command timed out after {timeout_seconds}s\n")
            return {
                "command": command,
                "exit_code": TIMEOUT_EXIT_CODE,
                "log_path": str(log_path),
                "timed_out": True,
            }
    return {
        "command": command,
        "exit_code": exit_code,
        "log_path": str(log_path),
        "timed_out": False,
    }
