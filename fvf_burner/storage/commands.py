"""Command execution utilities with progress tracking.

Every system utility the pipeline invokes goes through this module so that
command lines, return codes and output are logged in one place and any
failure surfaces as :class:`ExternalToolError`.
"""

from __future__ import annotations

import re
import select
import shutil
import subprocess
import time
from typing import Callable, Iterable, Optional, Sequence

from fvf_burner.logging import LoggerFactory

from .exceptions import ExternalToolError, MissingToolError
from .progress import format_eta, format_progress_line

log = LoggerFactory.for_command()

ProgressCallback = Callable[[str, Optional[float]], None]


def _require_binary(command: Sequence[str]) -> None:
    if shutil.which(command[0]) is None:
        raise MissingToolError([command[0]])


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    input_text: Optional[str] = None,
    ok_returncodes: Iterable[int] = (0,),
) -> subprocess.CompletedProcess:
    """Run a command, capturing its output.

    Args:
        command: Argument list (never a shell string)
        check: Raise ExternalToolError when the return code is not accepted
        log_output: Log stdout/stderr at DEBUG level
        input_text: Text passed on stdin
        ok_returncodes: Return codes treated as success

    Raises:
        MissingToolError: If the binary is not on PATH
        ExternalToolError: If check is set and the command fails
    """
    command = [str(part) for part in command]
    _require_binary(command)
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
    )
    if result.stdout and (log_output or result.returncode not in ok_returncodes):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode not in ok_returncodes):
        log.debug(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode not in ok_returncodes:
        raise ExternalToolError(
            command,
            returncode=result.returncode,
            stderr=(result.stderr or result.stdout or ""),
        )
    return result


def run_checked_command(command: Sequence[str], input_text: Optional[str] = None) -> str:
    """Run a command and return its stdout, raising ExternalToolError on failure."""
    return run_command(command, input_text=input_text).stdout


def run_checked_with_streaming_progress(
    command: Sequence[str],
    total_bytes: Optional[int] = None,
    title: str = "WORKING",
    progress_callback: Optional[ProgressCallback] = None,
) -> subprocess.CompletedProcess:
    """Run a command with streaming progress monitoring and callback support.

    Progress is parsed from ``status=progress`` style stderr lines
    (``<n> bytes ... copied, <t> s, <rate> MB/s``). The callback receives a
    formatted line and a completion ratio (or None when unknown).
    """
    command = [str(part) for part in command]
    _require_binary(command)

    def emit_progress(line: str, ratio: Optional[float]) -> None:
        if progress_callback:
            progress_callback(line, ratio)
        else:
            log.bind(tags=["progress"]).trace(line)

    def compute_ratio(bytes_copied: Optional[int]) -> Optional[float]:
        if bytes_copied is None or not total_bytes:
            return None
        return max(0.0, min(1.0, bytes_copied / total_bytes))

    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stderr_lines: list[str] = []
    last_bytes: Optional[int] = None
    last_time: Optional[float] = None
    last_rate: Optional[float] = None
    refresh_interval = 1.0
    while True:
        ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
        now = time.time()
        line = None
        if ready:
            line = process.stderr.readline()
        if line:
            stderr_lines.append(line)
            # dd rewrites its progress line with carriage returns
            for chunk in line.replace("\r", "\n").splitlines():
                bytes_match = re.search(r"(\d+)\s+bytes", chunk)
                if not bytes_match:
                    continue
                bytes_copied = int(bytes_match.group(1))
                rate = None
                if last_bytes is not None and last_time is not None:
                    delta_bytes = bytes_copied - last_bytes
                    delta_time = now - last_time
                    if delta_bytes >= 0 and delta_time > 0:
                        rate = delta_bytes / delta_time
                rate = rate or last_rate
                eta = None
                if rate and total_bytes and bytes_copied <= total_bytes:
                    eta = format_eta((total_bytes - bytes_copied) / rate)
                last_bytes = bytes_copied
                last_time = now
                last_rate = rate
                emit_progress(
                    format_progress_line(title, bytes_copied, total_bytes, rate, eta),
                    compute_ratio(bytes_copied),
                )
        if process.poll() is not None and not line:
            break
    remaining_stderr = process.stderr.read() if process.stderr else ""
    if remaining_stderr:
        stderr_lines.append(remaining_stderr)
    stdout_data = process.stdout.read() if process.stdout else ""
    process.wait()
    stderr_output = "".join(stderr_lines)
    log.debug(f"Command completed with return code {process.returncode}")
    if process.returncode != 0:
        raise ExternalToolError(
            command,
            returncode=process.returncode,
            stderr=stderr_output.strip().splitlines()[-1] if stderr_output.strip() else "",
        )
    emit_progress(f"{title} complete", 1.0)
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )


__all__ = [
    "run_command",
    "run_checked_command",
    "run_checked_with_streaming_progress",
]
