"""External command execution for the storage adapters.

Every privileged tool (losetup, parted, cryptsetup, ...) is invoked through
``run_command`` so that failures surface as ``CommandError`` and every
invocation is logged. Secrets are passed on stdin or through the child's
environment, never in argv, so the command line is always safe to log.

Adapters accept a ``runner`` callable with the ``run_command`` signature,
which lets tests substitute a recorder without touching subprocess.
"""

from __future__ import annotations

import os
import subprocess
from typing import Callable, Mapping, Optional, Sequence

from rawdisk_encryptor.logging import LoggerFactory, ThrottledLogger, get_logger

from .exceptions import CommandError
from .progress import format_progress_line, parse_dd_progress

log = get_logger(source="command", tags=["command"])

CommandRunner = Callable[..., subprocess.CompletedProcess]
ProgressCallback = Callable[[int, Optional[int], Optional[float]], None]


def privileged(command: Sequence[str], preserve_env: Sequence[str] = ()) -> list[str]:
    """Prefix ``command`` with sudo unless already running as root.

    ``preserve_env`` names variables sudo must pass through to the child.
    """
    if os.geteuid() == 0:
        return list(command)
    prefix = ["sudo"]
    if preserve_env:
        prefix.append(f"--preserve-env={','.join(preserve_env)}")
    return [*prefix, *command]


def run_command(
    command: Sequence[str],
    *,
    check: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    log_output: bool = True,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    """Run ``command`` to completion and return the CompletedProcess.

    ``input_text`` and ``env`` values are never logged. With ``check`` a
    non-zero exit raises CommandError; a timeout or a missing executable
    raises CommandError regardless of ``check``.
    """
    command = list(command)
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    child_env = None
    if env:
        child_env = {**os.environ, **env}
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            env=child_env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        raise CommandError(command, None, f"timed out after {timeout}s") from error
    except FileNotFoundError as error:
        raise CommandError(command, 127, str(error)) from error
    if result.stdout and (log_output or result.returncode != 0):
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.trace(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stderr, result.stdout)
    return result


def stop_process(process: subprocess.Popen, timeout: float = 5.0) -> None:
    """Terminate ``process`` if it is still running, killing it after ``timeout``."""
    if process.poll() is not None:
        return
    log.warning(f"Stopping child process {process.pid}")
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_with_progress(
    command: Sequence[str],
    *,
    total_bytes: Optional[int] = None,
    label: str = "copy",
    progress_callback: Optional[ProgressCallback] = None,
) -> subprocess.CompletedProcess:
    """Run a dd-style command, following its ``status=progress`` stderr.

    Progress is logged (throttled) and forwarded to ``progress_callback`` as
    ``(bytes_copied, total_bytes, bytes_per_second)``.
    """
    command = list(command)
    copy_log = LoggerFactory.for_copy()
    throttled = ThrottledLogger(copy_log, interval_seconds=5.0)
    log.debug(f"Running command: {' '.join(command)}")
    # Text mode splits dd's carriage-return updates into separate lines.
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stderr_lines = []
    last_bytes = None
    try:
        for line in process.stderr:
            stderr_lines.append(line)
            bytes_copied, rate = parse_dd_progress(line)
            if bytes_copied is None:
                continue
            last_bytes = bytes_copied
            throttled.debug(label, format_progress_line(label, bytes_copied, total_bytes, rate))
            if progress_callback:
                progress_callback(bytes_copied, total_bytes, rate)
        stdout_data = process.stdout.read() if process.stdout else ""
        process.wait()
    finally:
        stop_process(process)
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        raise CommandError(command, process.returncode, stderr_output, stdout_data)
    if last_bytes is not None:
        copy_log.debug(format_progress_line(label, last_bytes, total_bytes))
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )
