"""External command execution with logging.

All host mutations (losetup, mount, parted, e2fsck, apt-get) go through
these helpers so that every command line and its exit status is logged.
"""

from __future__ import annotations

import os
import subprocess
from typing import Mapping, Sequence

from rpi_chroot.logging import get_logger
from rpi_chroot.storage.exceptions import CommandError, PrivilegeError


log = get_logger(source="command", tags=["command"])
output_log = get_logger(source="command", tags=["command", "output"])


def run_command(
    command: Sequence[str],
    *,
    check: bool = True,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run a command, capturing output.

    Raises:
        CommandError: If ``check`` is set and the command exits non-zero
    """
    command = list(command)
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
        env=dict(env) if env is not None else None,
    )
    if result.stdout:
        output_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        output_log.trace(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        raise CommandError(command, result.returncode, stderr or stdout)
    return result


def run_interactive(
    command: Sequence[str], *, env: Mapping[str, str] | None = None
) -> int:
    """Run a command attached to the caller's terminal and return its status."""
    command = list(command)
    log.debug(f"Running interactive command: {' '.join(command)}")
    result = subprocess.run(command, env=dict(env) if env is not None else None)
    log.debug(f"Interactive command exited with {result.returncode}")
    return result.returncode


def is_root() -> bool:
    return os.geteuid() == 0


def require_root(operation: str) -> None:
    """Fail with PrivilegeError unless running as root."""
    if not is_root():
        raise PrivilegeError(operation)
