"""Entering the chroot as a guest user.

The guest process is started through ``su --login`` inside the chroot, which
clears the inherited environment. Only the fixed allow-list (TERM) and host
variables matched by the installation's environment rules are passed on, via
``--whitelist-environment``.
"""

from __future__ import annotations

import os
import shlex
import shutil
from typing import Mapping, Sequence

from rpi_chroot.domain import ChrootInstallation, select_environment
from rpi_chroot.domain.models import DEFAULT_USER
from rpi_chroot.logging import LoggerFactory
from rpi_chroot.storage.commands import is_root, run_interactive
from rpi_chroot.storage.exceptions import PrivilegeError


log = LoggerFactory.for_shell()

FIXED_ENV_ALLOWLIST = ("TERM",)
GUEST_SU = "/bin/su"
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


def forwarded_environment(
    installation: ChrootInstallation, environ: Mapping[str, str]
) -> dict[str, str]:
    """Host variables to forward: the fixed allow-list plus matched rules."""
    forwarded = {
        name: environ[name] for name in FIXED_ENV_ALLOWLIST if name in environ
    }
    forwarded.update(select_environment(installation.env_rules, environ))
    return forwarded


def build_command(
    installation: ChrootInstallation,
    user: str,
    command: Sequence[str] | None,
    names: Sequence[str],
    *,
    escalate: bool,
) -> list[str]:
    """Assemble the ``[sudo] chroot <mnt> su --login <user>`` command line."""
    argv = [
        shutil.which("chroot") or "/usr/sbin/chroot",
        str(installation.mount_root),
        GUEST_SU,
        "--login",
        user,
    ]
    if names:
        argv.append(f"--whitelist-environment={','.join(names)}")
    if command:
        argv.extend(["-c", shlex.join(command)])
    if escalate:
        sudo = shutil.which("sudo")
        if not sudo:
            raise PrivilegeError("Entering the chroot")
        prefix = [sudo]
        if names:
            prefix.append(f"--preserve-env={','.join(names)}")
        argv = prefix + argv
    return argv


def enter(
    installation: ChrootInstallation,
    user: str = DEFAULT_USER,
    command: Sequence[str] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Run ``command`` (or an interactive login shell) as ``user`` in the guest.

    Returns:
        Exit status of the guest process

    Raises:
        PrivilegeError: Not root and sudo is unavailable
    """
    environ = os.environ if environ is None else environ
    forwarded = forwarded_environment(installation, environ)
    names = sorted(forwarded)
    argv = build_command(installation, user, command, names, escalate=not is_root())

    process_env = dict(forwarded)
    process_env["PATH"] = environ.get("PATH", DEFAULT_PATH)

    os.chdir(installation.root)
    if command:
        log.info(f"Running {shlex.join(command)} as {user} in {installation.mount_root}")
    else:
        log.info(f"Starting shell as {user} in {installation.mount_root}")
    log.debug(f"Forwarding environment: {', '.join(names) or '-'}")
    return run_interactive(argv, env=process_env)
