"""Generated management utility.

The utility is a small executable script placed in the installation
directory. It is bound to that directory and forwards its arguments to
:func:`rpi_chroot.main.manage_main`; it carries no state of its own.
"""

from __future__ import annotations

import stat
import sys
from pathlib import Path

from rpi_chroot.__version__ import __version__
from rpi_chroot.domain import ChrootInstallation
from rpi_chroot.logging import LoggerFactory


log = LoggerFactory.for_system()

TEMPLATE = '''#!{python}
# Generated by rpi-chroot {version}.
# Usage: {name} addsize <megabytes> | mount | umount | status | enter [-u <user>] [command...]
import sys

from rpi_chroot.main import manage_main

sys.exit(manage_main({root!r}, sys.argv[1:], {config!r}))
'''


def recorded_config(installation: ChrootInstallation) -> dict[str, str]:
    """Install-time settings carried by the utility."""
    return {
        "arch": installation.arch,
        "env": " ".join(str(rule) for rule in installation.env_rules),
        "user": installation.user,
        "image_pattern": installation.image_pattern,
    }


def render_utility(installation: ChrootInstallation, python: str | None = None) -> str:
    return TEMPLATE.format(
        python=python or sys.executable,
        version=__version__,
        name=installation.utility_path.name,
        root=str(installation.root),
        config=recorded_config(installation),
    )


def write_utility(installation: ChrootInstallation, python: str | None = None) -> Path:
    """Write the management utility and make it executable."""
    path = installation.utility_path
    path.write_text(render_utility(installation, python), encoding="utf-8")
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    log.info(f"Wrote management utility {path}")
    return path
