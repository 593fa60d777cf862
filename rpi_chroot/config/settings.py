"""Installation configuration from environment variables."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

from rpi_chroot.domain import (
    ChrootInstallation,
    DetachPolicy,
    EnvRule,
    parse_env_rules,
)
from rpi_chroot.domain.models import DEFAULT_IMAGE_PATTERN, DEFAULT_USER


ENV_PREFIX = "RPI_CHROOT_"

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_ARCH = "armhf"
DEFAULT_IMAGE_URL = (
    "https://downloads.raspberrypi.org/raspbian_lite/images/"
    "raspbian_lite-2020-02-14/2020-02-13-raspbian-buster-lite.zip"
)
DEFAULT_DOWNLOAD_TIMEOUT = 30.0
DEFAULT_DOWNLOAD_BACKEND = "aiohttp"
DEFAULT_DETACH_POLICY = DetachPolicy.SCOPED

DEFAULT_SETTINGS: dict[str, Any] = {
    "ARCH": DEFAULT_ARCH,
    "IMAGE_URL": DEFAULT_IMAGE_URL,
    "DIR": None,
    "ENV": "",
    "PACKAGES": "",
    "ADD_SIZE_MB": 0,
    "TMPDIR": None,
    "IMAGE_PATTERN": DEFAULT_IMAGE_PATTERN,
    "USER": DEFAULT_USER,
    "LOOP_DETACH_POLICY": DEFAULT_DETACH_POLICY.value,
    "DOWNLOAD_BACKEND": DEFAULT_DOWNLOAD_BACKEND,
    "DOWNLOAD_TIMEOUT": DEFAULT_DOWNLOAD_TIMEOUT,
}


def get_setting(key: str, environ: Mapping[str, str] | None = None) -> Any:
    """Read ``RPI_CHROOT_<key>`` falling back to the default."""
    environ = os.environ if environ is None else environ
    value = environ.get(ENV_PREFIX + key)
    if value is None or value == "":
        return DEFAULT_SETTINGS.get(key)
    return value


def get_int(key: str, environ: Mapping[str, str] | None = None) -> int:
    value = get_setting(key, environ)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{ENV_PREFIX}{key} must be an integer, got {value!r}") from exc


def get_float(key: str, environ: Mapping[str, str] | None = None) -> float:
    value = get_setting(key, environ)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{ENV_PREFIX}{key} must be a number, got {value!r}") from exc


def get_detach_policy(environ: Mapping[str, str] | None = None) -> DetachPolicy:
    value = str(get_setting("LOOP_DETACH_POLICY", environ)).lower()
    try:
        return DetachPolicy(value)
    except ValueError as exc:
        choices = ", ".join(policy.value for policy in DetachPolicy)
        raise ValueError(
            f"{ENV_PREFIX}LOOP_DETACH_POLICY must be one of {choices}, got {value!r}"
        ) from exc


def load_installation(
    environ: Mapping[str, str] | None = None, **overrides: Any
) -> ChrootInstallation:
    """Build a ChrootInstallation from the environment.

    Keyword overrides (e.g. from CLI flags) win over environment values when
    they are not None.
    """
    values = {key: get_setting(key, environ) for key in DEFAULT_SETTINGS}
    values["ADD_SIZE_MB"] = get_int("ADD_SIZE_MB", environ)
    for key, value in overrides.items():
        if value is not None:
            values[key.upper()] = value

    root = Path(values["DIR"] or os.getcwd()).expanduser().resolve()
    scratch = Path(values["TMPDIR"] or tempfile.gettempdir()).expanduser()
    packages = values["PACKAGES"]
    if isinstance(packages, str):
        packages = packages.split()
    env_rules = values["ENV"] or ""
    if isinstance(env_rules, str):
        env_rules = parse_env_rules(env_rules)
    else:
        env_rules = tuple(
            rule if isinstance(rule, EnvRule) else EnvRule.parse(rule)
            for rule in env_rules
        )
    add_size_mb = int(values["ADD_SIZE_MB"])
    if add_size_mb < 0:
        raise ValueError("ADD_SIZE_MB cannot be negative")

    return ChrootInstallation(
        root=root,
        arch=str(values["ARCH"]),
        image_source=values["IMAGE_URL"],
        packages=tuple(packages),
        env_rules=tuple(env_rules),
        add_size_mb=add_size_mb,
        scratch_dir=scratch,
        image_pattern=str(values["IMAGE_PATTERN"]),
        user=str(values["USER"]),
    )
