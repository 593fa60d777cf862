"""Domain models for chroot installations.

This package contains type-safe objects shared by the storage and service
layers: the installation itself, its disk image, loop binding, mount tree and
persisted state.
"""

from __future__ import annotations

from .models import (
    ChrootInstallation,
    ChrootState,
    DetachPolicy,
    DiskImage,
    EnvRule,
    LoopBinding,
    MountSpec,
    MountTree,
    ResizeStage,
    parse_env_rules,
    select_environment,
)


__all__ = [
    "ChrootInstallation",
    "ChrootState",
    "DetachPolicy",
    "DiskImage",
    "EnvRule",
    "LoopBinding",
    "MountSpec",
    "MountTree",
    "ResizeStage",
    "parse_env_rules",
    "select_environment",
]
