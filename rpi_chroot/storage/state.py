"""Persisted per-installation state.

One JSON record per installation directory holding the bound loop device and
the resize progress. Writes are atomic (temp file + rename) and serialized with
an exclusive ``fcntl`` lock on a sibling ``.lock`` file.

Usage:
    store = StateStore(installation.state_path, installation.root)
    with store.update() as state:
        state.loop_device = "/dev/loop3"
"""

from __future__ import annotations

import fcntl
import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from rpi_chroot.domain import ChrootState, ResizeStage
from rpi_chroot.logging import LoggerFactory


log = LoggerFactory.for_system()


class StateStore:
    """JSON-backed state record for a single installation."""

    def __init__(self, path: Path, root: Path):
        self.path = Path(path)
        self.root = Path(root)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def load(self) -> ChrootState:
        if not self.path.exists():
            return ChrootState(root=str(self.root))
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning(f"Ignoring unreadable state file {self.path}: {exc}")
            return ChrootState(root=str(self.root))
        if not isinstance(data, dict):
            return ChrootState(root=str(self.root))
        return ChrootState.from_dict(data, str(self.root))

    def save(self, state: ChrootState) -> None:
        state.updated_at = datetime.now(timezone.utc).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(
            json.dumps(state.to_dict(), indent=2, sort_keys=True), encoding="utf-8"
        )
        os.replace(tmp_path, self.path)

    @contextmanager
    def locked(self) -> Generator[None, None, None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    @contextmanager
    def update(self) -> Generator[ChrootState, None, None]:
        """Load, yield for modification, then save under the lock."""
        with self.locked():
            state = self.load()
            yield state
            self.save(state)

    def get_loop_device(self) -> str | None:
        return self.load().loop_device

    def set_loop_device(self, device: str | None) -> None:
        with self.update() as state:
            state.loop_device = device
        log.debug(f"Recorded loop device for {self.root}: {device or '-'}")

    def get_resize_stage(self) -> ResizeStage:
        return self.load().resize_stage

    def set_resize_stage(self, stage: ResizeStage) -> None:
        with self.update() as state:
            state.resize_stage = stage
        log.debug(f"Recorded resize stage for {self.root}: {stage.value}")

    def get_pad_target(self) -> int | None:
        return self.load().pad_target_bytes

    def set_pad_target(self, size_bytes: int | None) -> None:
        with self.update() as state:
            state.pad_target_bytes = size_bytes
        log.debug(f"Recorded pad target for {self.root}: {size_bytes or '-'}")
