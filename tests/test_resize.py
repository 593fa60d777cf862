"""Tests for storage/resize.py - resumable root partition growth."""

from unittest.mock import patch

import pytest

from rpi_chroot.domain import ResizeStage
from rpi_chroot.storage.exceptions import CommandError, ResizeError
from rpi_chroot.storage.resize import PartitionResizer


MIB = 1024 * 1024
PARTED = ["parted", "--script", "/dev/loop7", "resizepart", "2", "100%"]
E2FSCK = ["e2fsck", "-f", "-p", "/dev/loop7p2"]
RESIZE2FS = ["resize2fs", "/dev/loop7p2"]


@pytest.fixture
def runner(completed):
    """Patched run_command returning success unless told otherwise."""
    outcomes = {}
    calls = []

    def fake(command, check=True, **kwargs):
        calls.append(list(command))
        outcome = outcomes.get(command[0])
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, int):
            return completed(command, returncode=outcome, stderr="fsck trouble")
        return completed(command)

    with patch("rpi_chroot.storage.resize.run_command", side_effect=fake):
        yield outcomes, calls


class TestExtend:
    """Tests for PartitionResizer.extend()."""

    def test_full_sequence(self, runner, mock_binder, store, disk_image):
        _, calls = runner

        stage = PartitionResizer(mock_binder, store).extend(disk_image, 4096)

        assert stage is ResizeStage.FILESYSTEM_GROWN
        assert calls == [PARTED, E2FSCK, RESIZE2FS]
        assert store.get_resize_stage() is ResizeStage.FILESYSTEM_GROWN
        mock_binder.bind.assert_called_once_with(disk_image)
        mock_binder.unbind.assert_called_once()

    @pytest.mark.parametrize("code", [1, 2])
    def test_e2fsck_corrections_are_accepted(self, runner, mock_binder, store, disk_image, code):
        outcomes, _ = runner
        outcomes["e2fsck"] = code

        stage = PartitionResizer(mock_binder, store).extend(disk_image, 10)
        assert stage is ResizeStage.FILESYSTEM_GROWN

    def test_e2fsck_failure_stops_sequence(self, runner, mock_binder, store, disk_image):
        outcomes, calls = runner
        outcomes["e2fsck"] = 4

        with pytest.raises(ResizeError) as exc_info:
            PartitionResizer(mock_binder, store).extend(disk_image, 10)

        assert exc_info.value.stage == "filesystem check"
        assert RESIZE2FS not in calls
        assert store.get_resize_stage() is ResizeStage.PARTITION_GROWN
        mock_binder.unbind.assert_called_once()

    def test_parted_failure(self, runner, mock_binder, store, disk_image):
        outcomes, calls = runner
        outcomes["parted"] = CommandError(PARTED, 1, "Error: partition busy")

        with pytest.raises(ResizeError, match="partition busy"):
            PartitionResizer(mock_binder, store).extend(disk_image, 10)

        assert calls == [PARTED]
        assert store.get_resize_stage() is ResizeStage.UNRESIZED
        mock_binder.unbind.assert_called_once()

    def test_resize2fs_failure(self, runner, mock_binder, store, disk_image):
        outcomes, _ = runner
        outcomes["resize2fs"] = CommandError(RESIZE2FS, 1, "bad superblock")

        with pytest.raises(ResizeError, match="filesystem resize"):
            PartitionResizer(mock_binder, store).extend(disk_image, 10)
        assert store.get_resize_stage() is ResizeStage.CHECKED

    def test_resumes_after_check(self, runner, mock_binder, store, disk_image):
        _, calls = runner
        store.set_resize_stage(ResizeStage.CHECKED)

        stage = PartitionResizer(mock_binder, store).extend(disk_image, 10)

        assert stage is ResizeStage.FILESYSTEM_GROWN
        assert calls == [RESIZE2FS]

    def test_resumes_after_partition_growth(self, runner, mock_binder, store, disk_image):
        _, calls = runner
        store.set_resize_stage(ResizeStage.PARTITION_GROWN)

        PartitionResizer(mock_binder, store).extend(disk_image, 10)

        assert calls == [E2FSCK, RESIZE2FS]

    def test_completed_resize_starts_over(self, runner, mock_binder, store, disk_image):
        _, calls = runner
        store.set_resize_stage(ResizeStage.FILESYSTEM_GROWN)

        PartitionResizer(mock_binder, store).extend(disk_image, 10)

        assert calls == [PARTED, E2FSCK, RESIZE2FS]


class TestGrow:
    """Tests for PartitionResizer.grow() and resume()."""

    def test_grow_pads_then_extends(self, runner, mock_binder, store, disk_image):
        _, calls = runner

        stage = PartitionResizer(mock_binder, store).grow(disk_image, 2)

        assert stage is ResizeStage.FILESYSTEM_GROWN
        assert disk_image.size_bytes == 4096 + 2 * MIB
        assert calls == [PARTED, E2FSCK, RESIZE2FS]
        assert store.get_pad_target() is None

    def test_grow_finishes_interrupted_resize_first(self, runner, mock_binder, store, disk_image):
        _, calls = runner
        store.set_resize_stage(ResizeStage.PARTITION_GROWN)

        PartitionResizer(mock_binder, store).grow(disk_image, 3)

        assert calls == [E2FSCK, RESIZE2FS, PARTED, E2FSCK, RESIZE2FS]
        assert disk_image.size_bytes == 4096 + 3 * MIB

    def test_failed_grow_keeps_pad_target(self, runner, mock_binder, store, disk_image):
        outcomes, _ = runner
        outcomes["parted"] = CommandError(PARTED, 1, "Error: partition busy")

        with pytest.raises(ResizeError):
            PartitionResizer(mock_binder, store).grow(disk_image, 2)

        assert store.get_pad_target() == 4096 + 2 * MIB
        assert disk_image.size_bytes == 4096 + 2 * MIB

    def test_resume_after_crash_before_padding(self, runner, mock_binder, store, disk_image):
        _, calls = runner
        store.set_pad_target(4096 + MIB)

        assert PartitionResizer(mock_binder, store).resume(disk_image)

        assert disk_image.size_bytes == 4096 + MIB
        assert calls == [PARTED, E2FSCK, RESIZE2FS]
        assert store.get_pad_target() is None

    def test_resume_after_padding_does_not_pad_again(
        self, runner, mock_binder, store, disk_image
    ):
        outcomes, _ = runner
        outcomes["parted"] = CommandError(PARTED, 1, "Error: partition busy")
        resizer = PartitionResizer(mock_binder, store)
        with pytest.raises(ResizeError):
            resizer.grow(disk_image, 2)
        del outcomes["parted"]

        assert resizer.resume(disk_image)

        assert disk_image.size_bytes == 4096 + 2 * MIB
        assert store.get_resize_stage() is ResizeStage.FILESYSTEM_GROWN

    def test_resume_without_pending_grow(self, runner, mock_binder, store, disk_image):
        _, calls = runner
        store.set_resize_stage(ResizeStage.FILESYSTEM_GROWN)

        assert not PartitionResizer(mock_binder, store).resume(disk_image)
        assert calls == []
        mock_binder.bind.assert_not_called()
