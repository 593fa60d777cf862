"""Tests for the persisted installation state store."""

import json

from rpi_chroot.domain import ResizeStage


class TestStateStore:
    """Tests for StateStore."""

    def test_load_defaults_when_missing(self, store, installation):
        state = store.load()
        assert state.root == str(installation.root)
        assert state.loop_device is None
        assert state.resize_stage is ResizeStage.UNRESIZED

    def test_set_and_get_loop_device(self, store):
        store.set_loop_device("/dev/loop4")
        assert store.get_loop_device() == "/dev/loop4"

        store.set_loop_device(None)
        assert store.get_loop_device() is None

    def test_file_contents(self, store, installation):
        store.set_loop_device("/dev/loop4")
        data = json.loads(installation.state_path.read_text())

        assert data["root"] == str(installation.root)
        assert data["loop_device"] == "/dev/loop4"
        assert data["resize_stage"] == "unresized"
        assert data["updated_at"]

    def test_resize_stage_persists(self, store):
        store.set_resize_stage(ResizeStage.CHECKED)
        assert store.get_resize_stage() is ResizeStage.CHECKED

    def test_update_keeps_other_fields(self, store):
        store.set_loop_device("/dev/loop2")
        store.set_resize_stage(ResizeStage.PARTITION_GROWN)

        state = store.load()
        assert state.loop_device == "/dev/loop2"
        assert state.resize_stage is ResizeStage.PARTITION_GROWN

    def test_corrupted_file_loads_defaults(self, store, installation):
        installation.state_path.write_text("{not json")
        state = store.load()
        assert state.loop_device is None

    def test_non_dict_json_loads_defaults(self, store, installation):
        installation.state_path.write_text("[1, 2]")
        assert store.load().loop_device is None

    def test_no_temp_file_left_behind(self, store, installation):
        store.set_loop_device("/dev/loop1")
        leftovers = [p.name for p in installation.root.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_pad_target_persists_and_clears(self, store, installation):
        store.set_pad_target(8 * 1024 * 1024)
        assert store.get_pad_target() == 8 * 1024 * 1024
        assert json.loads(installation.state_path.read_text())["pad_target_bytes"] == 8 * 1024 * 1024

        store.set_pad_target(None)
        assert store.get_pad_target() is None
