"""Tests for services/utility.py - the generated management script."""

import ast
import dataclasses
import os

from rpi_chroot.domain import parse_env_rules
from rpi_chroot.services import utility


def test_recorded_config(installation):
    inst = dataclasses.replace(installation, env_rules=parse_env_rules("ARCH LC_*"), user="builder")
    assert utility.recorded_config(inst) == {
        "arch": "armhf",
        "env": "ARCH LC_*",
        "user": "builder",
        "image_pattern": "*raspbian*.img",
    }


def test_render_utility_is_bound_to_root(installation):
    script = utility.render_utility(installation, python="/usr/bin/python3")

    assert script.startswith("#!/usr/bin/python3\n")
    assert "from rpi_chroot.main import manage_main" in script
    assert repr(str(installation.root)) in script
    ast.parse(script)


def test_rendered_config_round_trips(installation):
    script = utility.render_utility(installation, python="/usr/bin/python3")
    call = script.strip().splitlines()[-1]
    config_literal = call[call.index("{"):call.rindex("}") + 1]
    assert ast.literal_eval(config_literal) == utility.recorded_config(installation)


def test_write_utility_is_executable(installation):
    path = utility.write_utility(installation, python="/usr/bin/python3")

    assert path == installation.root / "chroot"
    assert os.access(path, os.X_OK)
    assert "manage_main" in path.read_text()


def test_rewrite_replaces_existing_utility(installation):
    installation.utility_path.write_text("stale")
    utility.write_utility(installation, python="/usr/bin/python3")
    assert installation.utility_path.read_text() != "stale"
