"""Shared test fixtures."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest

from vmbuilder.config import prepare_config
from vmbuilder.driver import Driver
from vmbuilder.state import BuildState
from vmbuilder.ui import RecordingUi


@pytest.fixture
def raw_config(tmp_path) -> dict:
    """Minimal valid builder options, with output under tmp_path."""
    iso = tmp_path / "install.iso"
    iso.write_bytes(b"iso-bytes")
    return {
        "iso_url": str(iso),
        "ssh_username": "packer",
        "ssh_password": "packer",
        "output_directory": str(tmp_path / "output"),
    }


@pytest.fixture
def build_config(raw_config):
    return prepare_config(raw_config)


@pytest.fixture
def fake_driver():
    driver = MagicMock(spec=Driver)
    driver.is_running.return_value = False
    driver.guest_address.return_value = None
    return driver


@pytest.fixture
def ui() -> RecordingUi:
    return RecordingUi()


@pytest.fixture
def make_state(build_config, fake_driver, ui):
    """Factory for BuildState with test doubles; keyword overrides replace fields."""

    def _make(config=None, **overrides) -> BuildState:
        state = BuildState(
            config=config or build_config,
            driver=fake_driver,
            ui=ui,
            rng=random.Random(1234),
        )
        for key, value in overrides.items():
            setattr(state, key, value)
        return state

    return _make
