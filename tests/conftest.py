from __future__ import annotations

import os

import pytest

from civicportal.core.config.manager import ConfigManager
from civicportal.core.config.paths import ConfigFsPaths


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated repo root with config/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=None, read_only=False)
    cm.load_all()
    return cm
