"""Pytest configuration for the pivot engine."""

import pytest

from pivot.base.config import PivotConfig, set_config


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def config(tmp_path):
    cfg = PivotConfig.for_directory(tmp_path / "state", seed=1337)
    set_config(cfg)
    yield cfg
    set_config(None)
