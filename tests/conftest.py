# tests/conftest.py

from __future__ import annotations

import random
from datetime import datetime
from pathlib import Path

import pytest

from autocheckin.config.manager import ConfigManager
from autocheckin.config.storage import JsonConfigStorage

from .fakes import FakeClock, RecordingLogger


@pytest.fixture()
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config.json"


@pytest.fixture()
def storage(config_path: Path) -> JsonConfigStorage:
    return JsonConfigStorage(config_path=str(config_path))


@pytest.fixture()
def config_manager(storage: JsonConfigStorage, logger: RecordingLogger) -> ConfigManager:
    return ConfigManager(storage=storage, logger=logger)


@pytest.fixture()
def clock() -> FakeClock:
    """Monday morning, one minute before the default 08:00 check-in."""
    return FakeClock(datetime(2026, 3, 2, 7, 59))


@pytest.fixture()
def rng() -> random.Random:
    return random.Random(20260302)

