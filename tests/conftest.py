"""Pytest fixtures for datasync tests.

This module provides fixtures for configuration, storage, scripted network
clients and ready-made datasets.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from datasync.core.config import Config, SyncConfig
from datasync.core.dataset import Dataset
from datasync.core.notifications import NotificationDispatcher, NotificationRecorder
from datasync.core.storage import MemoryStorage

from helpers import ScriptedNetworkClient

DATASET_ID = "tasks"


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create a Config backed by the temporary config directory."""
    return Config(config_dir=test_config_dir)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def network() -> ScriptedNetworkClient:
    return ScriptedNetworkClient()


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


@pytest.fixture
def recorder(dispatcher: NotificationDispatcher) -> Generator[NotificationRecorder, None, None]:
    """Record every notification delivered through the dispatcher."""
    recorder = NotificationRecorder()
    subscription = dispatcher.subscribe(recorder)
    yield recorder
    subscription.unsubscribe()


@pytest.fixture
def sync_config() -> SyncConfig:
    """SyncConfig with every notification enabled."""
    return SyncConfig.all_notifications()


@pytest.fixture
def dataset(
    storage: MemoryStorage,
    network: ScriptedNetworkClient,
    dispatcher: NotificationDispatcher,
    recorder: NotificationRecorder,
    sync_config: SyncConfig,
) -> Dataset:
    """Empty dataset wired to memory storage and a scripted network client."""
    return Dataset(
        DATASET_ID,
        storage,
        network,
        dispatcher=dispatcher,
        config=sync_config,
    )
