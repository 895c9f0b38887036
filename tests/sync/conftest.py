"""Pytest fixtures for sync integration tests.

This module provides fixtures for:
- An in-process reference endpoint with its backing SyncStore
- Client datasets syncing against it through the Flask test client
- Spawning a real sync server process for HTTP tests
"""

from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Optional

import pytest
import requests
from flask import Flask

# Add src and tests to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from datasync.core.config import SyncConfig
from datasync.core.dataset import Dataset
from datasync.core.notifications import NotificationDispatcher, NotificationRecorder
from datasync.core.storage import MemoryStorage
from datasync.core.sync_server import SyncStore, create_sync_server

from helpers import FlaskNetworkClient

DATASET_ID = "tasks"


@dataclass
class SyncPeer:
    """A client device syncing one dataset against the endpoint."""

    name: str
    dataset: Dataset
    network: FlaskNetworkClient
    recorder: NotificationRecorder

    def sync(self) -> Optional[str]:
        return self.dataset.run_sync_round()

    def payloads(self) -> dict:
        """uid -> payload of every local record."""
        return {uid: record["data"] for uid, record in self.dataset.list_data().items()}


@dataclass
class ServerProcess:
    """A sync server running in a subprocess."""

    config_dir: Path
    port: int
    process: Optional[subprocess.Popen] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def is_server_running(self) -> bool:
        """Check if the sync server is responding."""
        try:
            resp = requests.get(f"{self.url}/sync/status", timeout=1)
            return resp.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def wait_for_server(self, timeout: float = 10.0) -> bool:
        """Wait for server to become available."""
        start = time.time()
        while time.time() - start < timeout:
            if self.is_server_running():
                return True
            time.sleep(0.1)
        return False

    def stop_server(self) -> None:
        """Stop the sync server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            # Close stdout/stderr pipes to avoid ResourceWarning
            if self.process.stdout:
                self.process.stdout.close()
            if self.process.stderr:
                self.process.stderr.close()
            self.process = None


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


def start_sync_server(server: ServerProcess) -> subprocess.Popen:
    """Start "datasync serve" in a subprocess."""
    env = os.environ.copy()
    env["PYTHONPATH"] = str(Path(__file__).parent.parent.parent / "src")

    cmd = [
        sys.executable,
        "-m", "datasync.main",
        "-d", str(server.config_dir),
        "serve",
        "--host", "127.0.0.1",
        "--port", str(server.port),
    ]

    process = subprocess.Popen(
        cmd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    server.process = process
    return process


def make_peer(app: Flask, name: str, config: Optional[SyncConfig] = None) -> SyncPeer:
    """Create a client dataset that syncs through the app's test client."""
    dispatcher = NotificationDispatcher()
    recorder = NotificationRecorder()
    dispatcher.subscribe(recorder)
    network = FlaskNetworkClient(app, client_id=name)
    dataset = Dataset(
        DATASET_ID,
        MemoryStorage(),
        network,
        dispatcher=dispatcher,
        config=config or SyncConfig.all_notifications(),
    )
    return SyncPeer(name=name, dataset=dataset, network=network, recorder=recorder)


@pytest.fixture
def store() -> SyncStore:
    return SyncStore()


@pytest.fixture
def app(store: SyncStore) -> Flask:
    """Reference endpoint backed by the store fixture."""
    app = create_sync_server(store)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def http(app: Flask):
    """Flask test client for calling the endpoint directly."""
    return app.test_client()


@pytest.fixture
def peer_a(app: Flask) -> SyncPeer:
    return make_peer(app, "client-a")


@pytest.fixture
def peer_b(app: Flask) -> SyncPeer:
    return make_peer(app, "client-b")


@pytest.fixture
def running_server(tmp_path: Path) -> Generator[ServerProcess, None, None]:
    """A sync server subprocess, stopped after the test."""
    config_dir = tmp_path / "server"
    config_dir.mkdir()
    server = ServerProcess(config_dir=config_dir, port=find_free_port())
    start_sync_server(server)
    if not server.wait_for_server():
        server.stop_server()
        pytest.fail("Sync server did not start")
    yield server
    server.stop_server()
