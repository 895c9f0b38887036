"""Unit tests for SyncClient.

The scheduler is never started here; rounds run through sync_now.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Generator

import pytest

from datasync.core.config import Config, SyncConfig
from datasync.core.network import HttpNetworkClient
from datasync.core.notifications import NotificationKind, NotificationRecorder
from datasync.core.storage import FileStorage, MemoryStorage
from datasync.core.sync_client import DatasetNotFound, SyncClient
from datasync.core.validation import ValidationError

from helpers import ScriptedNetworkClient, applied_entry, sync_response


@pytest.fixture
def client(
    storage: MemoryStorage, network: ScriptedNetworkClient
) -> Generator[SyncClient, None, None]:
    client = SyncClient(storage, network, config=SyncConfig.all_notifications())
    yield client
    client.destroy()


class TestManage:
    """Test managing datasets."""

    def test_manage_creates_dataset(self, client: SyncClient, storage: MemoryStorage) -> None:
        dataset = client.manage("tasks")
        assert client.get_dataset("tasks") is dataset
        assert client.dataset_ids() == ["tasks"]
        assert client.scheduler.get("tasks") is dataset
        assert dataset.sync_requested
        assert storage.get_content("tasks")

    def test_manage_uses_client_default_config(self, client: SyncClient) -> None:
        assert client.manage("tasks").config == client.config

    def test_manage_twice_reconfigures(self, client: SyncClient) -> None:
        dataset = client.manage("tasks")
        config = SyncConfig(sync_frequency=60)
        again = client.manage("tasks", config=config, query_params={"owner": "me"})
        assert again is dataset
        assert dataset.config == config
        assert dataset.query_params == {"owner": "me"}

    def test_manage_resumes_stopped_dataset(self, client: SyncClient) -> None:
        client.manage("tasks")
        client.stop("tasks")
        assert client.get_dataset("tasks").paused
        client.manage("tasks")
        assert not client.get_dataset("tasks").paused

    def test_manage_invalid_id(self, client: SyncClient) -> None:
        with pytest.raises(ValidationError):
            client.manage("")

    def test_manage_restores_snapshot(
        self, storage: MemoryStorage, network: ScriptedNetworkClient
    ) -> None:
        first = SyncClient(storage, network)
        first.manage("tasks")
        uid = first.create("tasks", {"a": 1})["uid"]
        first.destroy()

        second = SyncClient(storage, network)
        second.manage("tasks")
        assert second.read("tasks", uid) == {"uid": uid, "data": {"a": 1}}
        second.destroy()

    def test_unknown_dataset(self, client: SyncClient) -> None:
        with pytest.raises(DatasetNotFound) as exc_info:
            client.get_dataset("missing")
        assert exc_info.value.dataset_id == "missing"
        with pytest.raises(DatasetNotFound):
            client.create("missing", {"a": 1})

    def test_open_unknown_dataset(self, client: SyncClient, storage: MemoryStorage) -> None:
        """Opening never creates a dataset that has no snapshot."""
        with pytest.raises(DatasetNotFound) as exc_info:
            client.open("typo")
        assert exc_info.value.dataset_id == "typo"
        assert client.dataset_ids() == []
        assert "typo" not in storage.contents

    def test_open_stored_dataset(
        self, client: SyncClient, storage: MemoryStorage, network: ScriptedNetworkClient
    ) -> None:
        first = SyncClient(storage, network)
        first.manage("tasks")
        uid = first.create("tasks", {"a": 1})["uid"]
        first.destroy()

        dataset = client.open("tasks")

        assert client.get_dataset("tasks") is dataset
        assert client.read("tasks", uid) == {"uid": uid, "data": {"a": 1}}

    def test_open_managed_dataset(self, client: SyncClient) -> None:
        dataset = client.manage("tasks")
        assert client.open("tasks") is dataset


class TestRecords:
    """Test the record operations passed through to datasets."""

    def test_crud(self, client: SyncClient) -> None:
        client.manage("tasks")
        uid = client.create("tasks", {"title": "milk"})["uid"]
        assert client.read("tasks", uid)["data"] == {"title": "milk"}

        client.update("tasks", uid, {"title": "bread"})
        assert client.list("tasks") == {uid: {"uid": uid, "data": {"title": "bread"}}}

        assert client.delete("tasks", uid)["data"] == {"title": "bread"}
        assert client.list("tasks") == {}

    def test_datasets_are_independent(self, client: SyncClient) -> None:
        client.manage("tasks")
        client.manage("notes")
        client.create("tasks", {"a": 1})
        assert client.list("notes") == {}


class TestSyncing:
    """Test triggering rounds through the client."""

    def test_sync_now(self, client: SyncClient, network: ScriptedNetworkClient) -> None:
        client.manage("tasks")
        uid = client.create("tasks", {"a": 1})["uid"]
        entry = applied_entry(uid, "server-1", "create")
        network.queue_success(sync_response(None, hashes={uid: entry}, applied={uid: entry}))

        assert client.sync_now("tasks") == "online"
        assert list(client.list("tasks")) == ["server-1"]
        assert client.read("tasks", uid)["uid"] == "server-1"

    def test_force_sync(self, client: SyncClient) -> None:
        dataset = client.manage("tasks")
        dataset.sync_requested = False
        client.force_sync("tasks")
        assert dataset.sync_requested

    def test_pause_and_resume(self, client: SyncClient) -> None:
        client.manage("tasks")
        client.manage("notes")
        client.pause()
        assert all(client.get_dataset(d).paused for d in ("tasks", "notes"))
        client.resume()
        assert not any(client.get_dataset(d).paused for d in ("tasks", "notes"))

    def test_status(self, client: SyncClient) -> None:
        client.manage("tasks")
        client.create("tasks", {"a": 1})
        status = client.get_status("tasks")
        assert status["dataset_id"] == "tasks"
        assert status["records"] == 1
        assert status["pending"] == 1

    def test_set_meta_data(self, client: SyncClient, network: ScriptedNetworkClient) -> None:
        client.manage("tasks")
        client.set_meta_data("tasks", {"token": "t1"})
        client.set_query_params("tasks", {"owner": "me"})
        network.queue_success(sync_response())
        client.sync_now("tasks")
        (params,) = network.calls("sync")
        assert params["meta_data"] == {"token": "t1"}
        assert params["query_params"] == {"owner": "me"}


class TestDestroy:
    def test_destroy_discards_datasets(self, client: SyncClient) -> None:
        dataset = client.manage("tasks")
        client.destroy()
        assert dataset.destroyed
        assert client.dataset_ids() == []
        assert client.scheduler.dataset_ids() == []

    def test_destroyed_client_rejects_use(self, client: SyncClient) -> None:
        client.destroy()
        with pytest.raises(RuntimeError):
            client.manage("tasks")
        with pytest.raises(RuntimeError):
            client.start()


class TestCollisions:
    """Test the collision endpoint helpers."""

    def test_list_collisions(self, client: SyncClient, network: ScriptedNetworkClient) -> None:
        network.queue_success({"c1": {"uid": "u1"}})
        response = client.list_collisions("tasks")
        assert response.ok
        assert response.data == {"c1": {"uid": "u1"}}
        assert network.requests[-1] == {
            "dataset_id": "tasks",
            "params": {"fn": "listCollisions"},
        }

    def test_remove_collision(self, client: SyncClient, network: ScriptedNetworkClient) -> None:
        network.queue_success({"removed": True})
        client.remove_collision("tasks", "c1")
        assert network.calls("removeCollision") == [{"fn": "removeCollision", "hash": "c1"}]

    def test_remove_collision_requires_hash(self, client: SyncClient) -> None:
        with pytest.raises(ValidationError):
            client.remove_collision("tasks", "")


class TestSubscribe:
    def test_subscribe_filters_kinds(self, client: SyncClient) -> None:
        recorder = NotificationRecorder()
        client.subscribe(recorder, [NotificationKind.LOCAL_UPDATE_APPLIED])
        client.manage("tasks")
        client.create("tasks", {"a": 1})
        assert recorder.kinds() == [NotificationKind.LOCAL_UPDATE_APPLIED]

    def test_unsubscribe(self, client: SyncClient) -> None:
        recorder = NotificationRecorder()
        subscription = client.subscribe(recorder)
        subscription.unsubscribe()
        client.manage("tasks")
        client.create("tasks", {"a": 1})
        assert recorder.messages == []


class TestFromConfig:
    def test_requires_cloud_url(self, test_config: Config) -> None:
        with pytest.raises(ValidationError):
            SyncClient.from_config(test_config)

    def test_builds_http_client(self, test_config: Config, test_config_dir: Path) -> None:
        test_config.set_cloud_url("http://localhost:8384/sync")
        client = SyncClient.from_config(test_config)
        try:
            assert isinstance(client.network_client, HttpNetworkClient)
            assert client.network_client.client_id == test_config.get_client_id_hex()
            assert isinstance(client.storage, FileStorage)
            client.manage("tasks")
            snapshot = test_config.get_storage_dir() / "tasks.sync.json"
            assert json.loads(snapshot.read_text())["dataSetId"] == "tasks"
        finally:
            client.destroy()
