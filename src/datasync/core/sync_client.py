"""Sync client for datasync.

SyncClient is the application-facing entry point. It owns the managed
datasets, the notification dispatcher and the scheduler that drives sync
rounds. Instances are constructed explicitly; several independent clients
can coexist in one process (each with its own storage and network client).

Typical use:

    client = SyncClient(FileStorage(path), HttpNetworkClient(url))
    client.subscribe(listener)
    client.manage("tasks")
    client.start()
    uid = client.create("tasks", {"title": "Buy milk"})["uid"]

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from .config import Config, SyncConfig
from .dataset import Dataset
from .network import HttpNetworkClient, NetworkClient, NetworkResponse
from .notifications import (
    NotificationCallback,
    NotificationDispatcher,
    NotificationKind,
    Subscription,
)
from .scheduler import DEFAULT_POLL_INTERVAL, Scheduler
from .storage import ContentNotFound, FileStorage, Storage
from .validation import ValidationError, validate_dataset_id

logger = logging.getLogger(__name__)

__all__ = ["SyncClient", "DatasetNotFound"]


class DatasetNotFound(LookupError):
    """Operation on a dataset id that is not managed by the client."""

    def __init__(self, dataset_id: str) -> None:
        self.dataset_id = dataset_id
        super().__init__(f"Dataset not managed: {dataset_id}")


class SyncClient:
    """Manages datasets and keeps them in sync with the cloud endpoint."""

    def __init__(
        self,
        storage: Storage,
        network_client: NetworkClient,
        config: Optional[SyncConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize the client. Call start() to begin scheduled syncing.

        Args:
            storage: Where dataset snapshots are kept
            network_client: Transport to the sync endpoint
            config: Default SyncConfig for datasets managed without their own
            dispatcher: Notification dispatcher (a new one if None)
            poll_interval: Seconds between scheduler checks
        """
        self.storage = storage
        self.network_client = network_client
        self.config = config or SyncConfig()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.scheduler = Scheduler(poll_interval=poll_interval)
        self._datasets: Dict[str, Dataset] = {}
        self._lock = threading.Lock()
        self._destroyed = False

    @classmethod
    def from_config(cls, app_config: Config) -> "SyncClient":
        """Build a client with file storage and HTTP transport from app config.

        Raises:
            ValidationError: If no cloud URL is configured
        """
        cloud_url = app_config.get_cloud_url()
        if not cloud_url:
            raise ValidationError("cloud_url", "is not configured")
        network_client = HttpNetworkClient(
            cloud_url,
            client_id=app_config.get_client_id_hex(),
            timeout=app_config.get_request_timeout(),
        )
        return cls(
            FileStorage(app_config.get_storage_dir()),
            network_client,
            config=app_config.get_sync_config(),
        )

    # ===== Lifecycle =====

    def start(self) -> None:
        """Start scheduled syncing."""
        if self._destroyed:
            raise RuntimeError("SyncClient has been destroyed")
        self.scheduler.start()

    def destroy(self) -> None:
        """Stop syncing and discard every managed dataset from memory.

        Rounds waiting on the network are not cancelled; their responses are
        ignored when they arrive.
        """
        self.scheduler.stop(timeout=0)
        with self._lock:
            datasets = list(self._datasets.values())
            self._datasets = {}
            self._destroyed = True
        for dataset in datasets:
            self.scheduler.remove(dataset.dataset_id)
            dataset.destroy()
        logger.info("SyncClient destroyed")

    def pause(self) -> None:
        """Stop starting new rounds for all datasets. Running rounds finish."""
        for dataset in self._all():
            dataset.pause()

    def resume(self) -> None:
        for dataset in self._all():
            dataset.resume()

    def stop(self, dataset_id: str) -> None:
        """Stop scheduled syncing for one dataset."""
        self.get_dataset(dataset_id).pause()

    # ===== Dataset management =====

    def manage(
        self,
        dataset_id: str,
        config: Optional[SyncConfig] = None,
        query_params: Optional[Dict[str, Any]] = None,
        meta_data: Optional[Dict[str, Any]] = None,
    ) -> Dataset:
        """Start managing a dataset, or reconfigure one already managed.

        The dataset is restored from storage if a snapshot exists, and a sync
        round is requested.

        Args:
            dataset_id: Name of the dataset
            config: Per-dataset SyncConfig (the client default if None)
            query_params: Query parameters sent with every request
            meta_data: Custom metadata sent with every request

        Returns:
            The managed Dataset
        """
        validate_dataset_id(dataset_id)
        if self._destroyed:
            raise RuntimeError("SyncClient has been destroyed")
        with self._lock:
            dataset = self._datasets.get(dataset_id)
            if dataset is None:
                dataset = Dataset(
                    dataset_id,
                    self.storage,
                    self.network_client,
                    dispatcher=self.dispatcher,
                    config=config or self.config,
                    query_params=query_params,
                    meta_data=meta_data,
                )
                self._datasets[dataset_id] = dataset
                self.scheduler.add(dataset)
                logger.info(f"Managing dataset {dataset_id}")
            else:
                if config is not None:
                    dataset.set_config(config)
                if query_params is not None:
                    dataset.set_query_params(query_params)
                if meta_data is not None:
                    dataset.set_meta_data(meta_data)

        dataset.resume()
        dataset.request_sync()
        dataset.save()
        return dataset

    def open(self, dataset_id: str) -> Dataset:
        """Manage a dataset only if it is already managed or stored.

        Raises:
            DatasetNotFound: If there is no stored snapshot for the dataset
        """
        validate_dataset_id(dataset_id)
        with self._lock:
            managed = dataset_id in self._datasets
        if not managed:
            try:
                self.storage.get_content(dataset_id)
            except ContentNotFound:
                raise DatasetNotFound(dataset_id) from None
        return self.manage(dataset_id)

    def get_dataset(self, dataset_id: str) -> Dataset:
        """Get a managed dataset.

        Raises:
            DatasetNotFound: If the dataset is not managed
        """
        with self._lock:
            dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise DatasetNotFound(dataset_id)
        return dataset

    def dataset_ids(self) -> List[str]:
        with self._lock:
            return list(self._datasets)

    def _all(self) -> List[Dataset]:
        with self._lock:
            return list(self._datasets.values())

    def set_query_params(self, dataset_id: str, query_params: Dict[str, Any]) -> None:
        self.get_dataset(dataset_id).set_query_params(query_params)

    def set_meta_data(self, dataset_id: str, meta_data: Dict[str, Any]) -> None:
        self.get_dataset(dataset_id).set_meta_data(meta_data)

    def set_config(self, dataset_id: str, config: SyncConfig) -> None:
        self.get_dataset(dataset_id).set_config(config)

    # ===== Records =====

    def list(self, dataset_id: str) -> Dict[str, Dict[str, Any]]:
        return self.get_dataset(dataset_id).list_data()

    def read(self, dataset_id: str, uid: str) -> Optional[Dict[str, Any]]:
        return self.get_dataset(dataset_id).read_data(uid)

    def create(self, dataset_id: str, payload: Any) -> Dict[str, Any]:
        return self.get_dataset(dataset_id).create_data(payload)

    def update(self, dataset_id: str, uid: str, payload: Any) -> Optional[Dict[str, Any]]:
        return self.get_dataset(dataset_id).update_data(uid, payload)

    def delete(self, dataset_id: str, uid: str) -> Optional[Dict[str, Any]]:
        return self.get_dataset(dataset_id).delete_data(uid)

    # ===== Syncing =====

    def force_sync(self, dataset_id: str) -> None:
        """Request a sync round at the scheduler's next check."""
        self.get_dataset(dataset_id).request_sync()

    def sync_now(self, dataset_id: str) -> Optional[str]:
        """Run one sync round on the calling thread.

        Returns:
            Round status, or None if a round was already running
        """
        return self.get_dataset(dataset_id).run_sync_round()

    def get_status(self, dataset_id: str) -> Dict[str, Any]:
        return self.get_dataset(dataset_id).get_status()

    # ===== Collisions =====

    def list_collisions(self, dataset_id: str) -> NetworkResponse:
        """Ask the endpoint for the collisions recorded for a dataset."""
        validate_dataset_id(dataset_id)
        return self.network_client.perform_request(dataset_id, {"fn": "listCollisions"})

    def remove_collision(self, dataset_id: str, collision_hash: str) -> NetworkResponse:
        """Ask the endpoint to discard one recorded collision."""
        validate_dataset_id(dataset_id)
        if not isinstance(collision_hash, str) or not collision_hash:
            raise ValidationError("hash", "must be a non-empty string")
        return self.network_client.perform_request(
            dataset_id, {"fn": "removeCollision", "hash": collision_hash}
        )

    # ===== Notifications =====

    def subscribe(
        self,
        callback: NotificationCallback,
        kinds: Optional[Iterable[NotificationKind]] = None,
    ) -> Subscription:
        """Subscribe to notifications from every managed dataset."""
        return self.dispatcher.subscribe(callback, kinds)
