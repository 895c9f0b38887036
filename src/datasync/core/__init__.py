"""Core sync engine for datasync.

CRITICAL: Modules in this package must not depend on any UI or CLI code.
"""

from __future__ import annotations

from .config import Config, SyncConfig
from .dataset import Dataset
from .hashing import compute_hash
from .models import Action, DataRecord, PendingChange
from .network import HttpNetworkClient, NetworkClient, NetworkResponse
from .notifications import (
    NotificationDispatcher,
    NotificationKind,
    NotificationMessage,
    SyncListener,
)
from .scheduler import Scheduler
from .storage import ContentNotFound, FileStorage, MemoryStorage, Storage, StorageError
from .sync_client import DatasetNotFound, SyncClient

__all__ = [
    "Action",
    "Config",
    "ContentNotFound",
    "DataRecord",
    "Dataset",
    "DatasetNotFound",
    "FileStorage",
    "HttpNetworkClient",
    "MemoryStorage",
    "NetworkClient",
    "NetworkResponse",
    "NotificationDispatcher",
    "NotificationKind",
    "NotificationMessage",
    "PendingChange",
    "Scheduler",
    "Storage",
    "StorageError",
    "SyncClient",
    "SyncConfig",
    "SyncListener",
    "compute_hash",
]
