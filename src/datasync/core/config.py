"""Configuration management for datasync.

This module has two layers:

- SyncConfig: per-dataset sync behaviour (frequency, notification filters,
  crash handling). Persisted inside each dataset snapshot.
- Config: application configuration stored as a JSON file in a config
  directory (default ~/.config/datasync/), customizable via CLI argument.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .notifications import NotificationKind
from .validation import ValidationError, validate_url

logger = logging.getLogger(__name__)

__all__ = ["Config", "SyncConfig", "DEFAULT_CONFIG_DIR"]

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "datasync"

# SyncConfig attribute -> snapshot JSON key
_SYNC_CONFIG_KEYS = {
    "sync_frequency": "syncFrequency",
    "auto_sync_local_updates": "autoSyncLocalUpdates",
    "notify_sync_started": "notifySyncStarted",
    "notify_sync_completed": "notifySyncCompleted",
    "notify_offline_update": "notifyOfflineUpdated",
    "notify_collision_detected": "notifySyncCollision",
    "notify_remote_update_failed": "notifyRemoteUpdateFailed",
    "notify_remote_update_applied": "notifyRemoteUpdatedApplied",
    "notify_local_update_applied": "notifyLocalUpdateApplied",
    "notify_delta_received": "notifyDeltaReceived",
    "notify_sync_failed": "notifySyncFailed",
    "notify_client_storage_failed": "notifyClientStorageFailed",
    "crash_count_wait": "crashCountWait",
    "resend_crashed_updates": "resendCrashedUpdates",
}

_NOTIFY_FLAGS = {
    NotificationKind.SYNC_STARTED: "notify_sync_started",
    NotificationKind.SYNC_COMPLETED: "notify_sync_completed",
    NotificationKind.OFFLINE_UPDATE: "notify_offline_update",
    NotificationKind.COLLISION_DETECTED: "notify_collision_detected",
    NotificationKind.REMOTE_UPDATE_FAILED: "notify_remote_update_failed",
    NotificationKind.REMOTE_UPDATE_APPLIED: "notify_remote_update_applied",
    NotificationKind.LOCAL_UPDATE_APPLIED: "notify_local_update_applied",
    NotificationKind.DELTA_RECEIVED: "notify_delta_received",
    NotificationKind.SYNC_FAILED: "notify_sync_failed",
    NotificationKind.CLIENT_STORAGE_FAILED: "notify_client_storage_failed",
}


@dataclass
class SyncConfig:
    """Per-dataset sync options.

    Attributes:
        sync_frequency: Seconds between the end of one sync round and the next
        auto_sync_local_updates: Request a sync round after every local change
        notify_*: Whether each notification kind is delivered to listeners
        crash_count_wait: Rounds a crashed change may stay unresolved before
            it is retried or dropped
        resend_crashed_updates: Retry (True) or drop (False) a crashed change
            once crash_count_wait is exceeded
    """

    sync_frequency: int = 10
    auto_sync_local_updates: bool = False
    notify_sync_started: bool = False
    notify_sync_completed: bool = False
    notify_offline_update: bool = False
    notify_collision_detected: bool = False
    notify_remote_update_failed: bool = False
    notify_remote_update_applied: bool = False
    notify_local_update_applied: bool = False
    notify_delta_received: bool = False
    notify_sync_failed: bool = False
    notify_client_storage_failed: bool = False
    crash_count_wait: int = 10
    resend_crashed_updates: bool = True

    def __post_init__(self) -> None:
        if self.sync_frequency < 0:
            raise ValidationError("sync_frequency", "must not be negative")
        if self.crash_count_wait < 0:
            raise ValidationError("crash_count_wait", "must not be negative")

    @classmethod
    def all_notifications(cls, **kwargs: Any) -> "SyncConfig":
        """Build a config with every notification kind enabled."""
        flags = {name: True for name in _NOTIFY_FLAGS.values()}
        flags.update(kwargs)
        return cls(**flags)

    def is_enabled(self, kind: NotificationKind) -> bool:
        return bool(getattr(self, _NOTIFY_FLAGS[kind]))

    def to_json(self) -> Dict[str, Any]:
        return {json_key: getattr(self, attr) for attr, json_key in _SYNC_CONFIG_KEYS.items()}

    @classmethod
    def from_json(cls, obj: Optional[Dict[str, Any]]) -> "SyncConfig":
        """Build a config from its JSON form; missing keys keep their defaults."""
        obj = obj or {}
        defaults = cls()
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            json_key = _SYNC_CONFIG_KEYS[f.name]
            value = obj.get(json_key, getattr(defaults, f.name))
            kwargs[f.name] = int(value) if f.type in ("int", int) else bool(value)
        return cls(**kwargs)


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
    """

    DEFAULTS: Dict[str, Any] = {
        "cloud_url": None,
        "client_id": None,
        "storage_dir": None,
        "request_timeout": 30,
        "server_port": 8384,
        "sync": None,
    }

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/datasync/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_data = self.load_config()

    @property
    def config_file(self) -> Path:
        """Get the config file path."""
        return self.config_dir / "config.json"

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from disk, falling back to defaults."""
        data = dict(self.DEFAULTS)
        if not self.config_file.exists():
            return data
        try:
            loaded = json.loads(self.config_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read config file {self.config_file}: {e}. Using defaults.")
            return data
        if not isinstance(loaded, dict):
            logger.error(f"Config file {self.config_file} is not a JSON object. Using defaults.")
            return data
        data.update(loaded)
        return data

    def save_config(self) -> None:
        """Write configuration to disk atomically."""
        fd, temp_path = tempfile.mkstemp(dir=self.config_dir, prefix=".config_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.config_data, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.config_file)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        value = self.config_data.get(key)
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Sync Configuration Methods =====

    def get_client_id_hex(self) -> str:
        """Get this client's id as a hex string, generating it on first access."""
        client_id = self.get("client_id")
        if not client_id:
            client_id = uuid7().hex
            self.set("client_id", client_id)
            logger.info(f"Generated new client id {client_id}")
        return client_id

    def get_cloud_url(self) -> Optional[str]:
        """Get the base URL of the sync endpoint."""
        return self.get("cloud_url")

    def set_cloud_url(self, url: str) -> None:
        """Set the base URL of the sync endpoint."""
        self.set("cloud_url", validate_url(url))

    def get_storage_dir(self) -> Path:
        """Get the directory holding dataset snapshots."""
        storage_dir = self.get("storage_dir")
        if storage_dir:
            return Path(storage_dir)
        return self.config_dir / "datasets"

    def get_request_timeout(self) -> float:
        return float(self.get("request_timeout", 30))

    def get_server_port(self) -> int:
        return int(self.get("server_port", 8384))

    def get_sync_config(self) -> SyncConfig:
        """Get the default per-dataset sync configuration."""
        try:
            return SyncConfig.from_json(self.get("sync"))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid sync section in config: {e}. Using defaults.")
            return SyncConfig()

    def set_sync_config(self, sync_config: SyncConfig) -> None:
        self.set("sync", sync_config.to_json())
