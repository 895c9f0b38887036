"""Snapshot storage for datasync.

Datasets persist themselves as opaque bytes keyed by a content id (the
dataset id). Two implementations are provided:

- FileStorage: one "<content_id>.sync.json" file per dataset in a directory,
  written atomically via a temporary file and rename.
- MemoryStorage: a dict, for tests and short-lived processes.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Union

logger = logging.getLogger(__name__)

__all__ = ["Storage", "FileStorage", "MemoryStorage", "StorageError", "ContentNotFound"]

STORAGE_FILE_EXT = ".sync.json"


class StorageError(IOError):
    """Reading or writing a snapshot failed."""


class ContentNotFound(StorageError):
    """No snapshot exists for the requested content id."""


class Storage(ABC):
    """Byte-oriented get/put keyed by content id."""

    @abstractmethod
    def get_content(self, content_id: str) -> bytes:
        """Return stored bytes.

        Raises:
            ContentNotFound: Nothing stored under content_id
            StorageError: Reading failed
        """

    @abstractmethod
    def put_content(self, content_id: str, content: bytes) -> None:
        """Store bytes, replacing any previous content.

        Raises:
            StorageError: Writing failed
        """


class FileStorage(Storage):
    """Stores each content id as a file in a directory."""

    def __init__(self, directory: Union[Path, str]) -> None:
        self.directory = Path(directory)

    def get_file_path(self, content_id: str) -> Path:
        return self.directory / f"{content_id}{STORAGE_FILE_EXT}"

    def get_content(self, content_id: str) -> bytes:
        path = self.get_file_path(content_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ContentNotFound(f"No stored content for {content_id}") from None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def put_content(self, content_id: str, content: bytes) -> None:
        path = self.get_file_path(content_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Write to temp file first, then rename atomically
            # This prevents partial files if interrupted mid-write
            temp_fd, temp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{content_id}_")
        except OSError as e:
            raise StorageError(f"Failed to prepare {path}: {e}") from e
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(content)
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise StorageError(f"Failed to write {path}: {e}") from e
        logger.debug(f"Wrote {len(content)} bytes to {path}")


class MemoryStorage(Storage):
    """Keeps content in a dict."""

    def __init__(self) -> None:
        self.contents: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get_content(self, content_id: str) -> bytes:
        with self._lock:
            if content_id not in self.contents:
                raise ContentNotFound(f"No stored content for {content_id}")
            return self.contents[content_id]

    def put_content(self, content_id: str, content: bytes) -> None:
        with self._lock:
            self.contents[content_id] = bytes(content)
