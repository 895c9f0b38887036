"""Sync scheduling for datasync.

The Scheduler owns a monitor thread that wakes up every poll interval and
starts a sync round for each managed dataset that is due. Rounds run in
background threads, at most one per dataset at a time.

A dataset is due when it is not paused, no round is running for it, and one
of these holds:
- it has never started a round
- a round was explicitly requested (force sync or auto sync of local changes)
- sync_frequency seconds have passed since its last round ended

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .dataset import Dataset
from .timestamp_utils import current_millis

logger = logging.getLogger(__name__)

__all__ = ["Scheduler", "is_due"]

DEFAULT_POLL_INTERVAL = 1.0


def is_due(dataset: Dataset, now: int) -> bool:
    """Whether a dataset should start a sync round at time now (epoch ms)."""
    if dataset.paused or dataset.syncing or dataset.destroyed:
        return False
    if dataset.last_sync_start is None or dataset.sync_requested:
        return True
    if dataset.last_sync_end is None:
        # Started a round that never completed, e.g. before a restart
        return True
    return now - dataset.last_sync_end > dataset.config.sync_frequency * 1000


class Scheduler:
    """Starts sync rounds for registered datasets when they are due."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], int] = current_millis,
    ) -> None:
        """Initialize the scheduler.

        Args:
            poll_interval: Seconds between checks of the datasets
            clock: Returns the current time in epoch milliseconds
        """
        self.poll_interval = poll_interval
        self._clock = clock
        self._datasets: Dict[str, Dataset] = {}
        self._active_tasks: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    def add(self, dataset: Dataset) -> None:
        with self._lock:
            self._datasets[dataset.dataset_id] = dataset

    def remove(self, dataset_id: str) -> Optional[Dataset]:
        with self._lock:
            return self._datasets.pop(dataset_id, None)

    def get(self, dataset_id: str) -> Optional[Dataset]:
        with self._lock:
            return self._datasets.get(dataset_id)

    def dataset_ids(self) -> List[str]:
        with self._lock:
            return list(self._datasets)

    @property
    def running(self) -> bool:
        return self._monitor_thread is not None and self._monitor_thread.is_alive()

    def start(self) -> None:
        """Start the monitor thread. Does nothing if it is already running."""
        if self.running:
            return
        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor, name="datasync-scheduler", daemon=True
        )
        self._monitor_thread.start()
        logger.info(f"Sync scheduler started (poll interval {self.poll_interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the monitor thread and wait for running rounds to finish.

        Args:
            timeout: Seconds to wait for each thread; None waits indefinitely
        """
        self._stop_event.set()
        if self._monitor_thread is not None:
            self._monitor_thread.join(timeout)
            self._monitor_thread = None
        for thread in self.active_threads():
            thread.join(timeout)
        logger.info("Sync scheduler stopped")

    def active_threads(self) -> List[threading.Thread]:
        with self._lock:
            return list(self._active_tasks.values())

    def is_running_round(self, dataset_id: str) -> bool:
        with self._lock:
            thread = self._active_tasks.get(dataset_id)
            return thread is not None and thread.is_alive()

    def _monitor(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_datasets()
            except Exception as e:
                logger.error(f"Error checking datasets: {e}")
            self._stop_event.wait(self.poll_interval)

    def check_datasets(self) -> List[str]:
        """Start a round for every due dataset.

        Returns:
            Ids of the datasets a round was started for
        """
        now = self._clock()
        started = []
        with self._lock:
            candidates = list(self._datasets.values())
        for dataset in candidates:
            if self.is_running_round(dataset.dataset_id):
                continue
            if is_due(dataset, now):
                self.start_round(dataset)
                started.append(dataset.dataset_id)
        return started

    def start_round(self, dataset: Dataset) -> threading.Thread:
        """Run one sync round for a dataset in a background thread."""
        thread = threading.Thread(
            target=self._run_round,
            args=(dataset,),
            name=f"datasync-{dataset.dataset_id}",
            daemon=True,
        )
        with self._lock:
            self._active_tasks[dataset.dataset_id] = thread
        thread.start()
        return thread

    def _run_round(self, dataset: Dataset) -> None:
        try:
            status = dataset.run_sync_round()
            logger.debug(f"Round for {dataset.dataset_id} finished: {status}")
        except Exception as e:
            logger.error(f"Sync round for {dataset.dataset_id} failed: {e}")
        finally:
            with self._lock:
                if self._active_tasks.get(dataset.dataset_id) is threading.current_thread():
                    del self._active_tasks[dataset.dataset_id]
