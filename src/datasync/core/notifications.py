"""Notification delivery for datasync.

Datasets report what happens to them (sync rounds starting and finishing,
remote outcomes of local changes, deltas from the server, storage trouble)
as NotificationMessage events. Applications receive them by subscribing a
callback or a SyncListener to a NotificationDispatcher; every subscription
returns a handle that must be used to unsubscribe.

Callbacks run on the thread that produced the event (the caller's thread for
local changes, the sync worker thread for sync rounds). A callback raising an
exception is logged and does not affect other subscribers.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "NotificationKind",
    "NotificationMessage",
    "NotificationDispatcher",
    "Subscription",
    "SyncListener",
]


class NotificationKind(Enum):
    """The ten kinds of sync events."""

    SYNC_STARTED = "SYNC_STARTED"
    SYNC_COMPLETED = "SYNC_COMPLETE"
    OFFLINE_UPDATE = "OFFLINE_UPDATE"
    COLLISION_DETECTED = "COLLISION_DETECTED"
    REMOTE_UPDATE_FAILED = "REMOTE_UPDATE_FAILED"
    REMOTE_UPDATE_APPLIED = "REMOTE_UPDATE_APPLIED"
    LOCAL_UPDATE_APPLIED = "LOCAL_UPDATE_APPLIED"
    DELTA_RECEIVED = "DELTA_RECEIVED"
    SYNC_FAILED = "SYNC_FAILED"
    CLIENT_STORAGE_FAILED = "CLIENT_STORAGE_FAILED"


@dataclass(frozen=True)
class NotificationMessage:
    """A single sync event.

    Attributes:
        dataset_id: Dataset the event belongs to
        uid: Record uid the event is about, if any
        kind: What happened
        message: Extra detail (action name, sync status, raw server entry...)
    """

    dataset_id: str
    uid: Optional[str]
    kind: NotificationKind
    message: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.kind.value} dataset={self.dataset_id} uid={self.uid} message={self.message}"


NotificationCallback = Callable[[NotificationMessage], None]


class SyncListener:
    """Base class for listeners that want one method per notification kind.

    Subclasses override the on_* methods they care about; the rest are no-ops.
    An instance can be passed directly to NotificationDispatcher.subscribe().
    """

    _METHODS = {
        NotificationKind.SYNC_STARTED: "on_sync_started",
        NotificationKind.SYNC_COMPLETED: "on_sync_completed",
        NotificationKind.OFFLINE_UPDATE: "on_update_offline",
        NotificationKind.COLLISION_DETECTED: "on_collision_detected",
        NotificationKind.REMOTE_UPDATE_FAILED: "on_remote_update_failed",
        NotificationKind.REMOTE_UPDATE_APPLIED: "on_remote_update_applied",
        NotificationKind.LOCAL_UPDATE_APPLIED: "on_local_update_applied",
        NotificationKind.DELTA_RECEIVED: "on_delta_received",
        NotificationKind.SYNC_FAILED: "on_sync_failed",
        NotificationKind.CLIENT_STORAGE_FAILED: "on_client_storage_failed",
    }

    def __call__(self, message: NotificationMessage) -> None:
        getattr(self, self._METHODS[message.kind])(message)

    def on_sync_started(self, message: NotificationMessage) -> None:
        pass

    def on_sync_completed(self, message: NotificationMessage) -> None:
        pass

    def on_update_offline(self, message: NotificationMessage) -> None:
        pass

    def on_collision_detected(self, message: NotificationMessage) -> None:
        pass

    def on_remote_update_failed(self, message: NotificationMessage) -> None:
        pass

    def on_remote_update_applied(self, message: NotificationMessage) -> None:
        pass

    def on_local_update_applied(self, message: NotificationMessage) -> None:
        pass

    def on_delta_received(self, message: NotificationMessage) -> None:
        pass

    def on_sync_failed(self, message: NotificationMessage) -> None:
        pass

    def on_client_storage_failed(self, message: NotificationMessage) -> None:
        pass


class Subscription:
    """Handle returned by NotificationDispatcher.subscribe()."""

    def __init__(
        self,
        dispatcher: "NotificationDispatcher",
        callback: NotificationCallback,
        kinds: Optional[FrozenSet[NotificationKind]],
    ) -> None:
        self._dispatcher = dispatcher
        self.callback = callback
        self.kinds = kinds
        self.active = True

    def wants(self, kind: NotificationKind) -> bool:
        return self.kinds is None or kind in self.kinds

    def unsubscribe(self) -> None:
        """Stop receiving notifications. Safe to call more than once."""
        if self.active:
            self._dispatcher._remove(self)
            self.active = False


class NotificationDispatcher:
    """Fans notifications out to subscribed callbacks, in subscription order."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: NotificationCallback,
        kinds: Optional[Iterable[NotificationKind]] = None,
    ) -> Subscription:
        """Register a callback.

        Args:
            callback: Callable taking a NotificationMessage (a SyncListener works)
            kinds: Only deliver these kinds; None means all kinds

        Returns:
            Subscription handle; call unsubscribe() on it when done
        """
        subscription = Subscription(self, callback, frozenset(kinds) if kinds is not None else None)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def clear(self) -> None:
        with self._lock:
            for subscription in self._subscriptions:
                subscription.active = False
            self._subscriptions = []

    def dispatch(self, message: NotificationMessage) -> None:
        """Deliver a message to every interested subscriber."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(message.kind)]
        for subscription in targets:
            try:
                subscription.callback(message)
            except Exception as e:
                logger.warning(f"Error in notification callback for {message.kind.value}: {e}")


class NotificationRecorder:
    """Callback that keeps every message it receives. Handy in tests and the CLI."""

    def __init__(self) -> None:
        self.messages: List[NotificationMessage] = []
        self._lock = threading.Lock()

    def __call__(self, message: NotificationMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def kinds(self) -> List[NotificationKind]:
        with self._lock:
            return [m.kind for m in self.messages]

    def of_kind(self, kind: NotificationKind) -> List[NotificationMessage]:
        with self._lock:
            return [m for m in self.messages if m.kind is kind]

    def counts(self) -> Dict[NotificationKind, int]:
        result: Dict[NotificationKind, int] = {}
        for kind in self.kinds():
            result[kind] = result.get(kind, 0) + 1
        return result

    def clear(self) -> None:
        with self._lock:
            self.messages = []
