"""Dataset reconciliation engine for datasync.

A Dataset is the local mirror of one named remote dataset. Applications read
and change it synchronously; every change is applied to local state at once
and queued as a PendingChange. Sync rounds then reconcile local and remote
state with a two-phase protocol:

1. "sync": send the queued changes that are not in flight, crashed or
   delayed, together with the last known global hash and the acknowledgements
   for the previous round's results. Process the outcome of earlier changes.
2. "syncRecords": only when the server's global hash differs from ours. Send
   every uid -> content hash pair and apply the create/update/delete deltas
   the server answers with.

Failure handling:
- Transport failure: every in-flight change is marked crashed. Crashed
  changes are resolved later from the "updates.hashes" map of a successful
  response, or retried/dropped after crash_count_wait unanswered rounds.
- A change queued on a record whose previous change is already in flight is
  delayed until the previous one resolves.
- Records created locally carry a temporary uid (their content hash) until
  the server reports the uid it assigned.

Locking: one re-entrant lock per dataset guards records, pending changes,
record metadata and the persisted snapshot. Network requests are made
without holding it, so local changes can proceed during a round. Rounds on
the same dataset are serialized by a separate lock.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from .config import SyncConfig
from .models import Action, DataRecord, PendingChange, RecordMeta
from .network import NetworkClient, NetworkResponse
from .notifications import NotificationDispatcher, NotificationKind, NotificationMessage
from .storage import ContentNotFound, Storage, StorageError
from .timestamp_utils import current_millis
from .validation import (
    ValidationError,
    validate_dataset_id,
    validate_json_object,
    validate_payload,
    validate_sync_records_response,
    validate_sync_response,
    validate_uid,
)

logger = logging.getLogger(__name__)

__all__ = ["Dataset", "STATUS_ONLINE", "STATUS_OFFLINE"]

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

KEY_DATASET_ID = "dataSetId"
KEY_SYNC_LOOP_START = "syncLoopStart"
KEY_SYNC_LOOP_END = "syncLoopEnd"
KEY_SYNC_CONFIG = "syncConfig"
KEY_PENDING_RECORDS = "pendingDataRecords"
KEY_DATA_RECORDS = "dataRecords"
KEY_HASH_VALUE = "hashValue"
KEY_ACKNOWLEDGEMENTS = "acknowledgements"
KEY_QUERY_PARAMS = "queryParams"
KEY_METADATA = "metaData"
KEY_CUSTOM_METADATA = "customMetaData"
KEY_UID_MAPPINGS = "uidMappings"

_OUTCOME_KINDS = {
    "applied": NotificationKind.REMOTE_UPDATE_APPLIED,
    "failed": NotificationKind.REMOTE_UPDATE_FAILED,
    "collisions": NotificationKind.COLLISION_DETECTED,
}


class Dataset:
    """Local mirror of a remote dataset plus its queue of pending changes.

    Attributes:
        dataset_id: Name of the dataset (also its storage content id)
        config: Per-dataset SyncConfig
        records: uid -> DataRecord
        pending: pending change key -> PendingChange
        record_meta: uid -> RecordMeta linking a record to its latest pending change
        global_hash: Server fingerprint of the whole dataset, compared only for equality
        acknowledgements: Server results to acknowledge in the next round
        last_sync_start / last_sync_end: Epoch milliseconds of the last round
        syncing: A round is in progress
        sync_requested: A round should run as soon as possible
        paused: The scheduler must not start new rounds
    """

    def __init__(
        self,
        dataset_id: str,
        storage: Storage,
        network_client: NetworkClient,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[SyncConfig] = None,
        query_params: Optional[Dict[str, Any]] = None,
        meta_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Create a dataset, restoring its snapshot from storage if one exists.

        Args:
            dataset_id: Name of the dataset
            storage: Snapshot storage
            network_client: Transport to the sync endpoint
            dispatcher: Where notifications go (None drops them)
            config: Overrides the stored SyncConfig when given
            query_params: Overrides the stored query params when given
            meta_data: Custom metadata sent with every request
        """
        self.dataset_id = validate_dataset_id(dataset_id)
        self._storage = storage
        self._network = network_client
        self._dispatcher = dispatcher

        self.config = SyncConfig()
        self.query_params: Dict[str, Any] = {}
        self.custom_meta_data: Dict[str, Any] = {}
        self.records: Dict[str, DataRecord] = {}
        self.pending: Dict[str, PendingChange] = {}
        self.record_meta: Dict[str, RecordMeta] = {}
        self.uid_mappings: Dict[str, str] = {}
        self.global_hash: Optional[str] = None
        self.acknowledgements: List[Dict[str, Any]] = []
        self.last_sync_start: Optional[int] = None
        self.last_sync_end: Optional[int] = None
        self.syncing = False
        self.sync_requested = False
        self.paused = False
        # Last connectivity seen by a sync round; None until the first round
        self.online: Optional[bool] = None

        self._lock = threading.RLock()
        self._round_lock = threading.Lock()
        self._destroyed = False

        self.load()

        if config is not None:
            self.config = config
        if query_params is not None:
            self.query_params = copy.deepcopy(validate_json_object(query_params, "query_params"))
        if meta_data is not None:
            self.custom_meta_data = copy.deepcopy(validate_json_object(meta_data, "meta_data"))

    # ===== Settings =====

    def set_config(self, config: SyncConfig) -> None:
        with self._lock:
            self.config = config

    def set_query_params(self, query_params: Dict[str, Any]) -> None:
        with self._lock:
            self.query_params = copy.deepcopy(validate_json_object(query_params, "query_params"))

    def set_meta_data(self, meta_data: Dict[str, Any]) -> None:
        with self._lock:
            self.custom_meta_data = copy.deepcopy(validate_json_object(meta_data, "meta_data"))

    def set_dispatcher(self, dispatcher: Optional[NotificationDispatcher]) -> None:
        self._dispatcher = dispatcher

    def request_sync(self) -> None:
        """Ask for a sync round as soon as the scheduler can run one."""
        with self._lock:
            self.sync_requested = True

    def pause(self) -> None:
        with self._lock:
            self.paused = True

    def resume(self) -> None:
        with self._lock:
            self.paused = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """Discard in-memory state. The persisted snapshot is left untouched.

        A round still waiting on the network finishes without touching state
        or storage.
        """
        with self._lock:
            self._destroyed = True
            self.paused = True
            self.records = {}
            self.pending = {}
            self.record_meta = {}
            self.acknowledgements = []
        logger.info(f"Dataset {self.dataset_id} destroyed")

    # ===== Local API =====

    def resolve_uid(self, uid: str) -> str:
        """Follow a temporary uid to the uid the server assigned, if known."""
        validate_uid(uid)
        with self._lock:
            if uid in self.records:
                return uid
            return self.uid_mappings.get(uid, uid)

    def list_data(self) -> Dict[str, Dict[str, Any]]:
        """Get a copy of every record as {uid: {"uid": uid, "data": payload}}."""
        with self._lock:
            return {
                uid: {"uid": uid, "data": record.copy_payload()}
                for uid, record in self.records.items()
            }

    def read_data(self, uid: str) -> Optional[Dict[str, Any]]:
        """Get a copy of one record, or None if it is not known."""
        with self._lock:
            record = self.records.get(self.resolve_uid(uid))
            if record is None:
                return None
            return {"uid": record.uid, "data": record.copy_payload()}

    def create_data(self, payload: Any) -> Dict[str, Any]:
        """Create a record locally and queue it for the server.

        The record gets a temporary uid (its content hash) until the server
        reports the uid it assigned.

        Returns:
            {"uid": temporary uid, "data": payload copy}
        """
        validate_payload(payload)
        with self._lock:
            change = PendingChange.for_create(payload)
            self._enqueue(change)
            record = self.records[change.uid]
            return {"uid": change.uid, "data": record.copy_payload()}

    def update_data(self, uid: str, payload: Any) -> Optional[Dict[str, Any]]:
        """Replace a record's payload locally and queue the update.

        Returns:
            {"uid", "data"} of the updated record, or None if uid is unknown
        """
        validate_payload(payload)
        with self._lock:
            existing = self.records.get(self.resolve_uid(uid))
            if existing is None:
                logger.debug(f"Update of unknown uid {uid} in {self.dataset_id} ignored")
                return None
            change = PendingChange.for_update(existing, payload)
            self._enqueue(change)
            return {"uid": existing.uid, "data": self.records[existing.uid].copy_payload()}

    def delete_data(self, uid: str) -> Optional[Dict[str, Any]]:
        """Remove a record locally and queue the delete.

        Returns:
            {"uid", "data"} of the deleted record, or None if uid is unknown
        """
        with self._lock:
            existing = self.records.get(self.resolve_uid(uid))
            if existing is None:
                logger.debug(f"Delete of unknown uid {uid} in {self.dataset_id} ignored")
                return None
            change = PendingChange.for_delete(existing)
            self._enqueue(change)
            return {"uid": existing.uid, "data": existing.copy_payload()}

    def _enqueue(self, change: PendingChange) -> None:
        """Apply a new change to local state and merge it into the pending queue.

        Changes on a record whose previous change is still local are merged
        into it. Changes behind an in-flight change are delayed.
        """
        if self.online is False:
            self._notify(change.uid, NotificationKind.OFFLINE_UPDATE, change.action.value)

        uid = change.uid
        meta = self.record_meta.get(uid)
        previous: Optional[PendingChange] = None
        if meta is not None and meta.from_pending and meta.pending_key:
            previous = self.pending.get(meta.pending_key)

        store = True
        saved_key = change.key
        logger.debug(
            f"Queueing {change.action.value} for {uid} in {self.dataset_id} "
            f"(previous={previous.key if previous else None})"
        )

        if change.action is Action.CREATE:
            if previous is not None and previous.key == change.key:
                if previous.in_flight:
                    # Identical content already on its way to the server
                    logger.debug(f"Create of {uid} already in flight, not queued again")
                    return
                self._drop_pending(previous.key)
            # A new record with this temporary uid replaces any earlier remap
            self.uid_mappings.pop(uid, None)
            self.records[uid] = change.post_image

        elif change.action is Action.UPDATE:
            if previous is not None:
                if not previous.in_flight:
                    # Fold the new content into the change that has not left yet
                    previous.post_image = change.post_image
                    store = False
                    saved_key = previous.key
                else:
                    self._delay_behind(change, previous)
            self.records[uid] = change.post_image

        elif change.action is Action.DELETE:
            self._forget_mappings_to(uid)
            if previous is not None:
                if not previous.in_flight:
                    if previous.action is Action.CREATE:
                        # The server never saw this record: both changes cancel out
                        self._drop_pending(previous.key)
                        self.records.pop(uid, None)
                        self.record_meta.pop(uid, None)
                        self._after_enqueue(change)
                        return
                    if previous.action is Action.UPDATE:
                        change.pre_image = previous.pre_image
                        change.delayed = previous.delayed
                        change.waiting_on_key = previous.waiting_on_key
                        change.crashed = previous.crashed
                        self._drop_pending(previous.key)
                else:
                    self._delay_behind(change, previous)
            self.records.pop(uid, None)

        if store:
            self.pending[change.key] = change
        self.record_meta[uid] = RecordMeta(from_pending=True, pending_key=saved_key)
        self._after_enqueue(change)

    def _after_enqueue(self, change: PendingChange) -> None:
        if self.config.auto_sync_local_updates:
            self.sync_requested = True
        self._write_to_storage()
        self._notify(change.uid, NotificationKind.LOCAL_UPDATE_APPLIED, change.action.value)

    def _delay_behind(self, change: PendingChange, previous: PendingChange) -> None:
        if previous.key == change.key:
            logger.warning(f"Change {change.key} would wait on itself; not delaying it")
            change.clear_delay()
            return
        change.delayed = True
        change.waiting_on_key = previous.key
        if previous.crashed:
            # Stalled behind a crash: released once the crash is resolved
            change.crashed = True
        logger.debug(f"Change {change.key} delayed behind in-flight {previous.key}")

    def _drop_pending(self, key: str) -> Optional[PendingChange]:
        change = self.pending.pop(key, None)
        if change is not None:
            meta = self.record_meta.get(change.uid)
            if meta is not None and meta.pending_key == key:
                del self.record_meta[change.uid]
        return change

    # ===== Sync round =====

    def run_sync_round(self) -> Optional[str]:
        """Run one complete sync round on the calling thread.

        Returns:
            Final status ("online", "offline" or an error message), or None if
            the round was skipped because one is already running or the
            dataset was destroyed
        """
        if not self._round_lock.acquire(blocking=False):
            return None
        try:
            with self._lock:
                if self._destroyed or self.syncing:
                    return None
                self.sync_requested = False
                self.syncing = True
                self.last_sync_start = current_millis()
                self._notify(None, NotificationKind.SYNC_STARTED, None)
            logger.info(f"Sync round started for {self.dataset_id}")

            try:
                return self._run_phases()
            except Exception as e:
                logger.exception(f"Unexpected error during sync of {self.dataset_id}")
                return self._fail_round(f"Sync error: {e}", mark_crashed=True)
        finally:
            self._round_lock.release()

    def _run_phases(self) -> Optional[str]:
        online = self._network.is_online()
        with self._lock:
            self.online = online
        if not online:
            return self._complete(STATUS_OFFLINE)

        with self._lock:
            params = self._build_sync_params()
        logger.debug(
            f"Starting sync loop for {self.dataset_id}: global hash={params.get('dataset_hash')} "
            f"pending={len(params['pending'])}"
        )
        response = self._network.perform_request(self.dataset_id, params)
        return self._handle_sync_response(response)

    def _build_sync_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "fn": "sync",
            "dataset_id": self.dataset_id,
            "meta_data": copy.deepcopy(self.custom_meta_data),
            "query_params": copy.deepcopy(self.query_params),
            "acknowledgements": copy.deepcopy(self.acknowledgements),
        }
        if self.global_hash is not None:
            params["dataset_hash"] = self.global_hash

        now = current_millis()
        outgoing = []
        for change in self.pending.values():
            if not change.in_flight and not change.crashed and not change.delayed:
                change.mark_in_flight(now)
                outgoing.append(change.to_wire())
        params["pending"] = outgoing
        return params

    def _handle_sync_response(self, response: NetworkResponse) -> Optional[str]:
        if self._destroyed:
            logger.info(f"Ignoring sync response for destroyed dataset {self.dataset_id}")
            return None
        if not response.ok:
            logger.error(f"Sync loop failed for {self.dataset_id}: {response.error}")
            return self._fail_round(response.error or "sync failed", mark_crashed=True)
        try:
            data = validate_sync_response(response.data)
        except ValidationError as e:
            logger.error(f"Malformed sync response for {self.dataset_id}: {e}")
            return self._fail_round(f"Malformed sync response: {e}", mark_crashed=True)

        with self._lock:
            if self._destroyed:
                return None
            self._apply_sync_response(data)
            remote_hash = data.get("hash")
            stale = remote_hash is not None and remote_hash != self.global_hash

        if stale:
            logger.debug(
                f"Local dataset {self.dataset_id} stale: local hash={self.global_hash} "
                f"remote hash={remote_hash}"
            )
            return self._sync_records()
        logger.info(f"Local dataset {self.dataset_id} up to date")
        return self._complete(STATUS_ONLINE)

    def _apply_sync_response(self, data: Dict[str, Any]) -> None:
        """Process a phase-one response. Must hold the lock."""
        updates = data.get("updates") or {}
        hashes = updates.get("hashes") or {}

        self._resolve_crashed(hashes)
        self._resolve_delayed(hashes)
        self._cleanup_record_meta(hashes)

        if "updates" in data:
            acknowledgements: List[Dict[str, Any]] = []
            applied = updates.get("applied") or {}
            self._remap_created_uids(applied)
            for bucket in ("applied", "failed", "collisions"):
                self._process_updates(updates.get(bucket) or {}, bucket, acknowledgements)
            self.acknowledgements = acknowledgements

    def _resolve_crashed(self, hashes: Dict[str, Dict[str, Any]]) -> Set[str]:
        """Settle crashed in-flight changes the server now reports on.

        Returns:
            uids whose crashed change was resolved
        """
        resolved_uids: Set[str] = set()

        for key, change in list(self.pending.items()):
            if not (change.in_flight and change.crashed):
                continue
            entry = hashes.get(key)
            if entry is None:
                # No word on this crashed change in this round
                change.crash_count += 1
                continue

            logger.debug(f"Resolving crashed change {key} for {change.uid}: {entry}")
            outcome = entry.get("type")
            action = entry.get("action") or change.action.value
            resolved_uids.add(change.uid)
            if isinstance(entry.get("uid"), str):
                resolved_uids.add(entry["uid"])

            if outcome == "failed":
                if action == Action.CREATE.value:
                    self.records.pop(change.uid, None)
                elif change.pre_image is not None:
                    self.records[change.uid] = change.pre_image
            elif outcome == "applied" and action == Action.CREATE.value:
                new_uid = entry.get("uid")
                if isinstance(new_uid, str) and new_uid != change.uid:
                    self._remap_uid(change.uid, new_uid)

            self._drop_pending(key)
            kind = _OUTCOME_KINDS.get(outcome)
            if kind is not None:
                self._notify(entry.get("uid", change.uid), kind, json.dumps(entry))

        for key, change in list(self.pending.items()):
            if change.in_flight and change.crashed:
                if change.crash_count > self.config.crash_count_wait:
                    if self.config.resend_crashed_updates:
                        logger.debug(f"Retrying crashed change {key} after {change.crash_count} rounds")
                        change.crashed = False
                        change.in_flight = False
                        change.in_flight_at = None
                        change.crash_count = 0
                    else:
                        logger.debug(f"Dropping crashed change {key} after {change.crash_count} rounds")
                        self._drop_pending(key)
                        self._notify(
                            change.uid,
                            NotificationKind.REMOTE_UPDATE_FAILED,
                            f"{change.action.value} dropped after {change.crash_count} unresolved rounds",
                        )
        crashed_in_flight = {
            key for key, change in self.pending.items() if change.in_flight and change.crashed
        }
        for key, change in self.pending.items():
            if not change.in_flight and change.crashed:
                if change.uid in resolved_uids or change.waiting_on_key not in crashed_in_flight:
                    logger.debug(f"Releasing change {key} stalled behind a resolved crash")
                    change.crashed = False

        return resolved_uids

    def _resolve_delayed(self, hashes: Dict[str, Dict[str, Any]]) -> None:
        """Release delayed changes whose predecessor has resolved or vanished."""
        pending_keys = set(self.pending)
        for change in self.pending.values():
            if not change.delayed:
                continue
            waiting = change.waiting_on_key
            if waiting is None:
                change.clear_delay()
            elif waiting == change.key:
                logger.warning(f"Change {change.key} was waiting on itself; releasing it")
                change.clear_delay()
            elif waiting in hashes or waiting not in pending_keys:
                logger.debug(f"Releasing delayed change {change.key} (waited on {waiting})")
                change.clear_delay()

    def _cleanup_record_meta(self, hashes: Dict[str, Dict[str, Any]]) -> None:
        for uid in [u for u, meta in self.record_meta.items() if meta.pending_key in hashes]:
            del self.record_meta[uid]

    def _remap_created_uids(self, applied: Dict[str, Dict[str, Any]]) -> None:
        for entry in applied.values():
            if entry.get("action") != Action.CREATE.value:
                continue
            old_uid = entry.get("hash")
            new_uid = entry.get("uid")
            if old_uid and new_uid and old_uid != new_uid:
                self._remap_uid(old_uid, new_uid)

    def _forget_mappings_to(self, uid: str) -> None:
        for temp_uid in [t for t, target in self.uid_mappings.items() if target == uid]:
            del self.uid_mappings[temp_uid]

    def _remap_uid(self, old_uid: str, new_uid: str) -> None:
        """Move every reference to a temporary uid over to the server's uid."""
        logger.debug(f"Remapping uid {old_uid} -> {new_uid} in {self.dataset_id}")
        for temp_uid, target in self.uid_mappings.items():
            if target == old_uid:
                self.uid_mappings[temp_uid] = new_uid
        self.uid_mappings[old_uid] = new_uid
        record = self.records.pop(old_uid, None)
        if record is not None:
            self.records[new_uid] = record.with_uid(new_uid)
        meta = self.record_meta.pop(old_uid, None)
        if meta is not None:
            self.record_meta[new_uid] = meta
        for change in self.pending.values():
            if change.uid != old_uid:
                continue
            change.uid = new_uid
            if change.pre_image is not None:
                change.pre_image = change.pre_image.with_uid(new_uid)
            if change.post_image is not None:
                change.post_image = change.post_image.with_uid(new_uid)

    def _process_updates(
        self,
        bucket: Dict[str, Dict[str, Any]],
        outcome: str,
        acknowledgements: List[Dict[str, Any]],
    ) -> None:
        kind = _OUTCOME_KINDS[outcome]
        for key, entry in bucket.items():
            acknowledgements.append(entry)
            change = self.pending.get(key)
            if change is not None and change.in_flight and not change.crashed:
                self._drop_pending(key)
                self._notify(entry.get("uid"), kind, json.dumps(entry))

    def _sync_records(self) -> Optional[str]:
        with self._lock:
            params = {
                "fn": "syncRecords",
                "dataset_id": self.dataset_id,
                "query_params": copy.deepcopy(self.query_params),
                "meta_data": copy.deepcopy(self.custom_meta_data),
                "clientRecs": {uid: record.content_hash for uid, record in self.records.items()},
            }
        logger.debug(f"Syncing {len(params['clientRecs'])} records for {self.dataset_id}")
        response = self._network.perform_request(self.dataset_id, params)

        if self._destroyed:
            logger.info(f"Ignoring syncRecords response for destroyed dataset {self.dataset_id}")
            return None
        if not response.ok:
            logger.error(f"syncRecords failed for {self.dataset_id}: {response.error}")
            return self._fail_round(response.error or "syncRecords failed", mark_crashed=False)
        try:
            data = validate_sync_records_response(response.data)
        except ValidationError as e:
            logger.error(f"Malformed syncRecords response for {self.dataset_id}: {e}")
            return self._fail_round(f"Malformed syncRecords response: {e}", mark_crashed=False)

        with self._lock:
            if self._destroyed:
                return None
            self._apply_sync_records(data)
        return self._complete(STATUS_ONLINE)

    def _apply_sync_records(self, data: Dict[str, Any]) -> None:
        """Apply phase-two deltas. Must hold the lock."""
        buckets = {name: dict(data.get(name) or {}) for name in ("create", "update", "delete")}

        # Local changes the server has not confirmed yet win over its view,
        # otherwise they would visibly flip back until confirmed.
        for uid in {change.uid for change in self.pending.values()}:
            for bucket in buckets.values():
                bucket.pop(uid, None)

        for uid, entry in buckets["create"].items():
            self.records[uid] = self._record_from_delta(uid, entry)
            self._notify(uid, NotificationKind.DELTA_RECEIVED, "create")

        for uid, entry in buckets["update"].items():
            self.records[uid] = self._record_from_delta(uid, entry)
            self._notify(uid, NotificationKind.DELTA_RECEIVED, "update")

        for uid in buckets["delete"]:
            self.records.pop(uid, None)
            self.record_meta.pop(uid, None)
            self._forget_mappings_to(uid)
            self._notify(uid, NotificationKind.DELTA_RECEIVED, "delete")

        if isinstance(data.get("hash"), str):
            self.global_hash = data["hash"]

    def _record_from_delta(self, uid: str, entry: Dict[str, Any]) -> DataRecord:
        record = DataRecord.from_payload(entry["data"], uid=uid)
        remote_hash = entry.get("hash")
        if remote_hash is not None and remote_hash != record.content_hash:
            logger.debug(
                f"Server hash {remote_hash} for {uid} differs from local hash {record.content_hash}"
            )
        return record

    def _fail_round(self, error: str, mark_crashed: bool) -> Optional[str]:
        with self._lock:
            if mark_crashed:
                self._mark_in_flight_as_crashed()
            self._notify(None, NotificationKind.SYNC_FAILED, error)
        return self._complete(error)

    def _mark_in_flight_as_crashed(self) -> None:
        for key, change in self.pending.items():
            if change.in_flight:
                logger.debug(f"Marking in-flight change {key} as crashed")
                change.crashed = True

    def _complete(self, status: str) -> Optional[str]:
        with self._lock:
            self.syncing = False
            if self._destroyed:
                return None
            self.last_sync_end = current_millis()
            self._write_to_storage()
            self._notify(None, NotificationKind.SYNC_COMPLETED, status)
        logger.info(f"Sync round for {self.dataset_id} completed: {status}")
        return status

    # ===== Status =====

    def get_status(self) -> Dict[str, Any]:
        """Summarize dataset state for display."""
        with self._lock:
            changes = list(self.pending.values())
            return {
                "dataset_id": self.dataset_id,
                "records": len(self.records),
                "pending": len(changes),
                "in_flight": sum(1 for c in changes if c.in_flight),
                "crashed": sum(1 for c in changes if c.crashed),
                "delayed": sum(1 for c in changes if c.delayed),
                "global_hash": self.global_hash,
                "last_sync_start": self.last_sync_start,
                "last_sync_end": self.last_sync_end,
                "syncing": self.syncing,
                "paused": self.paused,
            }

    # ===== Persistence =====

    def to_json(self) -> Dict[str, Any]:
        """Snapshot of the dataset as written to storage."""
        with self._lock:
            ret: Dict[str, Any] = {
                KEY_DATASET_ID: self.dataset_id,
                KEY_SYNC_CONFIG: self.config.to_json(),
                KEY_PENDING_RECORDS: {key: c.to_json() for key, c in self.pending.items()},
                KEY_DATA_RECORDS: {uid: r.to_json() for uid, r in self.records.items()},
                KEY_ACKNOWLEDGEMENTS: copy.deepcopy(self.acknowledgements),
                KEY_QUERY_PARAMS: copy.deepcopy(self.query_params),
                KEY_METADATA: {uid: m.to_json() for uid, m in self.record_meta.items()},
                KEY_CUSTOM_METADATA: copy.deepcopy(self.custom_meta_data),
                KEY_UID_MAPPINGS: dict(self.uid_mappings),
            }
            if self.global_hash is not None:
                ret[KEY_HASH_VALUE] = self.global_hash
            if self.last_sync_start is not None:
                ret[KEY_SYNC_LOOP_START] = self.last_sync_start
            if self.last_sync_end is not None:
                ret[KEY_SYNC_LOOP_END] = self.last_sync_end
            return ret

    def _from_json(self, obj: Dict[str, Any]) -> None:
        """Restore state from a snapshot. Raises on malformed input without
        modifying the dataset."""
        config = SyncConfig.from_json(obj[KEY_SYNC_CONFIG])
        pending = {
            key: PendingChange.from_json(value, key=key)
            for key, value in obj[KEY_PENDING_RECORDS].items()
        }
        records = {
            uid: DataRecord.from_json(value).with_uid(uid)
            for uid, value in obj[KEY_DATA_RECORDS].items()
        }
        record_meta = {
            uid: RecordMeta.from_json(value) for uid, value in (obj.get(KEY_METADATA) or {}).items()
        }
        acknowledgements = list(obj.get(KEY_ACKNOWLEDGEMENTS) or [])
        query_params = validate_json_object(obj.get(KEY_QUERY_PARAMS), KEY_QUERY_PARAMS)
        custom_meta = validate_json_object(obj.get(KEY_CUSTOM_METADATA), KEY_CUSTOM_METADATA)

        # A change persisted as in flight belongs to a request whose outcome
        # was never seen; treat it as crashed.
        for change in pending.values():
            if change.in_flight:
                change.crashed = True

        self.config = config
        self.pending = pending
        self.records = records
        self.record_meta = record_meta
        self.acknowledgements = acknowledgements
        self.query_params = query_params
        self.custom_meta_data = custom_meta
        self.uid_mappings = dict(obj.get(KEY_UID_MAPPINGS) or {})
        self.global_hash = obj.get(KEY_HASH_VALUE)
        self.last_sync_start = obj.get(KEY_SYNC_LOOP_START)
        self.last_sync_end = obj.get(KEY_SYNC_LOOP_END)

    def load(self) -> bool:
        """Restore the dataset from storage.

        Returns:
            True if a snapshot was loaded
        """
        try:
            content = self._storage.get_content(self.dataset_id)
        except ContentNotFound:
            logger.warning(f"No stored snapshot for dataset {self.dataset_id}")
            return False
        except StorageError as e:
            logger.error(f"Error reading from storage, dataset {self.dataset_id}: {e}")
            self._notify(None, NotificationKind.CLIENT_STORAGE_FAILED, str(e))
            return False

        try:
            obj = json.loads(content.decode("utf-8"))
            if not isinstance(obj, dict):
                raise ValueError("snapshot is not a JSON object")
            with self._lock:
                self._from_json(obj)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to parse stored snapshot for dataset {self.dataset_id}: {e}")
            return False

        self._notify(None, NotificationKind.LOCAL_UPDATE_APPLIED, "load")
        return True

    def _write_to_storage(self) -> None:
        with self._lock:
            if self._destroyed:
                return
            content = json.dumps(self.to_json()).encode("utf-8")
            try:
                self._storage.put_content(self.dataset_id, content)
            except StorageError as e:
                logger.error(f"Error writing to storage, dataset {self.dataset_id}: {e}")
                self._notify(None, NotificationKind.CLIENT_STORAGE_FAILED, str(e))

    def save(self) -> None:
        """Persist the current state."""
        self._write_to_storage()

    # ===== Notifications =====

    def _notify(self, uid: Optional[str], kind: NotificationKind, message: Optional[str]) -> None:
        if self._dispatcher is None or not self.config.is_enabled(kind):
            return
        self._dispatcher.dispatch(NotificationMessage(self.dataset_id, uid, kind, message))
