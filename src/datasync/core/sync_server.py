"""Reference sync endpoint for datasync.

A small Flask blueprint that speaks the cloud side of the sync protocol over
an in-memory store. It is meant for development, demos and end-to-end tests,
not for production use.

Protocol (every call is "POST /sync/<dataset_id>" with a JSON body):
1. fn=sync: apply the client's pending changes, drop acknowledged results,
   and answer with the global hash plus every result the client has not
   acknowledged yet.
2. fn=syncRecords: compare the client's uid -> hash map with the store and
   answer with create/update/delete deltas.
3. fn=listCollisions / fn=removeCollision: inspect and discard collisions.

Updates and deletes carry the hash of the record they were based on. A change
whose base no longer matches the stored record is recorded as a collision
and not applied.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, Flask, jsonify, request
from uuid6 import uuid7

from .hashing import compute_hash
from .timestamp_utils import current_millis
from .validation import ValidationError, validate_dataset_id, validate_payload

logger = logging.getLogger(__name__)

__all__ = ["SyncStore", "ServerDataset", "create_sync_blueprint", "create_sync_server"]

ANONYMOUS_CLIENT = "anonymous"
PROTOCOL_VERSION = "1.0"


@dataclass
class ServerDataset:
    """Server-side state of one dataset."""

    records: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    collisions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # change key -> result, kept so a resent change is never applied twice
    processed: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # client id -> change key -> result the client has not acknowledged
    unacknowledged: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=dict)

    def global_hash(self) -> str:
        return compute_hash(sorted(record["hash"] for record in self.records.values()))


class SyncStore:
    """Thread-safe in-memory store behind the reference endpoint."""

    def __init__(self) -> None:
        self.datasets: Dict[str, ServerDataset] = {}
        self._lock = threading.Lock()

    def _dataset(self, dataset_id: str) -> ServerDataset:
        dataset = self.datasets.get(dataset_id)
        if dataset is None:
            dataset = ServerDataset()
            self.datasets[dataset_id] = dataset
        return dataset

    def put_record(self, dataset_id: str, uid: str, data: Any) -> Dict[str, Any]:
        """Create or replace a record directly, as another client would."""
        validate_payload(data)
        with self._lock:
            record = {"data": copy.deepcopy(data), "hash": compute_hash(data)}
            self._dataset(dataset_id).records[uid] = record
            return copy.deepcopy(record)

    def remove_record(self, dataset_id: str, uid: str) -> bool:
        with self._lock:
            return self._dataset(dataset_id).records.pop(uid, None) is not None

    def get_records(self, dataset_id: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._dataset(dataset_id).records)

    def sync(self, dataset_id: str, client_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Handle fn=sync."""
        acknowledgements = params.get("acknowledgements") or []
        pending = params.get("pending") or []
        if not isinstance(acknowledgements, list) or not isinstance(pending, list):
            raise ValidationError("pending", "pending and acknowledgements must be lists")
        for change in pending:
            _validate_change(change)

        with self._lock:
            dataset = self._dataset(dataset_id)
            outstanding = dataset.unacknowledged.setdefault(client_id, {})

            for ack in acknowledgements:
                if isinstance(ack, dict) and isinstance(ack.get("hash"), str):
                    outstanding.pop(ack["hash"], None)

            for change in pending:
                key = change["hash"]
                result = dataset.processed.get(key)
                if result is None:
                    result = self._apply_change(dataset, change)
                    dataset.processed[key] = result
                else:
                    logger.debug(f"Change {key} in {dataset_id} already processed")
                outstanding[key] = result

            updates: Dict[str, Dict[str, Any]] = {
                "hashes": {},
                "applied": {},
                "failed": {},
                "collisions": {},
            }
            for key, result in outstanding.items():
                updates["hashes"][key] = copy.deepcopy(result)
                updates[result["type"]][key] = copy.deepcopy(result)

            return {"hash": dataset.global_hash(), "updates": updates}

    def _apply_change(self, dataset: ServerDataset, change: Dict[str, Any]) -> Dict[str, Any]:
        action = change["action"]
        key = change["hash"]
        result: Dict[str, Any] = {"hash": key, "action": action}

        if action == "create":
            uid = uuid7().hex
            post = change["post"]
            dataset.records[uid] = {"data": copy.deepcopy(post), "hash": compute_hash(post)}
            result.update(uid=uid, type="applied")
            logger.info(f"Created record {uid}")
            return result

        uid = change["uid"]
        result["uid"] = uid
        current = dataset.records.get(uid)

        if current is None:
            if action == "delete":
                result["type"] = "applied"
            else:
                result.update(type="failed", message="record not found")
            return result

        if current["hash"] != change.get("preHash"):
            dataset.collisions[key] = {
                "uid": uid,
                "hash": key,
                "action": action,
                "pre": change.get("pre"),
                "preHash": change.get("preHash"),
                "post": change.get("post"),
                "postHash": change.get("postHash"),
                "serverHash": current["hash"],
                "timestamp": current_millis(),
            }
            result.update(type="collisions", message="record changed on the server")
            logger.info(f"Collision on record {uid} for change {key}")
            return result

        if action == "update":
            post = change["post"]
            dataset.records[uid] = {"data": copy.deepcopy(post), "hash": compute_hash(post)}
        else:
            del dataset.records[uid]
        result["type"] = "applied"
        return result

    def sync_records(self, dataset_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Handle fn=syncRecords."""
        client_recs = params.get("clientRecs") or {}
        if not isinstance(client_recs, dict):
            raise ValidationError("clientRecs", "must be an object")

        with self._lock:
            dataset = self._dataset(dataset_id)
            create: Dict[str, Any] = {}
            update: Dict[str, Any] = {}
            delete: Dict[str, Any] = {}
            for uid, record in dataset.records.items():
                if uid not in client_recs:
                    create[uid] = copy.deepcopy(record)
                elif client_recs[uid] != record["hash"]:
                    update[uid] = copy.deepcopy(record)
            for uid in client_recs:
                if uid not in dataset.records:
                    delete[uid] = {}
            return {
                "hash": dataset.global_hash(),
                "create": create,
                "update": update,
                "delete": delete,
            }

    def list_collisions(self, dataset_id: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._dataset(dataset_id).collisions)

    def remove_collision(self, dataset_id: str, collision_hash: str) -> bool:
        with self._lock:
            return self._dataset(dataset_id).collisions.pop(collision_hash, None) is not None


def _validate_change(change: Any) -> None:
    if not isinstance(change, dict):
        raise ValidationError("pending", "each pending change must be an object")
    action = change.get("action")
    if action not in ("create", "update", "delete"):
        raise ValidationError("action", f"unknown action: {action!r}")
    if not isinstance(change.get("hash"), str) or not change["hash"]:
        raise ValidationError("hash", "must be a non-empty string")
    if action != "create" and not isinstance(change.get("uid"), str):
        raise ValidationError("uid", "must be a string")
    if action != "delete":
        if "post" not in change:
            raise ValidationError("post", f"required for {action}")
        validate_payload(change["post"])


def create_sync_blueprint(store: SyncStore) -> Blueprint:
    """Create Flask blueprint for the sync endpoint.

    Args:
        store: Store holding every dataset

    Returns:
        Flask Blueprint with sync routes under /sync
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/sync")

    @sync_bp.route("/status", methods=["GET"])
    def status() -> Tuple[Any, int]:
        """Get sync server status.

        Response:
            {"status": "ok", "protocol_version": "1.0", "datasets": [...]}
        """
        return jsonify({
            "status": "ok",
            "protocol_version": PROTOCOL_VERSION,
            "datasets": sorted(store.datasets),
        }), 200

    @sync_bp.route("/<dataset_id>", methods=["POST"])
    def handle(dataset_id: str) -> Tuple[Any, int]:
        """Dispatch one protocol call on the "fn" field of the body."""
        try:
            data = request.get_json(silent=True)
            if not isinstance(data, dict):
                error_msg = "Missing JSON request body"
                logger.warning(f"Request for {dataset_id} rejected: {error_msg}")
                return jsonify({"error": error_msg}), 400

            try:
                validate_dataset_id(dataset_id)
            except ValidationError as e:
                return jsonify({"error": str(e)}), 400

            client_id = request.headers.get("X-Client-Id") or ANONYMOUS_CLIENT
            fn = data.get("fn")
            logger.debug(f"{fn} from {client_id} for {dataset_id}")

            try:
                if fn == "sync":
                    return jsonify(store.sync(dataset_id, client_id, data)), 200
                if fn == "syncRecords":
                    return jsonify(store.sync_records(dataset_id, data)), 200
                if fn == "listCollisions":
                    return jsonify(store.list_collisions(dataset_id)), 200
                if fn == "removeCollision":
                    collision_hash = data.get("hash")
                    if not isinstance(collision_hash, str):
                        return jsonify({"error": "Missing hash"}), 400
                    removed = store.remove_collision(dataset_id, collision_hash)
                    return jsonify({"removed": removed}), 200
            except ValidationError as e:
                error_msg = f"Invalid {fn} request: {e}"
                logger.warning(error_msg)
                return jsonify({"error": error_msg}), 400

            error_msg = f"Unknown fn: {fn!r}"
            logger.warning(f"Request for {dataset_id} rejected: {error_msg}")
            return jsonify({"error": error_msg}), 400

        except Exception as e:
            error_msg = f"Internal server error: {e}"
            logger.error(error_msg)
            return jsonify({"error": error_msg}), 500

    return sync_bp


def create_sync_server(store: Optional[SyncStore] = None) -> Flask:
    """Create a standalone Flask sync server.

    Args:
        store: Backing store (a new empty one if None)

    Returns:
        Flask application instance; the store is available as app.config["SYNC_STORE"]
    """
    store = store or SyncStore()
    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    app.config["SYNC_STORE"] = store
    app.register_blueprint(create_sync_blueprint(store))
    return app
