"""Data models for datasync.

This module defines the two entities the sync engine juggles:

- DataRecord: one record of a dataset (uid, payload, content hash). Frozen;
  changing a record means building a new one, so a record stored in the
  dataset can never alias the pre-image snapshot held by a pending change.
- PendingChange: one queued local mutation and its lifecycle flags
  (in flight, crashed, delayed).

Both round-trip through JSON for dataset snapshots and for the wire.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .hashing import compute_hash, hash_text
from .timestamp_utils import current_millis


class Action(Enum):
    """Kinds of local mutation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class DataRecord:
    """A single versioned record.

    Attributes:
        uid: Record identifier (server-assigned, or a temporary content hash
            for records created locally and not yet confirmed)
        payload: JSON-like record content
        content_hash: compute_hash(payload), never set independently
    """

    uid: Optional[str]
    payload: Any
    content_hash: str

    @classmethod
    def from_payload(cls, payload: Any, uid: Optional[str] = None) -> "DataRecord":
        """Build a record from a payload, copying it and computing its hash."""
        data = copy.deepcopy(payload)
        return cls(uid=uid, payload=data, content_hash=compute_hash(data))

    def with_uid(self, uid: Optional[str]) -> "DataRecord":
        return replace(self, uid=uid)

    def copy_payload(self) -> Any:
        """Return a deep copy of the payload that callers may mutate freely."""
        return copy.deepcopy(self.payload)

    def to_json(self) -> Dict[str, Any]:
        ret: Dict[str, Any] = {"data": self.copy_payload(), "hashValue": self.content_hash}
        if self.uid is not None:
            ret["uid"] = self.uid
        return ret

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "DataRecord":
        # The hash is always recomputed from data; a stored hashValue is ignored.
        return cls.from_payload(obj.get("data"), uid=obj.get("uid"))


def make_change_key(uid: str, action: Action, image_hash: Optional[str]) -> str:
    """Build a unique key for an update or delete pending change.

    A fresh UUID7 token is mixed in so that two changes on the same record,
    even with identical content, never share a key.
    """
    parts = [uid, action.value, image_hash, uuid7().hex]
    return hash_text(json.dumps(parts, separators=(",", ":"), ensure_ascii=True))


@dataclass
class PendingChange:
    """A queued local mutation waiting to be confirmed by the sync endpoint.

    Create changes carry only a post-image, deletes only a pre-image and
    updates both.
    """

    key: str
    uid: str
    action: Action
    pre_image: Optional[DataRecord] = None
    post_image: Optional[DataRecord] = None
    in_flight: bool = False
    in_flight_at: Optional[int] = None
    crashed: bool = False
    crash_count: int = 0
    delayed: bool = False
    waiting_on_key: Optional[str] = None
    timestamp: int = field(default_factory=current_millis)

    @classmethod
    def for_create(cls, payload: Any) -> "PendingChange":
        post = DataRecord.from_payload(payload)
        uid = post.content_hash
        return cls(key=uid, uid=uid, action=Action.CREATE, post_image=post.with_uid(uid))

    @classmethod
    def for_update(cls, existing: DataRecord, payload: Any) -> "PendingChange":
        uid = existing.uid
        post = DataRecord.from_payload(payload, uid=uid)
        key = make_change_key(uid, Action.UPDATE, post.content_hash)
        return cls(key=key, uid=uid, action=Action.UPDATE, pre_image=existing, post_image=post)

    @classmethod
    def for_delete(cls, existing: DataRecord) -> "PendingChange":
        uid = existing.uid
        key = make_change_key(uid, Action.DELETE, existing.content_hash)
        return cls(key=key, uid=uid, action=Action.DELETE, pre_image=existing)

    def mark_in_flight(self, now: Optional[int] = None) -> None:
        self.in_flight = True
        self.in_flight_at = now if now is not None else current_millis()

    def clear_delay(self) -> None:
        self.delayed = False
        self.waiting_on_key = None

    @property
    def wire_hash(self) -> str:
        """Hash reference sent to the endpoint.

        For creates the key is the temporary uid, so the server can report
        which temporary uid it replaced even after a local remap.
        """
        return self.key

    def to_json(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "action": self.action.value,
            "hash": self.key,
            "inFlight": self.in_flight,
            "inFlightDate": self.in_flight_at,
            "crashed": self.crashed,
            "crashedCount": self.crash_count,
            "delayed": self.delayed,
            "waitingFor": self.waiting_on_key,
            "pre": self.pre_image.copy_payload() if self.pre_image else None,
            "preHash": self.pre_image.content_hash if self.pre_image else None,
            "post": self.post_image.copy_payload() if self.post_image else None,
            "postHash": self.post_image.content_hash if self.post_image else None,
            "timestamp": self.timestamp,
        }

    def to_wire(self) -> Dict[str, Any]:
        ret = self.to_json()
        ret["hash"] = self.wire_hash
        return ret

    @classmethod
    def from_json(cls, obj: Dict[str, Any], key: Optional[str] = None) -> "PendingChange":
        uid = obj["uid"]
        pre = obj.get("pre")
        post = obj.get("post")
        return cls(
            key=key or obj["hash"],
            uid=uid,
            action=Action(obj["action"]),
            pre_image=DataRecord.from_payload(pre, uid=uid) if pre is not None else None,
            post_image=DataRecord.from_payload(post, uid=uid) if post is not None else None,
            in_flight=bool(obj.get("inFlight", False)),
            in_flight_at=obj.get("inFlightDate"),
            crashed=bool(obj.get("crashed", False)),
            crash_count=int(obj.get("crashedCount", 0)),
            delayed=bool(obj.get("delayed", False)),
            waiting_on_key=obj.get("waitingFor"),
            timestamp=obj.get("timestamp") or current_millis(),
        )


@dataclass
class RecordMeta:
    """Bookkeeping linking a record uid to its latest pending change."""

    from_pending: bool = False
    pending_key: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {"fromPending": self.from_pending, "pendingUid": self.pending_key}

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "RecordMeta":
        return cls(
            from_pending=bool(obj.get("fromPending", False)),
            pending_key=obj.get("pendingUid"),
        )
