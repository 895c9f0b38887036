"""End-to-end sync tests.

Client datasets sync against the reference endpoint through the Flask test
client, so both sides of the protocol run for real.
"""

from __future__ import annotations

from typing import Any, Dict

from flask import Flask

from datasync.core.models import Action
from datasync.core.network import NetworkResponse
from datasync.core.notifications import NotificationKind
from datasync.core.sync_server import SyncStore

from helpers import FlaskNetworkClient

from .conftest import SyncPeer, make_peer


class LossyNetworkClient(FlaskNetworkClient):
    """Delivers requests but can lose the next response on the way back."""

    lose_next_response = False

    def perform_request(self, dataset_id: str, params: Dict[str, Any]) -> NetworkResponse:
        response = super().perform_request(dataset_id, params)
        if self.lose_next_response:
            self.lose_next_response = False
            return NetworkResponse.failure("connection reset")
        return response


def only_uid(peer: SyncPeer) -> str:
    (uid,) = peer.dataset.list_data()
    return uid


class TestCreateFlow:
    """Test records created on one client reaching the others."""

    def test_create_gets_server_uid(self, peer_a: SyncPeer, store: SyncStore) -> None:
        temp_uid = peer_a.dataset.create_data({"title": "milk"})["uid"]

        assert peer_a.sync() == "online"

        (server_uid,) = store.get_records("tasks")
        assert server_uid != temp_uid
        assert peer_a.payloads() == {server_uid: {"title": "milk"}}
        assert peer_a.dataset.pending == {}
        assert peer_a.dataset.read_data(temp_uid)["uid"] == server_uid
        assert peer_a.dataset.global_hash == store.datasets["tasks"].global_hash()

    def test_second_client_receives_delta(self, peer_a: SyncPeer, peer_b: SyncPeer) -> None:
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()

        assert peer_b.sync() == "online"

        assert peer_b.payloads() == peer_a.payloads()
        deltas = peer_b.recorder.of_kind(NotificationKind.DELTA_RECEIVED)
        assert [m.message for m in deltas] == ["create"]

    def test_results_acknowledged_next_round(self, peer_a: SyncPeer, store: SyncStore) -> None:
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()
        assert store.datasets["tasks"].unacknowledged["client-a"]

        peer_a.sync()

        assert store.datasets["tasks"].unacknowledged["client-a"] == {}
        assert peer_a.dataset.acknowledgements == []

    def test_in_sync_round_skips_record_phase(self, peer_a: SyncPeer) -> None:
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()
        peer_a.sync()
        before = len(peer_a.network.calls("syncRecords"))

        peer_a.sync()

        assert len(peer_a.network.calls("syncRecords")) == before


class TestUpdateAndDelete:
    """Test updates and deletes travelling between clients."""

    def test_update_propagates(self, peer_a: SyncPeer, peer_b: SyncPeer) -> None:
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()
        peer_b.sync()
        uid = only_uid(peer_b)

        peer_b.dataset.update_data(uid, {"title": "oat milk"})
        peer_b.sync()
        peer_a.sync()

        assert peer_a.payloads() == {uid: {"title": "oat milk"}}

    def test_delete_propagates(self, peer_a: SyncPeer, peer_b: SyncPeer, store: SyncStore) -> None:
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()
        peer_b.sync()

        peer_b.dataset.delete_data(only_uid(peer_b))
        peer_b.sync()
        peer_a.sync()

        assert store.get_records("tasks") == {}
        assert peer_a.payloads() == {}
        deltas = peer_a.recorder.of_kind(NotificationKind.DELTA_RECEIVED)
        assert deltas[-1].message == "delete"

    def test_concurrent_updates_collide(
        self, peer_a: SyncPeer, peer_b: SyncPeer, store: SyncStore
    ) -> None:
        """The later update collides and the client converges on the server's copy."""
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()
        peer_b.sync()
        uid = only_uid(peer_a)

        peer_a.dataset.update_data(uid, {"title": "from a"})
        peer_b.dataset.update_data(uid, {"title": "from b"})
        peer_a.sync()
        peer_b.sync()

        collisions = peer_b.recorder.of_kind(NotificationKind.COLLISION_DETECTED)
        assert [m.uid for m in collisions] == [uid]
        assert store.get_records("tasks")[uid]["data"] == {"title": "from a"}
        assert peer_b.payloads() == {uid: {"title": "from a"}}
        assert peer_b.dataset.pending == {}
        assert len(store.list_collisions("tasks")) == 1

    def test_update_of_deleted_record_fails(
        self, peer_a: SyncPeer, peer_b: SyncPeer, store: SyncStore
    ) -> None:
        peer_a.dataset.create_data({"title": "milk"})
        peer_a.sync()
        peer_b.sync()
        uid = only_uid(peer_a)

        peer_a.dataset.delete_data(uid)
        peer_a.sync()
        peer_b.dataset.update_data(uid, {"title": "changed"})
        peer_b.sync()

        failed = peer_b.recorder.of_kind(NotificationKind.REMOTE_UPDATE_FAILED)
        assert [m.uid for m in failed] == [uid]
        assert store.get_records("tasks") == {}
        assert peer_b.payloads() == {}


class TestLostResponses:
    """Test recovery when a response never reaches the client."""

    def make_lossy_peer(self, app: Flask) -> SyncPeer:
        peer = make_peer(app, "client-a")
        lossy = LossyNetworkClient(app, client_id="client-a")
        peer.dataset._network = lossy
        peer.network = lossy
        return peer

    def test_lost_create_resolved_without_duplicate(
        self, app: Flask, store: SyncStore
    ) -> None:
        peer = self.make_lossy_peer(app)
        temp_uid = peer.dataset.create_data({"title": "milk"})["uid"]

        peer.network.lose_next_response = True
        status = peer.sync()
        assert status == "connection reset"
        assert peer.dataset.pending[temp_uid].crashed

        assert peer.sync() == "online"

        records = store.get_records("tasks")
        assert len(records) == 1
        (server_uid,) = records
        assert peer.payloads() == {server_uid: {"title": "milk"}}
        assert peer.dataset.pending == {}
        applied = peer.recorder.of_kind(NotificationKind.REMOTE_UPDATE_APPLIED)
        assert len(applied) == 1

    def test_change_behind_lost_update(self, app: Flask, store: SyncStore) -> None:
        """A change queued behind a lost one is sent once the first resolves."""
        store.put_record("tasks", "u1", {"n": 1})
        peer = self.make_lossy_peer(app)
        peer.sync()

        peer.dataset.update_data("u1", {"n": 2})
        peer.network.lose_next_response = True
        peer.sync()
        peer.dataset.update_data("u1", {"n": 3})
        delayed = [c for c in peer.dataset.pending.values() if c.delayed]
        assert len(delayed) == 1
        assert delayed[0].action is Action.UPDATE

        peer.sync()
        peer.sync()

        assert store.get_records("tasks")["u1"]["data"] == {"n": 3}
        assert peer.dataset.pending == {}
        assert peer.payloads() == {"u1": {"n": 3}}
