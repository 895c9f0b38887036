"""Test helper classes for datasync tests.

This module provides network clients that stand in for the cloud endpoint:

- ScriptedNetworkClient: answers each request with the next queued response
  and records every request it receives.
- FlaskNetworkClient: routes requests through the reference endpoint's Flask
  test client, so a Dataset can sync against a real server in-process.
"""

from __future__ import annotations

import copy
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from flask import Flask

from datasync.core.network import NetworkClient, NetworkResponse

ResponseSpec = Union[NetworkResponse, Callable[[str, Dict[str, Any]], NetworkResponse]]


class ScriptedNetworkClient(NetworkClient):
    """NetworkClient returning queued responses in order."""

    def __init__(self, online: bool = True) -> None:
        self.online = online
        self.requests: List[Dict[str, Any]] = []
        self._responses: Deque[ResponseSpec] = deque()

    def queue(self, *responses: ResponseSpec) -> None:
        self._responses.extend(responses)

    def queue_success(self, data: Any) -> None:
        self.queue(NetworkResponse.success(data))

    def queue_failure(self, error: str = "connection refused") -> None:
        self.queue(NetworkResponse.failure(error))

    def is_online(self) -> bool:
        return self.online

    def perform_request(self, dataset_id: str, params: Dict[str, Any]) -> NetworkResponse:
        self.requests.append({"dataset_id": dataset_id, "params": copy.deepcopy(params)})
        if not self._responses:
            return NetworkResponse.failure("no scripted response")
        response = self._responses.popleft()
        if callable(response):
            return response(dataset_id, params)
        return response

    def calls(self, fn: str) -> List[Dict[str, Any]]:
        """Parameters of every request made with the given fn."""
        return [r["params"] for r in self.requests if r["params"].get("fn") == fn]

    @property
    def remaining(self) -> int:
        return len(self._responses)


class FlaskNetworkClient(NetworkClient):
    """NetworkClient posting to a Flask app through its test client."""

    def __init__(self, app: Flask, client_id: str = "client-a", prefix: str = "/sync") -> None:
        self.app = app
        self.client_id = client_id
        self.prefix = prefix
        self.online = True
        self.requests: List[Dict[str, Any]] = []
        self._test_client = app.test_client()

    def is_online(self) -> bool:
        return self.online

    def perform_request(self, dataset_id: str, params: Dict[str, Any]) -> NetworkResponse:
        self.requests.append({"dataset_id": dataset_id, "params": copy.deepcopy(params)})
        response = self._test_client.post(
            f"{self.prefix}/{dataset_id}",
            json=params,
            headers={"X-Client-Id": self.client_id},
        )
        data = response.get_json(silent=True)
        if response.status_code != 200:
            error = data.get("error") if isinstance(data, dict) else None
            return NetworkResponse.failure(f"Server error: {error or response.status_code}")
        return NetworkResponse.success(data)

    def calls(self, fn: str) -> List[Dict[str, Any]]:
        return [r["params"] for r in self.requests if r["params"].get("fn") == fn]


def applied_entry(key: str, uid: str, action: str, **extra: Any) -> Dict[str, Any]:
    """Build a server result entry as found in updates.* maps."""
    entry = {"uid": uid, "hash": key, "action": action, "type": "applied"}
    entry.update(extra)
    return entry


def sync_response(
    global_hash: Optional[str] = None,
    hashes: Optional[Dict[str, Dict[str, Any]]] = None,
    applied: Optional[Dict[str, Dict[str, Any]]] = None,
    failed: Optional[Dict[str, Dict[str, Any]]] = None,
    collisions: Optional[Dict[str, Dict[str, Any]]] = None,
    include_updates: bool = True,
) -> Dict[str, Any]:
    """Build a phase-one response body."""
    body: Dict[str, Any] = {}
    if global_hash is not None:
        body["hash"] = global_hash
    if include_updates:
        body["updates"] = {
            "hashes": hashes or {},
            "applied": applied or {},
            "failed": failed or {},
            "collisions": collisions or {},
        }
    return body
