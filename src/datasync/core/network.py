"""Network access for datasync.

A NetworkClient performs one JSON request against the sync endpoint for a
dataset and reports the outcome as a NetworkResponse: either the parsed JSON
body, or an error. Transport problems never raise out of perform_request().

HttpNetworkClient POSTs to "<cloud_url>/<dataset_id>".

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .validation import validate_url

logger = logging.getLogger(__name__)

__all__ = ["NetworkClient", "NetworkResponse", "HttpNetworkClient", "OfflineNetworkClient"]


@dataclass
class NetworkResponse:
    """Result of a request: JSON data on success, an error message otherwise."""

    ok: bool
    data: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None

    @classmethod
    def success(cls, data: Any) -> "NetworkResponse":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, exception: Optional[BaseException] = None) -> "NetworkResponse":
        return cls(ok=False, error=error, exception=exception)

    @property
    def raw(self) -> str:
        """Response body as text on success, the error message on failure."""
        if self.ok:
            return json.dumps(self.data)
        return self.error or ""


class NetworkClient(ABC):
    """Transport used by datasets to talk to the sync endpoint."""

    @abstractmethod
    def is_online(self) -> bool:
        """Whether the endpoint is currently believed reachable."""

    @abstractmethod
    def perform_request(self, dataset_id: str, params: Dict[str, Any]) -> NetworkResponse:
        """Send params (always containing "fn") for a dataset.

        Blocks until the request completes. Must not raise for transport
        failures; report them as NetworkResponse.failure().
        """


class HttpNetworkClient(NetworkClient):
    """urllib-based client posting JSON to "<cloud_url>/<dataset_id>"."""

    def __init__(
        self,
        cloud_url: str,
        client_id: Optional[str] = None,
        timeout: float = 30,
        headers: Optional[Dict[str, str]] = None,
        probe_timeout: float = 2.0,
    ) -> None:
        """Initialize the client.

        Args:
            cloud_url: Base URL of the sync endpoint
            client_id: Sent as X-Client-Id so the server can track acknowledgements
            timeout: Request timeout in seconds
            headers: Extra headers for every request
            probe_timeout: Timeout of the TCP reachability probe in is_online()
        """
        self.cloud_url = validate_url(cloud_url)
        self.client_id = client_id
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.probe_timeout = probe_timeout
        self._forced_offline = False

    def set_online(self, online: bool) -> None:
        """Force offline mode (False) or go back to probing (True)."""
        self._forced_offline = not online

    def set_headers(self, headers: Dict[str, str]) -> None:
        self.headers = dict(headers)

    def url_for(self, dataset_id: str) -> str:
        return f"{self.cloud_url}/{urllib.parse.quote(dataset_id, safe='')}"

    def is_online(self) -> bool:
        if self._forced_offline:
            return False
        parsed = urllib.parse.urlparse(self.cloud_url)
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        try:
            with socket.create_connection((parsed.hostname, port), timeout=self.probe_timeout):
                return True
        except OSError as e:
            logger.debug(f"Endpoint {parsed.hostname}:{port} unreachable: {e}")
            return False

    def perform_request(self, dataset_id: str, params: Dict[str, Any]) -> NetworkResponse:
        url = self.url_for(dataset_id)
        headers = {"Content-Type": "application/json"}
        if self.client_id:
            headers["X-Client-Id"] = self.client_id
        headers.update(self.headers)

        try:
            body = json.dumps(params).encode("utf-8")
            request = urllib.request.Request(url, data=body, method="POST", headers=headers)
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                content = response.read().decode("utf-8")
            return NetworkResponse.success(json.loads(content))

        except urllib.error.HTTPError as e:
            try:
                error_data = json.loads(e.read().decode("utf-8"))
                # Extract detailed error message from server response
                error_msg = error_data.get("error", f"HTTP {e.code}: {e.reason}")
            except (ValueError, AttributeError, OSError):
                error_msg = f"HTTP {e.code}: {e.reason}"
            logger.error(f"Request to {url} failed: {error_msg}")
            return NetworkResponse.failure(f"Server error: {error_msg}", e)

        except urllib.error.URLError as e:
            error_msg = f"Connection failed to {url}: {e.reason}"
            logger.error(error_msg)
            return NetworkResponse.failure(error_msg, e)

        except ValueError as e:
            error_msg = f"Invalid JSON in response from {url}: {e}"
            logger.error(error_msg)
            return NetworkResponse.failure(error_msg, e)

        except OSError as e:
            error_msg = f"Request to {url} failed: {e}"
            logger.error(error_msg)
            return NetworkResponse.failure(error_msg, e)


class OfflineNetworkClient(NetworkClient):
    """Client for when no endpoint is configured: always offline."""

    def __init__(self, reason: str = "No cloud URL configured") -> None:
        self.reason = reason

    def is_online(self) -> bool:
        return False

    def perform_request(self, dataset_id: str, params: Dict[str, Any]) -> NetworkResponse:
        return NetworkResponse.failure(self.reason)
