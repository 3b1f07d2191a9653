"""HTTP client for reading stats out of a Screeps server.

Supports the official server (auth token) and private servers
(username/password sign-in). Requests are spaced by a minimum interval and
retried with backoff on HTTP 429.
"""

from __future__ import annotations

import base64
import json
import time
import zlib
from typing import Any, Dict, Optional

import requests

OFFICIAL_URL = "https://screeps.com"


class ScreepsAPIError(Exception):
    """Raised when the server answers with an error payload or rejects auth."""


def decode_memory(data: Any) -> Any:
    """Decode a memory value, expanding ``gz:`` compressed payloads."""

    if isinstance(data, str) and data.startswith("gz:"):
        raw = zlib.decompress(base64.b64decode(data[3:]), zlib.MAX_WBITS | 32)
        return json.loads(raw.decode("utf-8"))
    return data


def server_url(host: Optional[str] = None, protocol: str = "http") -> str:
    """Return the base URL for a private server host, or the official one."""

    if not host:
        return OFFICIAL_URL
    return f"{protocol}://{host}"


class ScreepsAPIClient:
    """Lightweight client for the Screeps web API."""

    def __init__(
        self,
        base_url: str = OFFICIAL_URL,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        *,
        min_interval: float = 1.0,
        max_retries: int = 3,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.username: Optional[str] = None
        self._session = session or requests.Session()
        self.timeout = timeout
        self.min_interval = float(min_interval)
        self.max_retries = int(max_retries)
        self._last_request_at: Optional[float] = None

    @property
    def session(self) -> requests.Session:
        """Return the configured :class:`requests.Session`."""

        return self._session

    @property
    def is_official(self) -> bool:
        return self.base_url == OFFICIAL_URL

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.token:
            headers["X-Token"] = self.token
        if self.username:
            headers["X-Username"] = self.username
        return headers

    def auth(self, username: str, password: str) -> str:
        """Sign in with credentials and keep the returned token."""

        payload = self._request(
            "POST",
            f"{self.base_url}/api/auth/signin",
            json={"email": username, "password": password},
        )
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            raise ScreepsAPIError(
                f"Authentication failed for user {username} on {self.base_url}"
            )
        self.token = token
        self.username = username
        return token

    def get_memory(self, path: str = "stats", shard: str = "shard0") -> Any:
        """Read ``Memory.<path>`` on ``shard``."""

        payload = self._request(
            "GET",
            f"{self.base_url}/api/user/memory",
            params={"path": path, "shard": shard},
        )
        return decode_memory(payload.get("data"))

    def get_segment(self, segment: int, shard: str = "shard0") -> Any:
        """Read a raw memory segment on ``shard``."""

        payload = self._request(
            "GET",
            f"{self.base_url}/api/user/memory-segment",
            params={"segment": segment, "shard": shard},
        )
        return payload.get("data")

    def close(self) -> None:
        """Close the underlying :class:`requests.Session`."""

        self.session.close()

    # Internal helpers
    def _wait_for_slot(self) -> None:
        """Sleep if needed to respect the minimum interval between requests."""

        if self.min_interval <= 0:
            return
        now = time.monotonic()
        if self._last_request_at is not None:
            elapsed = now - self._last_request_at
            remaining = self.min_interval - elapsed
            if remaining > 0:
                time.sleep(remaining)
                now = time.monotonic()
        # Reserve the slot at request start to avoid bursts across threads
        self._last_request_at = now

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        """Perform a request with rate limiting and simple 429 retry."""

        attempts = 0
        while True:
            attempts += 1
            self._wait_for_slot()
            response = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )

            status = getattr(response, "status_code", None)
            if status == 429:
                # Honor Retry-After if present; default to min_interval
                retry_after = None
                try:
                    retry_after_hdr = getattr(response, "headers", {}).get(
                        "Retry-After"
                    )
                    if retry_after_hdr is not None:
                        retry_after = float(retry_after_hdr)
                except (TypeError, ValueError):
                    retry_after = None
                time.sleep(
                    retry_after
                    if retry_after is not None
                    else max(self.min_interval, 1.0)
                )
                if attempts <= self.max_retries:
                    continue
            response.raise_for_status()

            # The server rotates tokens through this header
            new_token = getattr(response, "headers", {}).get("X-Token")
            if new_token:
                self.token = new_token

            payload = response.json()
            if not isinstance(payload, dict) or payload.get("ok") != 1:
                error = payload.get("error") if isinstance(payload, dict) else payload
                raise ScreepsAPIError(f"{method} {url} failed: {error}")
            return payload


__all__ = [
    "OFFICIAL_URL",
    "ScreepsAPIClient",
    "ScreepsAPIError",
    "decode_memory",
    "server_url",
]
