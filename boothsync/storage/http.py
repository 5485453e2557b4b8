"""HTTP blob-gateway backend for the remote object store.

Talks to a small object gateway with bearer-token auth:

    GET    {backend_url}/health
    GET    {backend_url}/objects?prefix=<p>   -> {"keys": [...]}
    GET    {backend_url}/objects/<key>
    PUT    {backend_url}/objects/<key>
    DELETE {backend_url}/objects/<key>
"""

import logging
from typing import List, Optional
from urllib.parse import quote

import httpx

from boothsync.config import validate_backend_url
from boothsync.types import (
    AuthError,
    ConfigError,
    ConnectivityError,
    ObjectNotFoundError,
    RemoteStoreError,
)

logger = logging.getLogger(__name__)


class HTTPObjectStore:
    """RemoteObjectStore over an HTTP gateway.

    Args:
        backend_url: Gateway base URL (https, or http for localhost only).
        auth_token: Bearer token.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        backend_url: str,
        auth_token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        validated = validate_backend_url(backend_url)
        if not validated:
            raise ConfigError(f"Refusing unsafe backend_url: {backend_url!r}")
        if not auth_token:
            raise ConfigError("auth_token is required for the HTTP backend")
        self.backend_url = validated.rstrip("/")
        self._client = httpx.Client(
            base_url=self.backend_url,
            headers={"Authorization": f"Bearer {auth_token}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _object_path(key: str) -> str:
        return f"/objects/{quote(key, safe='/')}"

    def _request(self, method: str, path: str, key: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"Timed out on {method} {key}: {e}") from e
        except httpx.TransportError as e:
            raise ConnectivityError(f"Connection failed on {method} {key}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"Gateway rejected credentials (HTTP {status})")
        if status == 404:
            raise ObjectNotFoundError(key)
        if status == 429 or status >= 500:
            raise ConnectivityError(f"Gateway returned HTTP {status} for {method} {key}")
        if status >= 400:
            raise RemoteStoreError(f"Gateway returned HTTP {status} for {method} {key}")
        return response

    def put(self, key: str, data: bytes) -> None:
        self._request(
            "PUT",
            self._object_path(key),
            key,
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        logger.debug(f"HTTP put {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        return self._request("GET", self._object_path(key), key).content

    def list(self, prefix: str) -> List[str]:
        response = self._request("GET", "/objects", prefix, params={"prefix": prefix})
        try:
            keys = response.json().get("keys", [])
        except ValueError as e:
            raise RemoteStoreError(f"Malformed listing response for {prefix!r}: {e}") from e
        return sorted(str(k) for k in keys if str(k).startswith(prefix))

    def delete(self, key: str) -> None:
        try:
            self._request("DELETE", self._object_path(key), key)
        except ObjectNotFoundError:
            pass

    def probe(self) -> None:
        self._request("GET", "/health", "health")
