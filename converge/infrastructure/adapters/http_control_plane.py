"""
HTTP Control Plane Adapter

Architectural Intent:
- Implements ResourceProviderPort against a JSON REST control plane
- Uses stdlib urllib for the HTTP layer (no external dependencies)
- Blocking requests run in the default executor so the event loop keeps
  driving the other nodes of a batch

Endpoints:
    POST   {endpoint}/v1/projects/{project}/{type}s           create
    GET    {endpoint}/v1/projects/{project}/{type}s/{name}    read
    PUT    {endpoint}/v1/projects/{project}/{type}s/{name}    update
    DELETE {endpoint}/v1/projects/{project}/{type}s/{name}    delete

Error mapping:
- 409 -> ResourceAlreadyExistsError (create) so the executor reconciles
- 408, 429, 5xx, connection errors and socket timeouts -> TransientAPIError
- any other 4xx -> NodeApplyError
"""

import asyncio
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from converge.domain.errors import (
    NodeApplyError,
    ResourceAlreadyExistsError,
    TransientAPIError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = frozenset({408, 429})


class HttpControlPlaneAdapter:
    """REST control plane client."""

    def __init__(
        self,
        endpoint: str,
        project: str = "default",
        api_token: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        if not endpoint:
            raise ValueError("HTTP provider needs an endpoint")
        self._endpoint = endpoint.rstrip("/")
        self._project = project
        self._api_token = api_token
        self._timeout = timeout_seconds

    def _url(self, resource_type: str, name: Optional[str] = None) -> str:
        base = (
            f"{self._endpoint}/v1/projects/{urllib.parse.quote(self._project)}"
            f"/{urllib.parse.quote(resource_type)}s"
        )
        return f"{base}/{urllib.parse.quote(name)}" if name else base

    def _request(self, method: str, url: str, body: Optional[dict] = None) -> Optional[dict]:
        data = json.dumps(body).encode() if body is not None else None
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug("%s %s", method, url)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as e:
            detail = e.read().decode(errors="replace")[:500]
            message = f"{method} {url} -> {e.code}: {detail or e.reason}"
            if e.code == 404 and method in ("GET", "DELETE"):
                return None
            if e.code == 409:
                raise ResourceAlreadyExistsError(message) from None
            if e.code in _TRANSIENT_STATUS or e.code >= 500:
                raise TransientAPIError(message, e.code) from None
            raise NodeApplyError(message, e.code) from None
        except (urllib.error.URLError, socket.timeout, ConnectionError) as e:
            raise TransientAPIError(f"{method} {url} failed: {e}") from None
        if not payload:
            return {}
        return json.loads(payload)

    async def _call(self, method: str, url: str, body: Optional[dict] = None) -> Optional[dict]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._request, method, url, body)

    async def create(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        result = await self._call(
            "POST", self._url(resource_type), {"name": name, **attributes}
        )
        return result or {}

    async def read(self, resource_type: str, name: str) -> Optional[dict[str, Any]]:
        return await self._call("GET", self._url(resource_type, name))

    async def update(
        self, resource_type: str, name: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        result = await self._call(
            "PUT", self._url(resource_type, name), {"name": name, **attributes}
        )
        return result or {}

    async def delete(self, resource_type: str, name: str) -> None:
        await self._call("DELETE", self._url(resource_type, name))
