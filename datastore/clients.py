"""Twin graph client handles.

Each batch worker owns one handle. A handle is connected lazily, dropped
wholesale on any fault and re-established by the caller; it is never
repaired in place.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol
from urllib.parse import quote

import httpx

from datastore.twin_graph import MockTwinGraph, build_default_graph
from errors import StoreFault, StoreUnavailableError
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"


class TwinGraphClient(Protocol):
    @property
    def is_connected(self) -> bool: ...

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def query(self, text: str) -> List[Dict[str, Any]]: ...

    def get_twin(self, dt_id: str) -> Optional[Dict[str, Any]]: ...

    def patch(self, dt_id: str, operations: List[Dict[str, Any]]) -> None: ...


class LocalTwinGraphClient:
    """Client handle over an in-process :class:`MockTwinGraph`."""

    def __init__(self, graph: MockTwinGraph) -> None:
        self.graph = graph
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self._connected = True
        logger.info("Twin graph client connection created.")

    def disconnect(self) -> None:
        self._connected = False

    def query(self, text: str) -> List[Dict[str, Any]]:
        self._require_connection("query")
        try:
            return self.graph.query(text)
        except ValueError as exc:
            raise StoreFault(str(exc), operation="query") from exc

    def get_twin(self, dt_id: str) -> Optional[Dict[str, Any]]:
        self._require_connection("get", dt_id)
        return self.graph.get_twin(dt_id)

    def patch(self, dt_id: str, operations: List[Dict[str, Any]]) -> None:
        self._require_connection("patch", dt_id)
        try:
            self.graph.patch(dt_id, operations)
        except (KeyError, ValueError) as exc:
            message = exc.args[0] if exc.args else str(exc)
            raise StoreFault(str(message), operation="patch", dt_id=dt_id) from exc

    def _require_connection(self, operation: str, dt_id: Optional[str] = None) -> None:
        if not self._connected:
            raise StoreFault(
                "Twin graph client is not connected.", operation=operation, dt_id=dt_id
            )


class HttpTwinGraphClient:
    """Client for a remote twin graph exposing the Digital Twins REST surface."""

    def __init__(
        self,
        endpoint: Optional[str],
        token: Optional[str] = None,
        api_version: str = "2020-10-31",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.api_version = api_version
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        if not self.endpoint:
            logger.error("Twin graph client connection failed: no endpoint configured.")
            raise StoreUnavailableError(
                "Twin graph endpoint is not configured.", operation="connect"
            )
        self.disconnect()
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.Client(
            base_url=self.endpoint,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )
        logger.info("Twin graph client connection created.")

    def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def query(self, text: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        body: Dict[str, Any] = {"query": text}
        while True:
            payload = _decode(self._send("query", "POST", "/query", json=body), "query")
            page = payload.get("value") or []
            if not isinstance(page, list):
                raise StoreFault("Twin graph query returned a malformed page.", operation="query")
            items.extend(page)
            continuation = payload.get("continuationToken")
            if not continuation:
                return items
            body = {"continuationToken": continuation}

    def get_twin(self, dt_id: str) -> Optional[Dict[str, Any]]:
        response = self._send("get", "GET", self._twin_path(dt_id), dt_id=dt_id, allow_missing=True)
        if response.status_code == 404:
            return None
        return _decode(response, "get", dt_id)

    def patch(self, dt_id: str, operations: List[Dict[str, Any]]) -> None:
        self._send(
            "patch",
            "PATCH",
            self._twin_path(dt_id),
            dt_id=dt_id,
            json=operations,
            headers={"Content-Type": JSON_PATCH_CONTENT_TYPE},
        )

    @staticmethod
    def _twin_path(dt_id: str) -> str:
        return f"/digitaltwins/{quote(dt_id, safe='')}"

    def _send(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        dt_id: Optional[str] = None,
        allow_missing: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        client = self._client
        if client is None:
            raise StoreFault("Twin graph client is not connected.", operation=operation, dt_id=dt_id)
        try:
            response = client.request(
                method, path, params={"api-version": self.api_version}, **kwargs
            )
            if allow_missing and response.status_code == 404:
                return response
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StoreFault(
                f"Twin graph {operation} failed with status {exc.response.status_code}.",
                operation=operation,
                dt_id=dt_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise StoreFault(
                f"Twin graph {operation} failed: {exc}", operation=operation, dt_id=dt_id
            ) from exc
        except RuntimeError as exc:
            # httpx refuses requests on a client closed by disconnect().
            if not client.is_closed:
                raise
            raise StoreFault(
                "Twin graph client was disconnected.", operation=operation, dt_id=dt_id
            ) from exc
        return response


def build_twin_client(
    settings: Optional[Settings] = None,
    graph: Optional[MockTwinGraph] = None,
) -> TwinGraphClient:
    """Create a fresh, unconnected client handle for one worker."""
    settings = settings or get_settings()
    if settings.graph_backend == "http":
        return HttpTwinGraphClient(
            endpoint=settings.graph_endpoint,
            token=settings.graph_token,
            api_version=settings.graph_api_version,
            timeout=settings.graph_timeout,
        )
    return LocalTwinGraphClient(graph or build_default_graph())


def disconnect_all(clients: Iterable[TwinGraphClient]) -> None:
    for client in clients:
        client.disconnect()


def _decode(
    response: httpx.Response, operation: str, dt_id: Optional[str] = None
) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise StoreFault(
            f"Twin graph {operation} returned invalid JSON.", operation=operation, dt_id=dt_id
        ) from exc
    if not isinstance(payload, dict):
        raise StoreFault(
            f"Twin graph {operation} returned {type(payload).__name__}, expected an object.",
            operation=operation,
            dt_id=dt_id,
        )
    return payload
