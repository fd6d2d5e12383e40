from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from datastore.clients import HttpTwinGraphClient, LocalTwinGraphClient, build_twin_client
from datastore.twin_graph import MockTwinGraph
from errors import StoreFault, StoreUnavailableError
from settings import Settings

ENDPOINT = "https://twins.example.net"


def _client(handler, **kwargs) -> HttpTwinGraphClient:
    client = HttpTwinGraphClient(
        ENDPOINT, token="secret", api_version="2020-10-31", transport=httpx.MockTransport(handler), **kwargs
    )
    client.connect()
    return client


def test_query_follows_continuation_tokens() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        body = json.loads(request.content)
        if "query" in body:
            return httpx.Response(200, json={"value": [{"$dtId": "a"}], "continuationToken": "next"})
        return httpx.Response(200, json={"value": [{"$dtId": "b"}], "continuationToken": None})

    client = _client(handler)

    results = client.query("SELECT * FROM DigitalTwins T")

    assert [twin["$dtId"] for twin in results] == ["a", "b"]
    assert json.loads(requests[1].content) == {"continuationToken": "next"}
    assert requests[0].url.path == "/query"
    assert requests[0].url.params["api-version"] == "2020-10-31"
    assert requests[0].headers["Authorization"] == "Bearer secret"


def test_patch_sends_json_patch_document() -> None:
    captured: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    client = _client(handler)
    operations = [{"op": "add", "path": "/computedHealth", "value": 80.0}]

    client.patch("tunnel 1", operations)

    request = captured[0]
    assert request.method == "PATCH"
    assert request.url.raw_path.startswith(b"/digitaltwins/tunnel%201")
    assert request.headers["Content-Type"] == "application/json-patch+json"
    assert json.loads(request.content) == operations


def test_get_twin_returns_none_on_404() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/known"):
            return httpx.Response(200, json={"$dtId": "known"})
        return httpx.Response(404, json={"error": {"code": "DigitalTwinNotFound"}})

    client = _client(handler)

    assert client.get_twin("known") == {"$dtId": "known"}
    assert client.get_twin("unknown") is None


@pytest.mark.parametrize("status", [400, 401, 429, 500])
def test_error_status_raises_store_fault(status: int) -> None:
    client = _client(lambda request: httpx.Response(status, json={}))

    with pytest.raises(StoreFault) as excinfo:
        client.patch("t", [{"op": "add", "path": "/a", "value": 1}])

    assert excinfo.value.operation == "patch"
    assert excinfo.value.dt_id == "t"


def test_transport_error_raises_store_fault() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(StoreFault):
        client.query("SELECT * FROM DigitalTwins T")


def test_invalid_json_raises_store_fault() -> None:
    client = _client(lambda request: httpx.Response(200, content=b"<html>"))

    with pytest.raises(StoreFault):
        client.query("SELECT * FROM DigitalTwins T")


def test_disconnected_client_refuses_calls() -> None:
    client = _client(lambda request: httpx.Response(200, json={"value": []}))
    client.disconnect()

    assert not client.is_connected
    with pytest.raises(StoreFault):
        client.query("SELECT * FROM DigitalTwins T")


@pytest.mark.parametrize("body", [[{"$dtId": "a"}], {"value": {"$dtId": "a"}}, "twins"])
def test_malformed_query_payload_raises_store_fault(body) -> None:
    client = _client(lambda request: httpx.Response(200, json=body))

    with pytest.raises(StoreFault):
        client.query("SELECT * FROM DigitalTwins T")


def test_get_twin_rejects_non_object_body() -> None:
    client = _client(lambda request: httpx.Response(200, json=[1, 2]))

    with pytest.raises(StoreFault):
        client.get_twin("tunnel-1")


def test_request_on_closed_transport_raises_store_fault() -> None:
    client = _client(lambda request: httpx.Response(200, json={"value": []}))
    # Another thread closed the underlying httpx client mid-call.
    client._client.close()  # type: ignore[union-attr]

    with pytest.raises(StoreFault, match="disconnected"):
        client.query("SELECT * FROM DigitalTwins T")


def test_connect_without_endpoint_is_unavailable() -> None:
    client = HttpTwinGraphClient(None)

    with pytest.raises(StoreUnavailableError):
        client.connect()
    assert not client.is_connected


def test_local_client_requires_connection() -> None:
    client = LocalTwinGraphClient(MockTwinGraph())

    with pytest.raises(StoreFault):
        client.get_twin("anything")

    client.connect()
    assert client.get_twin("anything") is None


def test_local_client_wraps_store_errors() -> None:
    client = LocalTwinGraphClient(MockTwinGraph())
    client.connect()

    with pytest.raises(StoreFault):
        client.patch("ghost", [{"op": "add", "path": "/a", "value": 1}])
    with pytest.raises(StoreFault):
        client.query("SELECT nonsense")


def _settings(**overrides) -> Settings:
    values = dict(
        graph_backend="local",
        graph_persistence_path=None,
        graph_endpoint=None,
        graph_api_version="2020-10-31",
        graph_token=None,
        graph_timeout=5.0,
        sensor_model="dtmi:adt:chb:Sensor;1",
        results_persistence_path=None,
        processor_workers=1,
        flush_events=False,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def test_build_twin_client_selects_backend() -> None:
    graph = MockTwinGraph()

    local = build_twin_client(_settings(), graph=graph)
    remote = build_twin_client(_settings(graph_backend="http", graph_endpoint=ENDPOINT + "/"))

    assert isinstance(local, LocalTwinGraphClient) and local.graph is graph
    assert isinstance(remote, HttpTwinGraphClient)
    assert remote.endpoint == ENDPOINT
    assert not remote.is_connected
