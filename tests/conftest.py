from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set

import pytest

from datastore.clients import LocalTwinGraphClient
from datastore.twin_graph import MockTwinGraph
from errors import StoreFault, StoreUnavailableError

SENSOR_MODEL = "dtmi:adt:chb:Sensor;1"
ASSET_MODEL = "dtmi:adt:chb:Tunnel;1"
SIMULATION_ID = "6a6cab04-c18f-4e37-a6e4-94928e32d36f"


def sensor_twin(
    dt_id: str,
    device_id: str,
    type_label: str,
    observes: Optional[str] = "tunnel-1",
    **properties: Any,
) -> Dict[str, Any]:
    twin: Dict[str, Any] = {
        "$dtId": dt_id,
        "$metadata": {"$model": SENSOR_MODEL},
        "deviceId": device_id,
        "type": type_label,
    }
    if observes is not None:
        twin["observes"] = observes
    twin.update(properties)
    return twin


def asset_twin(dt_id: str, **properties: Any) -> Dict[str, Any]:
    twin: Dict[str, Any] = {"$dtId": dt_id, "$metadata": {"$model": ASSET_MODEL}}
    twin.update(properties)
    return twin


def seed(graph: MockTwinGraph, twins: Iterable[Dict[str, Any]]) -> MockTwinGraph:
    for twin in twins:
        graph.upsert_twin(twin)
    return graph


class FlakyClient(LocalTwinGraphClient):
    """Local client that counts calls and fails on demand."""

    def __init__(
        self,
        graph: MockTwinGraph,
        fail_patch: Optional[Set[str]] = None,
        fail_query: bool = False,
        fail_connect: bool = False,
    ) -> None:
        super().__init__(graph)
        self.fail_patch = set(fail_patch or ())
        self.fail_query = fail_query
        self.fail_connect = fail_connect
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.patches: List[tuple[str, List[Dict[str, Any]]]] = []

    def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise StoreUnavailableError("token expired", operation="connect")
        super().connect()

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        super().disconnect()

    def query(self, text: str) -> List[Dict[str, Any]]:
        if self.fail_query:
            raise StoreFault("throttled", operation="query")
        return super().query(text)

    def patch(self, dt_id: str, operations: List[Dict[str, Any]]) -> None:
        if dt_id in self.fail_patch:
            raise StoreFault(f"patch of {dt_id} rejected", operation="patch", dt_id=dt_id)
        super().patch(dt_id, operations)
        self.patches.append((dt_id, operations))


@pytest.fixture()
def graph() -> MockTwinGraph:
    return seed(
        MockTwinGraph(),
        [
            asset_twin("tunnel-1"),
            sensor_twin("sensor-air", "air-01", "Baseline Air Sensor"),
            sensor_twin("sensor-temp", "temp-01", "Interior Thermometer", observationValue1=20.0),
        ],
    )


@pytest.fixture()
def client(graph: MockTwinGraph) -> FlakyClient:
    handle = FlakyClient(graph)
    handle.connect()
    return handle
