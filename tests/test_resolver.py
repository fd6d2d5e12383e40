from __future__ import annotations

import logging

import pytest

from errors import DeviceNotFoundError, StoreFault
from services.resolver import DeviceResolver, sensor_by_device_query, strip_device_prefix

from conftest import SENSOR_MODEL, SIMULATION_ID, FlakyClient, sensor_twin


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("sim-id.device-guid", "device-guid"),
        (f"{SIMULATION_ID}.9f1c28f.abc123", "9f1c28f.abc123"),
        ("no-delimiter", "no-delimiter"),
        (".leading", "leading"),
        ("trailing.", ""),
    ],
)
def test_strip_device_prefix_uses_first_dot_only(raw: str, expected: str) -> None:
    assert strip_device_prefix(raw) == expected


def test_query_escapes_quotes() -> None:
    query = sensor_by_device_query(SENSOR_MODEL, "dev'1")

    assert query == (
        "SELECT * FROM DigitalTwins T WHERE IS_OF_MODEL(T, 'dtmi:adt:chb:Sensor;1') "
        "AND T.deviceId = 'dev\\'1'"
    )


def test_resolves_sensor_by_suffix(graph, client) -> None:
    graph.upsert_twin(sensor_twin("sensor-bridge", "guid.7", "Bridge Sensor", observes="bridge-1"))
    resolver = DeviceResolver(client, sensor_model=SENSOR_MODEL)

    sensor = resolver.resolve(f"{SIMULATION_ID}.guid.7")

    assert sensor.dt_id == "sensor-bridge"
    assert sensor.device_id == "guid.7"
    assert sensor.observes == "bridge-1"
    assert sensor.type_label == "Bridge Sensor"


def test_unprefixed_id_is_used_as_is(client) -> None:
    resolver = DeviceResolver(client, sensor_model=SENSOR_MODEL)

    assert resolver.resolve("temp-01").dt_id == "sensor-temp"


def test_missing_device_raises_not_found(client) -> None:
    resolver = DeviceResolver(client, sensor_model=SENSOR_MODEL)

    with pytest.raises(DeviceNotFoundError) as excinfo:
        resolver.resolve("sim.unknown")

    assert excinfo.value.device_id == "unknown"


def test_ignores_twins_of_other_models(graph, client) -> None:
    twin = sensor_twin("imposter", "dup-01", "Interior Thermometer")
    twin["$metadata"] = {"$model": "dtmi:adt:chb:Tunnel;1"}
    graph.upsert_twin(twin)
    resolver = DeviceResolver(client, sensor_model=SENSOR_MODEL)

    with pytest.raises(DeviceNotFoundError):
        resolver.resolve("dup-01")


def test_duplicate_device_ids_resolve_to_lowest_dt_id(graph, client, caplog) -> None:
    graph.upsert_twin(sensor_twin("sensor-z", "dup-01", "Interior Thermometer"))
    graph.upsert_twin(sensor_twin("sensor-b", "dup-01", "Interior Thermometer"))
    resolver = DeviceResolver(client, sensor_model=SENSOR_MODEL)

    with caplog.at_level(logging.WARNING):
        sensor = resolver.resolve("x.dup-01")

    assert sensor.dt_id == "sensor-b"
    assert any(getattr(record, "device_id", None) == "dup-01" for record in caplog.records)


def test_query_failure_propagates(graph) -> None:
    flaky = FlakyClient(graph, fail_query=True)
    flaky.connect()

    with pytest.raises(StoreFault):
        DeviceResolver(flaky).resolve("temp-01")
