"""Unit tests for the asset health rollup."""

from __future__ import annotations

import pytest

from errors import UnknownCategoryError
from models.outcomes import OutcomeStatus
from models.twins import Category
from services.aggregator import HealthAggregator, compute_health, normalized_readings
from services.thresholds import ThresholdTable

from conftest import SENSOR_MODEL, FlakyClient, asset_twin, sensor_twin


def _aggregator(client) -> HealthAggregator:
    return HealthAggregator(client, sensor_model=SENSOR_MODEL)


def test_compute_health_without_sensors_is_zero() -> None:
    assert compute_health([]) == 0.0


def test_air_sensor_normalization() -> None:
    sensor = sensor_twin("s", "d", "Baseline Air Sensor", observationValue1=3.6, observationValue2=0)

    assert compute_health([sensor]) == pytest.approx(80.0)


def test_max_across_siblings_not_average() -> None:
    sensors = [
        sensor_twin("a", "d1", "Exterior Thermometer", observationValue1=30.0),
        sensor_twin("b", "d2", "Bridge Sensor", observationValue1=1.2, observationValue2=0.27),
    ]

    assert compute_health(sensors) == pytest.approx(90.0)


@pytest.mark.parametrize(
    ("type_label", "values", "expected"),
    [
        ("Interior Thermometer", {"observationValue1": 55}, [0.55]),
        ("Tunnel Air Sensor", {"observationValue1": 0.9, "observationValue2": 25}, [0.2, 0.5]),
        ("Vehicle Counter", {"observationValue1": 400, "observationValue2": 160}, [0.5, 1.0]),
        ("Bridge Sensor", {"observationValue1": 6, "observationValue2": 0.15}, [0.5, 0.5]),
    ],
)
def test_category_mapping(type_label, values, expected) -> None:
    sensor = sensor_twin("s", "d", type_label, **values)

    assert normalized_readings(sensor, ThresholdTable()) == pytest.approx(expected)


def test_absent_slots_count_as_zero() -> None:
    sensor = sensor_twin("s", "d", "Vehicle Counter", observationValue2=80)

    assert normalized_readings(sensor, ThresholdTable()) == pytest.approx([0.0, 0.5])


def test_unknown_sensor_type_contributes_zero() -> None:
    sensors = [
        sensor_twin("a", "d1", "Humidity Probe", observationValue1=9000),
        sensor_twin("b", "d2", "Interior Thermometer", observationValue1=10),
    ]

    assert compute_health(sensors) == pytest.approx(10.0)


def test_health_is_not_clamped() -> None:
    sensor = sensor_twin("s", "d", "Vehicle Counter", observationValue1=1200)

    assert compute_health([sensor]) == pytest.approx(150.0)


def test_first_aggregation_adds_computed_health(graph, client) -> None:
    outcome = _aggregator(client).recompute_health("tunnel-1")

    assert outcome.status is OutcomeStatus.patched
    assert outcome.operations[0]["op"] == "add"
    assert outcome.operations[0]["path"] == "/computedHealth"
    assert graph.get_twin("tunnel-1")["computedHealth"] == pytest.approx(20.0)


def test_recompute_is_idempotent(graph, client) -> None:
    aggregator = _aggregator(client)

    first = aggregator.recompute_health("tunnel-1")
    second = aggregator.recompute_health("tunnel-1")

    assert first.status is OutcomeStatus.patched
    assert second.status is OutcomeStatus.unchanged
    assert [dt_id for dt_id, _ in client.patches] == ["tunnel-1"]


def test_changed_value_uses_replace(graph, client) -> None:
    graph.upsert_twin(asset_twin("tunnel-1", computedHealth=5.0))

    outcome = _aggregator(client).recompute_health("tunnel-1")

    assert outcome.operations == [
        {"op": "replace", "path": "/computedHealth", "value": pytest.approx(20.0)}
    ]


def test_missing_asset_is_a_noop(graph, client) -> None:
    graph.upsert_twin(sensor_twin("orphan", "orphan-01", "Interior Thermometer", observes="gone"))

    outcome = _aggregator(client).recompute_health("gone")

    assert outcome.status is OutcomeStatus.noop
    assert client.patches == []


def test_query_failure_is_swallowed(graph) -> None:
    flaky = FlakyClient(graph, fail_query=True)
    flaky.connect()

    outcome = _aggregator(flaky).recompute_health("tunnel-1")

    assert outcome.failed
    assert outcome.error is not None


def test_write_failure_is_swallowed(graph) -> None:
    flaky = FlakyClient(graph, fail_patch={"tunnel-1"})
    flaky.connect()

    outcome = _aggregator(flaky).recompute_health("tunnel-1")

    assert outcome.failed
    assert outcome.value == pytest.approx(20.0)
    assert "computedHealth" not in graph.get_twin("tunnel-1")


def test_missing_threshold_category_is_reported_not_raised(graph, client) -> None:
    limits = {Category.co: 4.5, Category.no2: 50.0}
    aggregator = HealthAggregator(client, thresholds=ThresholdTable(limits), sensor_model=SENSOR_MODEL)

    outcome = aggregator.recompute_health("tunnel-1")

    assert outcome.failed
    assert isinstance(outcome.error, UnknownCategoryError)
    assert client.patches == []
