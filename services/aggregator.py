"""Asset health rollup from the sensors that observe it."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from datastore.clients import TwinGraphClient
from errors import StoreFault, TwinError
from models.outcomes import OutcomeStatus, UpdateOutcome
from models.twins import (
    COMPUTED_HEALTH,
    DT_ID,
    OBSERVATION_VALUE_1,
    OBSERVATION_VALUE_2,
    AssetNode,
    Category,
    SensorType,
)
from services.patching import build_patch
from services.resolver import DEFAULT_SENSOR_MODEL, quote_literal
from services.thresholds import ThresholdTable

logger = logging.getLogger(__name__)

# Which observation slot carries which measurement, per sensor type. Adding a
# sensor type is a new row here.
SENSOR_CATEGORIES: Mapping[SensorType, Tuple[Tuple[str, Category], ...]] = MappingProxyType(
    {
        SensorType.interior_thermometer: ((OBSERVATION_VALUE_1, Category.temperature),),
        SensorType.exterior_thermometer: ((OBSERVATION_VALUE_1, Category.temperature),),
        SensorType.baseline_air_sensor: (
            (OBSERVATION_VALUE_1, Category.co),
            (OBSERVATION_VALUE_2, Category.no2),
        ),
        SensorType.tunnel_air_sensor: (
            (OBSERVATION_VALUE_1, Category.co),
            (OBSERVATION_VALUE_2, Category.no2),
        ),
        SensorType.vehicle_counter: (
            (OBSERVATION_VALUE_1, Category.vehicle_count),
            (OBSERVATION_VALUE_2, Category.truck_count),
        ),
        SensorType.bridge_sensor: (
            (OBSERVATION_VALUE_1, Category.deflection),
            (OBSERVATION_VALUE_2, Category.vibration),
        ),
    }
)


def _slot_value(sensor: Mapping[str, Any], slot: str) -> float:
    if slot not in sensor:
        return 0.0
    try:
        return float(sensor[slot])
    except (TypeError, ValueError):
        logger.warning(
            "Ignoring non-numeric observation value.",
            extra={"dt_id": sensor.get(DT_ID), "reason": f"{slot}={sensor[slot]!r}"},
        )
        return 0.0


def normalized_readings(
    sensor: Mapping[str, Any],
    thresholds: ThresholdTable,
) -> List[float]:
    """Normalized fractions for each slot of a sensor snapshot.

    Sensors of an unknown type yield no fractions.
    """
    sensor_type = SensorType.from_label(sensor.get("type"))
    if sensor_type is None:
        return []
    return [
        thresholds.normalize(category, _slot_value(sensor, slot))
        for slot, category in SENSOR_CATEGORIES[sensor_type]
    ]


def compute_health(
    sensors: Iterable[Mapping[str, Any]],
    thresholds: Optional[ThresholdTable] = None,
) -> float:
    """Return ``100 * max`` normalized reading over every sensor and slot.

    Starts from zero, so no sensors (or only unknown types) give ``0.0``.
    The result is not clamped; values above 100 mean over the limit.
    """
    table = thresholds or ThresholdTable()
    max_fraction = 0.0
    for sensor in sensors:
        for fraction in normalized_readings(sensor, table):
            if fraction > max_fraction:
                max_fraction = fraction
    return max_fraction * 100


def sensors_observing_query(model: str, asset_id: str) -> str:
    return (
        f"SELECT * FROM DigitalTwins T WHERE IS_OF_MODEL(T, '{quote_literal(model)}') "
        f"AND T.observes = '{quote_literal(asset_id)}'"
    )


def twin_by_id_query(dt_id: str) -> str:
    return f"SELECT * FROM DigitalTwins T WHERE T.$dtId = '{quote_literal(dt_id)}'"


class HealthAggregator:
    """Recomputes and conditionally writes back an asset's ``computedHealth``.

    Store faults and lookup errors (an unknown threshold category) are caught
    here and reported through the returned :class:`UpdateOutcome`; nothing
    raises past :meth:`recompute_health`.
    """

    def __init__(
        self,
        client: TwinGraphClient,
        thresholds: Optional[ThresholdTable] = None,
        sensor_model: str = DEFAULT_SENSOR_MODEL,
    ) -> None:
        self.client = client
        self.thresholds = thresholds or ThresholdTable()
        self.sensor_model = sensor_model

    def recompute_health(self, asset_id: str) -> UpdateOutcome:
        try:
            sensors = self.client.query(sensors_observing_query(self.sensor_model, asset_id))
            health = compute_health(sensors, self.thresholds)
            matches = self.client.query(twin_by_id_query(asset_id))
        except TwinError as exc:
            logger.warning(
                "Health aggregation failed.",
                extra={"asset_id": asset_id, "reason": str(exc)},
            )
            return UpdateOutcome(dt_id=asset_id, status=OutcomeStatus.failed, error=exc)

        if not matches:
            logger.warning("Observed asset twin not found.", extra={"asset_id": asset_id})
            return UpdateOutcome(dt_id=asset_id, status=OutcomeStatus.noop, value=health)

        asset = AssetNode.from_snapshot(min(matches, key=lambda twin: str(twin.get(DT_ID, ""))))
        if asset.has_health and asset.computed_health == health:
            return UpdateOutcome(dt_id=asset.dt_id, status=OutcomeStatus.unchanged, value=health)

        existing = {COMPUTED_HEALTH} if asset.has_health else set()
        operations: List[Dict[str, Any]] = build_patch(existing, {COMPUTED_HEALTH: health}).operations
        logger.info(
            "Computed health for asset.",
            extra={"asset_id": asset.dt_id, "computed_health": health},
        )
        try:
            self.client.patch(asset.dt_id, operations)
        except StoreFault as exc:
            logger.warning(
                "Computed health write failed.",
                extra={"asset_id": asset.dt_id, "reason": str(exc)},
            )
            return UpdateOutcome(
                dt_id=asset.dt_id,
                status=OutcomeStatus.failed,
                operations=operations,
                value=health,
                error=exc,
            )
        return UpdateOutcome(
            dt_id=asset.dt_id,
            status=OutcomeStatus.patched,
            operations=operations,
            value=health,
        )
