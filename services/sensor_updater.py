"""Applies one telemetry reading to its sensor twin."""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional, Tuple

from datastore.clients import TwinGraphClient
from errors import ParseError, StoreFault
from models.outcomes import OutcomeStatus, UpdateOutcome
from models.twins import OBSERVATION_VALUE_1, OBSERVATION_VALUE_2, SensorNode, TelemetryEvent
from services.aggregator import HealthAggregator
from services.patching import build_patch

logger = logging.getLogger(__name__)

MISSING = -1.0

# Payload keys per sensor family, in (observationValue1, observationValue2)
# order. The first family with any key present wins.
FIELD_SETS: Tuple[Tuple[str, Optional[str]], ...] = (
    ("temperature", None),
    ("co", "no2"),
    ("vehicles", "trucks"),
    ("deflection", "accelerometer"),
)


def _parse_number(payload: Mapping[str, Any], key: Optional[str]) -> float:
    if key is None or key not in payload:
        return MISSING
    raw = payload[key]
    value: Optional[float] = None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            value = None
    if value is None or not math.isfinite(value):
        raise ParseError(f"Field {key!r} must be numeric, got {raw!r}.")
    return value


def extract_observations(payload: Mapping[str, Any]) -> Optional[Tuple[float, float]]:
    """Map a payload onto ``(value1, value2)``, ``-1`` marking absent fields.

    Returns ``None`` when the payload carries none of the known field sets.
    """
    for first, second in FIELD_SETS:
        if first in payload or (second is not None and second in payload):
            return _parse_number(payload, first), _parse_number(payload, second)
    return None


class SensorUpdater:
    """Patches a sensor's observation slots, then re-aggregates its asset."""

    def __init__(self, client: TwinGraphClient, aggregator: HealthAggregator) -> None:
        self.client = client
        self.aggregator = aggregator

    def apply_reading(self, sensor: SensorNode, event: TelemetryEvent) -> UpdateOutcome:
        values = extract_observations(event.payload)
        if values is None:
            logger.info(
                "Payload carries no known sensor fields; nothing to update.",
                extra={"dt_id": sensor.dt_id, "reason": ",".join(sorted(event.payload))},
            )
            return UpdateOutcome(dt_id=sensor.dt_id, status=OutcomeStatus.noop)

        value1, value2 = values
        existing = {
            name
            for name in (OBSERVATION_VALUE_1, OBSERVATION_VALUE_2)
            if sensor.has_property(name)
        }
        patch = build_patch(existing, {OBSERVATION_VALUE_1: value1, OBSERVATION_VALUE_2: value2})
        if not patch:
            return UpdateOutcome(dt_id=sensor.dt_id, status=OutcomeStatus.noop)

        operations = patch.operations
        try:
            self.client.patch(sensor.dt_id, operations)
        except StoreFault as exc:
            logger.warning(
                "Sensor twin update failed.",
                extra={"dt_id": sensor.dt_id, "reason": str(exc)},
            )
            return UpdateOutcome(
                dt_id=sensor.dt_id,
                status=OutcomeStatus.failed,
                operations=operations,
                error=exc,
            )

        outcome = UpdateOutcome(
            dt_id=sensor.dt_id, status=OutcomeStatus.patched, operations=operations
        )
        if sensor.observes:
            outcome.aggregation = self.aggregator.recompute_health(sensor.observes)
        else:
            logger.warning("Sensor twin observes no asset.", extra={"dt_id": sensor.dt_id})
        return outcome
