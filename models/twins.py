"""Domain models shared across services."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from errors import ParseError

DT_ID = "$dtId"
OBSERVATION_VALUE_1 = "observationValue1"
OBSERVATION_VALUE_2 = "observationValue2"
COMPUTED_HEALTH = "computedHealth"


class SensorType(str, Enum):
    """Sensor labels stored in the ``type`` property of sensor twins."""

    interior_thermometer = "Interior Thermometer"
    exterior_thermometer = "Exterior Thermometer"
    baseline_air_sensor = "Baseline Air Sensor"
    tunnel_air_sensor = "Tunnel Air Sensor"
    vehicle_counter = "Vehicle Counter"
    bridge_sensor = "Bridge Sensor"

    @classmethod
    def from_label(cls, label: Any) -> Optional["SensorType"]:
        try:
            return cls(label)
        except ValueError:
            return None


class Category(str, Enum):
    """Measurement categories with a normalization upper limit."""

    temperature = "Temperature"
    co = "CO"
    no2 = "NO2"
    vehicle_count = "VehicleCount"
    truck_count = "TruckCount"
    vibration = "Vibration"
    deflection = "Deflection"


@dataclass(slots=True)
class TelemetryEvent:
    """A single device message delivered by the transport layer."""

    device_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, body: bytes | str | Mapping[str, Any], device_id: str) -> "TelemetryEvent":
        """Decode a raw message body into an event.

        ``body`` may already be a mapping (transports that pre-parse JSON);
        bytes are decoded as UTF-8.
        """
        if isinstance(body, Mapping):
            return cls(device_id=device_id, payload=dict(body))
        if isinstance(body, bytes):
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ParseError("Message body is not valid UTF-8.") from exc
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Message body is not valid JSON: {exc.msg}.") from exc
        if not isinstance(decoded, dict):
            raise ParseError("Message body must be a JSON object.")
        return cls(device_id=device_id, payload=decoded)


@dataclass(slots=True)
class SensorNode:
    """Snapshot of a sensor twin as returned by the graph."""

    dt_id: str
    device_id: Optional[str]
    observes: Optional[str]
    type_label: Optional[str]
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def sensor_type(self) -> Optional[SensorType]:
        return SensorType.from_label(self.type_label)

    def has_property(self, name: str) -> bool:
        return name in self.properties

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "SensorNode":
        observes = snapshot.get("observes")
        return cls(
            dt_id=str(snapshot[DT_ID]),
            device_id=snapshot.get("deviceId"),
            observes=str(observes) if observes else None,
            type_label=snapshot.get("type"),
            properties=dict(snapshot),
        )


@dataclass(slots=True)
class AssetNode:
    """Snapshot of an observed asset twin (tunnel, bridge, road segment)."""

    dt_id: str
    computed_health: Optional[float] = None
    has_health: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "AssetNode":
        has_health = COMPUTED_HEALTH in snapshot
        health: Optional[float] = None
        if has_health:
            try:
                health = float(snapshot[COMPUTED_HEALTH])
            except (TypeError, ValueError):
                health = None
        return cls(dt_id=str(snapshot[DT_ID]), computed_health=health, has_health=has_health)
