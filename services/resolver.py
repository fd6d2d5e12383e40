"""Device id to sensor twin resolution."""

from __future__ import annotations

import logging

from datastore.clients import TwinGraphClient
from errors import DeviceNotFoundError
from models.twins import DT_ID, SensorNode

logger = logging.getLogger(__name__)

DEFAULT_SENSOR_MODEL = "dtmi:adt:chb:Sensor;1"


def strip_device_prefix(raw_device_id: str) -> str:
    """Return the sensor device id carried by a transport device id.

    Transport ids look like ``"<simulation-id>.<device-id>"``. Only the first
    ``.`` separates the qualifier; later dots belong to the device id. An id
    without any ``.`` is used unchanged.
    """
    _, separator, suffix = raw_device_id.partition(".")
    return suffix if separator else raw_device_id


def quote_literal(value: str) -> str:
    """Escape a value for a single-quoted twin query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def sensor_by_device_query(model: str, device_id: str) -> str:
    return (
        f"SELECT * FROM DigitalTwins T WHERE IS_OF_MODEL(T, '{quote_literal(model)}') "
        f"AND T.deviceId = '{quote_literal(device_id)}'"
    )


class DeviceResolver:
    """Maps inbound device ids to the one sensor twin that represents them."""

    def __init__(self, client: TwinGraphClient, sensor_model: str = DEFAULT_SENSOR_MODEL) -> None:
        self.client = client
        self.sensor_model = sensor_model

    def resolve(self, raw_device_id: str) -> SensorNode:
        device_id = strip_device_prefix(raw_device_id)
        matches = self.client.query(sensor_by_device_query(self.sensor_model, device_id))
        if not matches:
            raise DeviceNotFoundError(device_id)

        matches = sorted(matches, key=lambda twin: str(twin.get(DT_ID, "")))
        if len(matches) > 1:
            logger.warning(
                "Several sensor twins share a device id; using the lowest $dtId.",
                extra={"device_id": device_id, "dt_id": matches[0].get(DT_ID)},
            )
        return SensorNode.from_snapshot(matches[0])
