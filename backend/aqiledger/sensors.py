"""Closed set of sensor types understood by the pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class SensorType(str, Enum):
    PM25 = "PM2.5"
    PM10 = "PM10"
    NO2 = "NO2"
    NO = "NO"
    NOX = "NOX"
    O3 = "O3"
    CO = "CO"
    CO2 = "CO2"
    SO2 = "SO2"
    TEMPERATURE = "Temperature"
    RH = "RH"
    WIND_SPEED = "Wind_Speed"
    WIND_DIRECTION = "Wind_Direction"


UNITS: dict[str, str] = {
    SensorType.PM25.value: "µg/m³",
    SensorType.PM10.value: "µg/m³",
    SensorType.NO2.value: "ppb",
    SensorType.NO.value: "ppb",
    SensorType.NOX.value: "ppb",
    SensorType.O3.value: "ppb",
    SensorType.CO.value: "ppm",
    SensorType.CO2.value: "ppm",
    SensorType.SO2.value: "ppb",
    SensorType.TEMPERATURE.value: "°C",
    SensorType.RH.value: "%",
    SensorType.WIND_SPEED.value: "m/s",
    SensorType.WIND_DIRECTION.value: "°",
}

_ORDER = {member.value: position for position, member in enumerate(SensorType)}


def is_known(sensor_type: str) -> bool:
    return sensor_type in _ORDER


def get_sensor_unit(sensor_type: str) -> str:
    return UNITS.get(sensor_type, "unknown")


def ordered_sensor_types(keys: Iterable[str]) -> list[str]:
    """Known types in declaration order, then unknown keys alphabetically."""

    keys = list(keys)
    known = sorted((k for k in keys if k in _ORDER), key=_ORDER.__getitem__)
    unknown = sorted(k for k in keys if k not in _ORDER)
    return known + unknown
