from __future__ import annotations

import math
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from probehub.models.sensor import Reading


def _to_utc(v: datetime | None) -> datetime | None:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class ProbeReadingPayload(BaseModel):
    """Reading as sent by the probe firmware (camelCase telemetry keys)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: datetime | None = None
    tds: float
    temperature: float
    ec: float
    ph: float
    signal_strength: float = Field(alias="signalStrength")
    battery_level: float = Field(alias="batteryLevel")

    @field_validator("timestamp")
    @classmethod
    def _timestamp_to_utc(cls, v: datetime | None) -> datetime | None:
        return _to_utc(v)

    @field_validator(
        "tds", "temperature", "ec", "ph", "signal_strength", "battery_level"
    )
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v

    def to_reading(self, *, device_id: str, fallback_timestamp: datetime) -> Reading:
        return Reading(
            timestamp=self.timestamp or fallback_timestamp,
            tds=self.tds,
            temperature=self.temperature,
            ec=self.ec,
            ph=self.ph,
            signal_strength=self.signal_strength,
            battery_level=self.battery_level,
            device_id=device_id,
        )


class SensorDataResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    data: ProbeReadingPayload | None = None
    error: str | None = None
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_to_utc(cls, v: datetime | None) -> datetime | None:
        return _to_utc(v)
