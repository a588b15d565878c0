from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

from probehub.models.sensor import (
    Device,
    DeviceStatus,
    Location,
    Reading,
    Trial,
)

DEVICE_ID_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9:_.-]{0,63}$"

DeviceId = Annotated[str, Field(pattern=DEVICE_ID_PATTERN)]


def _to_utc(v: datetime | None) -> datetime | None:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class LocationSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    latitude: float
    longitude: float
    name: str = ""

    def to_domain(self) -> Location:
        return Location(latitude=self.latitude, longitude=self.longitude, name=self.name)


class _DeviceBase(BaseModel):
    id: str
    name: str
    host: str
    port: int = 80
    location: LocationSchema

    def to_domain(self) -> Device:
        return Device(
            id=self.id,
            name=self.name,
            host=self.host,
            port=self.port,
            location=self.location.to_domain(),
        )


class LocationCreate(LocationSchema):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    name: str = Field(default="", max_length=128)


class DeviceCreate(_DeviceBase):
    id: DeviceId
    name: str = Field(min_length=1, max_length=128)
    host: str = Field(min_length=1, max_length=253)
    port: int = Field(default=80, ge=1, le=65535)
    location: LocationCreate


class DeviceRead(_DeviceBase):
    """Device as exposed to consumers and as written to the snapshot store."""

    model_config = ConfigDict(from_attributes=True)

    last_sync: datetime | None = None
    status: DeviceStatus = DeviceStatus.OFFLINE

    @field_validator("last_sync")
    @classmethod
    def _last_sync_to_utc(cls, v: datetime | None) -> datetime | None:
        return _to_utc(v)

    def to_domain(self) -> Device:
        return Device(
            id=self.id,
            name=self.name,
            host=self.host,
            port=self.port,
            location=self.location.to_domain(),
            last_sync=self.last_sync,
            status=self.status,
        )


class ReadingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    tds: float
    temperature: float
    ec: float
    ph: float
    signal_strength: float
    battery_level: float
    device_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_to_utc(cls, v: datetime) -> datetime:
        return _to_utc(v)

    @field_validator(
        "tds", "temperature", "ec", "ph", "signal_strength", "battery_level"
    )
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v

    def to_domain(self) -> Reading:
        return Reading(**self.model_dump())


class TrialCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    location: str = Field(default="", max_length=128)
    start: datetime | None = None
    end: datetime | None = None
    trial_id: str | None = Field(default=None, min_length=1, max_length=128)

    @field_validator("start", "end")
    @classmethod
    def _window_to_utc(cls, v: datetime | None) -> datetime | None:
        return _to_utc(v)


class TrialRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trial_id: str = Field(min_length=1)
    trial_name: str
    readings: list[ReadingRead] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime
    location: str = ""

    @field_validator("start_time", "end_time")
    @classmethod
    def _times_to_utc(cls, v: datetime) -> datetime:
        return _to_utc(v)

    def to_domain(self) -> Trial:
        return Trial(
            trial_id=self.trial_id,
            trial_name=self.trial_name,
            readings=tuple(r.to_domain() for r in self.readings),
            start_time=self.start_time,
            end_time=self.end_time,
            location=self.location,
        )


class ChannelSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    channel: str
    count: int = Field(ge=0)
    min: float | None = None
    max: float | None = None
    avg: float | None = None


class TrialSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trial_id: str
    trial_name: str
    location: str
    start_time: datetime
    end_time: datetime
    count: int = Field(ge=0)
    channels: list[ChannelSummaryRead] = Field(default_factory=list)


class PollingStart(BaseModel):
    interval_seconds: float | None = Field(default=None, gt=0, le=24 * 60 * 60)


class IntervalUpdate(BaseModel):
    interval_seconds: float = Field(gt=0, le=24 * 60 * 60)


class PollingState(BaseModel):
    device_id: str
    interval_seconds: float
    follows_default: bool


class PollingOverview(BaseModel):
    default_interval_seconds: float
    active: list[PollingState] = Field(default_factory=list)


class FetchOutcomeRead(BaseModel):
    device_id: str
    kind: str
    status: DeviceStatus
    reading: ReadingRead | None = None
    error: str | None = None
    received_at: datetime
