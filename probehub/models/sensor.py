from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from probehub.core.errors import DeviceError, FetchError

READING_CHANNELS = (
    "tds",
    "temperature",
    "ec",
    "ph",
    "signal_strength",
    "battery_level",
)


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    name: str


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    host: str
    port: int
    location: Location
    last_sync: datetime | None = None
    status: DeviceStatus = DeviceStatus.OFFLINE

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class Reading:
    timestamp: datetime
    tds: float
    temperature: float
    ec: float
    ph: float
    signal_strength: float
    battery_level: float
    device_id: str | None = None

    def __post_init__(self) -> None:
        for name in READING_CHANNELS:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(float(value)):
                raise ValueError(f"Invalid value for '{name}' (must be finite number).")


@dataclass(frozen=True)
class Trial:
    trial_id: str
    trial_name: str
    readings: tuple[Reading, ...]
    start_time: datetime
    end_time: datetime
    location: str


@dataclass(frozen=True)
class FetchOutcome:
    device_id: str
    reading: Reading | None = None
    error: FetchError | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def ok(self) -> bool:
        return self.reading is not None and self.error is None

    @property
    def kind(self) -> str:
        if self.ok:
            return "success"
        if isinstance(self.error, DeviceError):
            return "device_error"
        return "transport_error"

    @classmethod
    def success(cls, device_id: str, reading: Reading) -> FetchOutcome:
        return cls(device_id=device_id, reading=reading)

    @classmethod
    def failure(cls, device_id: str, error: FetchError) -> FetchOutcome:
        return cls(device_id=device_id, error=error)


@dataclass(frozen=True)
class PollEvent:
    """One notification delivered to a poll subscriber."""

    outcome: FetchOutcome

    @property
    def device_id(self) -> str:
        return self.outcome.device_id

    @property
    def reading(self) -> Reading | None:
        return self.outcome.reading

    @property
    def error(self) -> FetchError | None:
        return self.outcome.error


@dataclass(frozen=True)
class ChannelSummary:
    channel: str
    count: int
    min: float | None
    max: float | None
    avg: float | None


@dataclass(frozen=True)
class TrialSummary:
    trial_id: str
    trial_name: str
    location: str
    start_time: datetime
    end_time: datetime
    count: int
    channels: tuple[ChannelSummary, ...]
