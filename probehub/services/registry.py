from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable

from pydantic import ValidationError

from probehub.core.errors import DuplicateDeviceError, InvalidDeviceError, NotFoundError
from probehub.models.sensor import Device, DeviceStatus
from probehub.repositories.base import DEVICES_KEY, KeyValueStore, load_quietly, save_quietly
from probehub.schemas.sensors import DeviceRead

logger = logging.getLogger(__name__)


def _fresh(device: Device) -> Device:
    # Callers never choose status or sync time; a registration starts offline.
    return replace(device, status=DeviceStatus.OFFLINE, last_sync=None)


def _check_ids(devices: list[Device]) -> None:
    seen: set[str] = set()
    for device in devices:
        if not device.id:
            raise InvalidDeviceError("Device id must not be empty")
        if device.id in seen:
            raise InvalidDeviceError(f"Device id '{device.id}' appears more than once")
        seen.add(device.id)


class DeviceRegistry:
    def __init__(self, store: KeyValueStore | None = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._devices: dict[str, Device] = {}

    def restore(self) -> int:
        raw = load_quietly(self._store, DEVICES_KEY)
        if raw is None:
            return 0
        try:
            devices = [DeviceRead.model_validate(item).to_domain() for item in raw]
            _check_ids(devices)
        except (TypeError, ValidationError, InvalidDeviceError):
            logger.warning("Ignoring unreadable device snapshot", exc_info=True)
            return 0
        with self._lock:
            self._devices = {d.id: d for d in devices}
            return len(self._devices)

    def register(self, devices: Iterable[Device]) -> None:
        """Replace the whole registry; nothing changes if any id is bad."""
        incoming = list(devices)
        _check_ids(incoming)

        with self._lock:
            self._devices = {d.id: _fresh(d) for d in incoming}
            self._persist_locked()
        logger.info("Registered %d device(s)", len(incoming))

    def add(self, device: Device) -> Device:
        if not device.id:
            raise InvalidDeviceError("Device id must not be empty")
        with self._lock:
            if device.id in self._devices:
                raise DuplicateDeviceError(device.id)
            stored = _fresh(device)
            self._devices[device.id] = stored
            self._persist_locked()
        logger.info("Added device %s (%s)", device.id, device.base_url)
        return stored

    def get(self, device_id: str) -> Device:
        with self._lock:
            device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("Device", device_id)
        return device

    def find(self, device_id: str) -> Device | None:
        with self._lock:
            return self._devices.get(device_id)

    def list(self) -> list[Device]:
        with self._lock:
            return list(self._devices.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._devices

    def update_status(self, device_id: str, status: DeviceStatus) -> Device | None:
        with self._lock:
            current = self._devices.get(device_id)
            if current is None:
                return None
            updated = replace(current, status=status)
            self._devices[device_id] = updated
            self._persist_locked()
        if current.status != status:
            logger.info("Device %s: %s -> %s", device_id, current.status.value, status.value)
        return updated

    def touch_last_sync(self, device_id: str, at: datetime | None = None) -> Device | None:
        with self._lock:
            current = self._devices.get(device_id)
            if current is None:
                return None
            updated = replace(current, last_sync=at or datetime.now(tz=timezone.utc))
            self._devices[device_id] = updated
            self._persist_locked()
        return updated

    def record_success(self, device_id: str, at: datetime) -> Device | None:
        """Mark a device online and synced in one step (one snapshot write)."""
        with self._lock:
            current = self._devices.get(device_id)
            if current is None:
                return None
            updated = replace(current, status=DeviceStatus.ONLINE, last_sync=at)
            self._devices[device_id] = updated
            self._persist_locked()
        if current.status != DeviceStatus.ONLINE:
            logger.info("Device %s: %s -> online", device_id, current.status.value)
        return updated

    def _persist_locked(self) -> None:
        snapshot = [
            DeviceRead.model_validate(d).model_dump(mode="json")
            for d in self._devices.values()
        ]
        save_quietly(self._store, DEVICES_KEY, snapshot)
