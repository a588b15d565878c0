from __future__ import annotations

from probehub.core.errors import DeviceError
from probehub.models.sensor import DeviceStatus, FetchOutcome
from probehub.services.registry import DeviceRegistry


class ConnectivityTracker:
    """Derives a device's status from the latest fetch outcome only.

    There is no hysteresis: alternating outcomes make the status flap, and
    ``last_sync`` only moves on success.
    """

    def __init__(self, registry: DeviceRegistry) -> None:
        self._registry = registry

    @staticmethod
    def status_for(outcome: FetchOutcome) -> DeviceStatus:
        if outcome.ok:
            return DeviceStatus.ONLINE
        if isinstance(outcome.error, DeviceError):
            return DeviceStatus.ERROR
        return DeviceStatus.OFFLINE

    def apply(self, outcome: FetchOutcome) -> DeviceStatus:
        status = self.status_for(outcome)
        if status is DeviceStatus.ONLINE:
            self._registry.record_success(outcome.device_id, outcome.received_at)
        else:
            self._registry.update_status(outcome.device_id, status)
        return status
