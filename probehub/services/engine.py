from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from pydantic import TypeAdapter

from probehub.clients.probe import ProbeClient
from probehub.core.config import Settings
from probehub.models.sensor import Device, Trial
from probehub.repositories.base import KeyValueStore
from probehub.repositories.json_store import JsonFileStore
from probehub.schemas.sensors import DeviceCreate
from probehub.services.connectivity import ConnectivityTracker
from probehub.services.history import ReadingHistory
from probehub.services.polling import PollScheduler, SensorFetcher
from probehub.services.registry import DeviceRegistry
from probehub.services.trials import TrialStore, build_trial

logger = logging.getLogger(__name__)

_DEVICE_LIST = TypeAdapter(list[DeviceCreate])


class ProbeEngine:
    """Owns one process's registry, history, trials and poll scheduler."""

    def __init__(
        self,
        *,
        client: SensorFetcher,
        store: KeyValueStore | None = None,
        default_interval_seconds: float = 300.0,
        max_history_readings: int = 100,
        subscriber_queue_size: int = 256,
    ) -> None:
        self.client = client
        self.store = store
        self.registry = DeviceRegistry(store)
        self.history = ReadingHistory(store, max_readings=max_history_readings)
        self.trials = TrialStore(store)
        self.tracker = ConnectivityTracker(self.registry)
        self.scheduler = PollScheduler(
            registry=self.registry,
            history=self.history,
            client=client,
            tracker=self.tracker,
            default_interval_seconds=default_interval_seconds,
            queue_size=subscriber_queue_size,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: KeyValueStore | None = None,
        client: SensorFetcher | None = None,
    ) -> ProbeEngine:
        return cls(
            client=client or ProbeClient(timeout_seconds=settings.fetch_timeout_seconds),
            store=store if store is not None else JsonFileStore(settings.data_dir),
            default_interval_seconds=settings.poll_interval_seconds,
            max_history_readings=settings.max_history_readings,
            subscriber_queue_size=settings.subscriber_queue_size,
        )

    def restore(self) -> None:
        devices = self.registry.restore()
        readings = self.history.restore()
        trials = self.trials.restore()
        logger.info(
            "Restored %d device(s), %d reading(s), %d trial(s)", devices, readings, trials
        )

    def record_trial(
        self,
        *,
        name: str,
        location: str = "",
        start: datetime | None = None,
        end: datetime | None = None,
        trial_id: str | None = None,
    ) -> Trial:
        trial = build_trial(
            self.history,
            name=name,
            location=location,
            start=start,
            end=end,
            trial_id=trial_id,
        )
        self.trials.save(trial)
        return trial

    def close(self) -> None:
        self.scheduler.shutdown()
        close = getattr(self.client, "close", None)
        if callable(close):
            close()


def load_devices_file(path: str | Path) -> list[Device]:
    """Read a JSON list of device definitions (same shape as ``POST /devices``)."""
    path_obj = Path(path)
    with path_obj.open("r", encoding="utf-8") as handle:
        raw = json.load(handle)
    return [d.to_domain() for d in _DEVICE_LIST.validate_python(raw)]
