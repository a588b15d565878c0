from __future__ import annotations

import logging
import threading
from collections import deque

from pydantic import ValidationError

from probehub.models.sensor import Reading
from probehub.repositories.base import (
    READINGS_HISTORY_KEY,
    KeyValueStore,
    delete_quietly,
    load_quietly,
    save_quietly,
)
from probehub.schemas.sensors import ReadingRead

logger = logging.getLogger(__name__)

DEFAULT_MAX_READINGS = 100


class ReadingHistory:
    """Most recent readings across all devices, oldest evicted first."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        max_readings: int = DEFAULT_MAX_READINGS,
    ) -> None:
        if max_readings < 1:
            raise ValueError("max_readings must be at least 1")
        self._store = store
        self._max_readings = int(max_readings)
        self._lock = threading.Lock()
        self._readings: deque[Reading] = deque(maxlen=self._max_readings)

    @property
    def max_readings(self) -> int:
        return self._max_readings

    def restore(self) -> int:
        raw = load_quietly(self._store, READINGS_HISTORY_KEY)
        if raw is None:
            return 0
        try:
            readings = [ReadingRead.model_validate(item).to_domain() for item in raw]
        except (TypeError, ValidationError):
            logger.warning("Ignoring unreadable reading history snapshot", exc_info=True)
            return 0
        with self._lock:
            # A snapshot written with a larger capacity keeps only its newest tail.
            self._readings = deque(readings, maxlen=self._max_readings)
            return len(self._readings)

    def append(self, reading: Reading) -> None:
        with self._lock:
            self._readings.append(reading)
            self._persist_locked()

    def snapshot(self) -> list[Reading]:
        with self._lock:
            return list(self._readings)

    def latest(self) -> Reading | None:
        with self._lock:
            return self._readings[-1] if self._readings else None

    def clear(self) -> None:
        with self._lock:
            self._readings.clear()
            delete_quietly(self._store, READINGS_HISTORY_KEY)

    def __len__(self) -> int:
        with self._lock:
            return len(self._readings)

    def _persist_locked(self) -> None:
        snapshot = [
            ReadingRead.model_validate(r).model_dump(mode="json") for r in self._readings
        ]
        save_quietly(self._store, READINGS_HISTORY_KEY, snapshot)
