from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone

from pydantic import ValidationError

from probehub.core.errors import DuplicateTrialError, InvalidTrialError, NotFoundError
from probehub.models.sensor import (
    READING_CHANNELS,
    ChannelSummary,
    Trial,
    TrialSummary,
)
from probehub.repositories.base import TRIALS_KEY, KeyValueStore, load_quietly, save_quietly
from probehub.schemas.sensors import TrialRead
from probehub.services.history import ReadingHistory

logger = logging.getLogger(__name__)


class TrialStore:
    def __init__(self, store: KeyValueStore | None = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._trials: dict[str, Trial] = {}

    def restore(self) -> int:
        raw = load_quietly(self._store, TRIALS_KEY)
        if raw is None:
            return 0
        try:
            trials = [TrialRead.model_validate(item).to_domain() for item in raw]
        except (TypeError, ValidationError):
            logger.warning("Ignoring unreadable trial snapshot", exc_info=True)
            return 0
        with self._lock:
            self._trials = {t.trial_id: t for t in trials}
            return len(self._trials)

    def save(self, trial: Trial) -> None:
        if not trial.trial_id:
            raise InvalidTrialError("Trial id must not be empty")
        with self._lock:
            if trial.trial_id in self._trials:
                raise DuplicateTrialError(trial.trial_id)
            self._trials[trial.trial_id] = trial
            self._persist_locked()
        logger.info(
            "Saved trial %s (%r, %d readings)",
            trial.trial_id,
            trial.trial_name,
            len(trial.readings),
        )

    def get_all(self) -> list[Trial]:
        with self._lock:
            return list(self._trials.values())

    def get_by_id(self, trial_id: str) -> Trial:
        with self._lock:
            trial = self._trials.get(trial_id)
        if trial is None:
            raise NotFoundError("Trial", trial_id)
        return trial

    def __len__(self) -> int:
        with self._lock:
            return len(self._trials)

    def _persist_locked(self) -> None:
        snapshot = [
            TrialRead.model_validate(t).model_dump(mode="json") for t in self._trials.values()
        ]
        save_quietly(self._store, TRIALS_KEY, snapshot)


def build_trial(
    history: ReadingHistory,
    *,
    name: str,
    location: str = "",
    start: datetime | None = None,
    end: datetime | None = None,
    trial_id: str | None = None,
) -> Trial:
    """Freeze the readings of ``history`` into a trial.

    Without ``start`` or ``end`` the whole buffer is copied: ``start`` is the
    oldest reading and ``end`` the later of now and the newest reading, since
    probe clocks may run ahead of ours. With either bound given, only readings
    within ``[start, end]`` are kept. The trial owns its tuple of readings, so
    later evictions from the history buffer do not affect it.
    """
    if not name:
        raise InvalidTrialError("Trial name must not be empty")

    readings = history.snapshot()
    now = datetime.now(tz=timezone.utc)
    newest = max((r.timestamp for r in readings), default=now)
    end_time = _utc(end) if end is not None else max(now, newest)
    if start is not None:
        start_time = _utc(start)
    elif readings:
        start_time = min(r.timestamp for r in readings)
    else:
        start_time = end_time
    if start_time > end_time:
        raise InvalidTrialError("Trial start must not be after its end")

    if start is None and end is None:
        selected = tuple(readings)
    else:
        selected = tuple(r for r in readings if start_time <= r.timestamp <= end_time)
    return Trial(
        trial_id=trial_id if trial_id is not None else f"trial-{uuid.uuid4().hex}",
        trial_name=name,
        readings=selected,
        start_time=start_time,
        end_time=end_time,
        location=location,
    )


def summarize_trial(trial: Trial) -> TrialSummary:
    channels: list[ChannelSummary] = []
    for channel in READING_CHANNELS:
        values = [float(getattr(r, channel)) for r in trial.readings]
        if not values:
            channels.append(ChannelSummary(channel=channel, count=0, min=None, max=None, avg=None))
            continue
        channels.append(
            ChannelSummary(
                channel=channel,
                count=len(values),
                min=min(values),
                max=max(values),
                avg=sum(values) / len(values),
            )
        )
    return TrialSummary(
        trial_id=trial.trial_id,
        trial_name=trial.trial_name,
        location=trial.location,
        start_time=trial.start_time,
        end_time=trial.end_time,
        count=len(trial.readings),
        channels=tuple(channels),
    )


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
