from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, Protocol

from probehub.core.errors import NotFoundError, TransportError
from probehub.models.sensor import Device, FetchOutcome, PollEvent
from probehub.services.connectivity import ConnectivityTracker
from probehub.services.history import ReadingHistory
from probehub.services.registry import DeviceRegistry

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300.0
DEFAULT_QUEUE_SIZE = 256

_CLOSED = object()


class SensorFetcher(Protocol):
    def fetch(self, device: Device) -> FetchOutcome: ...


class Subscription:
    """A listener on one device's poll channel.

    Events are buffered in a bounded queue; when a slow consumer lets it fill
    up, the oldest event is dropped. ``get`` returns ``None`` on timeout and
    once the subscription is closed.
    """

    def __init__(self, channel: PollChannel, *, maxsize: int) -> None:
        self._channel = channel
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def device_id(self) -> str:
        return self._channel.device_id

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def get(self, timeout: float | None = None) -> PollEvent | None:
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[PollEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._channel.detach(self)
        self._finish()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _deliver(self, event: PollEvent) -> None:
        if not self._closed.is_set():
            self._put(event)

    def _finish(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._put(_CLOSED)

    def _put(self, item: object) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass


class PollChannel:
    """Fan-out of one device's poll events to any number of subscribers."""

    def __init__(self, device_id: str, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.device_id = device_id
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []

    def subscribe(self) -> Subscription:
        sub = Subscription(self, maxsize=self._queue_size)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def detach(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: PollEvent) -> None:
        with self._lock:
            targets = list(self._subscribers)
        for sub in targets:
            sub._deliver(event)

    def close(self) -> None:
        with self._lock:
            targets = list(self._subscribers)
            self._subscribers.clear()
        for sub in targets:
            sub._finish()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


@dataclass(frozen=True)
class PollingInfo:
    device_id: str
    interval_seconds: float
    follows_default: bool


class _PollLoop:
    def __init__(self, device_id: str, interval_seconds: float | None) -> None:
        self.device_id = device_id
        self.interval_seconds = interval_seconds
        self.cancelled = threading.Event()
        # Held from the cancellation check until the outcome is applied.
        self.apply_lock = threading.Lock()
        self.thread: threading.Thread | None = None


class PollScheduler:
    """One polling thread per device, feeding a broadcast channel per device.

    Ticks run at a fixed rate. A fetch that overruns its interval causes the
    ticks it overlapped to be skipped. Each device has at most one fetch in
    flight: a poll requested while one is outstanding waits for it and shares
    its outcome. Loops started without an explicit interval follow the scheduler's
    default, including later changes to it.
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        history: ReadingHistory,
        client: SensorFetcher,
        tracker: ConnectivityTracker | None = None,
        default_interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        max_workers: int = 16,
    ) -> None:
        _check_interval(default_interval_seconds)
        self._registry = registry
        self._history = history
        self._client = client
        self._tracker = tracker or ConnectivityTracker(registry)
        self._default_interval = float(default_interval_seconds)
        self._queue_size = queue_size
        self._max_workers = max(int(max_workers), 1)

        self._lock = threading.Lock()
        self._loops: dict[str, _PollLoop] = {}
        self._channels: dict[str, PollChannel] = {}
        self._in_flight: dict[str, Future[FetchOutcome]] = {}

    @property
    def default_interval_seconds(self) -> float:
        with self._lock:
            return self._default_interval

    def set_default_interval(self, interval_seconds: float) -> None:
        _check_interval(interval_seconds)
        with self._lock:
            self._default_interval = float(interval_seconds)
        logger.info("Default poll interval set to %.3fs", interval_seconds)

    def set_interval(self, device_id: str, interval_seconds: float | None) -> None:
        """Override (or with ``None``, un-override) a running loop's interval."""
        if interval_seconds is not None:
            _check_interval(interval_seconds)
        with self._lock:
            loop = self._loops.get(device_id)
            if loop is None:
                raise NotFoundError("Polling loop", device_id)
            loop.interval_seconds = None if interval_seconds is None else float(interval_seconds)

    def start_polling(
        self, device_id: str, interval_seconds: float | None = None
    ) -> Subscription:
        if interval_seconds is not None:
            _check_interval(interval_seconds)
        self._registry.get(device_id)

        loop = _PollLoop(
            device_id, None if interval_seconds is None else float(interval_seconds)
        )
        with self._lock:
            previous = self._loops.get(device_id)
            self._loops[device_id] = loop
            channel = self._channel_locked(device_id)
            subscription = channel.subscribe()
            loop.thread = threading.Thread(
                target=self._run, args=(loop,), name=f"poll-{device_id}", daemon=True
            )
            loop.thread.start()

        if previous is not None:
            _cancel(previous)
            logger.info("Restarted polling for %s", device_id)
        else:
            logger.info(
                "Started polling %s every %.3fs",
                device_id,
                self._interval_for(loop),
            )
        return subscription

    def subscribe(self, device_id: str) -> Subscription:
        self._registry.get(device_id)
        with self._lock:
            return self._channel_locked(device_id).subscribe()

    def stop_polling(self, device_id: str) -> bool:
        """Stop a device's loop; an outcome still in flight will be dropped."""
        with self._lock:
            loop = self._loops.pop(device_id, None)
            channel = self._channels.pop(device_id, None)
        if loop is not None:
            _cancel(loop)
        if channel is not None:
            channel.close()
        if loop is None:
            return False
        logger.info("Stopped polling %s", device_id)
        return True

    def is_polling(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._loops

    def active_devices(self) -> list[str]:
        with self._lock:
            return list(self._loops)

    def polling_info(self) -> list[PollingInfo]:
        with self._lock:
            return [
                PollingInfo(
                    device_id=loop.device_id,
                    interval_seconds=(
                        loop.interval_seconds
                        if loop.interval_seconds is not None
                        else self._default_interval
                    ),
                    follows_default=loop.interval_seconds is None,
                )
                for loop in self._loops.values()
            ]

    def poll_once(self, device_id: str) -> FetchOutcome:
        device = self._registry.get(device_id)
        return self._poll(device)

    def fetch_all(self) -> dict[str, FetchOutcome]:
        """Poll every registered device once, concurrently.

        Each device reports exactly once; a failing device only affects its
        own entry. A device already being fetched reports that fetch.
        """
        devices = self._registry.list()
        if not devices:
            return {}
        workers = min(len(devices), self._max_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch-all") as pool:
            futures = {d.id: pool.submit(self._poll, d) for d in devices}
            return {device_id: f.result() for device_id, f in futures.items()}

    def shutdown(self, timeout: float = 2.0) -> None:
        with self._lock:
            loops = list(self._loops.values())
            channels = list(self._channels.values())
            self._loops.clear()
            self._channels.clear()
        for loop in loops:
            _cancel(loop)
        for channel in channels:
            channel.close()
        for loop in loops:
            if loop.thread is not None and loop.thread.is_alive():
                loop.thread.join(timeout=timeout)

    def _run(self, loop: _PollLoop) -> None:
        next_tick = time.monotonic()
        while not loop.cancelled.is_set():
            device = self._registry.find(loop.device_id)
            if device is None:
                logger.warning("Device %s is no longer registered; skipping tick", loop.device_id)
            else:
                self._poll(device, loop=loop)

            interval = self._interval_for(loop)
            now = time.monotonic()
            next_tick += interval
            if next_tick <= now:
                skipped = int((now - next_tick) // interval) + 1
                next_tick += skipped * interval
                logger.debug("Poll of %s overran; skipped %d tick(s)", loop.device_id, skipped)
            loop.cancelled.wait(next_tick - now)

    def _poll(self, device: Device, *, loop: _PollLoop | None = None) -> FetchOutcome:
        if loop is not None and loop.cancelled.is_set():
            return FetchOutcome.failure(device.id, TransportError("Polling cancelled"))
        with self._lock:
            pending = self._in_flight.get(device.id)
            owner = pending is None
            if pending is None:
                pending = Future()
                self._in_flight[device.id] = pending
        if not owner:
            logger.debug("Joining in-flight fetch for %s", device.id)
            return pending.result()

        try:
            outcome = self._fetch(device)
            self._apply(outcome, loop=loop)
        except BaseException as e:
            self._finish_fetch(device.id)
            pending.set_exception(e)
            raise
        self._finish_fetch(device.id)
        pending.set_result(outcome)
        return outcome

    def _fetch(self, device: Device) -> FetchOutcome:
        try:
            return self._client.fetch(device)
        except Exception as e:  # noqa: BLE001 - a fetch must never kill its loop
            logger.exception("Unexpected error polling %s", device.id)
            return FetchOutcome.failure(
                device.id, TransportError(f"Unexpected fetch failure: {e!r}", cause=e)
            )

    def _finish_fetch(self, device_id: str) -> None:
        with self._lock:
            self._in_flight.pop(device_id, None)

    def _apply(self, outcome: FetchOutcome, *, loop: _PollLoop | None) -> bool:
        if loop is None:
            self._record(outcome)
            channel = self._channel_for(outcome.device_id)
        else:
            with loop.apply_lock:
                with self._lock:
                    current = self._loops.get(loop.device_id) is loop
                    channel = self._channels.get(outcome.device_id)
                if loop.cancelled.is_set() or not current:
                    logger.debug("Discarding outcome for %s after cancellation", outcome.device_id)
                    return False
                self._record(outcome)
        if channel is not None:
            channel.publish(PollEvent(outcome))
        return True

    def _record(self, outcome: FetchOutcome) -> None:
        # Each container persists under its own lock.
        self._tracker.apply(outcome)
        if outcome.reading is not None:
            self._history.append(outcome.reading)

    def _interval_for(self, loop: _PollLoop) -> float:
        with self._lock:
            if loop.interval_seconds is not None:
                return loop.interval_seconds
            return self._default_interval

    def _channel_for(self, device_id: str) -> PollChannel | None:
        with self._lock:
            return self._channels.get(device_id)

    def _channel_locked(self, device_id: str) -> PollChannel:
        channel = self._channels.get(device_id)
        if channel is None:
            channel = PollChannel(device_id, queue_size=self._queue_size)
            self._channels[device_id] = channel
        return channel


def _cancel(loop: _PollLoop) -> None:
    # Waits for an outcome that already passed its cancellation check.
    with loop.apply_lock:
        loop.cancelled.set()


def _check_interval(interval_seconds: float) -> None:
    if interval_seconds <= 0:
        raise ValueError("Poll interval must be positive")
