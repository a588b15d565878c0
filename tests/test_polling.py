from __future__ import annotations

import threading
import time

import pytest

from probehub.core.errors import DeviceError, NotFoundError, TransportError
from probehub.models.sensor import Device, DeviceStatus, FetchOutcome, PollEvent
from probehub.repositories.base import READINGS_HISTORY_KEY
from probehub.services.connectivity import ConnectivityTracker
from probehub.services.history import ReadingHistory
from probehub.services.polling import PollChannel, PollScheduler
from probehub.services.registry import DeviceRegistry
from tests.fakes import (
    FakeProbeClient,
    GatedFetch,
    InMemoryStore,
    device_error,
    make_device,
    make_reading,
    ok,
    unreachable,
)


def _join_poll_threads(device_id: str, timeout: float = 2.0) -> None:
    for thread in threading.enumerate():
        if thread.name == f"poll-{device_id}":
            thread.join(timeout=timeout)


def _poll_threads(device_id: str) -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name == f"poll-{device_id}" and t.is_alive()]


def test_good_and_failing_device_polled_once(
    registry: DeviceRegistry,
    history: ReadingHistory,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.register([make_device("A"), make_device("B")])
    probe_client.script("B", device_error())

    results = scheduler.fetch_all()

    assert results["A"].ok
    assert isinstance(results["B"].error, DeviceError)
    assert registry.get("A").status is DeviceStatus.ONLINE
    assert registry.get("B").status is DeviceStatus.ERROR
    assert len(history) == 1
    assert history.snapshot()[0].device_id == "A"


def test_fetch_all_isolates_failures(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.register([make_device("d1"), make_device("d2"), make_device("d3")])
    probe_client.script("d2", unreachable)

    results = scheduler.fetch_all()

    assert set(results) == {"d1", "d2", "d3"}
    assert results["d1"].ok and results["d3"].ok
    assert isinstance(results["d2"].error, TransportError)
    assert registry.get("d2").status is DeviceStatus.OFFLINE
    assert probe_client.calls == {"d1": 1, "d2": 1, "d3": 1}


def test_fetch_all_turns_client_crashes_into_transport_errors(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    def boom(device):
        raise RuntimeError("firmware sent something odd")

    registry.register([make_device("d1"), make_device("d2")])
    probe_client.script("d1", boom)

    results = scheduler.fetch_all()

    assert isinstance(results["d1"].error, TransportError)
    assert results["d2"].ok


def test_fetch_all_runs_devices_concurrently(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.register([make_device(f"d{i}") for i in range(4)])
    probe_client.delay_seconds = 0.4

    started = time.monotonic()
    results = scheduler.fetch_all()
    elapsed = time.monotonic() - started

    assert len(results) == 4
    assert elapsed < 1.2


def test_fetch_all_without_devices(scheduler: PollScheduler) -> None:
    assert scheduler.fetch_all() == {}


def test_poll_once(
    registry: DeviceRegistry, history: ReadingHistory, scheduler: PollScheduler
) -> None:
    registry.add(make_device("A"))

    outcome = scheduler.poll_once("A")

    assert outcome.ok
    assert registry.get("A").status is DeviceStatus.ONLINE
    assert registry.get("A").last_sync == outcome.received_at
    assert history.snapshot() == [outcome.reading]

    with pytest.raises(NotFoundError):
        scheduler.poll_once("ghost")


def test_subscribers_share_one_fetch_per_tick(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.add(make_device("A"))
    gate = GatedFetch()
    probe_client.script("A", gate, ok)

    first = scheduler.start_polling("A", 60.0)
    second = scheduler.subscribe("A")
    gate.release.set()

    event_1 = first.get(timeout=2.0)
    event_2 = second.get(timeout=2.0)

    assert event_1 is not None and event_2 is not None
    assert event_1.reading is not None
    assert event_1 == event_2
    assert probe_client.calls["A"] == 1


def test_failures_reach_subscribers_and_polling_continues(
    registry: DeviceRegistry,
    history: ReadingHistory,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.add(make_device("A"))
    probe_client.script("A", device_error("low battery"), unreachable, ok)

    sub = scheduler.start_polling("A", 0.02)
    events: list[PollEvent] = []
    while len(events) < 3:
        event = sub.get(timeout=2.0)
        assert event is not None
        events.append(event)

    assert isinstance(events[0].error, DeviceError)
    assert isinstance(events[1].error, TransportError)
    assert events[2].reading is not None
    assert scheduler.is_polling("A")
    scheduler.stop_polling("A")
    _join_poll_threads("A")
    assert registry.get("A").status is DeviceStatus.ONLINE
    assert len(history) >= 1


def test_stop_discards_in_flight_outcome(
    registry: DeviceRegistry,
    history: ReadingHistory,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.add(make_device("A"))
    gate = GatedFetch()
    probe_client.script("A", gate)

    sub = scheduler.start_polling("A", 60.0)
    assert gate.started.wait(timeout=2.0)

    assert scheduler.stop_polling("A") is True
    gate.release.set()
    assert gate.finished.wait(timeout=2.0)
    _join_poll_threads("A")

    assert registry.get("A").status is DeviceStatus.OFFLINE
    assert registry.get("A").last_sync is None
    assert len(history) == 0
    assert sub.get(timeout=0.1) is None
    assert sub.closed
    assert probe_client.calls["A"] == 1


def test_restart_cancels_previous_loop(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.add(make_device("A"))

    first = scheduler.start_polling("A", 60.0)
    assert first.get(timeout=2.0) is not None
    second = scheduler.start_polling("A", 60.0)
    assert second.get(timeout=2.0) is not None

    deadline = time.monotonic() + 2.0
    while len(_poll_threads("A")) > 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert len(_poll_threads("A")) == 1
    assert scheduler.active_devices() == ["A"]
    # Subscribers outlive a restart; only stop_polling closes them.
    assert not first.closed


def test_ticks_never_overlap(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.add(make_device("A"))
    probe_client.delay_seconds = 0.05

    sub = scheduler.start_polling("A", 0.01)
    for _ in range(4):
        assert sub.get(timeout=2.0) is not None
    scheduler.stop_polling("A")
    _join_poll_threads("A")

    assert probe_client.max_in_flight["A"] == 1


def test_default_interval_and_overrides(
    registry: DeviceRegistry, scheduler: PollScheduler
) -> None:
    registry.register([make_device("A"), make_device("B")])
    scheduler.start_polling("A").close()
    scheduler.start_polling("B", 30.0).close()

    scheduler.set_default_interval(120.0)

    info = {i.device_id: i for i in scheduler.polling_info()}
    assert scheduler.default_interval_seconds == 120.0
    assert info["A"].interval_seconds == 120.0 and info["A"].follows_default
    assert info["B"].interval_seconds == 30.0 and not info["B"].follows_default

    scheduler.set_interval("B", None)
    info = {i.device_id: i for i in scheduler.polling_info()}
    assert info["B"].interval_seconds == 120.0


def test_invalid_polling_requests(registry: DeviceRegistry, scheduler: PollScheduler) -> None:
    registry.add(make_device("A"))

    with pytest.raises(NotFoundError):
        scheduler.start_polling("ghost")
    with pytest.raises(ValueError):
        scheduler.start_polling("A", 0)
    with pytest.raises(ValueError):
        scheduler.set_default_interval(-1)
    with pytest.raises(NotFoundError):
        scheduler.set_interval("A", 5.0)
    assert scheduler.stop_polling("A") is False


def test_channel_drops_oldest_when_subscriber_lags() -> None:
    channel = PollChannel("A", queue_size=2)
    sub = channel.subscribe()
    events = [
        PollEvent(FetchOutcome.success("A", make_reading(i, device_id="A"))) for i in range(3)
    ]
    for event in events:
        channel.publish(event)

    assert sub.get(timeout=0.1) == events[1]
    assert sub.get(timeout=0.1) == events[2]
    assert sub.get(timeout=0.05) is None


def test_closed_subscription_stops_iteration_and_detaches() -> None:
    channel = PollChannel("A")
    sub = channel.subscribe()
    other = channel.subscribe()
    event = PollEvent(FetchOutcome.success("A", make_reading(1, device_id="A")))
    channel.publish(event)
    sub.close()
    channel.publish(event)

    assert list(sub) == [event]
    assert len(channel) == 1
    assert other.get(timeout=0.1) == event
    assert other.get(timeout=0.1) == event


def test_fetch_all_shares_an_in_flight_loop_fetch(
    registry: DeviceRegistry,
    history: ReadingHistory,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    def slow(device: Device) -> FetchOutcome:
        time.sleep(1.0)
        return ok(device)

    registry.register([make_device("A"), make_device("B")])
    gate = GatedFetch()
    probe_client.script("A", gate, slow)

    sub = scheduler.start_polling("A", 60.0)
    assert gate.started.wait(timeout=2.0)
    threading.Timer(0.2, gate.release.set).start()

    started = time.monotonic()
    results = scheduler.fetch_all()
    elapsed = time.monotonic() - started

    assert elapsed < 0.9
    assert probe_client.calls == {"A": 1, "B": 1}
    assert results["A"].ok and results["B"].ok
    event = sub.get(timeout=2.0)
    assert event is not None and event.outcome is results["A"]
    assert len(history) == 2


def test_poll_once_joins_in_flight_fetch_all(
    registry: DeviceRegistry,
    probe_client: FakeProbeClient,
    scheduler: PollScheduler,
) -> None:
    registry.add(make_device("A"))
    gate = GatedFetch()
    probe_client.script("A", gate, ok)

    results: dict[str, FetchOutcome] = {}
    worker = threading.Thread(target=lambda: results.update(scheduler.fetch_all()))
    worker.start()
    assert gate.started.wait(timeout=2.0)
    threading.Timer(0.1, gate.release.set).start()

    outcome = scheduler.poll_once("A")
    worker.join(timeout=2.0)

    assert outcome is results["A"]
    assert probe_client.calls["A"] == 1


class _StallingHistoryStore(InMemoryStore):
    """Blocks reading-history writes while armed."""

    def __init__(self) -> None:
        super().__init__()
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def save(self, key: str, value) -> None:
        if self.armed and key == READINGS_HISTORY_KEY:
            self.entered.set()
            self.release.wait(timeout=5.0)
        super().save(key, value)


def test_slow_snapshot_write_does_not_stall_other_devices() -> None:
    store = _StallingHistoryStore()
    registry = DeviceRegistry(store)
    history = ReadingHistory(store, max_readings=10)
    client = FakeProbeClient()
    client.script("B", device_error("sensor fouled"))
    scheduler = PollScheduler(
        registry=registry,
        history=history,
        client=client,
        tracker=ConnectivityTracker(registry),
        default_interval_seconds=60.0,
    )
    registry.register([make_device("A"), make_device("B")])
    store.armed = True
    try:
        scheduler.start_polling("A").close()
        assert store.entered.wait(timeout=2.0)

        started = time.monotonic()
        assert scheduler.is_polling("A")
        assert [i.device_id for i in scheduler.polling_info()] == ["A"]
        scheduler.set_default_interval(30.0)
        outcome = scheduler.poll_once("B")
        elapsed = time.monotonic() - started

        assert isinstance(outcome.error, DeviceError)
        assert registry.get("B").status is DeviceStatus.ERROR
        assert elapsed < 1.0
    finally:
        store.release.set()
        scheduler.shutdown()
