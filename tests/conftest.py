from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from probehub.core.config import Settings
from probehub.factory import create_app
from probehub.services.connectivity import ConnectivityTracker
from probehub.services.engine import ProbeEngine
from probehub.services.history import ReadingHistory
from probehub.services.polling import PollScheduler
from probehub.services.registry import DeviceRegistry
from probehub.services.trials import TrialStore
from tests.fakes import FakeProbeClient, InMemoryStore


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def registry(store: InMemoryStore) -> DeviceRegistry:
    return DeviceRegistry(store)


@pytest.fixture()
def history(store: InMemoryStore) -> ReadingHistory:
    return ReadingHistory(store, max_readings=10)


@pytest.fixture()
def trials(store: InMemoryStore) -> TrialStore:
    return TrialStore(store)


@pytest.fixture()
def probe_client() -> FakeProbeClient:
    return FakeProbeClient()


@pytest.fixture()
def scheduler(
    registry: DeviceRegistry, history: ReadingHistory, probe_client: FakeProbeClient
):
    scheduler = PollScheduler(
        registry=registry,
        history=history,
        client=probe_client,
        tracker=ConnectivityTracker(registry),
        default_interval_seconds=60.0,
    )
    yield scheduler
    scheduler.shutdown()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        env="test",
        debug=True,
        docs_enabled=False,
        cors_origins=["http://localhost"],
        trusted_hosts=["testserver", "localhost"],
        poll_interval_seconds=60.0,
        fetch_timeout_seconds=1.0,
        max_history_readings=10,
        data_dir=tmp_path / "data",
        autostart_polling=False,
    )


@pytest.fixture()
def engine(store: InMemoryStore, probe_client: FakeProbeClient) -> ProbeEngine:
    return ProbeEngine(
        client=probe_client,
        store=store,
        default_interval_seconds=60.0,
        max_history_readings=10,
    )


@pytest.fixture()
def client(settings: Settings, engine: ProbeEngine) -> TestClient:
    app = create_app(settings, engine=engine)
    with TestClient(app) as client:
        yield client
