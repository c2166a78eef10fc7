
import pytest
from fastapi.testclient import TestClient

from lanwatch_server.alerting import AlertDispatcher
from lanwatch_server.auditor import StalenessAuditor
from lanwatch_server.config import Settings
from lanwatch_server.db import init_db, make_engine, make_session_factory
from lanwatch_server.main import create_app
from lanwatch_server.store import DeviceStore

from support import HEARTBEAT_MS, FakeClock, RecordingNotifier


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'lanwatch-test.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    return DeviceStore(session_factory, clock=clock)


@pytest.fixture
def dispatcher(session_factory, notifier, clock):
    return AlertDispatcher(session_factory, notifier, clock=clock)


@pytest.fixture
def auditor(store, dispatcher, clock):
    auditor = StalenessAuditor(
        store,
        dispatcher,
        heartbeat_interval_ms=HEARTBEAT_MS,
        offline_threshold_checks=3,
        clock=clock,
    )
    store.subscribe(auditor.on_change)
    return auditor


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'lanwatch-api.db'}",
        heartbeat_interval_ms=HEARTBEAT_MS,
        offline_threshold_checks=3,
        audit_sweep_interval_sec=0,
        push_gateway_url=None,
    )


@pytest.fixture
def client(settings, notifier):
    app = create_app(settings, notifier=notifier)
    with TestClient(app) as client:
        yield client
