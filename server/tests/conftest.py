"""
Pytest configuration and shared fixtures.
"""
import pytest
import os
import sys
from typing import Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db
from gateway import Gateway
from background_tasks import BackgroundTaskManager
from devices import register_device
import main


class FakeConnection:
    """Stands in for a websocket: records sent envelopes, can be told to fail."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed = False
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    async def close(self):
        self.closed = True

    def events(self, name=None):
        return [m for m in self.sent if name is None or m["event"] == name]


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Session factory bound to a fresh in-memory SQLite database.
    StaticPool keeps every session on the same connection.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield TestingSessionLocal

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def gateway(session_factory) -> Gateway:
    return Gateway(session_factory, main.presence, main.command_queue)


@pytest.fixture(scope="function")
def client(test_db: Session, gateway: Gateway, monkeypatch) -> Generator[TestClient, None, None]:
    """
    Test client with the database dependency overridden and a fresh gateway
    wired to the test database.

    Entered as a context manager so HTTP requests and websocket sessions share
    one event loop, as they do under uvicorn.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app = main.app
    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(main, "gateway", gateway)
    monkeypatch.setattr(main, "background_tasks", BackgroundTaskManager(gateway))
    monkeypatch.setattr(main, "init_db", lambda: None)
    monkeypatch.setattr(main.webhook_notifier, "webhook_url", "")

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def device(test_db: Session):
    """A registered device with a policy seeded from the global policy."""
    registered, _ = register_device(test_db, "tablet-001", name="Tablet 1", model="Tab A8")
    return registered


@pytest.fixture(scope="function")
def make_connection():
    return FakeConnection


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs
