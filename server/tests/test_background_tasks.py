"""
Tests for the presence sweep worker.
"""
import asyncio
from datetime import timedelta

from sqlalchemy.orm import Session

from background_tasks import BackgroundTaskManager
from devices import register_device
from models import Device, utcnow
from presence import PresenceTracker


def _make_stale(db: Session, device_id: str, minutes: int = 10):
    device = db.get(Device, device_id)
    device.last_seen = utcnow() - timedelta(minutes=minutes)
    db.commit()


def test_sweep_once_demotes_and_notifies_admins(gateway, test_db: Session, device, make_connection):
    register_device(test_db, "tablet-fresh")
    _make_stale(test_db, device.id)
    admin = make_connection()
    gateway.register_admin(admin)
    gateway.presence = PresenceTracker(stale_after_seconds=90)

    demoted = asyncio.run(BackgroundTaskManager(gateway).run_sweep_once())

    assert demoted == [device.id]
    updates = admin.events("DEVICE_UPDATED")
    assert len(updates) == 1
    assert updates[0]["data"]["deviceId"] == device.id
    assert updates[0]["data"]["status"] == "offline"


def test_sweep_once_with_nothing_stale(gateway, device, make_connection):
    admin = make_connection()
    gateway.register_admin(admin)
    gateway.presence = PresenceTracker(stale_after_seconds=90)

    assert asyncio.run(BackgroundTaskManager(gateway).run_sweep_once()) == []
    assert admin.sent == []


def test_worker_runs_sweep_on_interval(gateway, test_db: Session, device):
    _make_stale(test_db, device.id)
    gateway.presence = PresenceTracker(stale_after_seconds=90)
    manager = BackgroundTaskManager(gateway, sweep_interval_seconds=0.01)

    async def run():
        await manager.start()
        assert manager.running
        await asyncio.sleep(0.1)
        await manager.stop()

    asyncio.run(run())

    test_db.expire_all()
    assert test_db.get(Device, device.id).status == "offline"
    assert manager.running is False


def test_worker_survives_failed_pass(gateway, capture_logs, monkeypatch):
    calls = []

    def broken_sweep(db, now=None):
        calls.append(now)
        raise RuntimeError("database unavailable")

    gateway.presence = PresenceTracker()
    monkeypatch.setattr(gateway.presence, "sweep", broken_sweep)
    manager = BackgroundTaskManager(gateway, sweep_interval_seconds=0.01)

    async def run():
        await manager.start()
        await asyncio.sleep(0.1)
        await manager.stop()

    asyncio.run(run())

    assert len(calls) >= 2
    assert any(log["event"] == "presence_sweep.error" for log in capture_logs)


def test_start_and_stop_are_idempotent(gateway):
    manager = BackgroundTaskManager(gateway, sweep_interval_seconds=60)

    async def run():
        await manager.start()
        first_task = manager._sweep_task
        await manager.start()
        assert manager._sweep_task is first_task
        await manager.stop()
        await manager.stop()

    asyncio.run(run())
    assert manager.running is False
