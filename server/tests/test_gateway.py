"""
Tests for the realtime gateway registries, fan-out and inbound device events.
"""
import asyncio

from sqlalchemy.orm import Session

from command_queue import CommandQueue
from models import Device


class TestRegistry:
    def test_last_registration_wins(self, gateway, make_connection):
        old, new = make_connection(), make_connection()
        gateway.register_device("tablet-001", old)
        gateway.register_device("tablet-001", new)

        assert gateway.device_connections["tablet-001"] is new

        asyncio.run(gateway.notify_device("tablet-001", "COMMAND", {"id": "c1"}))
        assert old.sent == []
        assert new.sent == [{"event": "COMMAND", "data": {"id": "c1"}}]

    def test_unregister_by_identity(self, gateway, make_connection):
        first, second = make_connection(), make_connection()
        gateway.register_device("tablet-001", first)
        gateway.register_device("tablet-002", second)

        gateway.unregister(first)

        assert "tablet-001" not in gateway.device_connections
        assert gateway.device_connections["tablet-002"] is second

    def test_stale_connection_unregister_keeps_new_registration(self, gateway, make_connection):
        old, new = make_connection(), make_connection()
        gateway.register_device("tablet-001", old)
        gateway.register_device("tablet-001", new)

        gateway.unregister(old)

        assert gateway.device_connections["tablet-001"] is new

    def test_unregister_unknown_is_noop(self, gateway, make_connection):
        gateway.register_device("tablet-001", make_connection())
        gateway.unregister(make_connection())
        assert len(gateway.device_connections) == 1

    def test_unregister_admin(self, gateway, make_connection):
        admin = make_connection()
        gateway.register_admin(admin)
        gateway.unregister(admin)
        assert gateway.admin_connections == []


class TestDelivery:
    def test_notify_absent_device_is_dropped(self, gateway):
        assert asyncio.run(gateway.notify_device("nobody", "COMMAND", {})) is False

    def test_failed_send_unregisters_connection(self, gateway, make_connection):
        broken = make_connection(fail=True)
        gateway.register_device("tablet-001", broken)

        assert asyncio.run(gateway.notify_device("tablet-001", "COMMAND", {})) is False
        assert "tablet-001" not in gateway.device_connections

    def test_notify_admins_fans_out_and_prunes(self, gateway, make_connection):
        alive, dead, other = make_connection(), make_connection(fail=True), make_connection()
        for admin in (alive, dead, other):
            gateway.register_admin(admin)

        asyncio.run(gateway.notify_admins("DEVICE_UPDATED", {"id": "tablet-001"}))

        assert alive.sent == [{"event": "DEVICE_UPDATED", "data": {"id": "tablet-001"}}]
        assert other.sent == alive.sent
        assert gateway.admin_connections == [alive, other]

    def test_close_all(self, gateway, make_connection):
        device_conn, admin = make_connection(), make_connection()
        gateway.register_device("tablet-001", device_conn)
        gateway.register_admin(admin)

        asyncio.run(gateway.close_all())

        assert device_conn.closed and admin.closed
        assert gateway.device_connections == {}
        assert gateway.admin_connections == []


class TestInboundMessages:
    def test_register_device_message(self, gateway, make_connection):
        connection = make_connection()
        asyncio.run(gateway.handle_device_message(
            connection, {"event": "REGISTER_DEVICE", "data": {"deviceId": "tablet-001"}}
        ))
        assert gateway.device_connections["tablet-001"] is connection

    def test_heartbeat_touches_and_broadcasts(self, gateway, make_connection, test_db: Session, device):
        device.status = "offline"
        test_db.commit()
        admin = make_connection()
        gateway.register_admin(admin)

        asyncio.run(gateway.handle_device_message(
            make_connection(), {"event": "DEVICE_HEARTBEAT", "data": {"deviceId": device.id}}
        ))

        test_db.expire_all()
        assert test_db.get(Device, device.id).status == "online"
        updates = admin.events("DEVICE_UPDATED")
        assert len(updates) == 1
        assert updates[0]["data"]["deviceId"] == device.id
        assert updates[0]["data"]["status"] == "online"
        assert updates[0]["data"]["policies"]["kioskMode"] is True

    def test_heartbeat_records_current_url(self, gateway, make_connection, test_db: Session, device):
        admin = make_connection()
        gateway.register_admin(admin)

        asyncio.run(gateway.handle_device_message(make_connection(), {
            "event": "DEVICE_HEARTBEAT",
            "data": {"deviceId": device.id, "currentUrl": "https://khanacademy.org/x"}
        }))

        test_db.expire_all()
        assert test_db.get(Device, device.id).current_url == "https://khanacademy.org/x"
        assert admin.events("DEVICE_UPDATED")[0]["data"]["currentUrl"] == "https://khanacademy.org/x"

    def test_heartbeat_ignores_non_string_url(self, gateway, make_connection, test_db: Session, device):
        asyncio.run(gateway.handle_device_message(make_connection(), {
            "event": "DEVICE_HEARTBEAT",
            "data": {"deviceId": device.id, "currentUrl": "https://example.org"}
        }))
        asyncio.run(gateway.handle_device_message(make_connection(), {
            "event": "DEVICE_HEARTBEAT",
            "data": {"deviceId": device.id, "currentUrl": 42}
        }))

        test_db.expire_all()
        assert test_db.get(Device, device.id).current_url == "https://example.org"

    def test_heartbeat_from_unknown_device_does_not_broadcast(self, gateway, make_connection):
        admin = make_connection()
        gateway.register_admin(admin)

        asyncio.run(gateway.handle_device_message(
            make_connection(), {"event": "DEVICE_HEARTBEAT", "data": {"deviceId": "ghost"}}
        ))

        assert admin.sent == []

    def test_ack_message_consumes_commands(self, gateway, make_connection, test_db: Session, device):
        queue = CommandQueue()
        command_id = queue.enqueue(test_db, device.id, "LOCK_SCREEN", {})

        asyncio.run(gateway.handle_device_message(
            make_connection(),
            {"event": "ACK_COMMANDS", "data": {"deviceId": device.id, "commandIds": [command_id]}}
        ))

        test_db.expire_all()
        assert queue.list_pending(test_db, device.id) == []

    def test_malformed_messages_never_raise(self, gateway, make_connection, capture_logs):
        connection = make_connection()
        for message in (
            "not a dict",
            {"event": "REGISTER_DEVICE"},
            {"event": "REGISTER_DEVICE", "data": "tablet"},
            {"event": "DEVICE_HEARTBEAT", "data": {"deviceId": 42}},
            {"event": "SOMETHING_ELSE", "data": {}},
        ):
            asyncio.run(gateway.handle_device_message(connection, message))

        assert gateway.device_connections == {}
        assert any(log["event"] == "gateway.message.failed" for log in capture_logs)

    def test_heartbeat_persistence_error_is_swallowed(self, gateway, make_connection, capture_logs, monkeypatch):
        def broken_touch(db, device_id, observed_url=None, now=None):
            raise RuntimeError("database locked")

        monkeypatch.setattr(gateway.presence, "touch", broken_touch)

        asyncio.run(gateway.handle_device_message(
            make_connection(), {"event": "DEVICE_HEARTBEAT", "data": {"deviceId": "tablet-001"}}
        ))

        failures = [log for log in capture_logs if log["event"] == "gateway.message.failed"]
        assert failures and failures[0]["error"] == "database locked"
