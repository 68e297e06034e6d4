"""
Realtime gateway: routing of live events between the server, devices and
admin dashboards.

Connections are registered by device id (last registration wins) or into the
admin group. Delivery is best effort; the command queue provides durability.
Every message in both directions is an envelope `{"event": NAME, "data": ...}`.
"""
import asyncio
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from command_queue import CommandQueue
from devices import device_snapshot
from observability import structured_logger, metrics
from presence import PresenceTracker

# Server -> client events
COMMAND = "COMMAND"
DEVICE_UPDATED = "DEVICE_UPDATED"
DEVICE_ACTIVITY = "DEVICE_ACTIVITY"
BLOCKED_SITE_ATTEMPT = "BLOCKED_SITE_ATTEMPT"

# Device -> server events
REGISTER_DEVICE = "REGISTER_DEVICE"
DEVICE_HEARTBEAT = "DEVICE_HEARTBEAT"
ACK_COMMANDS = "ACK_COMMANDS"


def envelope(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


class Gateway:
    """
    Owns the live connection registries.

    A connection is anything with async `send_json(message)` and `close()`,
    which FastAPI's WebSocket provides.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        presence: Optional[PresenceTracker] = None,
        queue: Optional[CommandQueue] = None,
    ):
        self.session_factory = session_factory
        self.presence = presence or PresenceTracker()
        self.queue = queue or CommandQueue()

        # device id -> connection
        self.device_connections: dict[str, Any] = {}
        self.admin_connections: list[Any] = []

        self.stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "errors": 0
        }

    def register_device(self, device_id: str, connection) -> None:
        previous = self.device_connections.get(device_id)
        self.device_connections[device_id] = connection
        structured_logger.log_event(
            "gateway.device.registered",
            device_id=device_id,
            replaced=previous is not None and previous is not connection,
            active_devices=len(self.device_connections)
        )
        metrics.set_gauge("gateway_device_connections", len(self.device_connections))

    def register_admin(self, connection) -> None:
        if connection not in self.admin_connections:
            self.admin_connections.append(connection)
        structured_logger.log_event("gateway.admin.registered", active_admins=len(self.admin_connections))
        metrics.set_gauge("gateway_admin_connections", len(self.admin_connections))

    def unregister(self, connection) -> None:
        """Forget a connection wherever it is registered; unknown connections are ignored."""
        for device_id, registered in list(self.device_connections.items()):
            if registered is connection:
                del self.device_connections[device_id]
                structured_logger.log_event("gateway.device.unregistered", device_id=device_id)

        self.admin_connections = [c for c in self.admin_connections if c is not connection]

        metrics.set_gauge("gateway_device_connections", len(self.device_connections))
        metrics.set_gauge("gateway_admin_connections", len(self.admin_connections))

    async def notify_device(self, device_id: str, event: str, data: Any) -> bool:
        """
        Push one event to a device.

        Returns False when the device has no live connection or the send
        fails. A connection that fails to send is unregistered.
        """
        connection = self.device_connections.get(device_id)
        if connection is None:
            return False

        try:
            await connection.send_json(envelope(event, data))
        except Exception as e:
            self.stats["errors"] += 1
            structured_logger.log_event(
                "gateway.device.send_failed",
                level="WARN",
                device_id=device_id,
                event_name=event,
                error=str(e)
            )
            self.unregister(connection)
            return False

        self.stats["messages_sent"] += 1
        return True

    async def notify_admins(self, event: str, data: Any) -> None:
        """Fan an event out to every admin connection, pruning dead ones."""
        if not self.admin_connections:
            return

        message = envelope(event, data)
        connections = list(self.admin_connections)
        results = await asyncio.gather(
            *(connection.send_json(message) for connection in connections),
            return_exceptions=True
        )

        dead = [c for c, result in zip(connections, results) if isinstance(result, Exception)]
        self.stats["messages_sent"] += len(connections) - len(dead)
        if dead:
            self.stats["errors"] += len(dead)
            self.admin_connections = [c for c in self.admin_connections if c not in dead]
            structured_logger.log_event("gateway.admin.pruned", count=len(dead))
            metrics.set_gauge("gateway_admin_connections", len(self.admin_connections))

    async def handle_device_message(self, connection, message: Any) -> None:
        """
        Process one inbound envelope from a device socket.

        Never raises: a bad message must not tear down the socket loop.
        """
        self.stats["messages_received"] += 1
        try:
            if not isinstance(message, dict):
                raise ValueError("message must be an object")
            event = message.get("event")
            data = message.get("data") or {}
            if not isinstance(data, dict):
                raise ValueError("data must be an object")

            if event == REGISTER_DEVICE:
                self.register_device(self._device_id(data), connection)
            elif event == DEVICE_HEARTBEAT:
                current_url = data.get("currentUrl")
                await self.handle_heartbeat(
                    self._device_id(data),
                    observed_url=current_url if isinstance(current_url, str) else None
                )
            elif event == ACK_COMMANDS:
                self._handle_ack(self._device_id(data), data.get("commandIds") or [])
            else:
                structured_logger.log_event("gateway.message.unknown", level="WARN", event_name=event)
        except Exception as e:
            self.stats["errors"] += 1
            structured_logger.log_event(
                "gateway.message.failed",
                level="WARN",
                error=str(e),
                error_type=type(e).__name__
            )

    @staticmethod
    def _device_id(data: dict[str, Any]) -> str:
        device_id = data.get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            raise ValueError("deviceId is required")
        return device_id

    async def handle_heartbeat(self, device_id: str, observed_url: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Touch presence and broadcast the fresh snapshot. Returns None for unknown devices."""
        db = self.session_factory()
        try:
            if not self.presence.touch(db, device_id, observed_url=observed_url):
                structured_logger.log_event("gateway.heartbeat.unknown_device", level="WARN", device_id=device_id)
                return None
            snapshot = device_snapshot(db, device_id)
        finally:
            db.close()

        if snapshot is not None:
            await self.notify_admins(DEVICE_UPDATED, snapshot)
        return snapshot

    def _handle_ack(self, device_id: str, command_ids: list) -> None:
        db = self.session_factory()
        try:
            self.queue.ack(db, device_id, [str(c) for c in command_ids])
        finally:
            db.close()

    async def close_all(self) -> None:
        """Close every connection (shutdown)."""
        connections = list(self.device_connections.values()) + list(self.admin_connections)
        for connection in connections:
            try:
                await connection.close()
            except Exception as e:
                structured_logger.log_event("gateway.close_failed", level="DEBUG", error=str(e))

        self.device_connections.clear()
        self.admin_connections.clear()
        structured_logger.log_event("gateway.closed", connections=len(connections))

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self.stats,
            "active_devices": len(self.device_connections),
            "active_admins": len(self.admin_connections),
        }
