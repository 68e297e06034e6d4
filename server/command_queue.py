"""
Durable per-device command queue with at-least-once delivery.

Every dispatched command is persisted before any live push is attempted.
Live delivery never consumes a command; only an explicit ack from the device
does. Until then the command is offered by the pull fallback, for at most the
TTL window. Expired commands are filtered at read time, not purged.
"""
import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import config
from models import PendingCommand, ensure_utc, utcnow
from observability import structured_logger, metrics

COMMAND_EVENT = "COMMAND"


class CommandQueue:
    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.COMMAND_TTL_SECONDS

    def enqueue(self, db: Session, device_id: str, command_type: str, payload: dict[str, Any]) -> str:
        """
        Persist a command for a device.

        Commits immediately; a persistence failure propagates to the caller so
        the dispatch fails visibly.

        Returns:
            The generated command id
        """
        start = time.time()
        pending = PendingCommand(
            command_id=str(uuid.uuid4()),
            device_id=device_id,
            type=str(command_type),
            payload=json.dumps(payload or {}),
            created_at=utcnow(),
        )
        db.add(pending)
        try:
            db.commit()
        except Exception:
            db.rollback()
            metrics.inc_counter("commands_enqueue_failures_total", {"type": str(command_type)})
            raise

        latency_ms = (time.time() - start) * 1000
        structured_logger.log_event(
            "command.enqueued",
            device_id=device_id,
            command_id=pending.command_id,
            type=command_type,
            latency_ms=latency_ms
        )
        metrics.inc_counter("commands_enqueued_total", {"type": str(command_type)})
        metrics.observe_histogram("command_enqueue_latency_ms", latency_ms)
        return pending.command_id

    def list_pending(self, db: Session, device_id: str, now: Optional[datetime] = None) -> list[PendingCommand]:
        """Unconsumed commands created within the TTL window, oldest first."""
        since = (now or utcnow()) - timedelta(seconds=self.ttl_seconds)
        stmt = (
            select(PendingCommand)
            .where(
                PendingCommand.device_id == device_id,
                PendingCommand.consumed_at.is_(None),
                PendingCommand.created_at >= since,
            )
            .order_by(PendingCommand.created_at.asc(), PendingCommand.id.asc())
        )
        return list(db.scalars(stmt).all())

    def ack(self, db: Session, device_id: str, command_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        """
        Mark commands as consumed.

        Scoped to `device_id`: ids that belong to another device, unknown ids,
        already consumed ids and ids past the TTL are ignored. Safe to repeat.

        Returns:
            Number of commands newly marked consumed
        """
        ids = [str(c) for c in command_ids]
        if not ids:
            return 0

        now = now or utcnow()
        since = now - timedelta(seconds=self.ttl_seconds)
        result = db.execute(
            update(PendingCommand)
            .where(
                PendingCommand.command_id.in_(ids),
                PendingCommand.device_id == device_id,
                PendingCommand.consumed_at.is_(None),
                PendingCommand.created_at >= since,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        consumed = result.rowcount or 0
        structured_logger.log_event(
            "command.acked",
            device_id=device_id,
            requested=len(ids),
            consumed=consumed
        )
        metrics.inc_counter("commands_acked_total", value=consumed)
        return consumed


def pending_to_dict(command: PendingCommand) -> dict[str, Any]:
    try:
        payload = json.loads(command.payload or "{}")
    except ValueError:
        payload = {}
    return {
        "id": command.command_id,
        "type": command.type,
        "payload": payload,
        "createdAt": ensure_utc(command.created_at).isoformat(),
    }


def command_message(command_id: str, command_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Body of the live COMMAND event."""
    return {
        "id": command_id,
        "type": command_type,
        "payload": payload or {},
        "timestamp": int(time.time() * 1000),
    }


async def dispatch_command(db: Session, queue: CommandQueue, gateway, device_id: str, command) -> str:
    """
    Persist a decoded command, then try to push it live.

    The live push is best effort: an absent or failing connection is not an
    error, the device picks the command up through the pull fallback.
    """
    command_type = command.type
    payload = command.wire_payload()
    command_id = queue.enqueue(db, device_id, command_type, payload)

    delivered = await gateway.notify_device(
        device_id, COMMAND_EVENT, command_message(command_id, command_type, payload)
    )
    metrics.inc_counter(
        "commands_dispatched_total",
        {"type": command_type, "live": str(delivered).lower()}
    )
    return command_id


async def broadcast_command(db: Session, queue: CommandQueue, gateway, device_ids: list[str], command) -> list[str]:
    """Dispatch the same command to every listed device; one queue entry per device."""
    command_ids = []
    for device_id in device_ids:
        command_ids.append(await dispatch_command(db, queue, gateway, device_id, command))

    structured_logger.log_event(
        "command.broadcast",
        type=command.type,
        device_count=len(device_ids)
    )
    return command_ids
