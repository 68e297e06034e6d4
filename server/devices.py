"""
Device records: registration upsert, snapshots for admin broadcasts,
activity history and cascading delete.
"""
import json
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models import (
    Device, DevicePolicy, PendingCommand, DeviceActivityLog, Notification,
    DEVICE_STATUS_ONLINE, ensure_utc, utcnow,
)
from observability import structured_logger, metrics
from policy_store import policy_to_dict, seed_device_policy

ACTION_MAX_LENGTH = 64


class DeviceNotFoundError(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id


def _epoch_ms(dt) -> Optional[int]:
    dt = ensure_utc(dt)
    return int(dt.timestamp() * 1000) if dt else None


def get_device(db: Session, device_id: str) -> Device:
    device = db.get(Device, device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)
    return device


def format_device(device: Device, policy: Optional[DevicePolicy]) -> dict[str, Any]:
    """Snapshot sent to admins in DEVICE_UPDATED and returned by the device endpoints."""
    return {
        "id": device.id,
        "deviceId": device.id,
        "name": device.name,
        "model": device.model,
        "osVersion": device.os_version,
        "appVersion": device.app_version,
        "status": device.status,
        "lastSeen": _epoch_ms(device.last_seen),
        "currentUrl": device.current_url,
        "createdAt": _epoch_ms(device.created_at),
        "policies": policy_to_dict(policy) if policy is not None else None,
    }


def device_snapshot(db: Session, device_id: str) -> Optional[dict[str, Any]]:
    """Re-read device and policy; None if the device is gone."""
    device = db.get(Device, device_id)
    if device is None:
        return None
    db.refresh(device)
    policy = db.get(DevicePolicy, device_id)
    if policy is not None:
        db.refresh(policy)
    return format_device(device, policy)


def list_snapshots(db: Session) -> list[dict[str, Any]]:
    devices = db.scalars(select(Device).order_by(Device.created_at)).all()
    policies = {p.device_id: p for p in db.scalars(select(DevicePolicy)).all()}
    return [format_device(d, policies.get(d.id)) for d in devices]


def list_device_ids(db: Session) -> list[str]:
    return list(db.scalars(select(Device.id).order_by(Device.created_at)).all())


def register_device(
    db: Session,
    device_id: str,
    name: Optional[str] = None,
    model: Optional[str] = None,
    os_version: Optional[str] = None,
    app_version: Optional[str] = None,
) -> tuple[Device, bool]:
    """
    Create or refresh a device record.

    A new device gets a policy copied from the global policy in the same
    transaction. An existing device keeps its policy untouched.

    Returns:
        (device, created)
    """
    now = utcnow()
    device = db.get(Device, device_id)
    created = device is None

    if created:
        device = Device(
            id=device_id,
            name=name or device_id,
            model=model,
            os_version=os_version,
            app_version=app_version,
            status=DEVICE_STATUS_ONLINE,
            last_seen=now,
            created_at=now,
        )
        db.add(device)
        seed_device_policy(db, device_id)
    else:
        if name:
            device.name = name
        device.model = model
        device.os_version = os_version
        device.app_version = app_version
        device.last_seen = now
        device.status = DEVICE_STATUS_ONLINE

    db.commit()
    db.refresh(device)

    structured_logger.log_event(
        "device.registered",
        device_id=device_id,
        created=created,
        model=model,
        app_version=app_version
    )
    metrics.inc_counter("device_registrations_total", {"created": str(created).lower()})
    return device, created


def delete_device(db: Session, device_id: str) -> None:
    """Delete a device with its policy, pending commands, history and notifications."""
    get_device(db, device_id)
    db.execute(delete(PendingCommand).where(PendingCommand.device_id == device_id))
    db.execute(delete(DeviceActivityLog).where(DeviceActivityLog.device_id == device_id))
    db.execute(delete(Notification).where(Notification.device_id == device_id))
    db.execute(delete(DevicePolicy).where(DevicePolicy.device_id == device_id))
    db.execute(delete(Device).where(Device.id == device_id))
    db.commit()

    structured_logger.log_event("device.deleted", device_id=device_id)


def serialize_details(details: Any) -> Optional[str]:
    if details is None:
        return None
    if isinstance(details, str):
        return details
    return json.dumps(details, default=str)


def record_activity(db: Session, device_id: str, action: str, details: Any = None) -> DeviceActivityLog:
    log = DeviceActivityLog(
        device_id=device_id,
        action=action[:ACTION_MAX_LENGTH],
        details=serialize_details(details),
        timestamp=utcnow(),
    )
    db.add(log)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(log)
    return log


def activity_to_dict(log: DeviceActivityLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "deviceId": log.device_id,
        "action": log.action,
        "details": log.details,
        "timestamp": _epoch_ms(log.timestamp),
    }


def list_activity(db: Session, device_id: str, limit: int = 100) -> list[DeviceActivityLog]:
    stmt = (
        select(DeviceActivityLog)
        .where(DeviceActivityLog.device_id == device_id)
        .order_by(DeviceActivityLog.timestamp.desc(), DeviceActivityLog.id.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def create_notification(db: Session, device_id: str, type: str, title: str, message: str) -> Notification:
    notification = Notification(device_id=device_id, type=type, title=title, message=message)
    db.add(notification)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return notification
