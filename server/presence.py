"""
Presence tracking.

Heartbeats and activity reports `touch` a device (online, fresh last_seen).
A periodic `sweep` demotes devices that have been silent for longer than the
staleness threshold. The sweep only ever moves devices to offline; coming
back online is driven by the device itself.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import config
from models import (
    Device, DEVICE_STATUS_ONLINE, DEVICE_STATUS_OFFLINE, DEVICE_STATUS_LOCKED, utcnow,
)
from observability import structured_logger, metrics


class PresenceTracker:
    def __init__(self, stale_after_seconds: Optional[int] = None):
        self.stale_after_seconds = (
            stale_after_seconds if stale_after_seconds is not None else config.PRESENCE_STALE_SECONDS
        )

    def touch(
        self,
        db: Session,
        device_id: str,
        observed_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record a sign of life from a device.

        Returns False when the device is unknown.
        """
        device = db.get(Device, device_id)
        if device is None:
            return False

        device.last_seen = now or utcnow()
        if device.status != DEVICE_STATUS_LOCKED:
            device.status = DEVICE_STATUS_ONLINE
        if observed_url is not None:
            device.current_url = observed_url
        db.commit()

        metrics.inc_counter("presence_touches_total")
        return True

    def mark_locked(self, db: Session, device_id: str, locked: bool, now: Optional[datetime] = None) -> bool:
        """Apply a lock/unlock report from the device. Also counts as a sign of life."""
        device = db.get(Device, device_id)
        if device is None:
            return False

        device.status = DEVICE_STATUS_LOCKED if locked else DEVICE_STATUS_ONLINE
        device.last_seen = now or utcnow()
        db.commit()

        structured_logger.log_event("presence.lock_state", device_id=device_id, locked=locked)
        return True

    def sweep(self, db: Session, now: Optional[datetime] = None) -> list[str]:
        """
        Demote stale online devices to offline. Locked devices are left alone.

        Returns:
            The ids of the devices that were demoted by this call
        """
        cutoff = (now or utcnow()) - timedelta(seconds=self.stale_after_seconds)
        stale = (
            Device.status == DEVICE_STATUS_ONLINE,
            Device.last_seen < cutoff,
        )

        demoted = list(db.scalars(select(Device.id).where(*stale)).all())
        if not demoted:
            return []

        db.execute(
            update(Device)
            .where(Device.id.in_(demoted), *stale)
            .values(status=DEVICE_STATUS_OFFLINE)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        structured_logger.log_event(
            "presence.sweep.demoted",
            count=len(demoted),
            device_ids=demoted,
            stale_after_seconds=self.stale_after_seconds
        )
        metrics.inc_counter("presence_demotions_total", value=len(demoted))
        return demoted
