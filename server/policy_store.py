"""
Policy storage: the global singleton policy and one policy per device.

Partial updates replace each provided field wholesale. List fields are never
merged element by element; a caller that wants to add or remove one entry of a
device list reads the policy, edits the list and writes the full list back.
Two admins doing that concurrently can lose an update (last write wins).
"""
import json
from typing import Any, Optional

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import DevicePolicy, GlobalPolicy, utcnow
from observability import structured_logger, metrics

GLOBAL_POLICY_ID = 1

DEFAULT_BLOCKED_DOMAINS = [
    "facebook.com", "fb.com", "instagram.com", "tiktok.com",
    "twitter.com", "x.com", "snapchat.com", "whatsapp.com",
    "telegram.org", "discord.com", "reddit.com", "twitch.tv",
    "youtube.com/shorts", "pinterest.com",
]

DEFAULT_ALLOWED_APPS = [
    "com.android.calculator2",
    "com.google.android.keep",
    "com.octoclass",
]

DEFAULT_SCREENSHOT_INTERVAL_MS = 60000

LIST_FIELDS = ("blocked_domains", "allowed_apps", "blocked_apps")
SCALAR_FIELDS = ("screenshot_interval", "kiosk_mode")


class PolicyNotFoundError(Exception):
    def __init__(self, device_id: str):
        super().__init__(f"No policy for device {device_id}")
        self.device_id = device_id


class DuplicateEntryError(Exception):
    def __init__(self, field: str, value: str):
        super().__init__(f"{value} already present in {field}")
        self.field = field
        self.value = value


def _load_list(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


def policy_to_dict(policy) -> dict[str, Any]:
    """
    Wire representation of a device or global policy.

    The unlock PIN is never exposed; only whether one is configured.
    """
    data = {
        "blockedDomains": _load_list(policy.blocked_domains),
        "allowedApps": _load_list(policy.allowed_apps),
        "blockedApps": _load_list(policy.blocked_apps),
        "screenshotInterval": policy.screenshot_interval,
        "kioskMode": bool(policy.kiosk_mode),
    }
    if isinstance(policy, DevicePolicy):
        data["hasUnlockPin"] = policy.unlock_pin_hash is not None
    return data


def policy_command_payload(policy) -> dict[str, Any]:
    """Fields pushed to a device inside a POLICY_CHANGE command."""
    data = policy_to_dict(policy)
    data.pop("hasUnlockPin", None)
    return data


def hash_unlock_pin(pin: Optional[str]) -> Optional[str]:
    if pin is None or pin.strip() == "":
        return None
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_unlock_pin(policy: DevicePolicy, pin: str) -> bool:
    if policy.unlock_pin_hash is None:
        return False
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), policy.unlock_pin_hash.encode("utf-8"))
    except ValueError:
        return False


def is_url_blocked(url: str, blocked_domains: list[str]) -> bool:
    """Substring match of each host pattern against the URL."""
    if not url:
        return False
    lowered = url.lower()
    return any(pattern and pattern.lower() in lowered for pattern in blocked_domains)


def _apply_partial(policy, partial: dict[str, Any]) -> list[str]:
    changed = []
    for field in LIST_FIELDS:
        if field in partial and partial[field] is not None:
            setattr(policy, field, json.dumps(list(partial[field])))
            changed.append(field)
    for field in SCALAR_FIELDS:
        if field in partial and partial[field] is not None:
            setattr(policy, field, partial[field])
            changed.append(field)
    if "unlock_pin" in partial and isinstance(policy, DevicePolicy):
        policy.unlock_pin_hash = hash_unlock_pin(partial["unlock_pin"])
        changed.append("unlock_pin")
    policy.updated_at = utcnow()
    return changed


def get_global(db: Session) -> GlobalPolicy:
    """Return the global policy, seeding the default classroom policy on first use."""
    policy = db.get(GlobalPolicy, GLOBAL_POLICY_ID)
    if policy is not None:
        return policy

    policy = GlobalPolicy(
        id=GLOBAL_POLICY_ID,
        name="Global",
        blocked_domains=json.dumps(DEFAULT_BLOCKED_DOMAINS),
        allowed_apps=json.dumps(DEFAULT_ALLOWED_APPS),
        blocked_apps="[]",
        screenshot_interval=DEFAULT_SCREENSHOT_INTERVAL_MS,
        kiosk_mode=True,
    )
    db.add(policy)
    try:
        db.commit()
    except IntegrityError:
        # Another request seeded it first
        db.rollback()
        return db.get(GlobalPolicy, GLOBAL_POLICY_ID)

    db.refresh(policy)
    structured_logger.log_event("policy.global.seeded")
    return policy


def get_device_policy(db: Session, device_id: str) -> DevicePolicy:
    policy = db.get(DevicePolicy, device_id)
    if policy is None:
        raise PolicyNotFoundError(device_id)
    return policy


def seed_device_policy(db: Session, device_id: str) -> DevicePolicy:
    """
    Copy the global policy into a new device policy.

    Adds to the session without committing so device creation and policy
    seeding land in the same transaction.
    """
    global_policy = get_global(db)
    policy = DevicePolicy(
        device_id=device_id,
        blocked_domains=global_policy.blocked_domains,
        allowed_apps=global_policy.allowed_apps,
        blocked_apps=global_policy.blocked_apps or "[]",
        screenshot_interval=global_policy.screenshot_interval,
        kiosk_mode=global_policy.kiosk_mode,
        unlock_pin_hash=None,
    )
    db.add(policy)
    return policy


def merge_device_policy(db: Session, device_id: str, partial: dict[str, Any]) -> DevicePolicy:
    """
    Apply a partial update (snake_case keys) to a device policy.

    Args:
        db: Database session
        device_id: Target device
        partial: Only the fields the caller set; lists replace the stored list

    Returns:
        The updated DevicePolicy

    Raises:
        PolicyNotFoundError: device has no policy (unknown device)
    """
    policy = get_device_policy(db, device_id)
    changed = _apply_partial(policy, partial)
    db.commit()
    db.refresh(policy)

    structured_logger.log_event("policy.device.updated", device_id=device_id, fields=changed)
    metrics.inc_counter("policy_updates_total", {"scope": "device"})
    return policy


def merge_global_policy(db: Session, partial: dict[str, Any]) -> GlobalPolicy:
    policy = get_global(db)
    changed = _apply_partial(policy, partial)
    db.commit()
    db.refresh(policy)

    structured_logger.log_event("policy.global.updated", fields=changed)
    metrics.inc_counter("policy_updates_total", {"scope": "global"})
    return policy


def add_global_entry(db: Session, field: str, value: str) -> list[str]:
    """
    Add one entry to a global list field (blacklist / whitelist).

    Raises:
        DuplicateEntryError: the value is already present; the list is unchanged
    """
    policy = get_global(db)
    current = _load_list(getattr(policy, field))
    if value in current:
        raise DuplicateEntryError(field, value)

    updated = current + [value]
    merge_global_policy(db, {field: updated})
    return updated


def remove_global_entry(db: Session, field: str, value: str) -> list[str]:
    """Remove one entry from a global list field. Removing an absent entry is a no-op."""
    policy = get_global(db)
    current = _load_list(getattr(policy, field))
    updated = [entry for entry in current if entry != value]
    if len(updated) != len(current):
        merge_global_policy(db, {field: updated})
    return updated
