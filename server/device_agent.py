"""
Device-local command application.

The same command can reach a tablet more than once (live push and pull
fallback, or a redelivery after a crash before ack). Every handler therefore
converges: applying a command a second time leaves the state unchanged and
produces no new activity report.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError

from commands import CommandType, PolicyChangePayload, decode_command
from observability import structured_logger
from policy_store import DEFAULT_BLOCKED_DOMAINS, DEFAULT_SCREENSHOT_INTERVAL_MS, is_url_blocked

HOME_URL = "https://www.google.com"
HOME_TAB_ID = "home"

# Store links are always blocked on the tablet on top of the policy list
DEVICE_BLOCKED_DOMAINS = DEFAULT_BLOCKED_DOMAINS + ["play.google.com", "market://"]

ONE_SHOT_MEMORY = 256


@dataclass
class Tab:
    id: str
    url: str
    title: str = "New tab"


@dataclass
class ActivityReport:
    action: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DevicePolicies:
    blocked_domains: list[str] = field(default_factory=lambda: list(DEVICE_BLOCKED_DOMAINS))
    allowed_apps: list[str] = field(default_factory=list)
    blocked_apps: list[str] = field(default_factory=list)
    screenshot_interval: int = DEFAULT_SCREENSHOT_INTERVAL_MS
    kiosk_mode: bool = True


@dataclass
class ShownAlert:
    command_id: str
    message: str


class DeviceControls:
    """
    Hardware and OS effects. The default implementation only records calls;
    a real tablet build swaps in one that talks to the platform.
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))

    def lock_screen(self) -> None:
        self._record("lock_screen")

    def set_brightness(self, level: float) -> None:
        self._record("set_brightness", level)

    def set_volume(self, level: float) -> None:
        self._record("set_volume", level)

    def launch_app(self, package_name: str) -> None:
        self._record("launch_app", package_name)

    def reboot(self) -> None:
        self._record("reboot")

    def start_kiosk(self) -> None:
        self._record("start_kiosk")

    def stop_kiosk(self) -> None:
        self._record("stop_kiosk")

    def set_allowed_packages(self, packages: list[str]) -> None:
        self._record("set_allowed_packages", list(packages))

    def set_blocked_packages(self, packages: list[str]) -> None:
        self._record("set_blocked_packages", list(packages))

    def show_alert(self, message: str) -> None:
        self._record("show_alert", message)

    def capture_screen(self) -> Optional[str]:
        self._record("capture_screen")
        return None


class DeviceAgent:
    def __init__(self, controls: Optional[DeviceControls] = None, home_url: str = HOME_URL):
        self.controls = controls or DeviceControls()
        self.home_url = home_url
        self.tabs: list[Tab] = [Tab(id=HOME_TAB_ID, url=home_url, title="Google")]
        self.active_tab_id = HOME_TAB_ID
        self.locked = False
        self.pin_lock_active = False
        self.kiosk_active = False
        self.brightness: Optional[float] = None
        self.volume: Optional[float] = None
        self.policies = DevicePolicies()
        self.current_alert: Optional[ShownAlert] = None

        # command id -> outcome, for commands whose effect is an event, not a state
        self._one_shot: OrderedDict[str, Any] = OrderedDict()

        self._handlers: dict[str, Callable[[str, Any], list[ActivityReport]]] = {
            CommandType.OPEN_URL.value: self._open_url,
            CommandType.CLOSE_TAB.value: self._close_tab,
            CommandType.LAUNCH_APP.value: self._launch_app,
            CommandType.SET_BRIGHTNESS.value: self._set_brightness,
            CommandType.VOLUME.value: self._set_volume,
            CommandType.LOCK_SCREEN.value: self._lock_screen,
            CommandType.UNLOCK_SCREEN.value: self._unlock_screen,
            CommandType.GET_PRINT.value: self._get_print,
            CommandType.REBOOT.value: self._reboot,
            CommandType.ALERT.value: self._alert,
            CommandType.POLICY_CHANGE.value: self._policy_change,
            CommandType.START_KIOSK.value: self._start_kiosk,
            CommandType.STOP_KIOSK.value: self._stop_kiosk,
        }

    @property
    def active_tab(self) -> Optional[Tab]:
        return next((t for t in self.tabs if t.id == self.active_tab_id), None)

    def apply(self, command: dict[str, Any]) -> list[ActivityReport]:
        """
        Apply one `{id, type, payload}` command.

        Unknown types and malformed payloads are logged and ignored.

        Returns:
            Activity reports to send to the server (empty when nothing changed)
        """
        command_id = str(command.get("id") or "")
        try:
            decoded = decode_command({"type": command.get("type"), "payload": command.get("payload")})
        except ValidationError as e:
            structured_logger.log_event(
                "agent.command.rejected",
                level="WARN",
                command_id=command_id,
                type=command.get("type"),
                errors=e.error_count()
            )
            return []

        handler = self._handlers[decoded.type]
        try:
            return handler(command_id, decoded.payload)
        except Exception as e:
            structured_logger.log_event(
                "agent.command.failed",
                level="ERROR",
                command_id=command_id,
                type=decoded.type,
                error=str(e)
            )
            return []

    def _control(self, name: str, *args) -> bool:
        try:
            getattr(self.controls, name)(*args)
            return True
        except Exception as e:
            structured_logger.log_event("agent.control.failed", level="WARN", control=name, error=str(e))
            return False

    def _seen(self, command_id: str) -> bool:
        return bool(command_id) and command_id in self._one_shot

    def _remember(self, command_id: str, outcome: Any = True) -> None:
        if not command_id:
            return
        self._one_shot[command_id] = outcome
        while len(self._one_shot) > ONE_SHOT_MEMORY:
            self._one_shot.popitem(last=False)

    # --- Browser ---

    def _open_url(self, command_id: str, payload) -> list[ActivityReport]:
        tab_id = command_id or f"tab-{len(self.tabs)}"
        existing = next((t for t in self.tabs if t.id == tab_id), None)
        if existing is not None:
            self.active_tab_id = existing.id
            return []

        self.tabs.append(Tab(id=tab_id, url=payload.url))
        self.active_tab_id = tab_id
        return [ActivityReport("URL_OPENED", {"url": payload.url, "tabId": tab_id, "source": "panel"})]

    def _close_tab(self, command_id: str, payload) -> list[ActivityReport]:
        if self._seen(command_id):
            return []

        # "active" resolves once; a redelivery must not close whatever is active by then
        close_id = self.active_tab_id if payload.tab_id == "active" else payload.tab_id
        self._remember(command_id, close_id)

        closed = next((t for t in self.tabs if t.id == close_id), None)
        if closed is None:
            return []

        self.tabs = [t for t in self.tabs if t.id != close_id]
        if not self.tabs:
            self.tabs = [Tab(id=HOME_TAB_ID, url=self.home_url, title="Google")]
            self.active_tab_id = HOME_TAB_ID
        elif close_id == self.active_tab_id:
            self.active_tab_id = self.tabs[-1].id

        return [ActivityReport("TAB_CLOSED", {"tabId": close_id, "url": closed.url, "source": "panel"})]

    def navigate(self, url: str, title: str = "") -> ActivityReport:
        """User navigation inside the active tab; blocked URLs are refused."""
        if is_url_blocked(url, self.policies.blocked_domains):
            return ActivityReport("BLOCKED_SITE", {"url": url})

        tab = self.active_tab
        if tab is not None:
            tab.url = url
            tab.title = title or tab.title
        return ActivityReport("URL_CHANGED", {"url": url, "title": title, "source": "device"})

    # --- Hardware ---

    def _launch_app(self, command_id: str, payload) -> list[ActivityReport]:
        package_name = payload.package_name
        if self.policies.kiosk_mode and package_name not in self.policies.allowed_apps:
            self._control("set_allowed_packages", self.policies.allowed_apps + [package_name])
        if not self._control("launch_app", package_name):
            return []
        return [ActivityReport("APP_LAUNCHED", {"packageName": package_name, "source": "panel"})]

    def _set_brightness(self, command_id: str, payload) -> list[ActivityReport]:
        if self.brightness == payload.level:
            return []
        if not self._control("set_brightness", payload.level):
            return []
        self.brightness = payload.level
        return [ActivityReport("BRIGHTNESS_APPLIED", {"level": payload.level, "source": "panel"})]

    def _set_volume(self, command_id: str, payload) -> list[ActivityReport]:
        if self.volume == payload.level:
            return []
        if not self._control("set_volume", payload.level):
            return []
        self.volume = payload.level
        return [ActivityReport("VOLUME_APPLIED", {"level": payload.level, "source": "panel"})]

    def _lock_screen(self, command_id: str, payload) -> list[ActivityReport]:
        if payload.require_pin:
            self.pin_lock_active = True
        if self.locked:
            return []
        if not self._control("lock_screen"):
            return []
        self.locked = True
        return [ActivityReport("SCREEN_LOCKED", {"source": "panel", "requirePin": payload.require_pin})]

    def _unlock_screen(self, command_id: str, payload) -> list[ActivityReport]:
        if not self.locked and not self.pin_lock_active:
            return []
        self.locked = False
        self.pin_lock_active = False
        return [ActivityReport("SCREEN_UNLOCKED", {"source": "panel"})]

    def _get_print(self, command_id: str, payload) -> list[ActivityReport]:
        if self._seen(command_id):
            return []
        self._remember(command_id)
        if not self._control("capture_screen"):
            return []
        tab = self.active_tab
        return [ActivityReport("SCREENSHOT_CAPTURED", {"trigger": "MANUAL", "url": tab.url if tab else None})]

    def _reboot(self, command_id: str, payload) -> list[ActivityReport]:
        if self._seen(command_id):
            return []
        self._remember(command_id)
        if not self._control("reboot"):
            return []
        return [ActivityReport("REBOOT_REQUESTED", {"source": "panel"})]

    def _alert(self, command_id: str, payload) -> list[ActivityReport]:
        if self._seen(command_id):
            return []
        self._remember(command_id)
        self.current_alert = ShownAlert(command_id=command_id, message=payload.message)
        self._control("show_alert", payload.message)
        return [ActivityReport("ALERT_SHOWN", {"message": payload.message})]

    def dismiss_alert(self) -> None:
        self.current_alert = None

    # --- Policy and kiosk ---

    def _policy_change(self, command_id: str, payload: PolicyChangePayload) -> list[ActivityReport]:
        return self.apply_policies(payload)

    def apply_policies(self, payload: PolicyChangePayload) -> list[ActivityReport]:
        """
        Merge the provided policy fields over the current ones.

        Also used for the periodic HTTP policy refresh. Absent fields are kept.
        """
        changed = []
        for name in ("blocked_domains", "allowed_apps", "blocked_apps", "screenshot_interval", "kiosk_mode"):
            value = getattr(payload, name)
            if value is None:
                continue
            if name == "blocked_domains" and not value:
                value = list(DEVICE_BLOCKED_DOMAINS)
            if getattr(self.policies, name) != value:
                setattr(self.policies, name, value)
                changed.append(name)

        reports = []
        # Kiosk follows the policy flag even when the flag itself did not change
        if payload.kiosk_mode is not None:
            reports.extend(self._set_kiosk(self.policies.kiosk_mode))
        if not changed:
            return reports

        if "allowed_apps" in changed:
            self._control("set_allowed_packages", self.policies.allowed_apps)
        if "blocked_apps" in changed and self._control("set_blocked_packages", self.policies.blocked_apps):
            reports.append(ActivityReport("BLOCKED_APPS_APPLIED", {"count": len(self.policies.blocked_apps)}))

        reports.append(ActivityReport("POLICY_APPLIED", {"fields": changed}))
        return reports

    def apply_policy_snapshot(self, policies: dict[str, Any]) -> list[ActivityReport]:
        """Apply the `policies` object of a device snapshot (camelCase keys)."""
        try:
            payload = PolicyChangePayload.model_validate(policies)
        except ValidationError as e:
            structured_logger.log_event("agent.policy.rejected", level="WARN", errors=e.error_count())
            return []
        return self.apply_policies(payload)

    def _set_kiosk(self, active: bool) -> list[ActivityReport]:
        if self.kiosk_active == active:
            return []
        if not self._control("start_kiosk" if active else "stop_kiosk"):
            return []
        self.kiosk_active = active
        return [ActivityReport("KIOSK_STARTED" if active else "KIOSK_STOPPED", {"source": "panel"})]

    def _start_kiosk(self, command_id: str, payload) -> list[ActivityReport]:
        return self._set_kiosk(True)

    def _stop_kiosk(self, command_id: str, payload) -> list[ActivityReport]:
        return self._set_kiosk(False)
