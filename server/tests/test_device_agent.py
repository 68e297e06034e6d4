"""
Tests for device-side command application. Every command is applied twice to
check that a redelivery converges on the same state.
"""
import pytest

from device_agent import DeviceAgent, DeviceControls, HOME_TAB_ID, ONE_SHOT_MEMORY


class BrokenControls(DeviceControls):
    def reboot(self) -> None:
        raise RuntimeError("permission denied")

    def set_brightness(self, level: float) -> None:
        raise RuntimeError("WRITE_SETTINGS not granted")


@pytest.fixture
def agent() -> DeviceAgent:
    return DeviceAgent()


def actions(reports):
    return [r.action for r in reports]


def call_names(agent: DeviceAgent):
    return [name for name, _ in agent.controls.calls]


class TestBrowserCommands:
    def test_open_url_twice_opens_one_tab(self, agent):
        command = {"id": "cmd-1", "type": "OPEN_URL", "payload": {"url": "https://khanacademy.org"}}

        assert actions(agent.apply(command)) == ["URL_OPENED"]
        assert agent.apply(command) == []

        assert [t.id for t in agent.tabs] == [HOME_TAB_ID, "cmd-1"]
        assert agent.active_tab.url == "https://khanacademy.org"

    def test_close_active_tab_resolves_once(self, agent):
        agent.apply({"id": "open-1", "type": "OPEN_URL", "payload": {"url": "https://a.org"}})
        agent.apply({"id": "open-2", "type": "OPEN_URL", "payload": {"url": "https://b.org"}})
        close = {"id": "close-1", "type": "CLOSE_TAB", "payload": {"tabId": "active"}}

        reports = agent.apply(close)
        assert actions(reports) == ["TAB_CLOSED"]
        assert reports[0].details["tabId"] == "open-2"

        # Redelivery must not close the tab that became active afterwards
        assert agent.apply(close) == []
        assert [t.id for t in agent.tabs] == [HOME_TAB_ID, "open-1"]

    def test_closing_last_tab_reopens_home(self, agent):
        agent.apply({"id": "close-home", "type": "CLOSE_TAB", "payload": {"tabId": HOME_TAB_ID}})

        assert [t.id for t in agent.tabs] == [HOME_TAB_ID]
        assert agent.active_tab_id == HOME_TAB_ID

    def test_close_unknown_tab(self, agent):
        assert agent.apply({"id": "c", "type": "CLOSE_TAB", "payload": {"tabId": "nope"}}) == []

    def test_navigate_blocks_policy_domains(self, agent):
        report = agent.navigate("https://www.tiktok.com/@someone")

        assert report.action == "BLOCKED_SITE"
        assert agent.active_tab.url == "https://www.google.com"

    def test_navigate_blocks_store_links(self, agent):
        assert agent.navigate("https://play.google.com/store").action == "BLOCKED_SITE"

    def test_navigate_allowed(self, agent):
        report = agent.navigate("https://en.wikipedia.org", title="Wikipedia")

        assert report.action == "URL_CHANGED"
        assert agent.active_tab.url == "https://en.wikipedia.org"
        assert agent.active_tab.title == "Wikipedia"


class TestStateCommands:
    @pytest.mark.parametrize("command_type,attribute,report", [
        ("SET_BRIGHTNESS", "brightness", "BRIGHTNESS_APPLIED"),
        ("VOLUME", "volume", "VOLUME_APPLIED"),
    ])
    def test_level_converges(self, agent, command_type, attribute, report):
        command = {"id": "lvl", "type": command_type, "payload": {"level": 0.4}}

        assert actions(agent.apply(command)) == [report]
        assert agent.apply(command) == []
        assert getattr(agent, attribute) == 0.4

    def test_lock_then_unlock(self, agent):
        lock = {"id": "l1", "type": "LOCK_SCREEN", "payload": {"requirePin": True}}

        assert actions(agent.apply(lock)) == ["SCREEN_LOCKED"]
        assert agent.apply(lock) == []
        assert agent.locked and agent.pin_lock_active
        assert call_names(agent).count("lock_screen") == 1

        unlock = {"id": "u1", "type": "UNLOCK_SCREEN"}
        assert actions(agent.apply(unlock)) == ["SCREEN_UNLOCKED"]
        assert agent.apply(unlock) == []
        assert not agent.locked and not agent.pin_lock_active

    def test_kiosk_start_stop(self, agent):
        assert actions(agent.apply({"id": "k1", "type": "START_KIOSK"})) == ["KIOSK_STARTED"]
        assert agent.apply({"id": "k1", "type": "START_KIOSK"}) == []
        assert actions(agent.apply({"id": "k2", "type": "STOP_KIOSK"})) == ["KIOSK_STOPPED"]
        assert agent.kiosk_active is False

    def test_launch_app_in_kiosk_allows_package_first(self, agent):
        agent.apply({"id": "l", "type": "LAUNCH_APP", "payload": {"packageName": "org.wikipedia"}})

        assert call_names(agent) == ["set_allowed_packages", "launch_app"]


class TestOneShotCommands:
    @pytest.mark.parametrize("command,report,control", [
        ({"type": "REBOOT"}, "REBOOT_REQUESTED", "reboot"),
        ({"type": "GET_PRINT"}, "SCREENSHOT_CAPTURED", "capture_screen"),
        ({"type": "ALERT", "payload": {"message": "Eyes up front"}}, "ALERT_SHOWN", "show_alert"),
    ])
    def test_applied_once_per_command_id(self, agent, command, report, control):
        command = {"id": "once", **command}

        assert actions(agent.apply(command)) == [report]
        assert agent.apply(command) == []
        assert call_names(agent).count(control) == 1

    def test_new_id_runs_again(self, agent):
        agent.apply({"id": "r1", "type": "REBOOT"})
        agent.apply({"id": "r2", "type": "REBOOT"})
        assert call_names(agent).count("reboot") == 2

    def test_memory_is_bounded(self, agent):
        for i in range(ONE_SHOT_MEMORY + 10):
            agent.apply({"id": f"alert-{i}", "type": "ALERT", "payload": {"message": "hi"}})

        assert len(agent._one_shot) == ONE_SHOT_MEMORY
        assert "alert-0" not in agent._one_shot

    def test_alert_dismiss(self, agent):
        agent.apply({"id": "a1", "type": "ALERT", "payload": {"message": "Quiz in 5"}})
        assert agent.current_alert.message == "Quiz in 5"
        agent.dismiss_alert()
        assert agent.current_alert is None


class TestPolicies:
    def test_first_policy_starts_kiosk(self, agent):
        reports = agent.apply({"id": "p1", "type": "POLICY_CHANGE", "payload": {
            "allowedApps": ["com.octoclass"], "kioskMode": True
        }})

        assert actions(reports) == ["KIOSK_STARTED", "POLICY_APPLIED"]
        assert agent.kiosk_active
        assert ("set_allowed_packages", (["com.octoclass"],)) in agent.controls.calls

    def test_same_policy_twice_reports_nothing(self, agent):
        command = {"id": "p1", "type": "POLICY_CHANGE", "payload": {"blockedApps": ["com.roblox.client"]}}

        assert actions(agent.apply(command)) == ["BLOCKED_APPS_APPLIED", "POLICY_APPLIED"]
        assert agent.apply(command) == []

    def test_absent_fields_are_kept(self, agent):
        agent.apply({"id": "p1", "type": "POLICY_CHANGE", "payload": {"blockedDomains": ["roblox.com"]}})
        agent.apply({"id": "p2", "type": "POLICY_CHANGE", "payload": {"screenshotInterval": 30000}})

        assert agent.policies.blocked_domains == ["roblox.com"]
        assert agent.policies.screenshot_interval == 30000

    def test_empty_blocklist_falls_back_to_defaults(self, agent):
        agent.apply({"id": "p1", "type": "POLICY_CHANGE", "payload": {"blockedDomains": ["roblox.com"]}})
        agent.apply({"id": "p2", "type": "POLICY_CHANGE", "payload": {"blockedDomains": []}})

        assert "tiktok.com" in agent.policies.blocked_domains

    def test_kiosk_off_stops_kiosk(self, agent):
        agent.apply({"id": "k", "type": "START_KIOSK"})
        reports = agent.apply({"id": "p1", "type": "POLICY_CHANGE", "payload": {"kioskMode": False}})

        assert "KIOSK_STOPPED" in actions(reports)
        assert agent.kiosk_active is False

    def test_apply_snapshot_ignores_pin_flag(self, agent):
        reports = agent.apply_policy_snapshot({
            "blockedDomains": ["roblox.com"], "allowedApps": [], "blockedApps": [],
            "screenshotInterval": 60000, "kioskMode": False, "hasUnlockPin": True,
        })

        assert "POLICY_APPLIED" in actions(reports)
        assert agent.policies.blocked_domains == ["roblox.com"]

    def test_apply_snapshot_rejects_garbage(self, agent, capture_logs):
        assert agent.apply_policy_snapshot({"screenshotInterval": "soon"}) == []
        assert any(log["event"] == "agent.policy.rejected" for log in capture_logs)


class TestFailures:
    def test_unknown_command_is_ignored(self, agent, capture_logs):
        assert agent.apply({"id": "x", "type": "SELF_DESTRUCT"}) == []
        assert any(log["event"] == "agent.command.rejected" for log in capture_logs)

    def test_failed_control_reports_nothing(self, capture_logs):
        agent = DeviceAgent(controls=BrokenControls())

        assert agent.apply({"id": "r1", "type": "REBOOT"}) == []
        assert agent.apply({"id": "b1", "type": "SET_BRIGHTNESS", "payload": {"level": 0.5}}) == []
        assert agent.brightness is None
        assert sum(1 for log in capture_logs if log["event"] == "agent.control.failed") == 2
