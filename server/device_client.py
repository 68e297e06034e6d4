"""
Device-side sync client.

Keeps a websocket to the gateway open with unbounded reconnection, applies
commands through a DeviceAgent and talks to the HTTP API for the pull
fallback, acks, policy refresh and activity reports. Every HTTP call is best
effort: a failure is logged and the next timer tick tries again.
"""
import asyncio
import json
import random
import time
from typing import Any, Callable, Optional

import httpx
import websockets

from config import config
from device_agent import ActivityReport, DeviceAgent
from gateway import COMMAND, REGISTER_DEVICE, DEVICE_HEARTBEAT, ACK_COMMANDS, envelope
from observability import structured_logger, metrics, best_effort


def reconnect_delay(
    attempt: int,
    base: float = 1.0,
    maximum: float = 10.0,
    randomization: float = 0.5,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before reconnect attempt `attempt` (0-based).

    Exponential from `base`, jittered by +/- `randomization` of the delay,
    never above `maximum`.
    """
    delay = min(base * (2 ** attempt), maximum)
    if randomization:
        delay += delay * randomization * (2 * rng() - 1)
    return max(0.0, min(delay, maximum))


class DeviceSyncClient:
    def __init__(
        self,
        device_id: str,
        agent: Optional[DeviceAgent] = None,
        server_url: Optional[str] = None,
        websocket_url: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Callable = websockets.connect,
        name: Optional[str] = None,
        model: Optional[str] = None,
        os_version: Optional[str] = None,
        app_version: str = "1.0.0",
    ):
        self.device_id = device_id
        self.agent = agent or DeviceAgent()
        self.server_url = (server_url or config.server_url).rstrip("/")
        self.websocket_url = websocket_url or f"{config.websocket_url}/ws/device"
        self.registration = {
            "deviceId": device_id,
            "name": name or device_id,
            "model": model,
            "osVersion": os_version,
            "appVersion": app_version,
        }

        self.http = httpx.AsyncClient(base_url=self.server_url, transport=http_transport, timeout=10.0)
        self._connect = connect

        self.heartbeat_interval = config.HEARTBEAT_INTERVAL_SECONDS
        self.pending_poll_interval = config.PENDING_POLL_SECONDS
        self.policy_refresh_interval = config.POLICY_REFRESH_SECONDS
        self.reconnect_base = config.RECONNECT_DELAY_SECONDS
        self.reconnect_max = config.RECONNECT_DELAY_MAX_SECONDS
        self.reconnect_randomization = config.RECONNECT_RANDOMIZATION

        self._ws = None
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # --- Lifecycle ---

    async def start(self):
        if self._running:
            return
        self._running = True
        await self.register()
        self._tasks = [
            asyncio.create_task(self._connection_loop()),
            asyncio.create_task(self._every(self.heartbeat_interval, self.send_heartbeat)),
            asyncio.create_task(self._every(self.pending_poll_interval, self.poll_pending)),
            asyncio.create_task(self._every(self.policy_refresh_interval, self.refresh_policies)),
        ]
        structured_logger.log_event("device_client.started", device_id=self.device_id)

    async def stop(self):
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.http.aclose()
        structured_logger.log_event("device_client.stopped", device_id=self.device_id)

    async def _every(self, interval: float, fn):
        while self._running:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception as e:
                structured_logger.log_event(
                    "device_client.timer.error",
                    level="ERROR",
                    task=fn.__name__,
                    error=str(e)
                )

    async def _connection_loop(self):
        attempt = 0
        while self._running:
            try:
                async with self._connect(self.websocket_url) as ws:
                    attempt = 0
                    await self._on_connect(ws)
                    async for raw in ws:
                        await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                structured_logger.log_event(
                    "device_client.connection.lost",
                    level="WARN",
                    device_id=self.device_id,
                    attempt=attempt,
                    error=str(e)
                )
            finally:
                self._ws = None

            delay = reconnect_delay(attempt, self.reconnect_base, self.reconnect_max, self.reconnect_randomization)
            attempt += 1
            metrics.inc_counter("device_client_reconnects_total")
            await asyncio.sleep(delay)

    async def _on_connect(self, ws):
        # Register upsert runs on every connect, not only in start()
        await self.register()
        self._ws = ws
        await self._send(REGISTER_DEVICE, {"deviceId": self.device_id})
        await self.send_heartbeat()
        structured_logger.log_event("device_client.connected", device_id=self.device_id)
        await self.refresh_policies()

    async def _send(self, event: str, data: Any) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(envelope(event, data)))
            return True
        except Exception as e:
            structured_logger.log_event("device_client.send_failed", level="WARN", event_name=event, error=str(e))
            return False

    # --- Inbound ---

    async def handle_message(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            structured_logger.log_event("device_client.message.malformed", level="WARN")
            return
        if isinstance(message, dict) and message.get("event") == COMMAND and isinstance(message.get("data"), dict):
            await self.handle_command(message["data"])

    async def handle_command(self, command: dict[str, Any]) -> None:
        """Apply a live command, report its effects, then ack it over the socket."""
        reports = self.agent.apply(command)
        for report in reports:
            await self.report_activity(report)

        command_id = command.get("id")
        if command_id and not await self._send(ACK_COMMANDS, {"deviceId": self.device_id, "commandIds": [command_id]}):
            # The pull fallback offers it again and acks over HTTP
            structured_logger.log_event("device_client.ack.deferred", level="DEBUG", command_id=command_id)

    # --- Outbound ---

    async def send_heartbeat(self) -> None:
        """Socket heartbeat when connected (dropped otherwise) plus the HTTP heartbeat."""
        tab = self.agent.active_tab
        body = {"currentUrl": tab.url} if tab is not None else {}

        await self._send(DEVICE_HEARTBEAT, {
            "deviceId": self.device_id,
            "timestamp": int(time.time() * 1000),
            **body
        })
        with best_effort("device_client.heartbeat", device_id=self.device_id):
            response = await self.http.put(f"/api/devices/{self.device_id}/heartbeat", json=body)
            response.raise_for_status()

    async def register(self) -> None:
        with best_effort("device_client.register", device_id=self.device_id):
            response = await self.http.post("/api/devices/register", json=self.registration)
            response.raise_for_status()

    async def poll_pending(self) -> list[str]:
        """
        Pull fallback: apply every pending command in order, then ack them all.

        Returns:
            Ids acked by this poll
        """
        with best_effort("device_client.poll", device_id=self.device_id):
            response = await self.http.get(f"/api/devices/{self.device_id}/commands/pending")
            response.raise_for_status()
            pending = response.json()

            command_ids = []
            for command in pending:
                for report in self.agent.apply(command):
                    await self.report_activity(report)
                command_ids.append(command["id"])

            if command_ids:
                await self.ack_http(command_ids)
            return command_ids
        return []

    async def ack_http(self, command_ids: list[str]) -> None:
        with best_effort("device_client.ack", device_id=self.device_id):
            response = await self.http.post(
                f"/api/devices/{self.device_id}/commands/ack",
                json={"commandIds": command_ids}
            )
            response.raise_for_status()

    async def refresh_policies(self) -> None:
        with best_effort("device_client.policy_refresh", device_id=self.device_id):
            response = await self.http.get(f"/api/devices/{self.device_id}")
            response.raise_for_status()
            policies = response.json().get("policies")
            if policies:
                for report in self.agent.apply_policy_snapshot(policies):
                    await self.report_activity(report)

    async def report_activity(self, report: ActivityReport) -> None:
        with best_effort("device_client.activity", device_id=self.device_id, action=report.action):
            response = await self.http.post(
                f"/api/devices/{self.device_id}/activity",
                json={"action": report.action, "details": report.details}
            )
            response.raise_for_status()

    async def navigate(self, url: str, title: str = "") -> ActivityReport:
        report = self.agent.navigate(url, title)
        await self.report_activity(report)
        return report
