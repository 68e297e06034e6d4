"""
Tests for the outbound event webhook.
"""
import asyncio
import json

import httpx

from webhooks import WebhookNotifier


def recording_transport(status_code=200):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append((str(request.url), json.loads(request.content)))
        return httpx.Response(status_code, text="ok")

    return httpx.MockTransport(handler), received


def test_send_posts_event_body():
    transport, received = recording_transport()
    notifier = WebhookNotifier("https://hooks.example.org/mdm", transport=transport)

    assert asyncio.run(notifier.send("command.sent", {"deviceId": "tablet-001", "type": "LOCK_SCREEN"})) is True

    url, body = received[0]
    assert url == "https://hooks.example.org/mdm"
    assert body["event"] == "command.sent"
    assert body["deviceId"] == "tablet-001"
    assert body["type"] == "LOCK_SCREEN"
    assert isinstance(body["timestamp"], int)


def test_send_logs_latency(capture_logs):
    transport, _ = recording_transport()
    notifier = WebhookNotifier("https://hooks.example.org/mdm", transport=transport)

    asyncio.run(notifier.send("device.heartbeat", {"deviceId": "tablet-001"}))

    sent = next(log for log in capture_logs if log["event"] == "webhook.sent")
    assert sent["webhook_event"] == "device.heartbeat"
    assert sent["latency_ms"] >= 0


def test_http_error_returns_false(capture_logs):
    transport, _ = recording_transport(status_code=500)
    notifier = WebhookNotifier("https://hooks.example.org/mdm", transport=transport)

    assert asyncio.run(notifier.send("device.registered", {})) is False
    assert any(log["event"] == "webhook.failed" and log["http_code"] == 500 for log in capture_logs)


def test_transport_error_returns_false(capture_logs):
    def handler(request):
        raise httpx.ConnectError("connection refused")

    notifier = WebhookNotifier("https://hooks.example.org/mdm", transport=httpx.MockTransport(handler))

    assert asyncio.run(notifier.send("device.registered", {})) is False
    assert any(log["event"] == "webhook.error" for log in capture_logs)


def test_disabled_without_url():
    notifier = WebhookNotifier("")

    assert notifier.enabled is False
    assert notifier.fire("device.registered", {}) is None
    assert asyncio.run(notifier.send("device.registered", {})) is False


def test_fire_without_loop_is_dropped():
    transport, received = recording_transport()
    notifier = WebhookNotifier("https://hooks.example.org/mdm", transport=transport)

    assert notifier.fire("device.deleted", {"deviceId": "tablet-001"}) is None
    assert received == []


def test_fire_and_drain():
    transport, received = recording_transport()
    notifier = WebhookNotifier("https://hooks.example.org/mdm", transport=transport)

    async def run():
        task = notifier.fire("device.deleted", {"deviceId": "tablet-001"})
        assert task is not None
        await notifier.drain()

    asyncio.run(run())

    assert [body["event"] for _, body in received] == ["device.deleted"]
    assert notifier._pending == set()
