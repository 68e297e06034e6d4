import asyncio
import time
from typing import Optional, Dict, Any

import httpx

from config import config
from observability import structured_logger, metrics


class WebhookNotifier:
    """
    Fire-and-forget JSON webhook for integration events
    (device.registered, command.sent, policy.updated, ...).

    Body: {"event": ..., "timestamp": <epoch ms>, **payload}
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.webhook_url = (webhook_url if webhook_url is not None else config.WEBHOOK_URL or "").strip()
        self.timeout = timeout if timeout is not None else config.WEBHOOK_TIMEOUT_SECONDS
        self.transport = transport
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def fire(self, event: str, payload: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Schedule delivery on the running loop and return immediately.

        Does nothing when no URL is configured or no loop is running.
        """
        if not self.enabled:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            structured_logger.log_event("webhook.no_loop", level="DEBUG", webhook_event=event)
            return None

        task = loop.create_task(self.send(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(self, event: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        body = {"event": event, "timestamp": int(time.time() * 1000), **payload}
        start_time = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=body)
                latency_ms = (time.monotonic() - start_time) * 1000

                if response.is_success:
                    structured_logger.log_event(
                        "webhook.sent",
                        level="DEBUG",
                        webhook_event=event,
                        latency_ms=latency_ms
                    )
                    metrics.observe_histogram("webhook_latency_ms", latency_ms)
                    metrics.inc_counter("webhooks_sent_total", {"event": event})
                    return True

                structured_logger.log_event(
                    "webhook.failed",
                    level="WARN",
                    webhook_event=event,
                    http_code=response.status_code,
                    response=response.text[:200]
                )
                metrics.inc_counter("webhooks_failed_total", {"reason": "http_error"})
                return False

        except Exception as e:
            structured_logger.log_event(
                "webhook.error",
                level="WARN",
                webhook_event=event,
                error=str(e)
            )
            metrics.inc_counter("webhooks_failed_total", {"reason": "exception"})
            return False

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


webhook_notifier = WebhookNotifier()
