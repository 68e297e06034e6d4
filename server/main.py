from fastapi import FastAPI, Depends, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, Query
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from typing import Any, Optional
import json
import time
import uuid

from background_tasks import BackgroundTaskManager
from command_queue import CommandQueue, dispatch_command, broadcast_command, pending_to_dict
from commands import decode_command, policy_change
from config import config
from devices import (
    DeviceNotFoundError, get_device, device_snapshot, list_snapshots, list_device_ids,
    register_device, delete_device, record_activity, activity_to_dict, list_activity,
    create_notification,
)
from gateway import Gateway, DEVICE_UPDATED, DEVICE_ACTIVITY, BLOCKED_SITE_ATTEMPT
from models import SessionLocal, get_db, init_db
from observability import structured_logger, metrics, request_id_var, best_effort
from policy_store import (
    DuplicateEntryError, PolicyNotFoundError, get_global, get_device_policy,
    merge_device_policy, merge_global_policy, add_global_entry, remove_global_entry,
    policy_to_dict, policy_command_payload, verify_unlock_pin,
)
from presence import PresenceTracker
from schemas import (
    RegisterDeviceRequest, DevicePolicyUpdate, GlobalPolicyUpdate, HeartbeatRequest,
    DispatchRequest, AckRequest, ActivityRequest, UnlockValidateRequest,
    DomainRequest, PackageRequest,
)
from webhooks import webhook_notifier

app = FastAPI(title="Classroom MDM API")

command_queue = CommandQueue()
presence = PresenceTracker()
gateway = Gateway(SessionLocal, presence, command_queue)
background_tasks = BackgroundTaskManager(gateway)

ACTIVITY_HISTORY_MAX = 200


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Middleware to generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000

    # Templated path keeps label cardinality bounded
    route = getattr(request.scope.get("route"), "path", request.url.path)

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })

    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id

    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    structured_logger.log_event(
        "http.unhandled_exception",
        level="ERROR",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Please try again later."
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    structured_logger.log_event(
        "validation.error",
        level="WARN",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"error": "validation_failed", "detail": _json_safe_errors(exc.errors())}
    )


def _json_safe_errors(errors) -> list[dict[str, Any]]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in errors]


backend_start_time = datetime.now(timezone.utc)


@app.on_event("startup")
async def startup_event():
    print("=" * 60)
    print("🚀 Starting Classroom MDM realtime server...")
    print(f"⏰ Startup time: {backend_start_time.isoformat()}")
    print("=" * 60)

    is_valid, errors, warnings = config.validate()
    for warning in warnings:
        structured_logger.log_event("config.warning", level="WARN", message=warning)
    if not is_valid:
        for error in errors:
            structured_logger.log_event("config.error", level="ERROR", message=error)
        raise RuntimeError(f"Invalid configuration: {'; '.join(errors)}")
    config.print_config_summary()

    init_db()
    print("✅ Database initialized")

    try:
        await background_tasks.start()
        structured_logger.log_event("startup.background_tasks.started")
    except Exception as e:
        structured_logger.log_event(
            "startup.background_tasks.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )
        print(f"⚠️  Background tasks failed to start: {e}")

    print("✅ Server started")


@app.on_event("shutdown")
async def shutdown_event():
    await background_tasks.stop()
    await gateway.close_all()
    await webhook_notifier.drain()
    structured_logger.log_event("shutdown.completed")


def _require_device(db: Session, device_id: str):
    try:
        return get_device(db, device_id)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")


def _decode_or_400(body: DispatchRequest):
    try:
        return decode_command({"type": body.type, "payload": body.payload})
    except ValidationError as e:
        structured_logger.log_event("command.rejected", level="WARN", type=body.type, errors=e.error_count())
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_command", "errors": _json_safe_errors(e.errors())}
        )


def _fire_webhook(event: str, payload: dict[str, Any]) -> None:
    with best_effort("webhook.schedule", webhook_event=event):
        webhook_notifier.fire(event, payload)


async def _broadcast_policy_change(db: Session, payload: dict[str, Any]) -> int:
    """Queue a POLICY_CHANGE carrying only the changed global fields for every device."""
    if not payload:
        return 0
    device_ids = list_device_ids(db)
    await broadcast_command(db, command_queue, gateway, device_ids, policy_change(payload))
    return len(device_ids)


@app.get("/healthz")
async def health_check():
    """Liveness check - returns 200 if process is alive."""
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "gateway": gateway.get_statistics(),
        "background_tasks": background_tasks.running,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus-compatible metrics endpoint"""
    stats = gateway.get_statistics()
    metrics.set_gauge("gateway_device_connections", stats["active_devices"])
    metrics.set_gauge("gateway_admin_connections", stats["active_admins"])

    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


# --- Devices ---

@app.post("/api/devices/register")
async def register(body: RegisterDeviceRequest, db: Session = Depends(get_db)):
    device, created = register_device(
        db,
        body.device_id,
        name=body.name,
        model=body.model,
        os_version=body.os_version,
        app_version=body.app_version,
    )
    snapshot = device_snapshot(db, device.id)

    await gateway.notify_admins(DEVICE_UPDATED, snapshot)
    _fire_webhook("device.registered", {
        "deviceId": device.id,
        "name": device.name,
        "model": device.model,
        "osVersion": device.os_version,
        "appVersion": device.app_version,
    })

    return {"success": True, "created": created, "device": snapshot}


@app.get("/api/devices")
async def list_devices(db: Session = Depends(get_db)):
    return list_snapshots(db)


@app.post("/api/devices/commands/broadcast")
async def broadcast(body: DispatchRequest, db: Session = Depends(get_db)):
    command = _decode_or_400(body)
    device_ids = list_device_ids(db)
    command_ids = await broadcast_command(db, command_queue, gateway, device_ids, command)

    _fire_webhook("command.broadcast", {"type": command.type, "deviceCount": len(device_ids)})
    return {"success": True, "sentTo": len(device_ids), "ids": command_ids}


@app.get("/api/devices/{device_id}")
async def get_device_snapshot(device_id: str, db: Session = Depends(get_db)):
    snapshot = device_snapshot(db, device_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return snapshot


@app.delete("/api/devices/{device_id}")
async def remove_device(device_id: str, db: Session = Depends(get_db)):
    try:
        delete_device(db, device_id)
    except DeviceNotFoundError:
        raise HTTPException(status_code=404, detail="Device not found")

    _fire_webhook("device.deleted", {"deviceId": device_id})
    return {"success": True}


@app.put("/api/devices/{device_id}/heartbeat")
async def http_heartbeat(device_id: str, body: Optional[HeartbeatRequest] = None, db: Session = Depends(get_db)):
    """HTTP twin of the DEVICE_HEARTBEAT socket event."""
    observed_url = body.current_url if body is not None else None
    if not presence.touch(db, device_id, observed_url=observed_url):
        raise HTTPException(status_code=404, detail="Device not found")

    snapshot = device_snapshot(db, device_id)
    await gateway.notify_admins(DEVICE_UPDATED, snapshot)
    _fire_webhook("device.heartbeat", {
        "deviceId": device_id,
        "lastSeen": snapshot["lastSeen"],
        "currentUrl": snapshot["currentUrl"],
        "status": snapshot["status"],
    })
    return {"success": True}


@app.put("/api/devices/{device_id}/policies")
async def update_device_policy(device_id: str, body: DevicePolicyUpdate, db: Session = Depends(get_db)):
    _require_device(db, device_id)
    partial = body.model_dump(exclude_unset=True)

    try:
        policy = merge_device_policy(db, device_id, partial)
    except PolicyNotFoundError:
        raise HTTPException(status_code=404, detail="Device policy not found")

    command_id = await dispatch_command(
        db, command_queue, gateway, device_id, policy_change(policy_command_payload(policy))
    )
    await gateway.notify_admins(DEVICE_UPDATED, device_snapshot(db, device_id))

    policy_data = policy_to_dict(policy)
    _fire_webhook("policy.updated", {
        "deviceId": device_id,
        "kioskMode": policy_data["kioskMode"],
        "hasUnlockPin": policy_data["hasUnlockPin"],
        "blockedDomainsCount": len(policy_data["blockedDomains"]),
        "allowedAppsCount": len(policy_data["allowedApps"]),
        "blockedAppsCount": len(policy_data["blockedApps"]),
    })
    return {"success": True, "policy": policy_data, "commandId": command_id}


# --- Commands ---

@app.post("/api/devices/{device_id}/commands")
async def send_command(device_id: str, body: DispatchRequest, db: Session = Depends(get_db)):
    _require_device(db, device_id)
    command = _decode_or_400(body)

    command_id = await dispatch_command(db, command_queue, gateway, device_id, command)

    with best_effort("activity.command_sent", device_id=device_id, command_id=command_id):
        record_activity(db, device_id, "COMMAND_SENT", {
            "type": command.type,
            "payload": command.wire_payload(),
            "source": "panel",
            "commandId": command_id,
        })
    _fire_webhook("command.sent", {
        "deviceId": device_id,
        "type": command.type,
        "payload": command.wire_payload(),
    })
    return {"success": True, "id": command_id}


@app.get("/api/devices/{device_id}/commands/pending")
async def pending_commands(device_id: str, db: Session = Depends(get_db)):
    _require_device(db, device_id)
    return [pending_to_dict(c) for c in command_queue.list_pending(db, device_id)]


@app.post("/api/devices/{device_id}/commands/ack")
async def ack_commands(device_id: str, body: AckRequest, db: Session = Depends(get_db)):
    if not body.command_ids:
        raise HTTPException(status_code=400, detail="commandIds array is required")
    _require_device(db, device_id)

    acked = command_queue.ack(db, device_id, body.command_ids)
    return {"success": True, "acked": acked}


# --- Activity ---

def _details_url(details: Any) -> Optional[str]:
    if isinstance(details, dict) and details.get("url"):
        return str(details["url"])
    if isinstance(details, str):
        try:
            parsed = json.loads(details)
        except ValueError:
            return None
        if isinstance(parsed, dict) and parsed.get("url"):
            return str(parsed["url"])
    return None


@app.post("/api/devices/{device_id}/activity", status_code=201)
async def report_activity(device_id: str, body: ActivityRequest, db: Session = Depends(get_db)):
    device = _require_device(db, device_id)
    device_name = device.name or device_id
    log = record_activity(db, device_id, body.action, body.details)
    entry = activity_to_dict(log)
    url = _details_url(body.details)

    if log.action == "URL_CHANGED" and url:
        presence.touch(db, device_id, observed_url=url)
        await gateway.notify_admins(DEVICE_UPDATED, device_snapshot(db, device_id))

    elif log.action in ("SCREEN_LOCKED", "SCREEN_UNLOCKED"):
        presence.mark_locked(db, device_id, locked=log.action == "SCREEN_LOCKED")
        await gateway.notify_admins(DEVICE_UPDATED, device_snapshot(db, device_id))

    elif log.action == "BLOCKED_SITE":
        blocked_url = url or "blocked site"
        with best_effort("notification.blocked_site", device_id=device_id):
            create_notification(
                db,
                device_id,
                type="warning",
                title="Blocked site access attempt",
                message=f"{device_name} tried to open: {blocked_url}",
            )
        await gateway.notify_admins(BLOCKED_SITE_ATTEMPT, {
            "deviceId": device_id,
            "deviceName": device_name,
            "url": blocked_url,
            "timestamp": int(time.time() * 1000),
        })

    await gateway.notify_admins(DEVICE_ACTIVITY, {**entry, "deviceName": device_name})
    _fire_webhook("device.activity", {
        "deviceId": device_id,
        "deviceName": device_name,
        "action": entry["action"],
        "details": entry["details"],
        "logId": entry["id"],
    })
    return entry


@app.get("/api/devices/{device_id}/activity")
async def activity_history(device_id: str, limit: int = Query(100, ge=1), db: Session = Depends(get_db)):
    _require_device(db, device_id)
    return [activity_to_dict(log) for log in list_activity(db, device_id, min(limit, ACTIVITY_HISTORY_MAX))]


@app.post("/api/devices/{device_id}/unlock-validate")
async def unlock_validate(device_id: str, body: UnlockValidateRequest, db: Session = Depends(get_db)):
    _require_device(db, device_id)
    try:
        policy = get_device_policy(db, device_id)
    except PolicyNotFoundError:
        raise HTTPException(status_code=404, detail="Device policy not found")

    if policy.unlock_pin_hash is None:
        raise HTTPException(status_code=400, detail="Unlock PIN not configured for this device")
    if not verify_unlock_pin(policy, body.pin):
        structured_logger.log_event("unlock.invalid_pin", level="WARN", device_id=device_id)
        metrics.inc_counter("unlock_failures_total")
        raise HTTPException(status_code=401, detail="Invalid PIN")

    structured_logger.log_event("unlock.validated", device_id=device_id)
    return {"success": True}


# --- Global policy ---

@app.get("/api/global-policies")
async def read_global_policy(db: Session = Depends(get_db)):
    policy = get_global(db)
    return {"id": policy.id, "name": policy.name, **policy_to_dict(policy)}


@app.put("/api/global-policies")
async def update_global_policy(body: GlobalPolicyUpdate, db: Session = Depends(get_db)):
    partial = body.model_dump(exclude_unset=True, exclude_none=True)
    policy = merge_global_policy(db, partial)

    sent_to = await _broadcast_policy_change(db, body.model_dump(by_alias=True, exclude_none=True))
    return {"success": True, "policy": policy_to_dict(policy), "sentTo": sent_to}


@app.post("/api/global-policies/blacklist")
async def add_to_blacklist(body: DomainRequest, db: Session = Depends(get_db)):
    try:
        updated = add_global_entry(db, "blocked_domains", body.domain)
    except DuplicateEntryError:
        raise HTTPException(status_code=400, detail="Domain already in blacklist")

    await _broadcast_policy_change(db, {"blockedDomains": updated})
    return {"success": True, "blockedDomains": updated}


@app.delete("/api/global-policies/blacklist/{domain:path}")
async def remove_from_blacklist(domain: str, db: Session = Depends(get_db)):
    updated = remove_global_entry(db, "blocked_domains", domain)
    await _broadcast_policy_change(db, {"blockedDomains": updated})
    return {"success": True, "blockedDomains": updated}


@app.post("/api/global-policies/whitelist")
async def add_to_whitelist(body: PackageRequest, db: Session = Depends(get_db)):
    try:
        updated = add_global_entry(db, "allowed_apps", body.package_name)
    except DuplicateEntryError:
        raise HTTPException(status_code=400, detail="App already in whitelist")

    await _broadcast_policy_change(db, {"allowedApps": updated})
    return {"success": True, "allowedApps": updated}


@app.delete("/api/global-policies/whitelist/{package_name}")
async def remove_from_whitelist(package_name: str, db: Session = Depends(get_db)):
    updated = remove_global_entry(db, "allowed_apps", package_name)
    await _broadcast_policy_change(db, {"allowedApps": updated})
    return {"success": True, "allowedApps": updated}


# --- Sockets ---

@app.websocket("/ws/device")
async def device_socket(websocket: WebSocket):
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                structured_logger.log_event("gateway.message.malformed", level="WARN", size=len(raw))
                continue
            await gateway.handle_device_message(websocket, message)
    except WebSocketDisconnect:
        pass
    finally:
        gateway.unregister(websocket)


@app.websocket("/ws/admin")
async def admin_socket(websocket: WebSocket):
    await websocket.accept()
    gateway.register_admin(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({"event": "pong", "data": None})
    except WebSocketDisconnect:
        pass
    finally:
        gateway.unregister(websocket)
