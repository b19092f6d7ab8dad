"""FastAPI application exposing bridge status and the operator actions (rediscover, device commands)."""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from powerview_bridge.const import POWERVIEW_API_HOST, POWERVIEW_API_PORT, POWERVIEW_VERSION
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.structs import DeviceLink, GlobalObject

if TYPE_CHECKING:
    from powerview_bridge.bridge import PowerViewBridge

g = GlobalObject()
logger = get_logger(__name__)


class CommandRequest(BaseModel):
    """Body of a device command: target value 0-100."""

    value: float = Field(ge=0, le=100)


app = FastAPI(title="PowerView Bridge", version=POWERVIEW_VERSION)


def _masked_http_exception(operation: str, exc: Exception, user_message: str) -> HTTPException:
    """Log full details server-side and return an HTTPException with only an error id."""
    error_id = uuid.uuid4().hex[:8]
    logger.exception("%s error_id=%s unexpected error: %s", operation, error_id, exc)
    return HTTPException(status_code=500, detail={"error_id": error_id, "message": user_message})


def _bridge() -> PowerViewBridge:
    if g.bridge is None:
        raise HTTPException(status_code=503, detail="Bridge not initialized")
    return g.bridge


@app.get("/api/healthcheck")
async def health_check() -> dict[str, Any]:
    bridge = g.bridge
    return {
        "status": "ok",
        "version": POWERVIEW_VERSION,
        "degraded": bridge.degraded if bridge is not None else True,
        "mqtt_connected": bool(g.mqtt_client and g.mqtt_client.is_connected),
    }


@app.get("/api/hubs")
async def list_hubs() -> list[dict[str, Any]]:
    """Every known hub with its learned capabilities."""
    return [
        {
            "address": hub.address,
            "role": str(hub.role),
            "can_list_scenes": hub.can_list_scenes,
            "can_set_position": hub.can_set_position,
            "polled": hub.poller is not None,
            "polling": hub.poller is not None and hub.poller.active,
            "discovery_in_progress": hub.discovery_in_progress,
            "covered_gateways": sorted(hub.covered_gateways),
        }
        for hub in _bridge().hubs.values()
    ]


@app.get("/api/devices")
async def list_devices() -> list[dict[str, Any]]:
    projection = _bridge().projection
    devices: list[dict[str, Any]] = []
    for ref in sorted(projection.refs()):
        device = projection.get(ref)
        if device is None:
            continue
        link = DeviceLink.from_metadata(device.metadata)
        devices.append(
            {
                "ref": device.ref,
                "name": device.name,
                "group": device.group,
                "parent_ref": device.parent_ref,
                "value": device.value,
                "display": device.display,
                "kind": str(link.kind) if link else None,
                "hub": link.hub if link else None,
                "remote_id": link.remote_id if link else None,
            }
        )
    return devices


@app.post("/api/rediscover")
async def rediscover() -> dict[str, Any]:
    """Delete every device and discover all hubs again."""
    bridge = _bridge()
    try:
        results = await bridge.rediscover()
    except Exception as e:
        raise _masked_http_exception(
            "Rediscover failed",
            e,
            "Rediscovery failed. Check server logs with the provided error ID.",
        ) from e
    return {
        "success": all(r.error is None for r in results),
        "hubs": [
            {
                "hub": r.hub,
                "not_primary": r.not_primary,
                "error": r.error,
                "created": r.created,
                "deleted": r.deleted,
                "failed": r.failed,
            }
            for r in results
        ],
    }


@app.post("/api/devices/{ref}/command")
async def command_device(ref: int, request: CommandRequest) -> dict[str, Any]:
    bridge = _bridge()
    if not bridge.projection.exists(ref):
        raise HTTPException(status_code=404, detail=f"Device {ref} not found")
    ok = await bridge.execute_command(ref, request.value)
    return {"success": ok, "ref": ref, "value": request.value}


class StatusAPIServer:
    """Singleton class managing the uvicorn server lifecycle."""

    lp = "StatusAPIServer:"
    running: bool = False
    start_task: asyncio.Task[None] | None = None
    _instance: StatusAPIServer | None = None

    def __new__(cls, *_args: object, **_kwargs: object) -> StatusAPIServer:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, host: str | None = None, port: int | None = None) -> None:
        self.app = app
        self.host: str = host or POWERVIEW_API_HOST
        self.port: int = port or POWERVIEW_API_PORT
        self.uvi_server = uvicorn.Server(
            config=uvicorn.Config(
                app,
                host=self.host,
                port=self.port,
                log_config={
                    "version": 1,
                    "disable_existing_loggers": False,
                },
                log_level="info",
            )
        )

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        logger.info("%s Starting status API on %s:%s", lp, self.host, self.port)
        self.running = True
        try:
            await self.uvi_server.serve()
        except asyncio.CancelledError:
            logger.info("%s Status API stopped", lp)
            raise
        except Exception:
            logger.exception("%s Error running status API", lp)
        finally:
            self.running = False

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        logger.info("%s Stopping status API...", lp)
        self.uvi_server.should_exit = True
        if self.start_task and not self.start_task.done():
            done, _ = await asyncio.wait({self.start_task}, timeout=5)
            if not done:
                logger.warning("%s Status API did not exit in time, cancelling", lp)
                _ = self.start_task.cancel()
        self.running = False
