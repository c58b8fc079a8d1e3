from __future__ import annotations

import asyncio
import logging
import os

from fastapi import FastAPI, HTTPException

from .bridge import Bridge
from .errors import BridgeError
from .redact import mask
from .settings import Settings, load_settings, read_options

_LOGGER = logging.getLogger("nea_addon")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

ADDON_VERSION = "0.3.0"


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "nea_addon",
        "nea_bridge",
        "nea_cloud",
        "nea_session",
        "nea_reconciler",
        "nea_commands",
        "nea_scheduler",
        "nea_mqtt",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(name).setLevel(level)

    # paho is noisy at DEBUG: only follow the debug flag as far as INFO
    logging.getLogger("paho").setLevel(logging.INFO if debug else logging.WARNING)


def create_app(*, settings: Settings | None = None, bridge: Bridge | None = None) -> FastAPI:
    api = FastAPI(title="NEA Smart MQTT bridge", version=ADDON_VERSION)

    if settings is None:
        settings = bridge.settings if bridge is not None else load_settings(read_options())
    api.state.settings = settings
    _configure_logging(settings.debug)

    if bridge is None:
        bridge = Bridge(settings)
    api.state.bridge = bridge

    @api.on_event("startup")
    async def _startup() -> None:
        if not settings.cloud.email or not settings.cloud.password:
            _LOGGER.error("Cloud email/password not configured; set them in the add-on options")
        _LOGGER.info(
            "NEA Smart bridge %s starting for %s (poll every %.0fs)",
            ADDON_VERSION,
            mask(settings.cloud.email),
            settings.intervals.poll_s,
        )
        await bridge.start()

    @api.on_event("shutdown")
    async def _shutdown() -> None:
        await bridge.stop()

    @api.get("/health")
    async def health():
        if bridge.fatal_error:
            raise HTTPException(status_code=503, detail="cloud login rejected")
        return {"status": "ok"}

    @api.get("/api/status")
    async def status():
        return {"version": ADDON_VERSION, **bridge.status()}

    @api.get("/api/zones")
    async def zones():
        return {"zones": bridge.zones()}

    @api.get("/api/zones/{zone_id}")
    async def zone(zone_id: str):
        snap = bridge.store.snapshot(zone_id)
        if snap is None:
            raise HTTPException(status_code=404, detail=f"unknown zone {zone_id}")
        return snap

    @api.post("/api/poll")
    async def poll_now():
        try:
            await bridge.poll()
        except BridgeError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"ok": True, "zones": len(bridge.store)}

    return api


def main() -> None:
    import uvicorn

    settings = load_settings(read_options())
    app = create_app(settings=settings)

    async def _serve() -> None:
        cfg = uvicorn.Config(app, host="0.0.0.0", port=settings.api_port, log_level="info")
        await uvicorn.Server(cfg).serve()

    asyncio.run(_serve())


if __name__ == "__main__":
    main()
