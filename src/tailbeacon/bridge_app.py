from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from tailbeacon.access import AccessGate, AccessGateMiddleware
from tailbeacon.config import BridgeConfig, clamp_snapshot_lines
from tailbeacon.session import StreamSession
from tailbeacon.tail_source import read_snapshot_lines

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    # disables proxy buffering where present
    "X-Accel-Buffering": "no",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_app(config: BridgeConfig) -> FastAPI:
    """
    Build the bridge HTTP app around one immutable config.

    The actual listening port is written to app.state.port by the CLI once
    the socket is bound; /health reports it.
    """
    app = FastAPI(title="tailbeacon bridge", docs_url=None, redoc_url=None, openapi_url=None)
    gate = AccessGate(config)
    app.state.config = config
    app.state.gate = gate
    app.state.port = config.port
    app.add_middleware(AccessGateMiddleware, gate=gate)

    if config.cors_fail_closed:
        logger.warning(
            "LAN mode with no allowed origin configured: browser clients will be "
            "blocked by CORS. Set TAILBEACON_ALLOWED_ORIGIN to allow them."
        )

    # ----------------------------
    # Routes
    # ----------------------------
    @app.get("/health")
    def health(request: Request):
        authorized = getattr(request.state, "authorized", False)
        body = {
            "ok": True,
            "now": _now_iso(),
            "auth_required": config.require_token,
            "lan_mode": config.allow_lan,
            "host": config.host,
            "port": app.state.port,
        }
        if authorized:
            body["events_path"] = config.events_path
        return body

    @app.get("/snapshot")
    async def snapshot(n: Optional[str] = None):
        try:
            count = clamp_snapshot_lines(int(n)) if n else config.snapshot_lines
        except ValueError:
            count = config.snapshot_lines
        lines = await asyncio.to_thread(read_snapshot_lines, config.events_path, count)
        return {"lines": lines}

    @app.get("/events")
    async def events(request: Request):
        # opens lazily on first iteration
        session = StreamSession(config)
        return StreamingResponse(
            session.frames(is_disconnected=request.is_disconnected),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.exception_handler(404)
    async def not_found(request: Request, exc):
        return JSONResponse({"error": "not found"}, status_code=404)

    return app
