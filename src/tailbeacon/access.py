from __future__ import annotations

import logging
import secrets
from typing import Dict, Mapping, Optional
from urllib.parse import urlsplit

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tailbeacon.config import BridgeConfig, is_loopback_host

logger = logging.getLogger(__name__)

TOKEN_QUERY_PARAM = "token"
TOKEN_HEADER = "x-tailbeacon-token"
PUBLIC_PATHS = ("/health",)

CORS_ALLOW_METHODS = "GET, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-Tailbeacon-Token"
AUTH_CHALLENGE = 'Bearer realm="tailbeacon-bridge"'


def origin_hostname(origin: str) -> Optional[str]:
    try:
        host = urlsplit(origin).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def is_loopback_origin(origin: str) -> bool:
    host = origin_hostname(origin)
    return host is not None and is_loopback_host(host)


def extract_token(query_params: Mapping[str, str], headers: Mapping[str, str]) -> str:
    """Token lookup order: ?token=, then X-Tailbeacon-Token, then Authorization: Bearer."""
    query_token = str(query_params.get(TOKEN_QUERY_PARAM) or "").strip()
    if query_token:
        return query_token

    header_token = str(headers.get(TOKEN_HEADER) or "").strip()
    if header_token:
        return header_token

    auth = str(headers.get("authorization") or "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


class AccessGate:
    """Per-request token and CORS policy, derived from the startup config."""

    def __init__(self, config: BridgeConfig):
        self.require_token = config.require_token
        self._token = config.token
        self.allowed_origins = tuple(config.allowed_origins)
        self.allow_lan = config.allow_lan

    def is_authorized(self, request: Request) -> bool:
        if not self.require_token:
            return True
        token = extract_token(request.query_params, request.headers)
        return bool(token) and secrets.compare_digest(token.encode(), self._token.encode())

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        if not origin:
            return True
        if self.allowed_origins:
            return origin in self.allowed_origins
        if self.allow_lan:
            # no allow-list in LAN mode: fail closed
            return False
        return is_loopback_origin(origin)

    def cors_headers(self, origin: Optional[str]) -> Dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        }
        if origin:
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
        return headers


class AccessGateMiddleware(BaseHTTPMiddleware):
    """
    Applies the AccessGate to every request.

    Order: origin check (403), preflight (204), token check for every path
    except the public ones (401), then the route. Unknown paths are behind
    the token check too, so a 404 is only visible to authorized callers.
    """

    def __init__(self, app, *, gate: AccessGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("origin")
        if not self.gate.is_origin_allowed(origin):
            logger.debug("rejected origin %s for %s", origin, request.url.path)
            return JSONResponse({"error": "origin not allowed"}, status_code=403)

        cors = self.gate.cors_headers(origin)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors)

        authorized = self.gate.is_authorized(request)
        request.state.authorized = authorized
        if not authorized and request.url.path not in PUBLIC_PATHS:
            headers = dict(cors)
            headers["WWW-Authenticate"] = AUTH_CHALLENGE
            return JSONResponse({"error": "unauthorized"}, status_code=401, headers=headers)

        resp = await call_next(request)
        for key, val in cors.items():
            resp.headers[key] = val
        return resp
