from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

# ----------------------------
# Config
# ----------------------------
# Every TAILBEACON_* variable is read here and nowhere else. The resulting
# BridgeConfig is built once at startup and handed to each component.

ENV_PREFIX = "TAILBEACON_"

DEFAULT_PORT = 8123
DEFAULT_PORT_SCAN_LIMIT = 20
DEFAULT_SNAPSHOT_LINES = 200
SNAPSHOT_MIN = 1
SNAPSHOT_MAX = 2000
DEFAULT_POLL_MS = 500
DEFAULT_KEEPALIVE_MS = 15000
EVENTS_FILENAME = "events.jsonl"
LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


class ConfigurationError(Exception):
    """Raised when startup configuration is missing or invalid."""


def is_loopback_host(host: Optional[str]) -> bool:
    h = str(host or "").strip().lower()
    return h in ("127.0.0.1", "localhost", "::1")


def clamp_snapshot_lines(n: int) -> int:
    return max(SNAPSHOT_MIN, min(SNAPSHOT_MAX, int(n)))


@dataclass(frozen=True)
class BridgeConfig:
    events_path: str
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    auto_port: bool = True
    port_scan_limit: int = DEFAULT_PORT_SCAN_LIMIT
    allow_lan: bool = False
    require_token: bool = False
    token: str = ""
    allowed_origins: Tuple[str, ...] = field(default_factory=tuple)
    snapshot_lines: int = DEFAULT_SNAPSHOT_LINES
    poll_interval: float = DEFAULT_POLL_MS / 1000.0
    keepalive_interval: float = DEFAULT_KEEPALIVE_MS / 1000.0
    log_level: str = "info"

    def __post_init__(self):
        if not self.allow_lan and not is_loopback_host(self.host):
            raise ConfigurationError(
                f"Refusing non-loopback host {self.host!r} without {ENV_PREFIX}ALLOW_LAN=1. "
                f"Set {ENV_PREFIX}ALLOW_LAN=1 to expose the bridge on the LAN."
            )
        if self.require_token and not self.token:
            raise ConfigurationError("A token is required but none was configured.")
        if self.poll_interval <= 0 or self.keepalive_interval <= 0:
            raise ConfigurationError("Poll and keepalive intervals must be positive.")
        if self.port_scan_limit < 0:
            raise ConfigurationError("Port scan limit must not be negative.")
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level {self.log_level!r}; use one of {', '.join(LOG_LEVELS)}.")
        object.__setattr__(self, "snapshot_lines", clamp_snapshot_lines(self.snapshot_lines))

    @property
    def cors_fail_closed(self) -> bool:
        """LAN mode with no explicit allow-list: browsers get no cross-origin access."""
        return self.allow_lan and not self.allowed_origins


def _env(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return str(environ.get(ENV_PREFIX + name, default)).strip()


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = _env(environ, name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer value for {ENV_PREFIX}{name}: {value}")


def _env_flag(environ: Mapping[str, str], name: str) -> Optional[bool]:
    value = _env(environ, name)
    if not value:
        return None
    return value.lower() in ("1", "true", "yes", "on")


def default_events_path(environ: Mapping[str, str]) -> str:
    workspace = _env(environ, "WORKSPACE")
    if workspace:
        return os.path.join(workspace, EVENTS_FILENAME)
    return os.path.join(os.path.expanduser("~"), ".tailbeacon", EVENTS_FILENAME)


def load_config(environ: Optional[Mapping[str, str]] = None) -> BridgeConfig:
    """
    Build the bridge configuration from environment variables.

    Token policy: a token is required in LAN mode or whenever one is
    configured. REQUIRE_TOKEN overrides that default in either direction.
    A required token that was not supplied is generated here, once.
    """
    environ = os.environ if environ is None else environ

    allow_lan = bool(_env_flag(environ, "ALLOW_LAN"))
    host = _env(environ, "HOST") or ("0.0.0.0" if allow_lan else "127.0.0.1")

    token = _env(environ, "TOKEN")
    require_flag = _env_flag(environ, "REQUIRE_TOKEN")
    require_token = (allow_lan or bool(token)) if require_flag is None else require_flag
    if require_token and not token:
        token = secrets.token_hex(18)

    auto_port = _env_flag(environ, "AUTOPORT")
    origins = tuple(o.strip() for o in _env(environ, "ALLOWED_ORIGIN").split(",") if o.strip())

    return BridgeConfig(
        events_path=_env(environ, "EVENTS_PATH") or default_events_path(environ),
        host=host,
        port=_env_int(environ, "PORT", DEFAULT_PORT),
        auto_port=True if auto_port is None else auto_port,
        port_scan_limit=max(0, _env_int(environ, "PORT_SCAN_LIMIT", DEFAULT_PORT_SCAN_LIMIT)),
        allow_lan=allow_lan,
        require_token=require_token,
        token=token,
        allowed_origins=origins,
        snapshot_lines=_env_int(environ, "SNAPSHOT_LINES", DEFAULT_SNAPSHOT_LINES),
        poll_interval=_env_int(environ, "POLL_MS", DEFAULT_POLL_MS) / 1000.0,
        keepalive_interval=_env_int(environ, "KEEPALIVE_MS", DEFAULT_KEEPALIVE_MS) / 1000.0,
        log_level=_env(environ, "LOG_LEVEL", "info").lower() or "info",
    )
