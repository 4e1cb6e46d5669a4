from __future__ import annotations

import errno
import logging
import socket
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PortBindError(Exception):
    """No port in the scan window could be bound."""

    def __init__(self, host: str, first_port: int, last_port: int, cause: Optional[BaseException] = None):
        self.host = host
        self.first_port = first_port
        self.last_port = last_port
        self.cause = cause
        reason = getattr(cause, "strerror", None) or (str(cause) if cause else "unknown error")
        super().__init__(
            f"Failed to bind {host} on ports {first_port}-{last_port} ({reason})"
        )


def _make_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def bind_port(
    host: str,
    preferred_port: int,
    *,
    scan_limit: int = 20,
    auto_port: bool = True,
    make_socket: Callable[[str, int], socket.socket] = _make_socket,
) -> socket.socket:
    """
    Bind a listening socket on `preferred_port`, or the next free port.

    Only "address in use" moves on to the next port, and only while the
    scan window (preferred_port .. preferred_port + scan_limit) lasts.
    Any other bind failure, or an exhausted window, raises PortBindError.
    """
    last_port = preferred_port + (max(0, scan_limit) if auto_port else 0)
    port = preferred_port
    while True:
        try:
            return make_socket(host, port)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE or port >= last_port:
                raise PortBindError(host, preferred_port, port, exc) from exc
            logger.warning("port %d is busy, retrying on %d...", port, port + 1)
            port += 1
