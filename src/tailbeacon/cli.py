import logging
import sys

import uvicorn

from tailbeacon.bridge_app import create_app
from tailbeacon.config import ConfigurationError, load_config
from tailbeacon.ports import PortBindError, bind_port

logger = logging.getLogger("tailbeacon")


def _print_banner(config, port: int) -> None:
    display_host = "127.0.0.1" if config.host == "0.0.0.0" else config.host
    logger.info("tailbeacon bridge listening on http://%s:%d", config.host, port)
    logger.info("streaming: %s", config.events_path)
    logger.info(
        "lan_mode=%s auth_required=%s",
        "on" if config.allow_lan else "off",
        "yes" if config.require_token else "no",
    )
    if config.require_token:
        logger.info("bridge_token=%s", config.token)
    logger.info(
        "client config: host=%s port=%d token=%s",
        display_host, port, config.token or "",
    )


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_config()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    logging.getLogger().setLevel(config.log_level.upper())

    try:
        sock = bind_port(
            config.host,
            config.port,
            scan_limit=config.port_scan_limit,
            auto_port=config.auto_port,
        )
    except PortBindError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    port = sock.getsockname()[1]
    app = create_app(config)
    app.state.port = port
    _print_banner(config, port)

    server = uvicorn.Server(uvicorn.Config(app, log_level=config.log_level))
    server.run(sockets=[sock])
