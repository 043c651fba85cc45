"""
Main module for the chat relay server.
"""

from __future__ import annotations

import structlog
import uvicorn

from chat_relay.config import Configuration
from chat_relay.gateway import create_app
from chat_relay.logging_utils import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    """Main entry point - serve the gateway with uvicorn."""
    config = Configuration()

    logging_config = config.get_logging_config()
    configure_logging(logging_config["level"], logging_config["json"])

    gateway_config = config.get_gateway_config()
    app = create_app(config)

    logger.info(
        "Starting chat relay",
        host=gateway_config["host"],
        port=gateway_config["port"],
        path=gateway_config["path"],
    )
    uvicorn.run(
        app,
        host=gateway_config["host"],
        port=gateway_config["port"],
        log_level=logging_config["level"].lower(),
    )


if __name__ == "__main__":
    main()
