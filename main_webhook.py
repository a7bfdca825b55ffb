#!/usr/bin/env python3

import logging

import uvicorn

from notifications.webhook import create_application
from utils import common_args
from utils.config import Config

logger = logging.getLogger("layer-describer")


def _main() -> None:
    parser = common_args(
        "Receive registry notifications and describe the layers of opted-in images",
    )
    args = parser.parse_args()

    config = Config.from_env().with_overrides(
        http_address=args.address,
        registry_address=args.registry,
        log_level=args.loglevel,
    )

    logging.basicConfig(
        level=config.log_level,
        datefmt="%Y-%m-%d %H:%M:%S",
        format="[%(asctime)s] [%(levelname)-8s] [%(name)-10s] %(message)s",
    )
    # https likes to log at INFO, reduce that
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    host, port = config.listen_host_port
    logger.info(f"Starting http server on {host}:{port}")

    uvicorn.run(
        create_application(config),
        host=host,
        port=port,
        # Keep the logging configured above
        log_config=None,
    )

    logger.info("Server stopped")


if __name__ == "__main__":
    try:
        _main()
    finally:
        logging.shutdown()
