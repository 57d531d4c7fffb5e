"""Startup script for the realtime gateway service."""

import sys

import uvicorn

from config import config
from utils.logger import setup_logger


if __name__ == "__main__":
    logger = setup_logger(str(config.system.log_dir), config.system.log_level)

    host, port = config.gateway.host, config.gateway.port
    logger.info("=" * 60)
    logger.info("Ejunz - Realtime Gateway")
    logger.info("=" * 60)
    logger.info(f"Client WebSocket : ws://{host}:{port}/client/ws?token=...")
    logger.info(f"Edge WebSocket   : ws://{host}:{port}/mcp/ws?token=...")
    logger.info(f"Metrics          : http://{host}:{port}/metrics")

    try:
        import gateway.app  # noqa: F401
    except Exception as e:
        logger.error(f"Cannot import gateway app: {e}")
        import traceback

        logger.error(traceback.format_exc())
        logger.error("Please install dependencies first: pip install -e .")
        sys.exit(1)

    uvicorn.run(
        "gateway.app:app",
        host=host,
        port=port,
        reload=False,
        log_level=config.system.log_level.lower(),
    )
