"""
stdio runner: newline-delimited JSON-RPC on stdin/stdout.

    python -m sqlgate.services.gateway

stdout carries protocol messages only, so logs go to stderr. The caller
identity comes from SQLGATE_STDIO_USER (default "stdio").
"""

import asyncio
import json
import logging
import os
import sys

import structlog

from sqlgate.services.gateway.components import build_components
from sqlgate.services.gateway.dispatcher import Dispatcher
from sqlgate.services.shared.config import load_config
from sqlgate.services.shared.database import create_all_tables

STDIO_USER: str = os.getenv("SQLGATE_STDIO_USER", "stdio")

logger = structlog.get_logger()


def _configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stderr))


async def serve(dispatcher: Dispatcher, reader=sys.stdin, writer=sys.stdout) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, reader.readline)
        if not line:
            break
        if not line.strip():
            continue
        response = await dispatcher.handle_raw(line, caller=STDIO_USER)
        if response is not None:
            writer.write(json.dumps(response, default=str) + "\n")
            writer.flush()


def main() -> None:
    _configure_logging()
    config = load_config()
    create_all_tables()
    components = build_components(config)
    logger.info("sqlgate_stdio_ready", databases=sorted(config.databases))
    try:
        asyncio.run(serve(Dispatcher(components)))
    finally:
        components.backend.dispose()
        logger.info("sqlgate_stdio_stopped")


if __name__ == "__main__":
    main()
