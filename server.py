"""FastMCP entry point for the batched code reviewer."""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from prreview.config import (
    LLM_PROVIDER,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    LOG_LEVEL,
    QUIET_LOGGERS,
    SERVER_HOST,
    SERVER_NAME,
    SERVER_PORT,
    SERVER_VERSION,
)
from prreview.llm import default_model
from prreview.mcp_tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Route prreview.* batch progress, backoff and usage lines to stderr."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_server() -> FastMCP:
    """Create the FastMCP server with the review tools registered."""
    mcp = FastMCP(name=SERVER_NAME, version=SERVER_VERSION)
    register_tools(mcp)
    return mcp


configure_logging()

# Module-level server instance (used by FastMCP CLI and stdio transport)
mcp = create_server()


def main() -> None:
    """Serve the review tools over streamable HTTP."""
    logger.info(
        "Starting %s v%s on %s:%d (provider=%s, model=%s)",
        SERVER_NAME,
        SERVER_VERSION,
        SERVER_HOST,
        SERVER_PORT,
        LLM_PROVIDER,
        default_model(LLM_PROVIDER),
    )
    try:
        mcp.run(transport="streamable-http", host=SERVER_HOST, port=SERVER_PORT)
    except OSError as e:
        logger.error("Server failed to start: %s", e)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
