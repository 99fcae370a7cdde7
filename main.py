"""Autotask MCP server entry point"""
import logging
import sys

from autotask_mcp.config import settings

# stdout carries the stdio MCP protocol, so logs go to stderr
logging.basicConfig(
    level=settings.log_level.upper(),
    stream=sys.stderr,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    errors = settings.validate_config()
    for error in errors:
        logger.error(f"Configuration error: {error}")
    if settings.transport not in ("stdio", "http"):
        sys.exit(1)
    if errors:
        logger.warning("Starting anyway; tools will fail until credentials are configured")

    mode = "multi-tenant" if settings.multi_tenant_enabled else "single-tenant"
    logger.info(f"Starting {settings.server_name} {settings.server_version} ({mode}, {settings.transport})")

    if settings.transport == "http":
        import uvicorn
        from autotask_mcp.server import app

        uvicorn.run(app, host=settings.host, port=settings.port)
    else:
        from autotask_mcp.tools import mcp

        mcp.run()


if __name__ == "__main__":
    main()
