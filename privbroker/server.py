"""
Privilege Broker - MCP Server
Entry point for the MCP server.
"""
import logging
import sys

from mcp.server.fastmcp import FastMCP

from .core import config
from .tools import register_tools

# Create MCP server instance
mcp = FastMCP("PrivilegeBroker")
register_tools(mcp)


def main():
    """Main entry point for script execution."""
    # stdout carries the stdio transport
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()
