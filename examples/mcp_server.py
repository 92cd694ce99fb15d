#!/usr/bin/env python3
"""Minimal MCP server exposing a 'word_count' tool.

Runs over stdio transport and is used by mcp_loop.py.

Run standalone:
    python examples/mcp_server.py
"""

from mcp.server.fastmcp import FastMCP

server = FastMCP("text-tools")


@server.tool()
def word_count(text: str) -> int:
    """Count the words in a piece of text."""
    return len(text.split())


if __name__ == "__main__":
    server.run(transport="stdio")
