"""MCP server layer for memcp (FastMCP tools over stdio)."""
