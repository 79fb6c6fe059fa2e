"""Utility modules for the SQL Server MCP server."""

from mssql_mcp.utils.serialization import (
    dumps,
    loads,
    normalize_row,
    normalize_value,
)

__all__ = [
    "normalize_value",
    "normalize_row",
    "dumps",
    "loads",
]
