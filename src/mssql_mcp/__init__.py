"""
mssql_mcp - SQL Server MCP server

A Model Context Protocol (MCP) server that executes queries and stored
procedures against Microsoft SQL Server and exposes schema metadata as
resources.
"""

__version__ = "1.0.0"

from .models.config import DatabaseConfig
from .models.metadata import ProcedureInfo, SchemaInfo, TableInfo, ViewInfo
from .models.query import QueryResult, QueryResultSummary

__all__ = [
    "DatabaseConfig",
    "QueryResult",
    "QueryResultSummary",
    "SchemaInfo",
    "TableInfo",
    "ViewInfo",
    "ProcedureInfo",
]
