"""Core functionality for the SQL Server MCP server."""

from .cache import CacheKey, MetadataKind, ResourceCache
from .connection import DatabaseConnection
from .executor import QueryExecutor
from .explorer import ExplorerError, SchemaExplorer
from .inspector import MetadataInspector
from .resources import (
    ResourceLocator,
    ResourceRouter,
    UnknownResourceError,
    parse_resource_uri,
)
from .validation import InjectionGuard, is_safe_identifier, is_write_operation

__all__ = [
    "DatabaseConnection",
    "QueryExecutor",
    "InjectionGuard",
    "is_safe_identifier",
    "is_write_operation",
    "MetadataInspector",
    "CacheKey",
    "MetadataKind",
    "ResourceCache",
    "ResourceLocator",
    "ResourceRouter",
    "UnknownResourceError",
    "parse_resource_uri",
    "SchemaExplorer",
    "ExplorerError",
]
