"""Pydantic models for configuration, query results and schema metadata."""

from .config import DatabaseConfig
from .metadata import (
    ColumnInfo,
    ForeignKeyInfo,
    ObjectDefinition,
    ParameterInfo,
    ProcedureInfo,
    SchemaInfo,
    TableInfo,
    ViewInfo,
)
from .query import QueryResult, QueryResultSummary, SqlValue

__all__ = [
    "DatabaseConfig",
    "QueryResult",
    "QueryResultSummary",
    "SqlValue",
    "SchemaInfo",
    "ColumnInfo",
    "ForeignKeyInfo",
    "TableInfo",
    "ViewInfo",
    "ParameterInfo",
    "ProcedureInfo",
    "ObjectDefinition",
]
