"""Lightweight schema exploration built on the query executor."""

import logging
from typing import Any

from mssql_mcp.core.executor import QueryExecutor
from mssql_mcp.core.validation import quote_identifier
from mssql_mcp.models.query import QueryResult

logger = logging.getLogger(__name__)

MIN_SAMPLE_SIZE = 1
MAX_SAMPLE_SIZE = 20

TABLE_COLUMNS_QUERY = """
    SELECT
        COLUMN_NAME AS name,
        DATA_TYPE AS type,
        CHARACTER_MAXIMUM_LENGTH AS max_length,
        IS_NULLABLE AS nullable
    FROM INFORMATION_SCHEMA.COLUMNS
    WHERE TABLE_SCHEMA = :schema_name
    AND TABLE_NAME = :table_name
    ORDER BY ORDINAL_POSITION"""

LIST_TABLES_QUERY = """
    SELECT TABLE_NAME AS table_name
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_SCHEMA = :schema_name
    AND TABLE_TYPE = 'BASE TABLE'
    ORDER BY TABLE_NAME"""

LIST_TABLES_WITH_COUNTS_QUERY = """
    SELECT
        t.TABLE_NAME AS table_name,
        p.rows AS row_count
    FROM INFORMATION_SCHEMA.TABLES t
    LEFT JOIN sys.partitions p
        ON p.object_id = OBJECT_ID(QUOTENAME(t.TABLE_SCHEMA) + '.' + QUOTENAME(t.TABLE_NAME))
        AND p.index_id IN (0, 1)
    WHERE t.TABLE_SCHEMA = :schema_name
    AND t.TABLE_TYPE = 'BASE TABLE'
    ORDER BY t.TABLE_NAME"""

PRIMARY_KEY_COLUMNS_QUERY = """
    SELECT COLUMN_NAME AS column_name
    FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE
    WHERE OBJECTPROPERTY(OBJECT_ID(QUOTENAME(CONSTRAINT_SCHEMA) + '.' + QUOTENAME(CONSTRAINT_NAME)), 'IsPrimaryKey') = 1
    AND TABLE_SCHEMA = :schema_name
    AND TABLE_NAME = :table_name
    ORDER BY ORDINAL_POSITION"""


class ExplorerError(Exception):
    """Raised when an exploration query fails; carries the result message."""


def _qualified_name(schema_name: str, table_name: str) -> str:
    return f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}"


class SchemaExplorer:
    """Schema exploration helpers for callers that want structure before data.

    Every query goes through QueryExecutor.execute_query, so read-only mode
    and the injection guard apply exactly as for ad-hoc queries.
    """

    def __init__(self, executor: QueryExecutor):
        """
        Initialize schema explorer.

        Args:
            executor: Query executor
        """
        self.executor = executor

    async def _run(
        self,
        query: str,
        params: dict[str, Any],
        command_timeout: int,
        max_rows: int,
    ) -> QueryResult:
        result = await self.executor.execute_query(
            query, command_timeout=command_timeout, max_rows=max_rows, params=params
        )
        if not result.is_success:
            raise ExplorerError(result.message)
        return result

    async def get_table_columns(self, schema_name: str, table_name: str) -> dict[str, Any]:
        """
        Get column names and types for a table without fetching data.

        Args:
            schema_name: Schema name
            table_name: Table name

        Returns:
            Dictionary with schema, table and columns

        Raises:
            ExplorerError: If the query fails
        """
        result = await self._run(
            TABLE_COLUMNS_QUERY,
            {"schema_name": schema_name, "table_name": table_name},
            command_timeout=10,
            max_rows=500,
        )
        return {"schema": schema_name, "table": table_name, "columns": result.rows}

    async def get_table_row_count(self, schema_name: str, table_name: str) -> dict[str, Any]:
        """Count the rows of a table."""
        result = await self._run(
            f"SELECT COUNT(*) AS row_count FROM {_qualified_name(schema_name, table_name)}",
            {},
            command_timeout=30,
            max_rows=1,
        )
        count = result.rows[0].get("row_count", 0) if result.rows else 0
        return {"schema": schema_name, "table": table_name, "row_count": count}

    async def list_tables(
        self, schema_name: str, include_row_counts: bool = False
    ) -> dict[str, Any]:
        """
        List base tables in a schema.

        Args:
            schema_name: Schema name
            include_row_counts: Add partition row counts (slower)

        Returns:
            Dictionary with schema and tables

        Raises:
            ExplorerError: If the query fails
        """
        query = LIST_TABLES_WITH_COUNTS_QUERY if include_row_counts else LIST_TABLES_QUERY
        result = await self._run(
            query, {"schema_name": schema_name}, command_timeout=30, max_rows=1000
        )
        return {"schema": schema_name, "tables": result.rows}

    async def get_primary_key(self, schema_name: str, table_name: str) -> dict[str, Any]:
        """Get the primary key columns of a table, in key order."""
        result = await self._run(
            PRIMARY_KEY_COLUMNS_QUERY,
            {"schema_name": schema_name, "table_name": table_name},
            command_timeout=10,
            max_rows=50,
        )
        return {
            "schema": schema_name,
            "table": table_name,
            "primary_key_columns": result.get_column_values("column_name"),
        }

    async def get_sample_data(
        self, schema_name: str, table_name: str, sample_size: int = 5
    ) -> dict[str, Any]:
        """
        Get the first rows of a table.

        Args:
            schema_name: Schema name
            table_name: Table name
            sample_size: Number of rows, clamped to 1..20

        Returns:
            Dictionary with schema, table, sample_size, columns and rows

        Raises:
            ExplorerError: If the query fails
        """
        sample_size = min(max(MIN_SAMPLE_SIZE, sample_size), MAX_SAMPLE_SIZE)
        logger.debug(f"Sampling {sample_size} rows from {schema_name}.{table_name}")

        result = await self._run(
            f"SELECT TOP {sample_size} * FROM {_qualified_name(schema_name, table_name)}",
            {},
            command_timeout=10,
            max_rows=sample_size,
        )
        return {
            "schema": schema_name,
            "table": table_name,
            "sample_size": result.row_count,
            "columns": result.columns,
            "rows": result.rows,
        }
