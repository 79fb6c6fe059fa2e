"""Metadata inspection using SQL Server catalog views."""

import asyncio
from typing import Any

from sqlalchemy import text

from mssql_mcp.core.connection import DatabaseConnection
from mssql_mcp.models.metadata import (
    ColumnInfo,
    ForeignKeyInfo,
    ParameterInfo,
    ProcedureInfo,
    TableInfo,
    ViewInfo,
)

SCHEMAS_QUERY = """
    SELECT DISTINCT SCHEMA_NAME
    FROM INFORMATION_SCHEMA.SCHEMATA
    WHERE SCHEMA_OWNER = :owner
    ORDER BY SCHEMA_NAME"""

TABLES_QUERY = """
    SELECT TABLE_NAME
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_TYPE = 'BASE TABLE'
    AND TABLE_SCHEMA = :schema_name
    ORDER BY TABLE_NAME"""

VIEWS_QUERY = """
    SELECT TABLE_NAME
    FROM INFORMATION_SCHEMA.VIEWS
    WHERE TABLE_SCHEMA = :schema_name
    ORDER BY TABLE_NAME"""

PROCEDURES_QUERY = """
    SELECT ROUTINE_NAME
    FROM INFORMATION_SCHEMA.ROUTINES
    WHERE ROUTINE_TYPE = 'PROCEDURE'
    AND ROUTINE_SCHEMA = :schema_name
    ORDER BY ROUTINE_NAME"""

COLUMNS_QUERY = """
    SELECT
        COLUMN_NAME,
        DATA_TYPE,
        CHARACTER_MAXIMUM_LENGTH,
        IS_NULLABLE,
        COLUMN_DEFAULT
    FROM INFORMATION_SCHEMA.COLUMNS
    WHERE TABLE_SCHEMA = :schema_name
    AND TABLE_NAME = :object_name
    ORDER BY ORDINAL_POSITION"""

PRIMARY_KEY_QUERY = """
    SELECT COLUMN_NAME
    FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE
    WHERE OBJECTPROPERTY(OBJECT_ID(CONSTRAINT_SCHEMA + '.' + CONSTRAINT_NAME), 'IsPrimaryKey') = 1
    AND TABLE_SCHEMA = :schema_name
    AND TABLE_NAME = :object_name
    ORDER BY ORDINAL_POSITION"""

FOREIGN_KEYS_QUERY = """
    SELECT
        fk.name AS FK_NAME,
        COL_NAME(fc.parent_object_id, fc.parent_column_id) AS COLUMN_NAME,
        OBJECT_SCHEMA_NAME(fc.referenced_object_id) AS REFERENCED_SCHEMA,
        OBJECT_NAME(fc.referenced_object_id) AS REFERENCED_TABLE,
        COL_NAME(fc.referenced_object_id, fc.referenced_column_id) AS REFERENCED_COLUMN
    FROM sys.foreign_keys AS fk
    INNER JOIN sys.foreign_key_columns AS fc
        ON fk.object_id = fc.constraint_object_id
    WHERE OBJECT_SCHEMA_NAME(fk.parent_object_id) = :schema_name
    AND OBJECT_NAME(fk.parent_object_id) = :object_name
    ORDER BY fk.name, fc.constraint_column_id"""

VIEW_DEFINITION_QUERY = """
    SELECT VIEW_DEFINITION
    FROM INFORMATION_SCHEMA.VIEWS
    WHERE TABLE_SCHEMA = :schema_name
    AND TABLE_NAME = :object_name"""

PARAMETERS_QUERY = """
    SELECT
        PARAMETER_NAME,
        PARAMETER_MODE,
        DATA_TYPE,
        CHARACTER_MAXIMUM_LENGTH,
        PARAMETER_DEFAULT
    FROM INFORMATION_SCHEMA.PARAMETERS
    WHERE SPECIFIC_SCHEMA = :schema_name
    AND SPECIFIC_NAME = :object_name
    ORDER BY ORDINAL_POSITION"""

PROCEDURE_DEFINITION_QUERY = """
    SELECT ROUTINE_DEFINITION
    FROM INFORMATION_SCHEMA.ROUTINES
    WHERE ROUTINE_SCHEMA = :schema_name
    AND ROUTINE_NAME = :object_name
    AND ROUTINE_TYPE = 'PROCEDURE'"""


class MetadataInspector:
    """Fetches schema metadata from the SQL Server catalog.

    Every method opens its own connection and raises on failure; caching
    and error reporting belong to the caller.
    """

    def __init__(self, connection: DatabaseConnection):
        """
        Initialize metadata inspector.

        Args:
            connection: Database connection manager
        """
        self.connection = connection
        self.timeout = connection.config.metadata_timeout

    async def _fetch_all(
        self, query: str, params: dict[str, Any]
    ) -> list[tuple[Any, ...]]:
        async with self.connection.get_connection(self.timeout) as conn:
            result = await asyncio.wait_for(
                conn.execute(text(query), params), timeout=self.timeout
            )
            return [tuple(row) for row in result.fetchall()]

    async def _fetch_scalar(self, query: str, params: dict[str, Any]) -> Any:
        async with self.connection.get_connection(self.timeout) as conn:
            result = await asyncio.wait_for(
                conn.execute(text(query), params), timeout=self.timeout
            )
            return result.scalar()

    async def get_schemas(self, owner: str = "dbo") -> list[str]:
        """
        List schemas owned by a principal.

        Args:
            owner: Schema owner (default 'dbo')

        Returns:
            Schema names in alphabetical order
        """
        rows = await self._fetch_all(SCHEMAS_QUERY, {"owner": owner})
        return [row[0] for row in rows]

    async def get_tables(self, schema_name: str) -> list[str]:
        """List base table names in a schema."""
        rows = await self._fetch_all(TABLES_QUERY, {"schema_name": schema_name})
        return [row[0] for row in rows]

    async def get_views(self, schema_name: str) -> list[str]:
        """List view names in a schema."""
        rows = await self._fetch_all(VIEWS_QUERY, {"schema_name": schema_name})
        return [row[0] for row in rows]

    async def get_procedures(self, schema_name: str) -> list[str]:
        """List stored procedure names in a schema."""
        rows = await self._fetch_all(PROCEDURES_QUERY, {"schema_name": schema_name})
        return [row[0] for row in rows]

    async def describe_table(self, schema_name: str, table_name: str) -> TableInfo:
        """
        Get columns, primary key and foreign keys of a table.

        Args:
            schema_name: Schema name
            table_name: Table name

        Returns:
            Full table descriptor
        """
        params = {"schema_name": schema_name, "object_name": table_name}

        async with self.connection.get_connection(self.timeout) as conn:

            async def fetch(query: str) -> list[tuple[Any, ...]]:
                result = await asyncio.wait_for(
                    conn.execute(text(query), params), timeout=self.timeout
                )
                return [tuple(row) for row in result.fetchall()]

            column_rows = await fetch(COLUMNS_QUERY)
            pk_rows = await fetch(PRIMARY_KEY_QUERY)
            fk_rows = await fetch(FOREIGN_KEYS_QUERY)

        return TableInfo(
            schema_name=schema_name,
            table_name=table_name,
            columns=[self._column_from_row(row) for row in column_rows],
            primary_keys=[row[0] for row in pk_rows],
            foreign_keys=[
                ForeignKeyInfo(
                    name=row[0],
                    column=row[1],
                    referenced_schema=row[2],
                    referenced_table=row[3],
                    referenced_column=row[4],
                )
                for row in fk_rows
            ],
        )

    async def describe_view(self, schema_name: str, view_name: str) -> ViewInfo:
        """Get view columns; the definition is left out."""
        rows = await self._fetch_all(
            COLUMNS_QUERY, {"schema_name": schema_name, "object_name": view_name}
        )
        return ViewInfo(
            schema_name=schema_name,
            view_name=view_name,
            # Views don't have column defaults
            columns=[self._column_from_row(row[:4] + (None,)) for row in rows],
        )

    async def get_view_definition(self, schema_name: str, view_name: str) -> str:
        """Get the SQL source of a view (empty string when unavailable)."""
        definition = await self._fetch_scalar(
            VIEW_DEFINITION_QUERY,
            {"schema_name": schema_name, "object_name": view_name},
        )
        return definition or ""

    async def describe_procedure(
        self, schema_name: str, procedure_name: str
    ) -> ProcedureInfo:
        """Get procedure parameters; the definition is left out."""
        rows = await self._fetch_all(
            PARAMETERS_QUERY,
            {"schema_name": schema_name, "object_name": procedure_name},
        )
        return ProcedureInfo(
            schema_name=schema_name,
            procedure_name=procedure_name,
            parameters=[
                ParameterInfo(
                    name=row[0] or None,
                    mode=row[1],
                    data_type=row[2],
                    max_length=row[3],
                    default=row[4] or "",
                )
                for row in rows
            ],
        )

    async def get_procedure_definition(
        self, schema_name: str, procedure_name: str
    ) -> str:
        """Get the SQL source of a stored procedure (empty string when unavailable)."""
        definition = await self._fetch_scalar(
            PROCEDURE_DEFINITION_QUERY,
            {"schema_name": schema_name, "object_name": procedure_name},
        )
        return definition or ""

    def _column_from_row(self, row: tuple[Any, ...]) -> ColumnInfo:
        """Convert an INFORMATION_SCHEMA.COLUMNS row to ColumnInfo."""
        name, data_type, max_length, is_nullable, default = row
        return ColumnInfo(
            name=name,
            data_type=data_type,
            max_length=max_length,
            nullable=str(is_nullable).upper() == "YES",
            default=default or "",
        )
