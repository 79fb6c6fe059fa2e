"""Schema, table, view and stored procedure metadata models."""

from typing import Any, Optional

from pydantic import BaseModel, Field, model_serializer


class SchemaInfo(BaseModel):
    """Object counts for a database schema."""

    schema_name: str = Field(..., description="Schema name")
    tables: int = Field(default=0, description="Number of base tables")
    views: int = Field(default=0, description="Number of views")
    stored_procedures: int = Field(default=0, description="Number of stored procedures")


class ColumnInfo(BaseModel):
    """Information about a table or view column."""

    name: str = Field(..., description="Column name")
    data_type: str = Field(..., description="Column data type")
    max_length: Optional[int] = Field(
        None, description="Maximum length for character and binary types"
    )
    nullable: bool = Field(..., description="Whether column allows NULL")
    default: str = Field(default="", description="Default value expression")


class ForeignKeyInfo(BaseModel):
    """One column of a foreign key constraint."""

    name: str = Field(..., description="Constraint name")
    column: str = Field(..., description="Referencing column")
    referenced_schema: str = Field(..., description="Referenced table schema")
    referenced_table: str = Field(..., description="Referenced table")
    referenced_column: str = Field(..., description="Referenced column")


class TableInfo(BaseModel):
    """Full table descriptor."""

    schema_name: str = Field(..., description="Schema name")
    table_name: str = Field(..., description="Table name")
    columns: list[ColumnInfo] = Field(default_factory=list)
    primary_keys: list[str] = Field(
        default_factory=list, description="Primary key columns in key order"
    )
    foreign_keys: list[ForeignKeyInfo] = Field(default_factory=list)

    def get_column(self, name: str) -> Optional[ColumnInfo]:
        """Get a column by name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None


class _DefinitionOmittedWhenNone(BaseModel):
    """Drops the ``definition`` key from output until it has been loaded."""

    definition: Optional[str] = Field(
        None, description="SQL source text, served separately via /definition"
    )

    @model_serializer(mode="wrap")
    def _omit_missing_definition(self, handler: Any) -> dict[str, Any]:
        data = handler(self)
        if self.definition is None:
            data.pop("definition", None)
        return data


class ViewInfo(_DefinitionOmittedWhenNone):
    """View descriptor."""

    schema_name: str = Field(..., description="Schema name")
    view_name: str = Field(..., description="View name")
    columns: list[ColumnInfo] = Field(default_factory=list)


class ParameterInfo(BaseModel):
    """Stored procedure parameter descriptor."""

    name: Optional[str] = Field(
        None, description="Parameter name (None for a function return value)"
    )
    mode: str = Field(..., description="IN, OUT or INOUT")
    data_type: str = Field(..., description="Parameter data type")
    max_length: Optional[int] = Field(None, description="Maximum length")
    default: str = Field(default="", description="Default value expression")


class ProcedureInfo(_DefinitionOmittedWhenNone):
    """Stored procedure descriptor."""

    schema_name: str = Field(..., description="Schema name")
    procedure_name: str = Field(..., description="Procedure name")
    parameters: list[ParameterInfo] = Field(default_factory=list)


class ObjectDefinition(BaseModel):
    """SQL source text of a view or stored procedure."""

    schema_name: str = Field(..., description="Schema name")
    object_type: str = Field(..., description="'view' or 'procedure'")
    object_name: str = Field(..., description="Object name")
    definition: str = Field(default="", description="SQL source text")
