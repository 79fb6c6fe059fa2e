"""Query execution result models."""

import base64
from datetime import datetime
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer

# Closed set of values a result cell may hold. None is SQL NULL; a column
# missing from a row mapping is absent, which is not the same thing.
SqlValue = Optional[Union[bool, int, float, str, bytes, datetime]]

# JSON has no binary or timestamp type, so those cells carry a tag in the
# model's JSON form; every other member of SqlValue is native JSON
BINARY_TAG = "$binary"
DATETIME_TAG = "$datetime"

SUMMARY_SAMPLE_ROWS = 3


def tag_value(value: SqlValue) -> Any:
    """JSON form of a cell value."""
    if isinstance(value, bytes):
        return {BINARY_TAG: base64.b64encode(value).decode("ascii")}
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    return value


def untag_value(value: Any) -> Any:
    """Inverse of tag_value; untagged values pass through."""
    if isinstance(value, dict) and len(value) == 1:
        if BINARY_TAG in value:
            return base64.b64decode(value[BINARY_TAG])
        if DATETIME_TAG in value:
            return datetime.fromisoformat(value[DATETIME_TAG])
    return value


def _tag_rows(rows: list[dict[str, SqlValue]]) -> list[dict[str, Any]]:
    return [{column: tag_value(value) for column, value in row.items()} for row in rows]


def _untag_rows(rows: Any) -> Any:
    if not isinstance(rows, list):
        return rows
    return [
        {column: untag_value(value) for column, value in row.items()}
        if isinstance(row, dict)
        else row
        for row in rows
    ]


# Rows keep bytes and datetime cells through model_dump_json / model_validate_json
Rows = Annotated[
    list[dict[str, SqlValue]],
    BeforeValidator(_untag_rows),
    PlainSerializer(_tag_rows, when_used="json"),
]


class QueryResult(BaseModel):
    """Outcome of a query or stored procedure execution."""

    columns: list[str] = Field(
        default_factory=list, description="Column names in order"
    )
    rows: Rows = Field(
        default_factory=list, description="Result rows as dictionaries"
    )
    row_count: int = Field(default=0, description="Number of rows returned")
    total_row_count: Optional[int] = Field(
        None, description="Size of the unlimited result, when known and truncated"
    )
    rows_affected: Optional[int] = Field(
        None, description="Rows affected by a non-row-returning statement"
    )
    is_success: bool = Field(default=False, description="Whether execution succeeded")
    message: str = Field(default="", description="Status or error summary")
    error_code: Optional[int] = Field(
        None, description="Native database error number, for engine errors only"
    )
    has_more_rows: bool = Field(
        default=False, description="Whether rows beyond the row limit were available"
    )

    @classmethod
    def failure(cls, message: str, error_code: Optional[int] = None) -> "QueryResult":
        """Build a failed result."""
        return cls(is_success=False, message=message, error_code=error_code)

    @property
    def is_empty(self) -> bool:
        """Check if result set is empty."""
        return self.row_count == 0

    def get_column_values(self, column: str) -> list[Any]:
        """Extract all values for a specific column."""
        return [row.get(column) for row in self.rows]

    def summarize(self, max_chars: int) -> "QueryResultSummary":
        """Summary used in place of the full payload when it is too large."""
        return QueryResultSummary(
            columns=self.columns,
            row_count=self.row_count,
            total_row_count=self.total_row_count,
            truncated_at=max_chars,
            message=(
                f"Results exceeded {max_chars} characters. Showing summary only. "
                "Use smaller max_rows or query specific columns."
            ),
            sample_rows=self.rows[:SUMMARY_SAMPLE_ROWS],
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "columns": ["Id", "Name"],
                    "rows": [{"Id": 1, "Name": "Ada"}, {"Id": 2, "Name": None}],
                    "row_count": 2,
                    "total_row_count": None,
                    "rows_affected": None,
                    "is_success": True,
                    "message": "Query returned 2 row(s).",
                    "error_code": None,
                    "has_more_rows": False,
                }
            ]
        },
    }


class QueryResultSummary(BaseModel):
    """Truncated view of a result whose serialized form exceeded a size limit."""

    columns: list[str] = Field(..., description="Column names in order")
    row_count: int = Field(..., description="Number of rows in the full result")
    total_row_count: Optional[int] = Field(
        None, description="Size of the unlimited result, when known"
    )
    truncated: bool = Field(default=True, description="Always true")
    truncated_at: int = Field(..., description="Character limit that was exceeded")
    message: str = Field(..., description="Explanation for the caller")
    sample_rows: Rows = Field(
        default_factory=list, description="First rows of the result"
    )
