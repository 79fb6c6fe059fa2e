"""Value normalization and JSON serialization using orjson.

Driver values are folded into the closed ``SqlValue`` set before they are
stored in a ``QueryResult``:

- None, bool, int, float, str, bytes, datetime → unchanged
- Decimal, UUID → string (precision preserved)
- date, time → ISO format string
- timedelta → total seconds
- bytearray, memoryview → bytes
- anything else → str(value)
"""

import base64
import datetime
import decimal
import uuid
from typing import Any, Sequence

import orjson

from mssql_mcp.models.query import SqlValue


def normalize_value(value: Any) -> SqlValue:
    """
    Convert a driver value into a ``SqlValue``.

    Args:
        value: Value returned by the database driver

    Returns:
        Value from the closed set None/bool/int/float/str/bytes/datetime
    """
    if value is None or isinstance(value, (bool, int, float, str, bytes)):
        return value

    if isinstance(value, datetime.datetime):
        return value

    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()

    if isinstance(value, datetime.timedelta):
        return value.total_seconds()

    if isinstance(value, decimal.Decimal):
        return str(value)

    if isinstance(value, uuid.UUID):
        return str(value)

    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)

    return str(value)


def normalize_row(columns: Sequence[str], values: Sequence[Any]) -> dict[str, SqlValue]:
    """
    Build a row mapping from column names and raw driver values.

    Args:
        columns: Column names in order
        values: Row values in the same order

    Returns:
        Dictionary of column name to normalized value
    """
    return {column: normalize_value(value) for column, value in zip(columns, values)}


def _default_handler(obj: Any) -> Any:
    """Handle types orjson doesn't serialize natively."""
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(obj)).decode("ascii")

    if isinstance(obj, decimal.Decimal):
        return str(obj)

    if isinstance(obj, datetime.timedelta):
        return obj.total_seconds()

    if isinstance(obj, set):
        return list(obj)

    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def dumps(obj: Any, indent: bool = False) -> str:
    """
    Serialize object to JSON string using orjson.

    Args:
        obj: Object to serialize
        indent: Pretty-print with two-space indentation

    Returns:
        JSON string
    """
    option = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(obj, default=_default_handler, option=option).decode("utf-8")


def loads(data: str | bytes) -> Any:
    """Parse a JSON document."""
    return orjson.loads(data)
