"""Query and stored procedure execution under the safety policy."""

import asyncio
import logging
import re
from typing import Any, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, ResourceClosedError
from sqlalchemy.ext.asyncio import AsyncResult

from mssql_mcp.core.connection import DatabaseConnection
from mssql_mcp.core.validation import (
    InjectionGuard,
    invalid_identifier_message,
    is_safe_identifier,
    is_write_operation,
)
from mssql_mcp.models.query import QueryResult
from mssql_mcp.utils import normalize_row

logger = logging.getLogger(__name__)

READ_ONLY_MESSAGE = (
    "Write operations (INSERT, UPDATE, DELETE, etc.) are not allowed in read-only mode"
)
NO_RESULT_SET_MESSAGE = "Stored procedure executed successfully with no results."
INVALID_TIMEOUT_MESSAGE = (
    "Command timeout must be 0 (no limit) or a positive number of seconds"
)

# pyodbc reports the native error number as "... (2627) (SQLExecDirectW)"
_ODBC_ERROR_NUMBER = re.compile(r"\((\d+)\)\s*\(SQL\w+\)")

# SQLSTATE classes raised by connection failures rather than by the engine
_CONNECTIVITY_SQLSTATES = ("08", "HYT")

# SQLSTATE of a statement cancelled by the driver's query timeout
_QUERY_TIMEOUT_SQLSTATE = "HYT00"


def extract_error_code(error: DBAPIError) -> Optional[int]:
    """
    Get the native SQL Server error number from a driver exception.

    Returns None for connectivity failures, which carry no engine error.
    """
    orig = error.orig
    if orig is None:
        return None

    number = getattr(orig, "number", None)
    if isinstance(number, int):
        return number

    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]

    if args and isinstance(args[0], str) and args[0].startswith(_CONNECTIVITY_SQLSTATES):
        return None

    numbers = _ODBC_ERROR_NUMBER.findall(str(orig))
    return int(numbers[-1]) if numbers else None


def _is_query_timeout(error: DBAPIError) -> bool:
    """Whether the driver cancelled the statement (login timeouts share the SQLSTATE)."""
    args = getattr(error.orig, "args", ())
    return (
        bool(args)
        and args[0] == _QUERY_TIMEOUT_SQLSTATE
        and "Query timeout" in str(error.orig)
    )


def _driver_message(error: DBAPIError) -> str:
    """Driver error text without SQLAlchemy's statement and help link."""
    return str(error.orig) if error.orig is not None else str(error)


class QueryExecutor:
    """Executes ad-hoc queries and stored procedures with policy checks and row limits."""

    def __init__(
        self,
        connection: DatabaseConnection,
        injection_guard: Optional[InjectionGuard] = None,
    ):
        """
        Initialize query executor.

        Args:
            connection: Database connection manager; its config supplies
                read-only mode and default timeout / row limit
            injection_guard: Injection policy (default rules when omitted)
        """
        self.connection = connection
        self.config = connection.config
        self.injection_guard = injection_guard or InjectionGuard()

    def _resolve_limits(
        self, command_timeout: Optional[float], max_rows: Optional[int]
    ) -> tuple[float, int]:
        timeout = (
            command_timeout
            if command_timeout is not None
            else self.config.default_command_timeout
        )
        row_limit = max_rows if max_rows is not None else self.config.default_max_rows
        return timeout, max(row_limit, 0)

    async def execute_query(
        self,
        query: str,
        command_timeout: Optional[float] = None,
        max_rows: Optional[int] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> QueryResult:
        """
        Execute an ad-hoc SQL statement.

        Args:
            query: SQL text to execute
            command_timeout: Timeout in seconds, 0 for no limit (config default when None)
            max_rows: Maximum number of rows to return (config default when None)
            params: Bound parameter values referenced as :name in the query

        Returns:
            Query result; failures are reported in the result, never raised
        """
        timeout, row_limit = self._resolve_limits(command_timeout, max_rows)
        if timeout < 0:
            return QueryResult.failure(INVALID_TIMEOUT_MESSAGE)

        logger.debug(
            f"Executing query with timeout {timeout}s and max rows {row_limit}"
        )

        if self.config.read_only and is_write_operation(query):
            logger.warning(f"Write operation blocked in read-only mode: {query[:50]}")
            return QueryResult.failure(READ_ONLY_MESSAGE)

        is_valid, reason = self.injection_guard.validate(query)
        if not is_valid:
            logger.warning(f"SQL injection validation failed: {reason}")
            return QueryResult.failure(f"Security validation failed: {reason}")

        returns_rows = query.lstrip().upper().startswith("SELECT")

        try:
            async with self.connection.get_connection(timeout) as conn:
                return await asyncio.wait_for(
                    self._run(conn, query, params or {}, row_limit, returns_rows),
                    timeout=timeout or None,
                )
        except asyncio.TimeoutError:
            return self._timeout_result("Query", timeout)
        except DBAPIError as e:
            if _is_query_timeout(e):
                return self._timeout_result("Query", timeout)
            return self._error_result(e, "SQL error executing query")
        except Exception as e:
            logger.error(f"Error executing query: {e}", exc_info=True)
            return QueryResult.failure(str(e))

    async def execute_stored_procedure(
        self,
        schema_name: str,
        procedure_name: str,
        parameters: Optional[dict[str, Any]] = None,
        command_timeout: Optional[float] = None,
        max_rows: Optional[int] = None,
    ) -> QueryResult:
        """
        Execute a stored procedure with bound parameters.

        Args:
            schema_name: Schema name (e.g. 'dbo')
            procedure_name: Procedure name
            parameters: Parameter names (leading '@' optional) to values
            command_timeout: Timeout in seconds, 0 for no limit (config default when None)
            max_rows: Maximum number of rows to return (config default when None)

        Returns:
            Query result; failures are reported in the result, never raised
        """
        if not is_safe_identifier(schema_name):
            return QueryResult.failure(
                invalid_identifier_message("schema name", schema_name)
            )

        if not is_safe_identifier(procedure_name):
            return QueryResult.failure(
                invalid_identifier_message("procedure name", procedure_name)
            )

        assignments = []
        bound: dict[str, Any] = {}
        for index, (key, value) in enumerate((parameters or {}).items()):
            name = key[1:] if key.startswith("@") else key
            if not is_safe_identifier(name):
                return QueryResult.failure(
                    invalid_identifier_message("parameter name", key)
                )
            assignments.append(f"@{name} = :p{index}")
            bound[f"p{index}"] = value

        timeout, row_limit = self._resolve_limits(command_timeout, max_rows)
        if timeout < 0:
            return QueryResult.failure(INVALID_TIMEOUT_MESSAGE)

        logger.debug(
            f"Executing stored procedure [{schema_name}].[{procedure_name}] "
            f"with timeout {timeout}s"
        )

        statement = f"SET NOCOUNT ON; EXEC [{schema_name}].[{procedure_name}]"
        if assignments:
            statement += " " + ", ".join(assignments)

        try:
            async with self.connection.get_connection(timeout) as conn:
                result = await asyncio.wait_for(
                    self._run(conn, statement, bound, row_limit, returns_rows=True),
                    timeout=timeout or None,
                )
        except asyncio.TimeoutError:
            return self._timeout_result("Stored procedure", timeout)
        except DBAPIError as e:
            if _is_query_timeout(e):
                return self._timeout_result("Stored procedure", timeout)
            return self._error_result(
                e,
                f"SQL error executing stored procedure [{schema_name}].[{procedure_name}]",
            )
        except Exception as e:
            logger.error(
                f"Error executing stored procedure [{schema_name}].[{procedure_name}]: {e}",
                exc_info=True,
            )
            return QueryResult.failure(str(e))

        if result.is_empty and not result.message:
            result.message = NO_RESULT_SET_MESSAGE
        return result

    async def _run(
        self,
        conn: Any,
        statement: str,
        params: dict[str, Any],
        row_limit: int,
        returns_rows: bool,
    ) -> QueryResult:
        if returns_rows:
            # Server-side cursor, so rows past the limit are never read
            stream = await conn.stream(text(statement), params)
            try:
                return await self._read_stream(stream, row_limit)
            finally:
                await stream.close()

        result = await conn.execute(text(statement), params)

        if result.returns_rows:
            # Result set without a SELECT prefix (e.g. WITH ... SELECT)
            columns = list(result.keys())
            fetched = result.fetchmany(row_limit + 1)
            result.close()
            return self._rows_result(columns, fetched, row_limit)

        rows_affected = result.rowcount
        return QueryResult(
            is_success=True,
            rows_affected=rows_affected,
            message=f"{rows_affected} row(s) affected.",
        )

    async def _read_stream(self, stream: AsyncResult, row_limit: int) -> QueryResult:
        try:
            columns = list(stream.keys())
        except ResourceClosedError:
            # Expected a result set but got none (e.g. a procedure without SELECT)
            return QueryResult(is_success=True)

        # One extra row tells us whether the limit cut the result short
        fetched = await stream.fetchmany(row_limit + 1)
        return self._rows_result(columns, fetched, row_limit)

    def _rows_result(
        self, columns: list[str], fetched: Sequence[Any], row_limit: int
    ) -> QueryResult:
        """Materialize at most row_limit rows, noting whether more were available."""
        has_more_rows = len(fetched) > row_limit
        rows = [normalize_row(columns, row) for row in fetched[:row_limit]]

        if has_more_rows:
            message = (
                f"Query returned {len(rows)} rows (limited from a larger result set). "
                "Use pagination parameters to see more results."
            )
            logger.info(f"Query result was limited to {row_limit} rows")
        else:
            message = f"Query returned {len(rows)} row(s)."

        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            has_more_rows=has_more_rows,
            is_success=True,
            message=message,
        )

    def _timeout_result(self, subject: str, timeout: float) -> QueryResult:
        message = f"{subject} timed out after {timeout} seconds"
        logger.error(message)
        return QueryResult.failure(message)

    def _error_result(self, error: DBAPIError, context: str) -> QueryResult:
        message = _driver_message(error)
        error_code = extract_error_code(error)
        logger.error(f"{context}: {message}", exc_info=True)
        if error_code is None:
            return QueryResult.failure(message)
        return QueryResult.failure(f"SQL Error: {message}", error_code=error_code)
