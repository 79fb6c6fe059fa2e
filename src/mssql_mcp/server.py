"""SQL Server MCP Server

A Model Context Protocol (MCP) server that runs queries and stored procedures
against Microsoft SQL Server under a safety policy, and exposes schema
metadata as browsable resources.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Optional

from dotenv import load_dotenv
from mcp.server import Server
from mcp.types import Resource, ResourceTemplate, TextContent, Tool
from pydantic import AnyUrl

from mssql_mcp import __version__
from mssql_mcp.core import (
    DatabaseConnection,
    ExplorerError,
    MetadataInspector,
    QueryExecutor,
    ResourceCache,
    ResourceRouter,
    SchemaExplorer,
)
from mssql_mcp.core.resources import MIME_TYPE, RESOURCE_TEMPLATES
from mssql_mcp.models.config import DatabaseConfig
from mssql_mcp.models.query import QueryResult
from mssql_mcp.utils import dumps, loads

# Load environment variables
load_dotenv()

# Configure logging (stderr; stdout carries the MCP protocol)
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_URL_ENV_VAR = "DATABASE_URL"
READ_ONLY_ENV_VAR = "MSSQL_READ_ONLY"
COMMAND_TIMEOUT_ENV_VAR = "MSSQL_COMMAND_TIMEOUT"
MAX_ROWS_ENV_VAR = "MSSQL_MAX_ROWS"

_TRUTHY = {"1", "true", "yes", "on"}

_SCHEMA_PROPERTY = {"type": "string", "description": "The schema name (e.g., 'dbo')"}
_TABLE_PROPERTY = {"type": "string", "description": "The table name"}


def _with_error_code(prefix: str, result: QueryResult) -> str:
    text = f"{prefix}: {result.message}"
    if result.error_code is not None:
        text += f" (Error code: {result.error_code})"
    return text


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


class SqlServerMCPServer:
    """MCP server for SQL Server queries and schema metadata."""

    def __init__(
        self, config: DatabaseConfig, connection: Optional[DatabaseConnection] = None
    ):
        """
        Initialize SQL Server MCP server.

        Args:
            config: Database configuration
            connection: Connection manager (created from config when omitted)
        """
        self.config = config
        self.connection = connection or DatabaseConnection(config)
        self.executor = QueryExecutor(self.connection)
        self.inspector = MetadataInspector(self.connection)
        self.cache = ResourceCache(default_ttl=config.cache_ttl_seconds)
        self.router = ResourceRouter(self.inspector, self.cache)
        self.explorer = SchemaExplorer(self.executor)
        self.server = Server("mssql-mcp", version=__version__)

    async def initialize(self) -> None:
        """
        Create the engine and verify connectivity.

        Raises:
            RuntimeError: If the database cannot be reached
        """
        await self.connection.initialize()

        if not await self.connection.test_connection():
            raise RuntimeError("Unable to connect to SQL Server")

        logger.info(
            f"Initialized SQL Server MCP server for database "
            f"'{self.config.database}' (read-only: {self.config.read_only})"
        )

    # Tool definitions
    def _create_execute_query_tool(self) -> Tool:
        """Create execute_query tool."""
        return Tool(
            name="execute_query",
            description="Executes a SQL query against the database and returns the results.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The SQL query to execute",
                    },
                    "command_timeout": {
                        "type": "integer",
                        "minimum": 0,
                        "description": "Optional command timeout in seconds (0 for no limit)",
                    },
                    "max_rows": {
                        "type": "integer",
                        "description": "Optional maximum number of rows to return (default: 1000)",
                    },
                    "max_chars": {
                        "type": "integer",
                        "description": "Optional maximum characters to return; a summary is returned if exceeded",
                    },
                    "compact": {
                        "type": "boolean",
                        "description": "Use compact JSON output to reduce token usage (default: true)",
                        "default": True,
                    },
                },
                "required": ["query"],
            },
        )

    def _create_execute_stored_procedure_tool(self) -> Tool:
        """Create execute_stored_procedure tool."""
        return Tool(
            name="execute_stored_procedure",
            description="Executes a stored procedure with optional parameters and returns the results.",
            inputSchema={
                "type": "object",
                "properties": {
                    "schema": _SCHEMA_PROPERTY,
                    "procedure_name": {
                        "type": "string",
                        "description": "The stored procedure name",
                    },
                    "parameters": {
                        "type": ["object", "string"],
                        "description": (
                            'Parameters as a JSON object (e.g., {"@param1": "value", "@param2": 123}). '
                            "Parameter names can optionally include the @ prefix."
                        ),
                    },
                    "command_timeout": {
                        "type": "integer",
                        "minimum": 0,
                        "description": "Optional command timeout in seconds (0 for no limit)",
                    },
                    "max_rows": {
                        "type": "integer",
                        "description": "Optional maximum number of rows to return",
                    },
                },
                "required": ["schema", "procedure_name"],
            },
        )

    def _create_get_table_columns_tool(self) -> Tool:
        """Create get_table_columns tool."""
        return Tool(
            name="get_table_columns",
            description=(
                "Get column names and types for a table without fetching any data. "
                "Useful for understanding table structure before querying."
            ),
            inputSchema={
                "type": "object",
                "properties": {"schema": _SCHEMA_PROPERTY, "table_name": _TABLE_PROPERTY},
                "required": ["schema", "table_name"],
            },
        )

    def _create_get_table_row_count_tool(self) -> Tool:
        """Create get_table_row_count tool."""
        return Tool(
            name="get_table_row_count",
            description=(
                "Get row count for a table without fetching data. "
                "Useful for understanding data volume before querying."
            ),
            inputSchema={
                "type": "object",
                "properties": {"schema": _SCHEMA_PROPERTY, "table_name": _TABLE_PROPERTY},
                "required": ["schema", "table_name"],
            },
        )

    def _create_list_tables_tool(self) -> Tool:
        """Create list_tables tool."""
        return Tool(
            name="list_tables",
            description="List all tables in a schema, optionally with their row counts.",
            inputSchema={
                "type": "object",
                "properties": {
                    "schema": _SCHEMA_PROPERTY,
                    "include_row_counts": {
                        "type": "boolean",
                        "description": "Include row counts (slower but more informative)",
                        "default": False,
                    },
                },
                "required": ["schema"],
            },
        )

    def _create_get_primary_key_tool(self) -> Tool:
        """Create get_primary_key tool."""
        return Tool(
            name="get_primary_key",
            description="Get primary key columns for a table.",
            inputSchema={
                "type": "object",
                "properties": {"schema": _SCHEMA_PROPERTY, "table_name": _TABLE_PROPERTY},
                "required": ["schema", "table_name"],
            },
        )

    def _create_get_sample_data_tool(self) -> Tool:
        """Create get_sample_data tool."""
        return Tool(
            name="get_sample_data",
            description=(
                "Get a sample of data from a table (first N rows). "
                "Useful for understanding data format."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "schema": _SCHEMA_PROPERTY,
                    "table_name": _TABLE_PROPERTY,
                    "sample_size": {
                        "type": "integer",
                        "description": "Number of sample rows to return (default: 5, max: 20)",
                        "default": 5,
                    },
                },
                "required": ["schema", "table_name"],
            },
        )

    def list_tools(self) -> list[Tool]:
        """List available tools."""
        return [
            self._create_execute_query_tool(),
            self._create_execute_stored_procedure_tool(),
            self._create_get_table_columns_tool(),
            self._create_get_table_row_count_tool(),
            self._create_list_tables_tool(),
            self._create_get_primary_key_tool(),
            self._create_get_sample_data_tool(),
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """
        Dispatch a tool call.

        Raises:
            ValueError: If the tool name is unknown
        """
        handlers = {
            "execute_query": self.handle_execute_query,
            "execute_stored_procedure": self.handle_execute_stored_procedure,
            "get_table_columns": self.handle_get_table_columns,
            "get_table_row_count": self.handle_get_table_row_count,
            "list_tables": self.handle_list_tables,
            "get_primary_key": self.handle_get_primary_key,
            "get_sample_data": self.handle_get_sample_data,
        }

        handler = handlers.get(name)
        if handler is None:
            raise ValueError(f"Unknown tool: {name}")

        return await handler(arguments)

    # Tool handlers
    async def handle_execute_query(
        self, arguments: dict[str, Any]
    ) -> list[TextContent]:
        """Handle execute_query request."""
        max_chars = arguments.get("max_chars")
        indent = not arguments.get("compact", True)

        result = await self.executor.execute_query(
            arguments["query"],
            command_timeout=arguments.get("command_timeout"),
            max_rows=arguments.get("max_rows"),
        )

        if not result.is_success:
            return _text(_with_error_code("Error executing query", result))

        if not result.rows:
            return _text(result.message)

        response = dumps(result.model_dump(), indent=indent)
        if max_chars is not None and len(response) > max_chars:
            # Summary instead of cut JSON, so the payload stays parseable
            response = dumps(result.summarize(max_chars).model_dump(), indent=indent)
        return _text(response)

    async def handle_execute_stored_procedure(
        self, arguments: dict[str, Any]
    ) -> list[TextContent]:
        """Handle execute_stored_procedure request."""
        parameters = arguments.get("parameters")
        if isinstance(parameters, str):
            if parameters.strip():
                try:
                    parameters = loads(parameters)
                except ValueError as e:
                    return _text(f"Error parsing parameters JSON: {e}")
            else:
                parameters = None
        if parameters is not None and not isinstance(parameters, dict):
            return _text("Error parsing parameters JSON: expected a JSON object")

        result = await self.executor.execute_stored_procedure(
            arguments["schema"],
            arguments["procedure_name"],
            parameters,
            command_timeout=arguments.get("command_timeout"),
            max_rows=arguments.get("max_rows"),
        )

        if not result.is_success:
            return _text(_with_error_code("Error executing stored procedure", result))

        if not result.rows:
            return _text(result.message)

        return _text(dumps(result.model_dump(), indent=True))

    async def _explore(self, operation: Any, *args: Any) -> list[TextContent]:
        try:
            data = await operation(*args)
        except ExplorerError as e:
            return _text(f"Error: {e}")
        return _text(dumps(data))

    async def handle_get_table_columns(
        self, arguments: dict[str, Any]
    ) -> list[TextContent]:
        """Handle get_table_columns request."""
        return await self._explore(
            self.explorer.get_table_columns, arguments["schema"], arguments["table_name"]
        )

    async def handle_get_table_row_count(
        self, arguments: dict[str, Any]
    ) -> list[TextContent]:
        """Handle get_table_row_count request."""
        return await self._explore(
            self.explorer.get_table_row_count,
            arguments["schema"],
            arguments["table_name"],
        )

    async def handle_list_tables(self, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle list_tables request."""
        return await self._explore(
            self.explorer.list_tables,
            arguments["schema"],
            arguments.get("include_row_counts", False),
        )

    async def handle_get_primary_key(
        self, arguments: dict[str, Any]
    ) -> list[TextContent]:
        """Handle get_primary_key request."""
        return await self._explore(
            self.explorer.get_primary_key, arguments["schema"], arguments["table_name"]
        )

    async def handle_get_sample_data(
        self, arguments: dict[str, Any]
    ) -> list[TextContent]:
        """Handle get_sample_data request."""
        return await self._explore(
            self.explorer.get_sample_data,
            arguments["schema"],
            arguments["table_name"],
            arguments.get("sample_size", 5),
        )

    # Resource handlers
    async def list_resources(self) -> list[Resource]:
        """List schema resources."""
        descriptors = await self.router.list_resources()
        return [
            Resource(
                uri=AnyUrl(descriptor["uri"]),  # type: ignore[call-arg]
                name=descriptor["name"],
                description=descriptor["description"],
                mimeType=MIME_TYPE,
            )
            for descriptor in descriptors
        ]

    def list_resource_templates(self) -> list[ResourceTemplate]:
        """List URI templates for individual objects and definitions."""
        return [
            ResourceTemplate(
                uriTemplate=template,
                name=name,
                description=description,
                mimeType=MIME_TYPE,
            )
            for template, name, description in RESOURCE_TEMPLATES
        ]

    async def read_resource(self, uri: str) -> str:
        """Read a resource as JSON text."""
        return await self.router.read_json(uri)

    async def cleanup(self) -> None:
        """Cleanup resources."""
        await self.connection.dispose()
        logger.info("SQL Server MCP server cleaned up")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUTHY


def load_config(
    dsn: Optional[str] = None,
    env_var: Optional[str] = None,
    read_only: bool = False,
) -> DatabaseConfig:
    """
    Build the configuration from command line options and environment.

    The connection string comes from the named environment variable, then
    the DSN option, then DATABASE_URL.

    Args:
        dsn: Connection string or SQLAlchemy URL
        env_var: Name of an environment variable holding the connection string
        read_only: Block write statements

    Returns:
        Database configuration

    Raises:
        ValueError: If no connection string is available or a setting is invalid
    """
    if env_var:
        url = os.getenv(env_var)
        if not url:
            raise ValueError(f"Environment variable '{env_var}' not found or empty")
    else:
        url = dsn or os.getenv(DEFAULT_URL_ENV_VAR)

    if not url:
        raise ValueError(
            f"No connection string provided. Use --dsn or --env-var option, "
            f"or set {DEFAULT_URL_ENV_VAR}."
        )

    settings: dict[str, Any] = {"read_only": read_only or _env_flag(READ_ONLY_ENV_VAR)}

    command_timeout = os.getenv(COMMAND_TIMEOUT_ENV_VAR)
    if command_timeout:
        settings["default_command_timeout"] = int(command_timeout)

    max_rows = os.getenv(MAX_ROWS_ENV_VAR)
    if max_rows:
        settings["default_max_rows"] = int(max_rows)

    return DatabaseConfig(url=url, **settings)


async def main(config: DatabaseConfig) -> None:
    """Main entry point for the MCP server."""
    mcp_server = SqlServerMCPServer(config)

    try:
        await mcp_server.initialize()

        @mcp_server.server.list_tools()
        async def list_tools() -> list[Tool]:
            """List available tools."""
            return mcp_server.list_tools()

        @mcp_server.server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            """Handle tool calls."""
            return await mcp_server.call_tool(name, arguments)

        @mcp_server.server.list_resources()
        async def list_resources() -> list[Resource]:
            """List available database resources."""
            return await mcp_server.list_resources()

        @mcp_server.server.list_resource_templates()
        async def list_resource_templates() -> list[ResourceTemplate]:
            """List resource URI templates."""
            return mcp_server.list_resource_templates()

        # MCP decorator type hints don't match runtime signature requirements
        @mcp_server.server.read_resource()  # type: ignore[arg-type]
        async def read_resource(uri: AnyUrl) -> str:
            """Read database resource information."""
            return await mcp_server.read_resource(str(uri))

        from mcp.server.stdio import stdio_server

        async with stdio_server() as (read_stream, write_stream):
            await mcp_server.server.run(
                read_stream,
                write_stream,
                mcp_server.server.create_initialization_options(),
            )

    finally:
        await mcp_server.cleanup()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line options."""
    parser = argparse.ArgumentParser(
        prog="mssql-mcp", description="SQL Server MCP Server"
    )
    parser.add_argument(
        "--dsn",
        "-d",
        help=(
            "SQL Server connection string (e.g., \"Server=myserver;Database=mydb;"
            'User Id=sa;Password=mypassword;TrustServerCertificate=True;")'
        ),
    )
    parser.add_argument(
        "--env-var",
        "-e",
        help="Environment variable name containing the connection string",
    )
    parser.add_argument(
        "--read-only",
        "-r",
        action="store_true",
        help="Run in read-only mode (blocks INSERT, UPDATE, DELETE, etc.)",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def cli_entry() -> None:
    """
    Synchronous entry point for console script.

    This function is called by the 'mssql-mcp' console script.
    It builds the configuration and runs the async main() function.
    """
    args = parse_args()

    try:
        config = load_config(args.dsn, args.env_var, args.read_only)
    except ValueError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli_entry()
