"""Module Tests for SqlServerMCPServer

Tests tool and resource handlers directly, without the stdio transport.
Validates:
- Response rendering (compact and indented JSON, summaries, plain messages)
- Error text with native error codes
- Stored procedure parameter parsing
- Resource listing, templates and reads
- Configuration from command line options and environment
"""

import pytest
from sqlalchemy.exc import DBAPIError

from conftest import FakeDatabase, FakeResult
from mssql_mcp.core.executor import NO_RESULT_SET_MESSAGE, READ_ONLY_MESSAGE
from mssql_mcp.models.config import DatabaseConfig
from mssql_mcp.server import SqlServerMCPServer, load_config, parse_args
from mssql_mcp.utils import loads


@pytest.fixture
def mcp_server(config: DatabaseConfig, fake_db: FakeDatabase) -> SqlServerMCPServer:
    """Server wired to the in-memory database"""
    return SqlServerMCPServer(config, connection=fake_db)  # type: ignore[arg-type]


async def _call(server: SqlServerMCPServer, name: str, **arguments) -> str:
    contents = await server.call_tool(name, arguments)
    assert len(contents) == 1
    assert contents[0].type == "text"
    return contents[0].text


class TestToolRegistry:
    """Tool listing and dispatch."""

    def test_list_tools(self, mcp_server: SqlServerMCPServer):
        names = [tool.name for tool in mcp_server.list_tools()]
        assert names == [
            "execute_query",
            "execute_stored_procedure",
            "get_table_columns",
            "get_table_row_count",
            "list_tables",
            "get_primary_key",
            "get_sample_data",
        ]

    def test_execute_query_schema(self, mcp_server: SqlServerMCPServer):
        tool = mcp_server.list_tools()[0]
        assert tool.inputSchema["required"] == ["query"]
        assert tool.inputSchema["properties"]["compact"]["default"] is True

    async def test_unknown_tool(self, mcp_server: SqlServerMCPServer):
        with pytest.raises(ValueError, match="Unknown tool: drop_database"):
            await mcp_server.call_tool("drop_database", {})


class TestExecuteQueryTool:
    """execute_query rendering."""

    async def test_compact_json(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        fake_db.on("FROM Customers", FakeResult(["Id", "Name"], [(1, "Ada"), (2, None)]))

        text = await _call(mcp_server, "execute_query", query="SELECT Id, Name FROM Customers")

        assert "\n" not in text
        payload = loads(text)
        assert payload["is_success"] is True
        assert payload["rows"] == [{"Id": 1, "Name": "Ada"}, {"Id": 2, "Name": None}]
        assert payload["row_count"] == 2
        assert payload["has_more_rows"] is False

    async def test_indented_json(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        fake_db.on("FROM Customers", FakeResult(["Id"], [(1,)]))

        text = await _call(
            mcp_server, "execute_query", query="SELECT Id FROM Customers", compact=False
        )

        assert text.startswith("{\n  ")
        assert loads(text)["rows"] == [{"Id": 1}]

    async def test_summary_when_over_max_chars(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        rows = [(i, "x" * 50) for i in range(20)]
        fake_db.on("FROM Customers", FakeResult(["Id", "Note"], rows))

        text = await _call(
            mcp_server,
            "execute_query",
            query="SELECT Id, Note FROM Customers",
            max_chars=200,
        )

        payload = loads(text)
        assert payload["truncated"] is True
        assert payload["truncated_at"] == 200
        assert payload["row_count"] == 20
        assert [row["Id"] for row in payload["sample_rows"]] == [0, 1, 2]
        assert "rows" not in payload

    async def test_full_payload_within_max_chars(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("FROM Customers", FakeResult(["Id"], [(1,)]))

        text = await _call(
            mcp_server, "execute_query", query="SELECT Id FROM Customers", max_chars=100000
        )

        assert "truncated" not in loads(text)

    async def test_no_rows_returns_message(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("UPDATE", FakeResult(rowcount=3))

        text = await _call(mcp_server, "execute_query", query="UPDATE Orders SET Flag = 1")

        assert text == "3 row(s) affected."

    async def test_max_rows_passed_through(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("FROM Numbers", FakeResult(["n"], [(i,) for i in range(10)]))

        text = await _call(
            mcp_server, "execute_query", query="SELECT n FROM Numbers", max_rows=4
        )

        payload = loads(text)
        assert payload["row_count"] == 4
        assert payload["has_more_rows"] is True

    async def test_engine_error_with_code(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        orig = Exception("Invalid object name 'Nope'.")
        orig.number = 208  # type: ignore[attr-defined]
        fake_db.on("FROM Nope", DBAPIError("SELECT", {}, orig))

        text = await _call(mcp_server, "execute_query", query="SELECT * FROM Nope")

        assert text == (
            "Error executing query: SQL Error: Invalid object name 'Nope'. (Error code: 208)"
        )

    async def test_read_only_error(self, read_only_config: DatabaseConfig, read_only_db: FakeDatabase):
        server = SqlServerMCPServer(read_only_config, connection=read_only_db)  # type: ignore[arg-type]

        text = await _call(server, "execute_query", query="DROP TABLE Orders")

        assert text == f"Error executing query: {READ_ONLY_MESSAGE}"
        assert read_only_db.statements == []


class TestStoredProcedureTool:
    """execute_stored_procedure rendering and parameter parsing."""

    async def test_parameters_as_json_string(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("EXEC", FakeResult(["OrderId"], [(10,)]))

        text = await _call(
            mcp_server,
            "execute_stored_procedure",
            schema="dbo",
            procedure_name="GetOrders",
            parameters='{"@CustomerId": 5, "Status": "open"}',
        )

        assert text.startswith("{\n  ")
        assert loads(text)["rows"] == [{"OrderId": 10}]
        assert fake_db.statements[0][1] == {"p0": 5, "p1": "open"}

    async def test_parameters_as_object(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("EXEC", FakeResult(["OrderId"], [(10,)]))

        await _call(
            mcp_server,
            "execute_stored_procedure",
            schema="dbo",
            procedure_name="GetOrders",
            parameters={"CustomerId": 7},
        )

        assert fake_db.statements[0][1] == {"p0": 7}

    @pytest.mark.parametrize("parameters", ["", "   "])
    async def test_blank_parameters(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase, parameters: str
    ):
        fake_db.on("EXEC", FakeResult(["n"], [(1,)]))

        await _call(
            mcp_server,
            "execute_stored_procedure",
            schema="dbo",
            procedure_name="Refresh",
            parameters=parameters,
        )

        assert fake_db.statements[0] == ("SET NOCOUNT ON; EXEC [dbo].[Refresh]", {})

    async def test_malformed_json(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        text = await _call(
            mcp_server,
            "execute_stored_procedure",
            schema="dbo",
            procedure_name="GetOrders",
            parameters="{not json",
        )

        assert text.startswith("Error parsing parameters JSON: ")
        assert fake_db.statements == []

    async def test_json_that_is_not_an_object(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        text = await _call(
            mcp_server,
            "execute_stored_procedure",
            schema="dbo",
            procedure_name="GetOrders",
            parameters="[1, 2]",
        )

        assert text == "Error parsing parameters JSON: expected a JSON object"

    async def test_invalid_procedure_name(self, mcp_server: SqlServerMCPServer):
        text = await _call(
            mcp_server,
            "execute_stored_procedure",
            schema="dbo",
            procedure_name="Bad;Name",
        )

        assert text == (
            "Error executing stored procedure: Invalid procedure name: 'Bad;Name'. "
            "Only alphanumeric characters and underscores are allowed."
        )

    async def test_no_result_set(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        fake_db.on("EXEC", FakeResult())

        text = await _call(
            mcp_server, "execute_stored_procedure", schema="dbo", procedure_name="Refresh"
        )

        assert text == NO_RESULT_SET_MESSAGE


class TestExplorerTools:
    """Schema exploration tools."""

    async def test_row_count_is_compact_json(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("COUNT(*)", FakeResult(["row_count"], [(7,)]))

        text = await _call(
            mcp_server, "get_table_row_count", schema="dbo", table_name="Orders"
        )

        assert text == '{"schema":"dbo","table":"Orders","row_count":7}'

    async def test_sample_data_default_size(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase
    ):
        fake_db.on("SELECT TOP", FakeResult(["Id"], [(1,)]))

        await _call(mcp_server, "get_sample_data", schema="dbo", table_name="Orders")

        assert fake_db.statements[0][0] == "SELECT TOP 5 * FROM [dbo].[Orders]"

    async def test_failure_text(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        fake_db.on("INFORMATION_SCHEMA.TABLES", RuntimeError("permission denied"))

        text = await _call(mcp_server, "list_tables", schema="dbo")

        assert text == "Error: permission denied"


class TestResourceHandlers:
    """Resource listing, templates and reads."""

    async def test_list_resources(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        fake_db.on("INFORMATION_SCHEMA.SCHEMATA", FakeResult(["SCHEMA_NAME"], [("dbo",)]))

        resources = await mcp_server.list_resources()

        assert [str(resource.uri) for resource in resources] == [
            "sqlserver://schemas/dbo",
            "sqlserver://schemas/dbo/tables",
            "sqlserver://schemas/dbo/views",
            "sqlserver://schemas/dbo/procedures",
        ]
        assert all(resource.mimeType == "application/json" for resource in resources)

    def test_resource_templates(self, mcp_server: SqlServerMCPServer):
        templates = [t.uriTemplate for t in mcp_server.list_resource_templates()]

        assert templates == [
            "sqlserver://schemas/{schema}",
            "sqlserver://schemas/{schema}/tables/{table}",
            "sqlserver://schemas/{schema}/views/{view}",
            "sqlserver://schemas/{schema}/views/{view}/definition",
            "sqlserver://schemas/{schema}/procedures/{procedure}",
            "sqlserver://schemas/{schema}/procedures/{procedure}/definition",
        ]

    async def test_read_resource(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        fake_db.on("INFORMATION_SCHEMA.TABLES", FakeResult(["TABLE_NAME"], [("Orders",)]))

        text = await mcp_server.read_resource("sqlserver://schemas/dbo/tables")

        assert loads(text) == ["Orders"]

    async def test_read_unknown_resource(self, mcp_server: SqlServerMCPServer):
        text = await mcp_server.read_resource("sqlserver://elsewhere")

        assert loads(text)["message"].startswith("Error retrieving resource: Unknown resource URI")


class TestLifecycle:
    """Startup checks."""

    async def test_initialize(self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase):
        await mcp_server.initialize()
        assert fake_db.initialized

        await mcp_server.cleanup()
        assert not fake_db.initialized

    async def test_initialize_fails_without_connectivity(
        self, mcp_server: SqlServerMCPServer, fake_db: FakeDatabase, monkeypatch
    ):
        async def unreachable() -> bool:
            return False

        monkeypatch.setattr(fake_db, "test_connection", unreachable)

        with pytest.raises(RuntimeError, match="Unable to connect"):
            await mcp_server.initialize()


class TestConfiguration:
    """Command line and environment configuration."""

    @pytest.fixture(autouse=True)
    def clean_environment(self, monkeypatch):
        for name in (
            "DATABASE_URL",
            "MSSQL_READ_ONLY",
            "MSSQL_COMMAND_TIMEOUT",
            "MSSQL_MAX_ROWS",
            "SALES_DB",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_parse_args(self):
        args = parse_args(["-d", "Server=h;Database=d", "-r"])
        assert args.dsn == "Server=h;Database=d"
        assert args.env_var is None
        assert args.read_only is True

    def test_dsn(self):
        config = load_config(dsn="mssql://sa:pw@localhost/app")
        assert config.database == "app"
        assert config.read_only is False

    def test_env_var_takes_precedence(self, monkeypatch):
        monkeypatch.setenv("SALES_DB", "Server=sales;Database=Sales")
        config = load_config(dsn="mssql://sa:pw@localhost/app", env_var="SALES_DB")
        assert config.database == "Sales"

    def test_missing_env_var(self):
        with pytest.raises(ValueError, match="Environment variable 'SALES_DB' not found or empty"):
            load_config(env_var="SALES_DB")

    def test_database_url_fallback(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "mssql://sa:pw@localhost/fallback")
        assert load_config().database == "fallback"

    def test_no_connection_string(self):
        with pytest.raises(ValueError, match="No connection string provided"):
            load_config()

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MSSQL_READ_ONLY", "true")
        monkeypatch.setenv("MSSQL_COMMAND_TIMEOUT", "90")
        monkeypatch.setenv("MSSQL_MAX_ROWS", "250")

        config = load_config(dsn="mssql://sa:pw@localhost/app")

        assert config.read_only is True
        assert config.default_command_timeout == 90
        assert config.default_max_rows == 250

    def test_invalid_url_is_value_error(self):
        with pytest.raises(ValueError):
            load_config(dsn="postgresql://u:p@h/db")
