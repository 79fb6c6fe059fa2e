"""Entry point for running mssql_mcp as a module."""

from mssql_mcp.server import cli_entry

if __name__ == "__main__":
    cli_entry()
