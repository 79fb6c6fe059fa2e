"""Database connection management with SQLAlchemy."""

import logging
import math
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from mssql_mcp.models.config import DatabaseConfig

logger = logging.getLogger(__name__)


async def set_command_timeout(conn: AsyncConnection, seconds: float) -> None:
    """
    Set the ODBC query timeout for statements run on a connection.

    The driver cancels the statement on the server once the timeout passes.

    Args:
        conn: Connection checked out from the pool
        seconds: Timeout in seconds, rounded up to whole seconds; 0 means no limit
    """
    raw = await conn.get_raw_connection()
    driver = raw.driver_connection
    # aioodbc only exposes a read-only timeout; the wrapped pyodbc connection takes it
    odbc_connection = getattr(driver, "_conn", driver)
    odbc_connection.timeout = math.ceil(seconds)


class DatabaseConnection:
    """Manages the SQLAlchemy async engine and its connection pool."""

    def __init__(self, config: DatabaseConfig):
        """
        Initialize database connection.

        Args:
            config: Database configuration with connection URL and pool settings
        """
        self.config = config
        self.engine: Optional[AsyncEngine] = None

    async def initialize(self) -> None:
        """Create the async engine."""
        if self.engine is not None:
            return  # Already initialized

        # One statement or procedure call per invocation, so no explicit
        # transactions: every statement commits on its own
        self.engine = create_async_engine(
            self.config.url,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_pre_ping=True,  # Verify connections before using
            isolation_level="AUTOCOMMIT",
            echo=self.config.echo_sql,
        )

    async def dispose(self) -> None:
        """Dispose of the connection pool and cleanup resources."""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None

    @asynccontextmanager
    async def get_connection(
        self, command_timeout: Optional[float] = None
    ) -> AsyncGenerator[AsyncConnection, None]:
        """
        Get a connection from the pool as an async context manager.

        The connection is returned to the pool on every exit path, including
        task cancellation.

        Args:
            command_timeout: Driver query timeout in seconds for statements on
                this connection (0 for no limit, None leaves it unchanged)

        Yields:
            AsyncConnection for executing statements

        Raises:
            RuntimeError: If engine not initialized
        """
        if self.engine is None:
            raise RuntimeError(
                "DatabaseConnection not initialized. Call initialize() first."
            )

        async with self.engine.connect() as conn:
            if command_timeout is not None:
                await set_command_timeout(conn, command_timeout)
            yield conn

    async def test_connection(self) -> bool:
        """
        Test database connectivity.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            async with self.get_connection() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Connection test failed: {e}")
            return False

    async def get_version(self) -> str:
        """
        Get database version string.

        Returns:
            Database version string
        """
        async with self.get_connection() as conn:
            result = await conn.execute(text("SELECT @@VERSION"))
            row = result.fetchone()
            return str(row[0]) if row else "Unknown"

    async def __aenter__(self) -> "DatabaseConnection":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.dispose()
