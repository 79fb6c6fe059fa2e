"""URI-addressed schema metadata resources.

Resource URIs have the shape::

    sqlserver://schemas/{schema}
    sqlserver://schemas/{schema}/tables[/{table}]
    sqlserver://schemas/{schema}/views[/{view}[/definition]]
    sqlserver://schemas/{schema}/procedures[/{procedure}[/definition]]

Everything except the ``/definition`` leaves is served through the
ResourceCache.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from urllib.parse import unquote

from pydantic import BaseModel

from mssql_mcp.core.cache import CacheKey, MetadataKind, ResourceCache
from mssql_mcp.core.inspector import MetadataInspector
from mssql_mcp.models.metadata import ObjectDefinition, SchemaInfo
from mssql_mcp.utils import dumps

logger = logging.getLogger(__name__)

RESOURCE_PREFIX = "sqlserver://"
SCHEMA_PREFIX = RESOURCE_PREFIX + "schemas/"
DEFINITION_SEGMENT = "definition"
MIME_TYPE = "application/json"

# (uri template, name, description) advertised to clients
RESOURCE_TEMPLATES = [
    (SCHEMA_PREFIX + "{schema}", "Schema summary", "Table, view and procedure counts"),
    (SCHEMA_PREFIX + "{schema}/tables/{table}", "Table", "Columns, primary key and foreign keys"),
    (SCHEMA_PREFIX + "{schema}/views/{view}", "View", "View columns"),
    (SCHEMA_PREFIX + "{schema}/views/{view}/definition", "View definition", "SQL source of a view"),
    (SCHEMA_PREFIX + "{schema}/procedures/{procedure}", "Procedure", "Stored procedure parameters"),
    (
        SCHEMA_PREFIX + "{schema}/procedures/{procedure}/definition",
        "Procedure definition",
        "SQL source of a stored procedure",
    ),
]


class ResourceKind(str, Enum):
    """Object kind addressed by a resource URI."""

    SCHEMA = "schema"
    TABLES = "tables"
    VIEWS = "views"
    PROCEDURES = "procedures"


_KIND_SEGMENTS = {
    "tables": ResourceKind.TABLES,
    "views": ResourceKind.VIEWS,
    "procedures": ResourceKind.PROCEDURES,
}


class UnknownResourceError(ValueError):
    """Raised for a URI that does not address a known resource."""

    def __init__(self, uri: str):
        super().__init__(f"Unknown resource URI: {uri}")
        self.uri = uri


@dataclass(frozen=True)
class ResourceLocator:
    """Parsed form of a resource URI."""

    schema_name: str
    kind: ResourceKind
    object_name: Optional[str] = None
    wants_definition: bool = False


def parse_resource_uri(uri: str) -> ResourceLocator:
    """
    Parse a ``sqlserver://schemas/...`` URI.

    Args:
        uri: Resource URI; path segments may be percent-encoded

    Returns:
        Resource locator

    Raises:
        UnknownResourceError: If the URI does not match a known shape
    """
    if not uri.startswith(SCHEMA_PREFIX):
        raise UnknownResourceError(uri)

    remainder = uri[len(SCHEMA_PREFIX) :].rstrip("/")
    segments = [unquote(segment) for segment in remainder.split("/")]
    if not all(segments):
        raise UnknownResourceError(uri)

    schema_name = segments[0]
    if len(segments) == 1:
        return ResourceLocator(schema_name, ResourceKind.SCHEMA)

    kind = _KIND_SEGMENTS.get(segments[1])
    if kind is None or len(segments) > 4:
        raise UnknownResourceError(uri)

    if len(segments) == 2:
        return ResourceLocator(schema_name, kind)

    if len(segments) == 3:
        return ResourceLocator(schema_name, kind, object_name=segments[2])

    if segments[3] == DEFINITION_SEGMENT and kind != ResourceKind.TABLES:
        return ResourceLocator(
            schema_name, kind, object_name=segments[2], wants_definition=True
        )

    raise UnknownResourceError(uri)


def _json_ready(value: Any) -> Any:
    """Copy a cached value into plain JSON-compatible data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return list(value)
    return value


class ResourceRouter:
    """Dispatches resource URIs to catalog fetches wrapped in the metadata cache."""

    def __init__(self, inspector: MetadataInspector, cache: ResourceCache):
        """
        Initialize resource router.

        Args:
            inspector: Catalog metadata fetcher
            cache: Metadata cache shared by all requests
        """
        self.inspector = inspector
        self.cache = cache

    async def read(self, uri: str) -> Any:
        """
        Read a resource.

        Args:
            uri: Resource URI

        Returns:
            JSON-serializable metadata (dict or list)

        Raises:
            UnknownResourceError: If the URI is not recognized
            Exception: Whatever the catalog fetch raised
        """
        locator = parse_resource_uri(uri)
        return _json_ready(await self.dispatch(locator))

    async def read_json(self, uri: str) -> str:
        """
        Read a resource as JSON text, reporting failures as an error payload.

        Returns:
            JSON text of the metadata, or of ``{"uri": ..., "message": ...}``
        """
        logger.info(f"Database resource read requested for URI: {uri}")
        try:
            return dumps(await self.read(uri))
        except Exception as e:
            logger.error(f"Error retrieving resource {uri}: {e}")
            return dumps({"uri": uri, "message": f"Error retrieving resource: {e}"})

    async def dispatch(self, locator: ResourceLocator) -> Any:
        """Fetch the metadata a locator addresses."""
        schema_name = locator.schema_name
        name = locator.object_name

        if locator.kind == ResourceKind.SCHEMA:
            return await self.cache.get_or_add(
                CacheKey(MetadataKind.SCHEMA, schema_name),
                lambda: self._schema_info(schema_name),
            )

        if locator.kind == ResourceKind.TABLES:
            if name is None:
                return await self._table_names(schema_name)
            return await self.cache.get_or_add(
                CacheKey(MetadataKind.TABLE, schema_name, name),
                lambda: self.inspector.describe_table(schema_name, name),
            )

        if locator.kind == ResourceKind.VIEWS:
            if name is None:
                return await self._view_names(schema_name)
            if locator.wants_definition:
                definition = await self.inspector.get_view_definition(schema_name, name)
                return ObjectDefinition(
                    schema_name=schema_name,
                    object_type="view",
                    object_name=name,
                    definition=definition,
                )
            return await self.cache.get_or_add(
                CacheKey(MetadataKind.VIEW, schema_name, name),
                lambda: self.inspector.describe_view(schema_name, name),
            )

        if name is None:
            return await self._procedure_names(schema_name)
        if locator.wants_definition:
            definition = await self.inspector.get_procedure_definition(schema_name, name)
            return ObjectDefinition(
                schema_name=schema_name,
                object_type="procedure",
                object_name=name,
                definition=definition,
            )
        return await self.cache.get_or_add(
            CacheKey(MetadataKind.PROCEDURE, schema_name, name),
            lambda: self.inspector.describe_procedure(schema_name, name),
        )

    async def _table_names(self, schema_name: str) -> list[str]:
        return await self.cache.get_or_add(
            CacheKey(MetadataKind.TABLES, schema_name),
            lambda: self.inspector.get_tables(schema_name),
        )

    async def _view_names(self, schema_name: str) -> list[str]:
        return await self.cache.get_or_add(
            CacheKey(MetadataKind.VIEWS, schema_name),
            lambda: self.inspector.get_views(schema_name),
        )

    async def _procedure_names(self, schema_name: str) -> list[str]:
        return await self.cache.get_or_add(
            CacheKey(MetadataKind.PROCEDURES, schema_name),
            lambda: self.inspector.get_procedures(schema_name),
        )

    async def _schema_info(self, schema_name: str) -> SchemaInfo:
        # Counts come from the cached name lists
        return SchemaInfo(
            schema_name=schema_name,
            tables=len(await self._table_names(schema_name)),
            views=len(await self._view_names(schema_name)),
            stored_procedures=len(await self._procedure_names(schema_name)),
        )

    async def list_resources(self) -> list[dict[str, str]]:
        """
        List browsable resources: each dbo-owned schema and its object lists.

        Only the schema names are fetched; object lists load when read.
        Errors are logged and yield an empty list.

        Returns:
            Resource descriptors with uri, name and description
        """
        logger.info("Database resource listing requested")
        try:
            schemas = await self.cache.get_or_add(
                CacheKey(MetadataKind.SCHEMAS), self.inspector.get_schemas
            )
        except Exception as e:
            logger.error(f"Error retrieving schema resources for resource listing: {e}")
            return []

        resources = []
        for schema_name in schemas:
            base = f"{SCHEMA_PREFIX}{schema_name}"
            resources.extend(
                [
                    {
                        "uri": base,
                        "name": f"Schema: {schema_name}",
                        "description": f"Resources for the {schema_name} schema",
                    },
                    {
                        "uri": f"{base}/tables",
                        "name": f"Tables in {schema_name}",
                        "description": f"List of tables in the {schema_name} schema",
                    },
                    {
                        "uri": f"{base}/views",
                        "name": f"Views in {schema_name}",
                        "description": f"List of views in the {schema_name} schema",
                    },
                    {
                        "uri": f"{base}/procedures",
                        "name": f"Procedures in {schema_name}",
                        "description": f"List of stored procedures in the {schema_name} schema",
                    },
                ]
            )
        return resources
