"""Storage module for OMOP CDM connections, SQL dialects and resource resolution."""

from omop_wide.storage.connection import (
    Connection,
    DuckDBConnection,
    Resource,
    SQLAlchemyConnection,
    connect,
    open_connection,
    schema_scope,
)

__all__ = [
    "connect",
    "Connection",
    "DuckDBConnection",
    "open_connection",
    "Resource",
    "schema_scope",
    "SQLAlchemyConnection",
]
