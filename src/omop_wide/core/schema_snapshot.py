"""
Schema Snapshot - explicit `table -> columns` map taken once per request.

Classification and graph building are pure functions over this snapshot so
the traversal never re-queries the store mid-flight.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from omop_wide.core.errors import NotFoundError
from omop_wide.core.naming import find_case_insensitive
from omop_wide.storage.connection import Connection

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SchemaSnapshot:
    """
    Column names of every table in the active schema.

    Attributes:
        tables: Mapping of table name (as spelled by the store) to its ordered column names
    """

    tables: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, tables: Mapping[str, Iterable[str]]) -> "SchemaSnapshot":
        return cls({name: tuple(columns) for name, columns in tables.items()})

    @classmethod
    def from_connection(cls, connection: Connection) -> "SchemaSnapshot":
        tables = {name: tuple(connection.list_columns(name)) for name in connection.list_tables()}
        logger.debug("schema_snapshot_taken", table_count=len(tables))
        return cls(tables)

    @property
    def table_names(self) -> list[str]:
        return list(self.tables)

    def find_table(self, name: str) -> str | None:
        return find_case_insensitive(self.tables, name)

    def resolve_table(self, name: str) -> str:
        """
        Resolve a table name case-insensitively.

        Raises:
            NotFoundError: If no table matches
        """
        resolved = self.find_table(name)
        if resolved is None:
            raise NotFoundError(name)
        return resolved

    def columns(self, table: str) -> tuple[str, ...]:
        return self.tables[self.resolve_table(table)]

    def has_column(self, table: str, column: str) -> bool:
        return find_case_insensitive(self.columns(table), column) is not None
