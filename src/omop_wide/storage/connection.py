"""
Database connections for OMOP CDM resources.

The traversal core needs a very small capability surface from the store:
list tables and columns, run a query into a Polars DataFrame, execute a
statement, and read/switch the active schema. `DuckDBConnection` serves
embedded DuckDB files; `SQLAlchemyConnection` serves every other SQL store
(PostgreSQL, MySQL, MariaDB, SQLite).

DBMS-specific schema statements live in immutable `SchemaDialect` values
handed to the connection at construction time; nothing here is a
process-wide mutable registry.
"""

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol
from urllib.parse import urlsplit

import duckdb
import polars as pl
import sqlalchemy as sa

from omop_wide.core.errors import NotFoundError, QueryExecutionError, UnsupportedResourceError

logger = logging.getLogger(__name__)

OMOP_CDM_FORMAT = "omop.cdm.db"


@dataclass(frozen=True)
class SchemaDialect:
    """
    SQL flavour of a DBMS as far as the traversal core is concerned.

    Attributes:
        name: DBMS identifier (duckdb, postgresql, mysql, ...)
        set_schema_template: Statement switching the active schema, `{schema}` placeholder
        current_schema_query: Query returning the active schema as a single value
        identifier_quote: Character used to quote identifiers
        text_type: Type name used to cast values to text for type-agnostic matching
    """

    name: str
    set_schema_template: str | None = None
    current_schema_query: str | None = None
    identifier_quote: str = '"'
    text_type: str = "VARCHAR"

    @property
    def supports_schemas(self) -> bool:
        return bool(self.set_schema_template and self.current_schema_query)

    def set_schema_statement(self, schema: str) -> str:
        if not self.set_schema_template:
            raise UnsupportedResourceError(f"Schema switching is not supported for DBMS: {self.name}")
        return self.set_schema_template.replace("{schema}", schema)

    def quote(self, identifier: str) -> str:
        q = self.identifier_quote
        return f"{q}{identifier.replace(q, q * 2)}{q}"

    def literal(self, value: Any) -> str:
        """Render a value as a SQL string literal."""
        return "'" + str(value).replace("'", "''") + "'"

    def as_text(self, expression: str) -> str:
        return f"CAST({expression} AS {self.text_type})"


DIALECTS: Mapping[str, SchemaDialect] = MappingProxyType(
    {
        "duckdb": SchemaDialect("duckdb", "SET schema = '{schema}'", "SELECT current_schema()"),
        "postgresql": SchemaDialect("postgresql", "SET search_path TO {schema}", "SHOW search_path"),
        "mysql": SchemaDialect("mysql", "USE {schema}", "SELECT DATABASE()", "`", "CHAR"),
        "mariadb": SchemaDialect("mariadb", "USE {schema}", "SELECT DATABASE()", "`", "CHAR"),
        "sqlite": SchemaDialect("sqlite", text_type="TEXT"),
    }
)

_DIALECT_ALIASES = {"postgres": "postgresql", "psql": "postgresql"}


def get_dialect(dbms: str) -> SchemaDialect:
    """
    Look up the dialect for a DBMS identifier.

    Raises:
        UnsupportedResourceError: If the DBMS is unknown
    """
    key = dbms.lower()
    key = _DIALECT_ALIASES.get(key, key)
    if key not in DIALECTS:
        raise UnsupportedResourceError(f"No schema dialect registered for DBMS: {dbms}")
    return DIALECTS[key]


class Connection(Protocol):
    """Capability interface the traversal core consumes."""

    dialect: SchemaDialect

    def connect(self) -> None: ...

    def list_tables(self) -> list[str]: ...

    def list_columns(self, table: str) -> list[str]: ...

    def query(self, sql: str) -> pl.DataFrame: ...

    def execute(self, sql: str) -> None: ...

    def current_schema(self) -> str | None: ...

    def set_schema(self, schema: str) -> None: ...

    def close(self) -> None: ...


class DuckDBConnection:
    """
    Connection to an embedded DuckDB database.

    Accepts either a database path (`:memory:` for an in-memory database) or an
    existing `duckdb.DuckDBPyConnection`, which is borrowed and never closed.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        db_connection: duckdb.DuckDBPyConnection | None = None,
        dialect: SchemaDialect = DIALECTS["duckdb"],
        read_only: bool = False,
    ):
        self.db_path = db_path
        self.db_connection = db_connection
        self.dialect = dialect
        self.read_only = read_only
        self.conn: duckdb.DuckDBPyConnection | None = None

    def connect(self) -> None:
        """Establish database connection."""
        if self.conn is not None:
            return
        if self.db_connection is not None:
            self.conn = self.db_connection
        elif self.db_path is None or str(self.db_path) == ":memory:":
            self.conn = duckdb.connect(":memory:")
        else:
            path = Path(self.db_path)
            if not path.exists():
                raise FileNotFoundError(f"DuckDB file not found: {path}")
            self.conn = duckdb.connect(str(path), read_only=self.read_only)
        logger.debug(f"Opened DuckDB connection (path={self.db_path})")

    def close(self) -> None:
        """Close database connection (borrowed connections are left open)."""
        if self.conn is not None and self.conn is not self.db_connection:
            self.conn.close()
        self.conn = None

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            self.connect()
        return self.conn

    def list_tables(self) -> list[str]:
        rows = self._connection().execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_catalog = current_database() "
            "ORDER BY table_name"
        ).fetchall()
        return [row[0] for row in rows]

    def list_columns(self, table: str) -> list[str]:
        rows = self._connection().execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_name = ? AND table_schema = current_schema() AND table_catalog = current_database() "
            "ORDER BY ordinal_position",
            [table],
        ).fetchall()
        if not rows:
            raise NotFoundError(table)
        return [row[0] for row in rows]

    def query(self, sql: str) -> pl.DataFrame:
        """
        Execute SQL query and return Polars DataFrame.

        Raises:
            QueryExecutionError: If DuckDB rejects the query
        """
        try:
            return self._connection().execute(sql).pl()
        except duckdb.Error as e:
            raise QueryExecutionError(f"Query execution failed: {e}") from e

    def execute(self, sql: str) -> None:
        try:
            self._connection().execute(sql)
        except duckdb.Error as e:
            raise QueryExecutionError(f"Statement execution failed: {e}") from e

    def current_schema(self) -> str | None:
        if not self.dialect.current_schema_query:
            return None
        return self.query(self.dialect.current_schema_query).item(0, 0)

    def set_schema(self, schema: str) -> None:
        self.execute(self.dialect.set_schema_statement(schema))

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SQLAlchemyConnection:
    """
    Connection to any SQLAlchemy-supported store.

    The dialect is derived from the engine unless given explicitly.
    """

    def __init__(
        self,
        url: str | None = None,
        engine: sa.Engine | None = None,
        dialect: SchemaDialect | None = None,
    ):
        if engine is None and url is None:
            raise ValueError("Either url or engine must be provided")
        self.engine = engine if engine is not None else sa.create_engine(url)
        self.dialect = dialect or get_dialect(self.engine.dialect.name)
        self.conn: sa.Connection | None = None
        self._default_schema: str | None = None
        self._schema: str | None = None

    def connect(self) -> None:
        """Establish database connection."""
        if self.conn is not None:
            return
        self.conn = self.engine.connect()
        self._default_schema = self.current_schema()
        logger.debug(f"Opened SQLAlchemy connection (dbms={self.dialect.name})")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
        self.conn = None

    def _connection(self) -> sa.Connection:
        if self.conn is None:
            self.connect()
        return self.conn

    def list_tables(self) -> list[str]:
        inspector = sa.inspect(self._connection())
        return sorted(inspector.get_table_names(schema=self._schema))

    def list_columns(self, table: str) -> list[str]:
        inspector = sa.inspect(self._connection())
        try:
            return [column["name"] for column in inspector.get_columns(table, schema=self._schema)]
        except sa.exc.NoSuchTableError as e:
            raise NotFoundError(table) from e

    def _rollback(self) -> None:
        # PostgreSQL rejects every statement after a failed one until the transaction is rolled back
        if self.conn is not None:
            self.conn.rollback()

    def query(self, sql: str) -> pl.DataFrame:
        try:
            return pl.read_database(query=sql, connection=self._connection())
        except sa.exc.SQLAlchemyError as e:
            self._rollback()
            raise QueryExecutionError(f"Query execution failed: {e}") from e

    def execute(self, sql: str) -> None:
        connection = self._connection()
        try:
            connection.exec_driver_sql(sql)
            connection.commit()
        except sa.exc.SQLAlchemyError as e:
            self._rollback()
            raise QueryExecutionError(f"Statement execution failed: {e}") from e

    def current_schema(self) -> str | None:
        if not self.dialect.current_schema_query:
            return None
        row = self._connection().exec_driver_sql(self.dialect.current_schema_query).first()
        return row[0] if row else None

    def set_schema(self, schema: str) -> None:
        self.execute(self.dialect.set_schema_statement(schema))
        # Inspection follows the connection default again once the original schema is restored
        self._schema = None if schema == self._default_schema else schema

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


@dataclass(frozen=True)
class Resource:
    """
    Declared OMOP CDM resource.

    Attributes:
        url: Connection URL (`duckdb:///path.db`, `postgresql://host/db`, ...)
        format: Declared resource type, selects the connection constructor
        schema: CDM schema holding the clinical tables (None = connection default)
        vocabulary_schema: Schema holding the vocabulary tables (None = same as data)
    """

    url: str
    format: str = OMOP_CDM_FORMAT
    schema: str | None = None
    vocabulary_schema: str | None = None

    @property
    def dbms(self) -> str:
        return urlsplit(self.url).scheme.split("+")[0].lower()


def _duckdb_path(url: str) -> str:
    # duckdb:///relative.db, duckdb:////absolute.db, duckdb:///:memory:
    remainder = url.split("://", 1)[1] if "://" in url else url
    if remainder.startswith("/"):
        remainder = remainder[1:]
    return remainder or ":memory:"


def _connect_omop_cdm(resource: Resource) -> Connection:
    if resource.dbms == "duckdb":
        return DuckDBConnection(db_path=_duckdb_path(resource.url))
    return SQLAlchemyConnection(url=resource.url)


RESOURCE_CONNECTORS: Mapping[str, Callable[[Resource], Connection]] = MappingProxyType(
    {OMOP_CDM_FORMAT: _connect_omop_cdm}
)


def open_connection(
    resource: Resource,
    connectors: Mapping[str, Callable[[Resource], Connection]] = RESOURCE_CONNECTORS,
) -> Connection:
    """
    Resolve the connection constructor for a resource and open it.

    Raises:
        UnsupportedResourceError: If no constructor is registered for the resource format
    """
    factory = connectors.get(resource.format.lower())
    if factory is None:
        raise UnsupportedResourceError(f"The provided resource is not an OMOP CDM database: {resource.format}")
    connection = factory(resource)
    connection.connect()
    return connection


@contextmanager
def connect(
    resource: Resource,
    connectors: Mapping[str, Callable[[Resource], Connection]] = RESOURCE_CONNECTORS,
) -> Iterator[Connection]:
    """Open a connection for the duration of a request and always close it."""
    connection = open_connection(resource, connectors)
    try:
        yield connection
    finally:
        connection.close()


@contextmanager
def schema_scope(connection: Connection, schema: str | None) -> Iterator[None]:
    """
    Temporarily switch the active schema, restoring the previous one on exit.

    The restore runs on both success and error paths. No-op when `schema` is
    None, already active, or the dialect cannot switch schemas.
    """
    if schema is None or not connection.dialect.supports_schemas:
        yield
        return

    previous = connection.current_schema()
    if previous == schema:
        yield
        return

    logger.debug(f"Switching schema {previous!r} -> {schema!r}")
    connection.set_schema(schema)
    try:
        yield
    finally:
        if previous is not None:
            connection.set_schema(previous)
