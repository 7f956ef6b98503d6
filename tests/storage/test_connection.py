"""
Tests for database connections, dialects and resource resolution.

Tests follow AAA pattern (Arrange, Act, Assert):
- DuckDB connections (file, in-memory, borrowed)
- SQLAlchemy connections (SQLite)
- Schema switching with guaranteed restore
- Resource -> connection resolution
"""

import duckdb
import polars as pl
import pytest
import sqlalchemy as sa

from omop_wide.core.errors import NotFoundError, QueryExecutionError, UnsupportedResourceError
from omop_wide.storage.connection import (
    DIALECTS,
    DuckDBConnection,
    Resource,
    SchemaDialect,
    SQLAlchemyConnection,
    _duckdb_path,
    connect,
    get_dialect,
    open_connection,
    schema_scope,
)


@pytest.fixture
def sqlite_connection():
    """SQLAlchemy connection to an in-memory SQLite database with a person table."""
    engine = sa.create_engine("sqlite://")
    connection = SQLAlchemyConnection(engine=engine)
    connection.execute("CREATE TABLE person (person_id INTEGER, year_of_birth INTEGER)")
    connection.execute("INSERT INTO person VALUES (1, 1980), (2, 1975)")
    yield connection
    connection.close()
    engine.dispose()


class TestSchemaDialect:
    """Test dialect lookup and SQL rendering."""

    def test_get_dialect_resolves_aliases_case_insensitively(self):
        assert get_dialect("Postgres") is DIALECTS["postgresql"]
        assert get_dialect("duckdb").name == "duckdb"

    def test_get_dialect_unknown_dbms_raises(self):
        with pytest.raises(UnsupportedResourceError, match="oracle"):
            get_dialect("oracle")

    def test_dialect_quote_escapes_quote_character(self):
        assert DIALECTS["duckdb"].quote('a"b') == '"a""b"'
        assert DIALECTS["mysql"].quote("person") == "`person`"

    def test_dialect_literal_escapes_single_quotes(self):
        assert DIALECTS["duckdb"].literal("O'Brien") == "'O''Brien'"

    def test_dialect_set_schema_statement(self):
        # Act & Assert
        assert DIALECTS["postgresql"].set_schema_statement("cdm") == "SET search_path TO cdm"
        with pytest.raises(UnsupportedResourceError):
            DIALECTS["sqlite"].set_schema_statement("cdm")
        assert DIALECTS["sqlite"].supports_schemas is False


class TestDuckDBConnection:
    """Test DuckDB connection capabilities."""

    def test_duckdb_list_tables_sorted(self, omop_connection):
        assert omop_connection.list_tables() == ["care_site", "concept", "measurement", "observation_period", "person"]

    def test_duckdb_list_columns_in_table_order(self, omop_connection):
        columns = omop_connection.list_columns("observation_period")
        assert columns == ["observation_period_id", "person_id", "observation_period_start_date"]

    def test_duckdb_list_columns_unknown_table_raises(self, omop_connection):
        with pytest.raises(NotFoundError, match="specimen"):
            omop_connection.list_columns("specimen")

    def test_duckdb_query_returns_polars_frame(self, omop_connection):
        df = omop_connection.query("SELECT person_id FROM person ORDER BY person_id")
        assert isinstance(df, pl.DataFrame)
        assert df["person_id"].to_list() == [1, 2, 3]

    def test_duckdb_query_error_wrapped(self, omop_connection):
        with pytest.raises(QueryExecutionError, match="Query execution failed"):
            omop_connection.query("SELECT * FROM specimen")

    def test_duckdb_borrowed_connection_left_open(self, omop_db):
        # Arrange
        connection = DuckDBConnection(db_connection=omop_db)
        connection.connect()

        # Act
        connection.close()

        # Assert: the borrowed connection still answers
        assert omop_db.execute("SELECT COUNT(*) FROM person").fetchone()[0] == 3

    def test_duckdb_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DuckDBConnection(db_path=tmp_path / "missing.duckdb").connect()

    def test_duckdb_file_connection_persists_across_connections(self, tmp_path):
        # Arrange
        path = tmp_path / "cdm.duckdb"
        writer = duckdb.connect(str(path))
        writer.execute("CREATE TABLE person AS SELECT 1 AS person_id")
        writer.close()

        # Act
        with DuckDBConnection(db_path=path, read_only=True) as connection:
            tables = connection.list_tables()

        # Assert
        assert tables == ["person"]


class TestSQLAlchemyConnection:
    """Test SQLAlchemy connection capabilities against SQLite."""

    def test_sqlalchemy_dialect_derived_from_engine(self, sqlite_connection):
        assert sqlite_connection.dialect is DIALECTS["sqlite"]

    def test_sqlalchemy_list_tables_and_columns(self, sqlite_connection):
        assert sqlite_connection.list_tables() == ["person"]
        assert sqlite_connection.list_columns("person") == ["person_id", "year_of_birth"]

    def test_sqlalchemy_list_columns_unknown_table_raises(self, sqlite_connection):
        with pytest.raises(NotFoundError):
            sqlite_connection.list_columns("specimen")

    def test_sqlalchemy_query_returns_polars_frame(self, sqlite_connection):
        df = sqlite_connection.query("SELECT person_id FROM person ORDER BY person_id")
        assert df["person_id"].to_list() == [1, 2]

    def test_sqlalchemy_query_error_wrapped(self, sqlite_connection):
        with pytest.raises(QueryExecutionError):
            sqlite_connection.query("SELECT * FROM specimen")

    def test_sqlalchemy_failed_query_rolls_back_transaction(self, sqlite_connection):
        # Act
        with pytest.raises(QueryExecutionError):
            sqlite_connection.query("SELECT * FROM specimen")

        # Assert: no transaction left open, the connection keeps serving queries
        assert sqlite_connection.conn.in_transaction() is False
        assert sqlite_connection.query("SELECT COUNT(*) AS n FROM person")["n"].to_list() == [2]

    def test_sqlalchemy_failed_statement_rolls_back_transaction(self, sqlite_connection):
        with pytest.raises(QueryExecutionError):
            sqlite_connection.execute("INSERT INTO specimen VALUES (1)")
        assert sqlite_connection.conn.in_transaction() is False

    def test_sqlalchemy_current_schema_none_without_schema_support(self, sqlite_connection):
        assert sqlite_connection.current_schema() is None

    def test_sqlalchemy_requires_url_or_engine(self):
        with pytest.raises(ValueError):
            SQLAlchemyConnection()


class TestSchemaScope:
    """Test temporary schema switching."""

    def test_schema_scope_switches_and_restores(self, omop_db, omop_connection):
        # Arrange
        omop_db.execute("CREATE SCHEMA cdm")

        # Act
        with schema_scope(omop_connection, "cdm"):
            inside = omop_connection.current_schema()

        # Assert
        assert inside == "cdm"
        assert omop_connection.current_schema() == "main"

    def test_schema_scope_restores_on_error(self, omop_db, omop_connection):
        # Arrange
        omop_db.execute("CREATE SCHEMA cdm")

        # Act
        with pytest.raises(RuntimeError):
            with schema_scope(omop_connection, "cdm"):
                raise RuntimeError("boom")

        # Assert
        assert omop_connection.current_schema() == "main"

    def test_schema_scope_restores_after_failed_sqlalchemy_query(self):
        # Arrange: SQLite behind a dialect that accepts schema statements
        dialect = SchemaDialect(
            "sqlite", set_schema_template="SELECT '{schema}'", current_schema_query="SELECT 'main'", text_type="TEXT"
        )
        engine = sa.create_engine("sqlite://")
        connection = SQLAlchemyConnection(engine=engine, dialect=dialect)
        connection.execute("CREATE TABLE person (person_id INTEGER)")

        # Act
        with pytest.raises(QueryExecutionError):
            with schema_scope(connection, "vocabulary"):
                connection.query("SELECT * FROM concept")

        # Assert
        assert connection._schema is None
        assert connection.conn.in_transaction() is False
        assert connection.list_tables() == ["person"]
        connection.close()
        engine.dispose()

    def test_schema_scope_none_is_noop(self, omop_connection):
        with schema_scope(omop_connection, None):
            assert omop_connection.current_schema() == "main"

    def test_schema_scope_unsupported_dialect_is_noop(self, sqlite_connection):
        with schema_scope(sqlite_connection, "cdm"):
            assert sqlite_connection.list_tables() == ["person"]


class TestResourceResolution:
    """Test resource -> connection resolution."""

    def test_resource_dbms_from_url_scheme(self):
        assert Resource(url="postgresql+psycopg2://host/cdm").dbms == "postgresql"
        assert Resource(url="DuckDB:///cdm.duckdb").dbms == "duckdb"

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("duckdb:///cdm.duckdb", "cdm.duckdb"),
            ("duckdb:////data/cdm.duckdb", "/data/cdm.duckdb"),
            ("duckdb:///:memory:", ":memory:"),
            ("duckdb://", ":memory:"),
        ],
    )
    def test_duckdb_path_from_url(self, url, expected):
        assert _duckdb_path(url) == expected

    def test_open_connection_unknown_format_raises(self):
        resource = Resource(url="duckdb:///:memory:", format="csv.files")
        with pytest.raises(UnsupportedResourceError, match="not an OMOP CDM database"):
            open_connection(resource)

    def test_open_connection_duckdb_memory(self):
        # Act
        connection = open_connection(Resource(url="duckdb:///:memory:"))

        # Assert
        assert isinstance(connection, DuckDBConnection)
        assert connection.list_tables() == []
        connection.close()

    def test_connect_closes_connection_on_error(self):
        # Arrange
        opened = []

        def factory(resource):
            connection = DuckDBConnection(db_connection=duckdb.connect(":memory:"))
            opened.append(connection)
            return connection

        # Act
        with pytest.raises(NotFoundError):
            with connect(Resource(url="duckdb:///:memory:"), {"omop.cdm.db": factory}) as connection:
                connection.list_columns("person")

        # Assert
        assert opened[0].conn is None
        opened[0].db_connection.close()
