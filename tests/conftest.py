"""
Pytest configuration and fixtures for omop_wide tests.
"""

import sys
from collections.abc import Callable
from datetime import date
from pathlib import Path

import duckdb
import polars as pl
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from omop_wide.core.config_loader import AssemblyConfig  # noqa: E402
from omop_wide.core.privacy import StaticDisclosurePolicy  # noqa: E402
from omop_wide.core.schema_snapshot import SchemaSnapshot  # noqa: E402
from omop_wide.storage.connection import DuckDBConnection, Resource  # noqa: E402

GLUCOSE = 3004501
HBA1C = 3004410
MALE = 8507
FEMALE = 8532
MMOL_PER_L = 8753


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


def default_omop_tables() -> dict[str, pl.DataFrame]:
    """
    Small OMOP CDM: three persons, five measurements, one observation period each.

    Person 1 has two glucose measurements (2024-01-01 and 2024-02-01) and one
    HbA1c measurement; persons 2 and 3 have one glucose measurement each.
    """
    return {
        "person": pl.DataFrame(
            {
                "person_id": [1, 2, 3],
                "gender_concept_id": [MALE, FEMALE, MALE],
                "year_of_birth": [1980, 1975, 1990],
                "care_site_id": [10, 10, 20],
                "person_source_value": ["p-001", "p-002", "p-003"],
            }
        ),
        "measurement": pl.DataFrame(
            {
                "measurement_id": [100, 101, 102, 103, 104],
                "person_id": [1, 1, 2, 3, 1],
                "measurement_concept_id": [GLUCOSE, GLUCOSE, GLUCOSE, GLUCOSE, HBA1C],
                "measurement_date": [
                    date(2024, 2, 1),
                    date(2024, 1, 1),
                    date(2024, 1, 15),
                    date(2024, 1, 20),
                    date(2024, 1, 1),
                ],
                "value_as_number": [6.2, 5.1, 5.5, 4.9, 7.0],
                "unit_concept_id": [MMOL_PER_L, MMOL_PER_L, MMOL_PER_L, MMOL_PER_L, None],
                "measurement_source_value": ["glu", "glu", "glu", "glu", "a1c"],
            }
        ),
        "observation_period": pl.DataFrame(
            {
                "observation_period_id": [1, 2, 3],
                "person_id": [1, 2, 3],
                "observation_period_start_date": [date(2023, 1, 1), date(2023, 6, 1), date(2023, 3, 1)],
            }
        ),
        "care_site": pl.DataFrame(
            {
                "care_site_id": [10, 20],
                "care_site_name": ["General Hospital", "Clinic"],
                "care_site_source_value": ["GH", "CL"],
            }
        ),
        "concept": pl.DataFrame(
            {
                "concept_id": [GLUCOSE, HBA1C, MALE, FEMALE, MMOL_PER_L],
                "concept_name": ["Glucose", "Hemoglobin A1c", "MALE", "FEMALE", "millimole per liter"],
            }
        ),
    }


def load_tables(conn: duckdb.DuckDBPyConnection, tables: dict[str, pl.DataFrame]) -> None:
    """Create one DuckDB table per frame."""
    for name, df in tables.items():
        conn.register("staging_frame", df.to_arrow())
        conn.execute(f'CREATE TABLE "{name}" AS SELECT * FROM staging_frame')
        conn.unregister("staging_frame")


@pytest.fixture
def make_omop_database() -> Callable[..., duckdb.DuckDBPyConnection]:
    """
    Factory for in-memory DuckDB OMOP CDM databases.

    Usage:
        def test_example(make_omop_database):
            conn = make_omop_database(include_vocabulary=False)
            conn = make_omop_database(tables={"person": ..., "measurement": ...})
    """
    connections = []

    def _make(
        tables: dict[str, pl.DataFrame] | None = None,
        include_vocabulary: bool = True,
    ) -> duckdb.DuckDBPyConnection:
        tables = dict(default_omop_tables() if tables is None else tables)
        if not include_vocabulary:
            tables.pop("concept", None)

        conn = duckdb.connect(":memory:")
        connections.append(conn)
        load_tables(conn, tables)
        return conn

    yield _make

    for conn in connections:
        conn.close()


@pytest.fixture
def omop_duckdb_file(tmp_path) -> Path:
    """Default OMOP CDM written to a DuckDB file; the file is closed before the test runs."""
    path = tmp_path / "cdm.duckdb"
    conn = duckdb.connect(str(path))
    try:
        load_tables(conn, default_omop_tables())
    finally:
        conn.close()
    return path


@pytest.fixture
def omop_db(make_omop_database) -> duckdb.DuckDBPyConnection:
    """Default OMOP CDM database with a vocabulary."""
    return make_omop_database()


@pytest.fixture
def float_id_connection(make_omop_database) -> DuckDBConnection:
    """Default database with every `*_id` column stored as DOUBLE, the vocabulary included."""
    tables = {
        name: df.with_columns(pl.col(column).cast(pl.Float64) for column in df.columns if column.endswith("_id"))
        for name, df in default_omop_tables().items()
    }
    connection = DuckDBConnection(db_connection=make_omop_database(tables=tables))
    connection.connect()
    return connection


@pytest.fixture
def omop_connection(omop_db) -> DuckDBConnection:
    """Connection wrapper borrowing the default database."""
    connection = DuckDBConnection(db_connection=omop_db)
    connection.connect()
    return connection


@pytest.fixture
def omop_snapshot(omop_connection) -> SchemaSnapshot:
    return SchemaSnapshot.from_connection(omop_connection)


@pytest.fixture
def permissive_policy() -> StaticDisclosurePolicy:
    """Subset filter of 1: every non-empty group passes."""
    return StaticDisclosurePolicy(1)


@pytest.fixture
def assembly_config() -> AssemblyConfig:
    return AssemblyConfig()


@pytest.fixture
def borrowed_connectors():
    """
    Factory for resource connectors that hand out a wrapper around an existing DuckDB connection.

    Usage:
        connectors = borrowed_connectors(conn)
        service.list_tables(Resource(url="duckdb:///:memory:"), connectors=connectors)
    """

    def _make(conn: duckdb.DuckDBPyConnection) -> dict:
        return {"omop.cdm.db": lambda resource: DuckDBConnection(db_connection=conn)}

    return _make


@pytest.fixture
def memory_resource() -> Resource:
    return Resource(url="duckdb:///:memory:")
