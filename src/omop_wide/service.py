"""
Service entry points over an OMOP CDM resource.

Every call opens its own connection, activates the resource's CDM schema and
closes the connection on both success and failure; errors propagate unchanged.
Nothing is shared between calls, so independent requests may run concurrently
on separate connections.
"""

from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import polars as pl
import structlog

from omop_wide.core.assembly import TableAssembler
from omop_wide.core.concept_translator import ConceptTranslator
from omop_wide.core.config_loader import AssemblyConfig, load_assembly_config
from omop_wide.core.errors import NotFoundError, TranslationUnavailableError
from omop_wide.core.naming import find_case_insensitive, resolve_concept_id_column
from omop_wide.core.privacy import ConfigDisclosurePolicy, DisclosurePolicy
from omop_wide.core.table_fetcher import PersonFilter
from omop_wide.storage.connection import RESOURCE_CONNECTORS, Connection, Resource, connect, schema_scope

logger = structlog.get_logger(__name__)

Connectors = Mapping[str, Callable[[Resource], Connection]]


@contextmanager
def _cdm_connection(resource: Resource, connectors: Connectors) -> Iterator[Connection]:
    with connect(resource, connectors) as connection, schema_scope(connection, resource.schema):
        yield connection


def _resolve_table(connection: Connection, table_name: str) -> str:
    table = find_case_insensitive(connection.list_tables(), table_name)
    if table is None:
        raise NotFoundError(table_name)
    return table


def check_connection(resource: Resource, connectors: Connectors = RESOURCE_CONNECTORS) -> bool:
    """Open and close a connection to the resource; errors propagate."""
    with _cdm_connection(resource, connectors) as connection:
        connection.list_tables()
    logger.info("connection_checked", dbms=resource.dbms)
    return True


def list_tables(resource: Resource, connectors: Connectors = RESOURCE_CONNECTORS) -> list[str]:
    """Names of the tables in the resource's CDM schema."""
    with _cdm_connection(resource, connectors) as connection:
        return connection.list_tables()


def list_columns(
    resource: Resource,
    table_name: str,
    drop_empty: bool = False,
    connectors: Connectors = RESOURCE_CONNECTORS,
) -> list[str]:
    """
    Column names of a table, resolved case-insensitively.

    Args:
        drop_empty: Leave out columns holding only nulls

    Raises:
        NotFoundError: If the table does not exist
    """
    with _cdm_connection(resource, connectors) as connection:
        table = _resolve_table(connection, table_name)
        columns = connection.list_columns(table)
        if not drop_empty or not columns:
            return columns

        dialect = connection.dialect
        counts = connection.query(
            "SELECT "
            + ", ".join(f"COUNT({dialect.quote(column)}) AS c{i}" for i, column in enumerate(columns))
            + f" FROM {dialect.quote(table)}"
        )
        return [column for i, column in enumerate(columns) if counts.item(0, i) > 0]


def list_concepts(
    resource: Resource,
    table_name: str,
    policy: DisclosurePolicy | None = None,
    config: AssemblyConfig | None = None,
    connectors: Connectors = RESOURCE_CONNECTORS,
) -> pl.DataFrame:
    """
    Concepts occurring in a table, with their vocabulary names.

    Concepts describing fewer entities than the subset filter are left out.

    Returns:
        DataFrame with `concept_id` (Int64) and `concept_name` (null where
        unmapped or when the vocabulary is unavailable), sorted by id

    Raises:
        NotFoundError: If the table or its concept column does not exist
    """
    config = config or load_assembly_config()
    policy = policy or ConfigDisclosurePolicy(config)

    with _cdm_connection(resource, connectors) as connection:
        table = _resolve_table(connection, table_name)
        columns = connection.list_columns(table)
        concept_column = resolve_concept_id_column(table, columns)
        if concept_column is None:
            raise NotFoundError(
                table_name, f"The table '{table}' does not have a concept id column."
            )

        dialect = connection.dialect
        quoted_table = dialect.quote(table)
        quoted_concept = dialect.quote(concept_column)
        query = f"SELECT DISTINCT {dialect.as_text(quoted_concept)} AS concept_id FROM {quoted_table}"

        entity_column = find_case_insensitive(columns, config.entity_column)
        if entity_column is not None:
            query += (
                f" WHERE {quoted_concept} IN (SELECT {quoted_concept} FROM {quoted_table}"
                f" GROUP BY {quoted_concept}"
                f" HAVING COUNT(DISTINCT {dialect.quote(entity_column)}) >= {int(policy.subset_filter())})"
            )

        concepts = connection.query(query).drop_nulls("concept_id")

        translator = ConceptTranslator(connection, config.vocabulary_table, resource.vocabulary_schema)
        try:
            names = translator.lookup(concepts["concept_id"].to_list())
        except TranslationUnavailableError as e:
            translator.record_warning(str(e))
            names = {}

    catalog = pl.DataFrame(
        {
            "concept_id": concepts["concept_id"].to_list(),
            "concept_name": [names.get(code) for code in concepts["concept_id"].to_list()],
        },
        schema={"concept_id": pl.Utf8, "concept_name": pl.Utf8},
    )
    return catalog.with_columns(pl.col("concept_id").cast(pl.Int64, strict=False)).sort("concept_id", nulls_last=True)


def get_table(
    resource: Resource,
    table_name: str,
    concept_filter: Iterable[Any] | None = None,
    column_filter: Iterable[str] | None = None,
    person_filter: PersonFilter | None = None,
    merge_column: str | None = None,
    drop_empty_columns: bool = False,
    wide_longitudinal: bool = False,
    complete_time_points: bool = False,
    policy: DisclosurePolicy | None = None,
    config: AssemblyConfig | None = None,
    connectors: Connectors = RESOURCE_CONNECTORS,
) -> pl.DataFrame:
    """
    Fetch one table of the resource as a wide table.

    See `TableAssembler.get_table` for the meaning of the arguments.
    """
    config = config or load_assembly_config()
    with _cdm_connection(resource, connectors) as connection:
        assembler = TableAssembler(connection, policy, config, resource.vocabulary_schema)
        return assembler.get_table(
            table_name,
            concept_filter=concept_filter,
            column_filter=column_filter,
            person_filter=person_filter,
            merge_column=merge_column,
            drop_empty=drop_empty_columns,
            wide_longitudinal=wide_longitudinal,
            complete_time_series=complete_time_points,
        )


def create_full_assembly(
    resource: Resource,
    root_table: str | None = None,
    policy: DisclosurePolicy | None = None,
    config: AssemblyConfig | None = None,
    connectors: Connectors = RESOURCE_CONNECTORS,
) -> pl.DataFrame:
    """Merge every table related to the root table into one wide table (one row per root entity)."""
    config = config or load_assembly_config()
    with _cdm_connection(resource, connectors) as connection:
        assembler = TableAssembler(connection, policy, config, resource.vocabulary_schema)
        return assembler.assemble(root_table)
