"""
Table Fetcher - single-table retrieval with column, concept and person filters.

Filters are pushed into the SQL query; values are compared as text so numeric
and text identifier columns match the same filter values. Every fetch ends with
type normalization and the minimum group size check.
"""

from collections.abc import Iterable
from typing import Any

import polars as pl
import structlog

from omop_wide.core.column_types import normalize_column_types
from omop_wide.core.config_loader import AssemblyConfig
from omop_wide.core.errors import MissingDependencyError
from omop_wide.core.naming import code_text_forms, find_case_insensitive, resolve_concept_id_column
from omop_wide.core.privacy import DisclosurePolicy, enforce_subset_filter
from omop_wide.core.schema_snapshot import SchemaSnapshot
from omop_wide.storage.connection import Connection

logger = structlog.get_logger(__name__)

PersonFilter = Iterable[Any] | pl.DataFrame


def drop_empty_columns(df: pl.DataFrame) -> pl.DataFrame:
    """Drop columns holding only nulls."""
    if df.height == 0:
        return df
    return df.select([column for column in df.columns if df[column].null_count() < df.height])


class TableFetcher:
    """
    Fetches OMOP CDM tables from a connection.

    Args:
        connection: Open connection with the CDM schema active
        snapshot: Schema snapshot of the CDM schema
        policy: Source of the minimum group size
        config: Assembly settings (entity column, source marker)
    """

    def __init__(
        self,
        connection: Connection,
        snapshot: SchemaSnapshot,
        policy: DisclosurePolicy,
        config: AssemblyConfig | None = None,
    ):
        self.connection = connection
        self.snapshot = snapshot
        self.policy = policy
        self.config = config or AssemblyConfig()

    def concept_column(self, table: str) -> str | None:
        """Concept column of a table as spelled by the store, or None."""
        return resolve_concept_id_column(table, self.snapshot.columns(table))

    def select_columns(
        self,
        table: str,
        column_filter: Iterable[str] | None = None,
        merge_column: str | None = None,
    ) -> list[str]:
        """
        Columns to fetch from `table`, in table order.

        Without a filter every column except raw source values is selected.
        With a filter, unknown names are ignored and the entity, merge and
        concept columns are always kept.
        """
        columns = list(self.snapshot.columns(table))

        if column_filter is None:
            marker = self.config.source_marker.lower()
            return [column for column in columns if marker not in column.lower()]

        wanted = {name.lower() for name in column_filter}
        for structural in (self.config.entity_column, merge_column):
            if structural:
                wanted.add(structural.lower())
        concept_column = self.concept_column(table)
        if concept_column:
            wanted.add(concept_column.lower())

        return [column for column in columns if column.lower() in wanted]

    def _in_list(self, column: str, values: Iterable[Any]) -> str:
        dialect = self.connection.dialect
        literals = sorted(
            {dialect.literal(text) for value in values if value is not None for text in code_text_forms(value)}
        )
        if not literals:
            return "1 = 0"
        return f"{dialect.as_text(dialect.quote(column))} IN ({', '.join(literals)})"

    def person_ids(self, person_filter: PersonFilter) -> list[Any]:
        """
        Entity ids of a person filter given as ids or as a frame with the entity column.

        Raises:
            MissingDependencyError: If a frame lacks the entity column
        """
        if isinstance(person_filter, pl.DataFrame):
            entity_column = find_case_insensitive(person_filter.columns, self.config.entity_column)
            if entity_column is None:
                raise MissingDependencyError(
                    self.config.entity_column,
                    f"The person filter table does not have a '{self.config.entity_column}' column.",
                )
            return person_filter[entity_column].drop_nulls().unique().to_list()
        return list(dict.fromkeys(person_filter))

    def build_query(
        self,
        table: str,
        columns: list[str],
        concept_filter: Iterable[Any] | None = None,
        person_filter: PersonFilter | None = None,
    ) -> str:
        dialect = self.connection.dialect
        select_list = ", ".join(dialect.quote(column) for column in columns)
        query = f"SELECT {select_list} FROM {dialect.quote(table)}"

        conditions = []
        concept_column = self.concept_column(table)
        if concept_filter is not None and concept_column is not None:
            conditions.append(self._in_list(concept_column, concept_filter))

        entity_column = find_case_insensitive(self.snapshot.columns(table), self.config.entity_column)
        if person_filter is not None and entity_column is not None:
            conditions.append(self._in_list(entity_column, self.person_ids(person_filter)))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        return query

    def count_rows(self, table_name: str) -> int:
        table = self.snapshot.resolve_table(table_name)
        count = self.connection.query(f"SELECT COUNT(*) AS row_count FROM {self.connection.dialect.quote(table)}")
        return int(count.item(0, 0))

    def fetch(
        self,
        table_name: str,
        column_filter: Iterable[str] | None = None,
        concept_filter: Iterable[Any] | None = None,
        person_filter: PersonFilter | None = None,
        merge_column: str | None = None,
        drop_empty: bool = False,
    ) -> pl.DataFrame:
        """
        Fetch a table with column names lowercased and types normalized.

        Args:
            table_name: Table to fetch, resolved case-insensitively
            column_filter: Optional column names to keep
            concept_filter: Optional concept ids; ignored if the table has no concept column
            person_filter: Optional entity ids (or a frame holding them); ignored
                if the table has no entity column
            merge_column: Column that must survive a column filter
            drop_empty: Drop columns holding only nulls

        Returns:
            Polars DataFrame that passed the minimum group size check

        Raises:
            NotFoundError: If the table does not exist
            PrivacyViolationError: If the result describes too few entities
        """
        table = self.snapshot.resolve_table(table_name)
        columns = self.select_columns(table, column_filter, merge_column)
        query = self.build_query(table, columns, concept_filter, person_filter)

        df = normalize_column_types(self.connection.query(query))

        concept_column = self.concept_column(table)
        df = enforce_subset_filter(
            df,
            entity_column=self.config.entity_column.lower(),
            threshold=self.policy.subset_filter(),
            concept_column=concept_column.lower() if concept_column else None,
        )

        if drop_empty:
            df = drop_empty_columns(df)

        logger.debug("table_fetched", table=table, columns=df.width)
        return df
