"""
Concept Translator - replaces coded concept ids with readable names.

The vocabulary lookup is scoped to the codes present in the data and runs
inside the vocabulary schema, which is switched back on every path. When the
vocabulary cannot be used at all the data passes through untranslated and a
warning is recorded.
"""

from collections.abc import Iterable
from typing import Any

import polars as pl
import structlog

from omop_wide.core.column_types import integral_text
from omop_wide.core.errors import NotFoundError, QueryExecutionError, TranslationUnavailableError
from omop_wide.core.naming import (
    code_text,
    code_text_forms,
    find_case_insensitive,
    is_concept_id_column,
    standardize_name,
)
from omop_wide.storage.connection import Connection, schema_scope

logger = structlog.get_logger(__name__)

FALLBACK_PREFIX = "concept_id_"


def code_text_expr(column: str, dtype: pl.DataType) -> pl.Expr:
    """Text form of a code column, matching `naming.code_text` for each value."""
    if dtype.is_float():
        return integral_text(pl.col(column))
    return pl.col(column).cast(pl.Utf8).str.strip_chars().str.replace(r"^(-?\d+)\.0$", "${1}")


class ConceptTranslator:
    """
    Translates concept id columns using the vocabulary table.

    Attributes:
        warnings: Messages recorded whenever translation had to be skipped
    """

    def __init__(
        self,
        connection: Connection,
        vocabulary_table: str = "concept",
        vocabulary_schema: str | None = None,
    ):
        self.connection = connection
        self.vocabulary_table = vocabulary_table
        self.vocabulary_schema = vocabulary_schema
        self.warnings: list[str] = []
        self._available: bool | None = None

    def _resolve_vocabulary(self) -> tuple[str, str, str]:
        """Vocabulary table and its id/name columns as spelled by the store (call inside the schema scope)."""
        table = find_case_insensitive(self.connection.list_tables(), self.vocabulary_table)
        if table is None:
            raise TranslationUnavailableError(f"The vocabulary table '{self.vocabulary_table}' does not exist.")

        columns = self.connection.list_columns(table)
        id_column = find_case_insensitive(columns, "concept_id")
        name_column = find_case_insensitive(columns, "concept_name")
        if id_column is None or name_column is None:
            raise TranslationUnavailableError(
                f"The vocabulary table '{table}' lacks concept_id/concept_name columns."
            )
        return table, id_column, name_column

    @property
    def available(self) -> bool:
        """Whether the vocabulary table exists and is usable."""
        if self._available is None:
            try:
                with schema_scope(self.connection, self.vocabulary_schema):
                    self._resolve_vocabulary()
                self._available = True
            except (TranslationUnavailableError, NotFoundError, QueryExecutionError):
                self._available = False
        return self._available

    def lookup(self, codes: Iterable[Any]) -> dict[str, str]:
        """
        Raw vocabulary names of the given codes, keyed by code text.

        Codes without a vocabulary entry are absent from the result.

        Raises:
            TranslationUnavailableError: If the vocabulary is absent or the query fails
        """
        wanted = sorted({code_text(code) for code in codes if code is not None and code_text(code) != ""})
        if not wanted:
            return {}

        try:
            with schema_scope(self.connection, self.vocabulary_schema):
                table, id_column, name_column = self._resolve_vocabulary()
                dialect = self.connection.dialect
                id_text = dialect.as_text(dialect.quote(id_column))
                in_list = ", ".join(dialect.literal(text) for code in wanted for text in code_text_forms(code))
                concepts = self.connection.query(
                    f"SELECT {id_text} AS concept_id, {dialect.quote(name_column)} AS concept_name "
                    f"FROM {dialect.quote(table)} WHERE {id_text} IN ({in_list})"
                )
        except (NotFoundError, QueryExecutionError) as e:
            raise TranslationUnavailableError(f"Vocabulary lookup failed: {e}") from e

        return {
            code_text(concept_id): name
            for concept_id, name in zip(concepts["concept_id"], concepts["concept_name"])
            if concept_id is not None and name is not None
        }

    def record_warning(self, reason: str) -> None:
        self.warnings.append(reason)
        logger.warning("translation_unavailable", reason=reason)

    def translate(self, df: pl.DataFrame, columns: Iterable[str] | None = None) -> pl.DataFrame:
        """
        Replace concept ids with standardized concept names.

        - Null or empty values stay null
        - Mapped values become `standardize_name(concept_name)`
        - Unmapped values become `concept_id_<value>`

        Args:
            df: Table to translate
            columns: Concept id columns to translate (default: every `*_concept_id` column)

        Returns:
            Translated table, or the input unchanged if the vocabulary is unavailable
        """
        if columns is None:
            columns = [column for column in df.columns if is_concept_id_column(column)]
        columns = [column for column in columns if column in df.columns]
        if not columns:
            return df

        codes = set()
        for column in columns:
            codes.update(df.select(code_text_expr(column, df.schema[column])).to_series().drop_nulls().to_list())

        try:
            names = self.lookup(codes)
        except TranslationUnavailableError as e:
            self.record_warning(str(e))
            return df

        mapping = {code: standardize_name(name) for code, name in names.items()}
        translations = []
        for column in columns:
            text = code_text_expr(column, df.schema[column])
            fallback = pl.lit(FALLBACK_PREFIX) + text
            if mapping:
                fallback = pl.when(text.is_in(list(mapping))).then(text.replace(mapping)).otherwise(fallback)
            missing = text.is_null() | (text == "")
            translations.append(pl.when(missing).then(pl.lit(None, dtype=pl.Utf8)).otherwise(fallback).alias(column))

        logger.debug("concepts_translated", columns=columns, mapped_codes=len(mapping))
        return df.with_columns(translations)
