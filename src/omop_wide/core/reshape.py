"""
Longitudinal sequencing and long-to-wide reshaping.

A long table holds one row per event: (key, concept, field1, field2, ...).
The wide table holds one row per key and a `<concept>.<field>` column for
every concept/field pair. Repeated events of the same concept for the same
key are sequenced first (`glucose.1`, `glucose.2`) so the pivot never
collapses rows.
"""

from collections.abc import Sequence

import polars as pl
import structlog

from omop_wide.core.errors import MissingDependencyError
from omop_wide.core.naming import TOKEN_SEPARATOR, join_tokens, split_tokens

logger = structlog.get_logger(__name__)

NA_LABEL = "NA"


def _key_list(key_columns: str | Sequence[str]) -> list[str]:
    return [key_columns] if isinstance(key_columns, str) else list(key_columns)


def _require_columns(df: pl.DataFrame, columns: Sequence[str]) -> None:
    for column in columns:
        if column not in df.columns:
            raise MissingDependencyError(column)


def concept_labels(df: pl.DataFrame, concept_column: str) -> pl.Expr:
    """Concept column as text labels, nulls labelled `NA`."""
    return pl.col(concept_column).cast(pl.Utf8).fill_null(NA_LABEL)


def sequence_longitudinal(df: pl.DataFrame, concept_column: str, key_columns: str | Sequence[str]) -> pl.DataFrame:
    """
    Tag repeated (key, concept) rows with a 1-based occurrence index.

    Every member of a duplicate group is tagged, the first included, in the
    current row order: three glucose rows of person 7 become `glucose.1`,
    `glucose.2`, `glucose.3`. Rows that are unique per (key, concept) keep
    their label. The concept column is returned as text.

    Raises:
        MissingDependencyError: If the concept or a key column is absent
    """
    keys = _key_list(key_columns)
    _require_columns(df, [concept_column, *keys])

    df = df.with_columns(concept_labels(df, concept_column).alias(concept_column))
    group = [concept_column, *keys]
    occurrence = (pl.int_range(pl.len()).over(group) + 1).cast(pl.Utf8)
    group_size = pl.len().over(group)

    return df.with_columns(
        pl.when(group_size > 1)
        .then(pl.col(concept_column) + pl.lit(TOKEN_SEPARATOR) + occurrence)
        .otherwise(pl.col(concept_column))
        .alias(concept_column)
    )


def move_column_name_tokens(df: pl.DataFrame) -> pl.DataFrame:
    """Move the first dot-separated token of every dotted column name to the end (`v.c` -> `c.v`)."""
    renames = {}
    for column in df.columns:
        tokens = split_tokens(column)
        if len(tokens) > 1:
            renames[column] = join_tokens([*tokens[1:], tokens[0]])
    return df.rename(renames) if renames else df


def reshape_wide(df: pl.DataFrame, concept_column: str, key_columns: str | Sequence[str]) -> pl.DataFrame:
    """
    Pivot a long table to one row per key with `<concept>.<field>` columns.

    Rows repeating a (key, concept) pair must be sequenced beforehand; only
    the first of such rows would survive here.

    Args:
        df: Long table
        concept_column: Column whose values become column-name prefixes
        key_columns: Column(s) identifying output rows

    Returns:
        Wide table: key columns first, then one column per concept and field,
        concepts in order of first appearance

    Raises:
        MissingDependencyError: If a key column is absent
    """
    keys = _key_list(key_columns)
    _require_columns(df, keys)
    _require_columns(df, [concept_column])

    df = df.with_columns(concept_labels(df, concept_column).alias(concept_column))
    value_columns = [column for column in df.columns if column not in keys and column != concept_column]

    wide = df.select(keys).unique(maintain_order=True)
    for label in df[concept_column].unique(maintain_order=True).to_list():
        part = (
            df.filter(pl.col(concept_column) == label)
            .select([*keys, *value_columns])
            .unique(subset=keys, keep="first", maintain_order=True)
            .rename({column: join_tokens([column, label]) for column in value_columns})
        )
        wide = wide.join(part, on=keys, how="left")

    logger.debug("table_reshaped", keys=keys, concepts=df[concept_column].n_unique())
    return move_column_name_tokens(wide)


def complete_time_points(df: pl.DataFrame, key_column: str, date_column: str) -> pl.DataFrame:
    """
    Add a row for every (key, date) combination observed anywhere in the table.

    Missing combinations carry nulls in every other column.

    Raises:
        MissingDependencyError: If the key or date column is absent
    """
    _require_columns(df, [key_column, date_column])

    grid = (
        df.select(key_column)
        .unique(maintain_order=True)
        .join(df.select(date_column).unique(maintain_order=True), how="cross")
    )
    return grid.join(df, on=[key_column, date_column], how="left").sort([key_column, date_column], nulls_last=True)


def split_wide_column(column: str) -> tuple[str, str] | None:
    """Split a wide column name into (concept label, field); None for un-dotted columns."""
    if TOKEN_SEPARATOR not in column:
        return None
    label, field = column.rsplit(TOKEN_SEPARATOR, 1)
    return label, field
