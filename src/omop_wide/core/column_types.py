"""
Column type normalization for fetched and reshaped tables.

Stores disagree on identifier types (INTEGER in one table, BIGINT or TEXT in
another), so every non-concept identifier is normalized to text before it is
used as a join key.
"""

import polars as pl

from omop_wide.core.naming import is_id_column, split_tokens

NUMERIC_SUFFIXES = ("_as_number",)
NUMERIC_COLUMNS = ("range_low", "range_high")


def _is_numeric_column(column: str) -> bool:
    return column.endswith(NUMERIC_SUFFIXES) or column in NUMERIC_COLUMNS


def integral_text(expr: pl.Expr) -> pl.Expr:
    """Text form of a float expression; integral values lose the fractional part, others keep it."""
    # 1.0 -> "1", 1.5 -> "1.5"
    return (
        pl.when(expr.round(0) == expr)
        .then(expr.cast(pl.Int64, strict=False).cast(pl.Utf8))
        .otherwise(expr.cast(pl.Utf8))
    )


def _as_text(column: str, dtype: pl.DataType) -> pl.Expr:
    if dtype.is_float():
        return integral_text(pl.col(column))
    return pl.col(column).cast(pl.Utf8)


def normalize_column_types(df: pl.DataFrame) -> pl.DataFrame:
    """
    Lowercase column names and normalize identifier and measurement types.

    - Non-concept `*_id` columns become text
    - `*_as_number`, `range_low` and `range_high` become Float64 (unparseable values -> null)
    """
    renames = {column: column.lower() for column in df.columns if column != column.lower()}
    if renames:
        df = df.rename(renames)

    casts = []
    for column, dtype in df.schema.items():
        if is_id_column(column) and dtype != pl.Utf8:
            casts.append(_as_text(column, dtype).alias(column))
        elif _is_numeric_column(column) and dtype != pl.Float64:
            casts.append(pl.col(column).cast(pl.Utf8).str.strip_chars().cast(pl.Float64, strict=False).alias(column))

    return df.with_columns(casts) if casts else df


def convert_date_columns(df: pl.DataFrame) -> pl.DataFrame:
    """
    Parse text columns of pivoted tables that hold dates or datetimes.

    Only dotted columns (`glucose.1.measurement_date`) are considered; the field
    tokens after the concept decide the type: `_datetime` -> Datetime, `_date` -> Date.
    Values that cannot be parsed become null.
    """
    conversions = []
    for column, dtype in df.schema.items():
        tokens = split_tokens(column)
        if len(tokens) < 2 or dtype != pl.Utf8:
            continue
        field_name = ".".join(tokens[1:]).lower()
        if "_datetime" in field_name:
            conversions.append(pl.col(column).str.to_datetime(strict=False).alias(column))
        elif "_date" in field_name:
            conversions.append(pl.col(column).str.to_date(strict=False).alias(column))

    return df.with_columns(conversions) if conversions else df
