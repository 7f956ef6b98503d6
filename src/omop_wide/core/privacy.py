"""
Disclosure control - minimum group size enforcement.

Every table that carries the entity column must, after filtering, describe at
least `nfilter_subset` distinct entities. When the table also carries a concept
column the threshold applies per concept: failing concepts are dropped, and
only an empty remainder is an error. Error messages and log events state the
threshold, never the offending counts.
"""

from dataclasses import dataclass, field
from typing import Protocol

import polars as pl
import structlog

from omop_wide.core.config_loader import AssemblyConfig, load_assembly_config
from omop_wide.core.errors import PrivacyViolationError

logger = structlog.get_logger(__name__)


class DisclosurePolicy(Protocol):
    """Source of the minimum-group-size threshold."""

    def subset_filter(self) -> int: ...


@dataclass(frozen=True)
class StaticDisclosurePolicy:
    """Policy pinned to a fixed threshold."""

    threshold: int

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError(f"Subset filter must be at least 1, got {self.threshold}")

    def subset_filter(self) -> int:
        return self.threshold


@dataclass(frozen=True)
class ConfigDisclosurePolicy:
    """Policy reading `nfilter_subset` from the assembly configuration."""

    config: AssemblyConfig = field(default_factory=load_assembly_config)

    def subset_filter(self) -> int:
        return self.config.nfilter_subset


def enforce_subset_filter(
    df: pl.DataFrame,
    entity_column: str,
    threshold: int,
    concept_column: str | None = None,
) -> pl.DataFrame:
    """
    Apply the minimum group size rule to a fetched table.

    Args:
        df: Table to check
        entity_column: Column identifying entities (e.g. person_id)
        threshold: Minimum number of distinct entities per group
        concept_column: Optional concept column; when present the rule applies per concept

    Returns:
        The table, minus rows of concepts describing fewer than `threshold` entities

    Raises:
        PrivacyViolationError: If the whole table (or everything left after
            dropping small concepts) falls below the threshold
    """
    if entity_column not in df.columns:
        return df

    if concept_column is None or concept_column not in df.columns:
        if df[entity_column].drop_nulls().n_unique() < threshold:
            raise PrivacyViolationError(threshold)
        return df

    counts = df.group_by(concept_column).agg(pl.col(entity_column).drop_nulls().n_unique().alias("entity_count"))
    allowed = counts.filter(pl.col("entity_count") >= threshold)

    # Null concepts form their own group; is_in() never matches null
    allowed_values = allowed[concept_column].drop_nulls().to_list()
    keep = pl.col(concept_column).is_in(allowed_values) if allowed_values else pl.lit(False)
    if allowed[concept_column].null_count() > 0:
        keep = keep | pl.col(concept_column).is_null()
    filtered = df.filter(keep)

    if filtered.height == 0:
        raise PrivacyViolationError(
            threshold, f"Empty result after subset filter (nfilter.subset = {threshold})."
        )

    dropped = counts.height - allowed.height
    if dropped:
        logger.info("concepts_dropped_by_subset_filter", concept_column=concept_column, dropped_concepts=dropped)

    return filtered
