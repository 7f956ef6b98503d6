"""
Assembly Orchestrator - builds wide tables from an OMOP CDM schema.

Two pipelines share the fetcher, translator and reshape engine:

- `get_table`: one table, filtered, translated and pivoted to one row per
  merge key (or per merge key and time point).
- `assemble`: the root table (default `person`) left-merged with every table
  reachable from it in the relation graph, each pivoted to one row per root
  entity, then extended with reference tables, ordered and cleaned.

Any fatal error raised by a step aborts the whole assembly; no partial wide
table is returned.
"""

from collections.abc import Iterable
from typing import Any

import polars as pl
import structlog

from omop_wide.core.column_types import convert_date_columns, normalize_column_types
from omop_wide.core.concept_translator import ConceptTranslator, code_text_expr
from omop_wide.core.config_loader import AssemblyConfig
from omop_wide.core.errors import MissingDependencyError, TranslationUnavailableError
from omop_wide.core.naming import (
    CONCEPT_ID_SUFFIX,
    ID_SUFFIX,
    find_case_insensitive,
    find_date_column,
    is_concept_id_column,
    is_dotted,
    split_tokens,
    table_id_column,
)
from omop_wide.core.privacy import ConfigDisclosurePolicy, DisclosurePolicy, enforce_subset_filter
from omop_wide.core.relation_graph import RelationGraph
from omop_wide.core.relationship_detector import RelationshipDetector
from omop_wide.core.reshape import complete_time_points, reshape_wide, sequence_longitudinal
from omop_wide.core.schema_snapshot import SchemaSnapshot
from omop_wide.core.table_fetcher import PersonFilter, TableFetcher, drop_empty_columns
from omop_wide.storage.connection import Connection

logger = structlog.get_logger(__name__)

SYNTHETIC_CONCEPT_COLUMN = "__table_concept"


def sort_chronologically(df: pl.DataFrame, date_column: str | None) -> pl.DataFrame:
    """Stable sort by the date column (nulls last); no-op without one."""
    if date_column is None or date_column not in df.columns:
        return df
    return df.sort(date_column, nulls_last=True, maintain_order=True)


def merge_tables(left: pl.DataFrame, right: pl.DataFrame, key: str) -> pl.DataFrame:
    """
    Left-merge `right` into `left` on `key`, keeping every row of `left`.

    On column name collisions the column of `left` survives.

    Raises:
        MissingDependencyError: If either side lacks the key
    """
    for df in (left, right):
        if key not in df.columns:
            raise MissingDependencyError(key)

    collisions = [column for column in right.columns if column in left.columns and column != key]
    if collisions:
        logger.debug("merge_collisions_dropped", key=key, columns=collisions)
        right = right.drop(collisions)

    right = right.with_columns(pl.col(key).cast(left.schema[key]))
    return left.join(right, on=key, how="left")


def extend_column(df: pl.DataFrame, reference: pl.DataFrame, column: str, reference_id: str) -> pl.DataFrame:
    """
    Join the rows of a reference table onto an identifier column.

    Reference columns are renamed by substituting them for the identifier inside
    the column name: joining `provider` onto `glucose.1.provider_id` adds
    `glucose.1.provider_name`, `glucose.1.care_site_id`, ...
    """
    if reference_id not in reference.columns or reference_id not in column:
        return df

    pre, _, post = column.partition(reference_id)
    renamed = reference.rename({name: f"{pre}{name}{post}" for name in reference.columns})

    ids = df[column].drop_nulls().unique().to_list()
    renamed = (
        renamed.with_columns(pl.col(column).cast(df.schema[column]))
        .filter(pl.col(column).is_in(ids))
        .unique(subset=[column], keep="first", maintain_order=True)
    )

    collisions = [name for name in renamed.columns if name in df.columns and name != column]
    return df.join(renamed.drop(collisions), on=column, how="left")


def sort_table_categories(df: pl.DataFrame) -> pl.DataFrame:
    """
    Order columns by category.

    Un-dotted (structural) columns come first, dotted (pivoted) columns after.
    Then every column sharing the prefix of an identifier column
    (`care_site` for `care_site_id`) is moved to directly follow it.
    """
    order = [column for column in df.columns if not is_dotted(column)]
    order += [column for column in df.columns if is_dotted(column)]

    for id_name in [column for column in order if ID_SUFFIX in column]:
        parts = id_name.split(ID_SUFFIX)
        if parts[-1] == "":
            parts = parts[:-1]
        prefix = ID_SUFFIX.join(parts[:-1]) if len(parts) > 1 else parts[0]

        position = order.index(id_name)
        matching = [column for column in order[position:] if column.startswith(prefix)]
        order = [column for column in order if column not in matching]
        order[position:position] = matching

    return df.select(order)


def clean_table(df: pl.DataFrame, remove_concept_id: bool = True, drop_empty: bool = False) -> pl.DataFrame:
    """Drop raw concept id columns and/or columns holding only nulls."""
    if remove_concept_id:
        df = df.drop([column for column in df.columns if is_concept_id_column(column)])
    if drop_empty:
        df = drop_empty_columns(df)
    return df


class TableAssembler:
    """
    Drives fetch, translation and reshaping over one open connection.

    Args:
        connection: Open connection with the CDM schema active
        policy: Source of the minimum group size (default: configuration)
        config: Assembly settings
        vocabulary_schema: Schema holding the vocabulary table (None = CDM schema)
        snapshot: Schema snapshot (default: taken from the connection)

    Example:
        >>> with connect(resource) as connection:
        ...     wide = TableAssembler(connection).assemble()
    """

    def __init__(
        self,
        connection: Connection,
        policy: DisclosurePolicy | None = None,
        config: AssemblyConfig | None = None,
        vocabulary_schema: str | None = None,
        snapshot: SchemaSnapshot | None = None,
    ):
        self.connection = connection
        self.config = config or AssemblyConfig()
        self.policy = policy or ConfigDisclosurePolicy(self.config)
        self.snapshot = snapshot or SchemaSnapshot.from_connection(connection)
        self.detector = RelationshipDetector(self.config.source_marker)
        self.graph = RelationGraph.from_snapshot(self.snapshot, self.detector)
        self.fetcher = TableFetcher(connection, self.snapshot, self.policy, self.config)
        self.translator = ConceptTranslator(connection, self.config.vocabulary_table, vocabulary_schema)

    @property
    def warnings(self) -> list[str]:
        return self.translator.warnings

    # ------------------------------------------------------------------
    # Single table
    # ------------------------------------------------------------------

    def get_table(
        self,
        table_name: str,
        concept_filter: Iterable[Any] | None = None,
        column_filter: Iterable[str] | None = None,
        person_filter: PersonFilter | None = None,
        merge_column: str | None = None,
        drop_empty: bool = False,
        wide_longitudinal: bool = False,
        complete_time_series: bool = False,
        skip_reshape: bool = False,
    ) -> pl.DataFrame:
        """
        Fetch one table as a wide table.

        Args:
            table_name: Table to fetch, resolved case-insensitively
            concept_filter: Optional concept ids to keep
            column_filter: Optional columns to keep (structural columns always kept)
            person_filter: Optional entity ids, or a frame holding them
            merge_column: Column identifying output rows (default: the entity column)
            drop_empty: Drop columns holding only nulls
            wide_longitudinal: Pivot repeated events into sequenced columns
                (one row per merge key) instead of one row per time point
            complete_time_series: With one row per time point, add every
                (merge key, date) combination of the table
            skip_reshape: Return the filtered, translated long table

        Raises:
            NotFoundError: If the table does not exist
            PrivacyViolationError: If the result describes too few entities
            MissingDependencyError: If the merge column is absent before reshaping
        """
        merge_column = (merge_column or self.config.entity_column).lower()
        table = self.snapshot.resolve_table(table_name)

        df = self.fetcher.fetch(
            table,
            column_filter=column_filter,
            concept_filter=concept_filter,
            person_filter=person_filter,
            merge_column=merge_column,
        )
        df = self.translator.translate(df)

        concept_column = self.fetcher.concept_column(table)
        concept_column = concept_column.lower() if concept_column else None

        if not skip_reshape and concept_column in df.columns:
            if merge_column not in df.columns:
                raise MissingDependencyError(merge_column)

            date_column = find_date_column([column for column in df.columns if column != merge_column])
            if wide_longitudinal or date_column is None:
                df = sort_chronologically(df, date_column)
                df = sequence_longitudinal(df, concept_column, merge_column)
                df = reshape_wide(df, concept_column, merge_column)
            else:
                keys = [merge_column, date_column]
                df = sequence_longitudinal(df, concept_column, keys)
                df = reshape_wide(df, concept_column, keys)
                if complete_time_series:
                    df = complete_time_points(df, merge_column, date_column)

        if drop_empty:
            df = drop_empty_columns(df)

        logger.info("table_retrieved", table=table, columns=df.width)
        return convert_date_columns(df)

    # ------------------------------------------------------------------
    # Full assembly
    # ------------------------------------------------------------------

    def join_key(self, table: str, root: str) -> str | None:
        """Identifier column linking `table` to the first table on its relation path to `root`."""
        path = self.graph.relation_path(table, root)
        return table_id_column(path[0]) if path else None

    def _bridge_to_root(self, df: pl.DataFrame, path: list[str], root_key: str) -> pl.DataFrame:
        """Map rows keyed by an intermediate table's identifier onto the root key, hop by hop."""
        key = table_id_column(path[0])
        for table, next_table in zip(path, path[1:]):
            next_key = table_id_column(next_table)
            columns = self.snapshot.columns(table)
            own_column = find_case_insensitive(columns, key)
            next_column = find_case_insensitive(columns, next_key)
            if own_column is None or next_column is None:
                raise MissingDependencyError(next_key if own_column else key)

            dialect = self.connection.dialect
            bridge = normalize_column_types(
                self.connection.query(
                    f"SELECT DISTINCT {dialect.quote(own_column)}, {dialect.quote(next_column)} "
                    f"FROM {dialect.quote(self.snapshot.resolve_table(table))}"
                )
            )
            if next_key in df.columns:
                df = df.drop(next_key)
            df = df.join(bridge, on=key, how="inner")
            key = next_key

        logger.debug("table_bridged", path=path, root_key=root_key)
        return df

    def prepare_related_table(
        self, table: str, root: str, accumulator: pl.DataFrame
    ) -> tuple[pl.DataFrame, str] | None:
        """
        Fetch a related table and pivot it to one row per merge key.

        Returns:
            (wide table, merge key) or None if nothing survived the fetch
        """
        root_key = table_id_column(root)
        path = self.graph.relation_path(table, root) or []
        key = self.join_key(table, root) or root_key

        df = self.fetcher.fetch(table, merge_column=key)
        if df.height == 0:
            return None

        concept_column = self.fetcher.concept_column(table)
        concept_column = concept_column.lower() if concept_column else None

        if key not in accumulator.columns or key not in df.columns:
            if root_key in df.columns:
                key = root_key
            else:
                if key not in df.columns:
                    raise MissingDependencyError(key)
                df = self._bridge_to_root(df, path, root_key)
                df = enforce_subset_filter(df, root_key, self.policy.subset_filter(), concept_column)
                key = root_key

        df = sort_chronologically(df, find_date_column(df.columns))

        if concept_column in df.columns:
            df = self.translator.translate(df, [concept_column])
        elif df[key].is_duplicated().any():
            concept_column = SYNTHETIC_CONCEPT_COLUMN
            df = df.with_columns(pl.lit(table.lower()).alias(concept_column))
        else:
            return df, key

        df = sequence_longitudinal(df, concept_column, key)
        return reshape_wide(df, concept_column, key), key

    def add_concept_names(self, df: pl.DataFrame) -> pl.DataFrame:
        """Add a `*_concept_name` sibling for every remaining `*_concept_id` column."""
        concept_columns = [column for column in df.columns if is_concept_id_column(column)]
        if not concept_columns:
            return df

        codes = set()
        for column in concept_columns:
            codes.update(df[column].drop_nulls().to_list())
        try:
            names = self.translator.lookup(codes)
        except TranslationUnavailableError as e:
            self.translator.record_warning(str(e))
            return df

        additions = []
        for column in concept_columns:
            name_column = column[: -len(CONCEPT_ID_SUFFIX)] + "_concept_name"
            if name_column in df.columns:
                continue
            text = code_text_expr(column, df.schema[column])
            if names:
                name = pl.when(text.is_in(list(names))).then(text.replace(names)).otherwise(pl.lit(None, dtype=pl.Utf8))
            else:
                name = pl.lit(None, dtype=pl.Utf8)
            additions.append(name.alias(name_column))
        return df.with_columns(additions) if additions else df

    def extend(self, df: pl.DataFrame, root: str) -> pl.DataFrame:
        """
        Join small reference tables that are unrelated to the root.

        A reference table `T` is joined onto every column whose last token ends
        in `T_id`; joined columns may reference further tables, resolved in
        later passes up to `max_extension_depth`.
        """
        vocabulary = self.snapshot.find_table(self.config.vocabulary_table)
        references = {
            table_id_column(table): table
            for table in self.graph.non_related_tables(root, self.snapshot.table_names)
            if table != vocabulary
        }
        categories = sorted(references, key=lambda category: (-len(category), category))
        marker = self.config.source_marker.lower()

        frames: dict[str, pl.DataFrame] = {}
        extended: set[str] = set()

        for depth in range(self.config.max_extension_depth):
            pending = []
            for column in df.columns:
                if column in extended or marker in column or is_concept_id_column(column):
                    continue
                category = self.detector.match_id_category(split_tokens(column)[-1], categories)
                if category is not None:
                    pending.append((column, category))
            if not pending:
                break

            for column, category in pending:
                table = references[category]
                if table not in frames:
                    frames[table] = self.fetcher.fetch(table)
                df = extend_column(df, frames[table], column, category)
                extended.add(column)
                logger.debug("table_extended", column=column, reference_table=table, depth=depth)

        return self.add_concept_names(df)

    def assemble(self, root_table: str | None = None) -> pl.DataFrame:
        """
        Merge every table related to the root into one wide table.

        Steps:
        1. Fetch the root table
        2. For each reachable table (breadth-first order): fetch, translate,
           sequence and pivot it, then left-merge it on its join key
        3. Extend with unrelated reference tables and concept names
        4. Order columns by category, drop raw concept ids and empty columns
        5. Check the final entity count against the subset filter

        Raises:
            NotFoundError: If the root table does not exist
            PrivacyViolationError: If any fetched table or the result describes too few entities
            MissingDependencyError: If a join key is missing
        """
        root = self.snapshot.resolve_table(root_table or self.config.root_table)
        root_key = table_id_column(root)
        threshold = self.policy.subset_filter()
        logger.info("assembly_started", root_table=root)

        df = self.fetcher.fetch(root)
        if root_key not in df.columns:
            raise MissingDependencyError(root_key)

        for table in self.graph.reachable_tables(root):
            if self.fetcher.count_rows(table) == 0:
                logger.debug("table_skipped_empty", table=table)
                continue

            prepared = self.prepare_related_table(table, root, df)
            if prepared is None:
                continue
            wide, key = prepared
            df = merge_tables(df, wide, key)
            logger.info("table_merged", table=table, key=key, columns=df.width)

        df = self.extend(df, root)
        df = sort_table_categories(df)

        remove_concept_id = self.config.remove_concept_id and self.translator.available
        df = clean_table(df, remove_concept_id=remove_concept_id, drop_empty=self.config.drop_empty_columns)
        df = convert_date_columns(df)
        df = enforce_subset_filter(df, root_key, threshold)

        logger.info("assembly_complete", root_table=root, columns=df.width, warnings=len(self.warnings))
        return df
