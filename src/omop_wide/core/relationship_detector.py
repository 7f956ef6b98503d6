"""
Relationship Detector - foreign key discovery from naming conventions.

OMOP CDM declares no foreign key constraints, so relationships are inferred
purely from column names:
- Every table `T` defines an identifier category `T_id`
- A column `X.c` whose name ends in a category `T_id` (and is not X's own
  primary identifier) is a foreign key from X to T
- The relation graph maps each referenced table T to the tables holding a
  foreign key to it (referenced -> referencing)

Everything here is a pure function of a SchemaSnapshot.
"""

from collections import defaultdict
from dataclasses import dataclass

import structlog

from omop_wide.core.naming import ID_SUFFIX, table_id_column
from omop_wide.core.schema_snapshot import SchemaSnapshot

logger = structlog.get_logger(__name__)

RelationMap = dict[str, list[str]]


@dataclass(frozen=True)
class TableRelationship:
    """
    Foreign key relationship inferred from a column name.

    Attributes:
        parent_table: Referenced table (owner of the identifier category)
        child_table: Table holding the foreign key column
        parent_key: Identifier category (e.g. "person_id")
        child_key: Foreign key column (e.g. "person_id" or "associated_person_id")
    """

    parent_table: str
    child_table: str
    parent_key: str
    child_key: str

    def __str__(self) -> str:
        return f"{self.parent_table}.{self.parent_key} → {self.child_table}.{self.child_key}"


class RelationshipDetector:
    """
    Classifies identifier columns into categories and builds the relation graph.

    Category collisions (a column ending in more than one category, e.g.
    `visit_occurrence_id` vs a hypothetical `occurrence_id`) are resolved by
    trying the longest category first, ties in lexical order.
    """

    def __init__(self, source_marker: str = "_source"):
        self.source_marker = source_marker

    def id_categories(self, snapshot: SchemaSnapshot) -> list[str]:
        """Identifier categories of the schema in match order (longest first, then lexical)."""
        categories = {table_id_column(table) for table in snapshot.table_names}
        return sorted(categories, key=lambda category: (-len(category), category))

    def id_column_names(self, snapshot: SchemaSnapshot) -> dict[str, list[str]]:
        """Qualified `table.column` identifier columns per table, source columns excluded."""
        id_columns = {}
        for table in sorted(snapshot.table_names):
            id_columns[table] = [
                f"{table}.{column}"
                for column in snapshot.tables[table]
                if column.lower().endswith(ID_SUFFIX) and self.source_marker not in column.lower()
            ]
        return id_columns

    def foreign_id_column_names(self, snapshot: SchemaSnapshot) -> dict[str, list[str]]:
        """Identifier columns minus each table's own primary identifier."""
        foreign = {}
        for table, columns in self.id_column_names(snapshot).items():
            own_id = table_id_column(table)
            foreign[table] = [column for column in columns if column.split(".", 1)[1].lower() != own_id]
        return foreign

    def match_id_category(self, column_name: str, categories: list[str]) -> str | None:
        """
        Return the first category (in `categories` order) that `column_name` ends with.

        Accepts bare (`person_id`) or qualified (`measurement.person_id`) names.
        The category must be the whole column name or follow an underscore.
        """
        column = column_name.split(".", 1)[-1].lower()
        for category in categories:
            if column == category or column.endswith(f"_{category}"):
                return category
        return None

    def classify_id_columns(self, snapshot: SchemaSnapshot) -> dict[str, list[str]]:
        """
        Group every foreign identifier column of the schema by the category it references.

        Returns:
            Mapping of category (e.g. "person_id") to qualified columns
            (e.g. ["measurement.person_id", "observation.person_id"])
        """
        categories = self.id_categories(snapshot)
        classified: dict[str, list[str]] = defaultdict(list)

        for columns in self.foreign_id_column_names(snapshot).values():
            for column in columns:
                category = self.match_id_category(column, categories)
                if category is not None:
                    classified[category].append(column)

        return dict(sorted(classified.items()))

    def build_table_relations(self, snapshot: SchemaSnapshot) -> RelationMap:
        """
        Build the relation graph: referenced table -> tables referencing it.

        A table referenced through several columns (`person_id` and
        `associated_person_id`) yields a single edge.
        """
        table_by_category = {table_id_column(table): table for table in snapshot.table_names}
        relations: RelationMap = {}

        for category, columns in self.classify_id_columns(snapshot).items():
            referencing = {column.split(".", 1)[0] for column in columns}
            relations[table_by_category[category]] = sorted(referencing)

        logger.debug("relation_graph_built", referenced_tables=len(relations))
        return relations

    def detect_relationships(self, snapshot: SchemaSnapshot) -> list[TableRelationship]:
        """List every inferred foreign key, ordered by referenced table then referencing column."""
        table_by_category = {table_id_column(table): table for table in snapshot.table_names}
        relationships = []
        for category, columns in self.classify_id_columns(snapshot).items():
            for column in sorted(columns):
                child_table, child_key = column.split(".", 1)
                relationships.append(
                    TableRelationship(
                        parent_table=table_by_category[category],
                        child_table=child_table,
                        parent_key=category,
                        child_key=child_key,
                    )
                )
        return relationships

    def get_relationship_summary(self, snapshot: SchemaSnapshot) -> str:
        """Generate human-readable summary of detected relationships."""
        relationships = self.detect_relationships(snapshot)
        lines = ["=== Detected Table Relationships ==="]

        if not relationships:
            lines.append("No relationships detected")
            return "\n".join(lines)

        for rel in relationships:
            lines.append(f"  {rel}")

        lines.append(f"\nTotal: {len(relationships)} relationships")
        return "\n".join(lines)
