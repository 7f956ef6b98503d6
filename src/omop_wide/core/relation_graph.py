"""
Relation Graph - path and reachability queries over inferred relations.

Both queries are breadth-first with an explicit visited set, so they
terminate on any graph, including self references
(`visit_occurrence.preceding_visit_occurrence_id`) and longer cycles.
"""

from collections import deque
from collections.abc import Iterable, Mapping

from omop_wide.core.relationship_detector import RelationshipDetector
from omop_wide.core.schema_snapshot import SchemaSnapshot


class RelationGraph:
    """
    Directed graph of table relations: referenced table -> referencing tables.

    Example:
        >>> graph = RelationGraph({"person": ["measurement", "visit_occurrence"],
        ...                        "visit_occurrence": ["visit_detail"]})
        >>> graph.reachable_tables("person")
        ['measurement', 'visit_occurrence', 'visit_detail']
        >>> graph.relation_path("visit_detail", "person")
        ['visit_occurrence', 'person']
    """

    def __init__(self, relations: Mapping[str, Iterable[str]]):
        # Private copy: callers mutating their map never affect traversal
        self.relations: dict[str, tuple[str, ...]] = {
            table: tuple(dict.fromkeys(related)) for table, related in relations.items()
        }

    @classmethod
    def from_snapshot(cls, snapshot: SchemaSnapshot, detector: RelationshipDetector | None = None) -> "RelationGraph":
        detector = detector or RelationshipDetector()
        return cls(detector.build_table_relations(snapshot))

    def related_tables(self, table: str) -> tuple[str, ...]:
        return self.relations.get(table, ())

    def relation_path(self, from_table: str, to_table: str) -> list[str] | None:
        """
        Shortest chain of relations linking `from_table` to `to_table`.

        Searches outward from `to_table` for `from_table`. The returned path
        starts at the table `from_table` links to directly and ends at
        `to_table`; `from_table` itself is excluded.

        Returns:
            [] when both tables are the same, None when `from_table` is unreachable
        """
        if from_table == to_table:
            return []

        visited = {to_table}
        queue = deque([(to_table, [to_table])])

        while queue:
            current, path = queue.popleft()
            for related in self.related_tables(current):
                if related in visited:
                    continue
                if related == from_table:
                    return list(reversed(path))
                visited.add(related)
                queue.append((related, [*path, related]))

        return None

    def next_relation(self, from_table: str, to_table: str) -> str | None:
        """Table `from_table` joins to on its way to `to_table`."""
        path = self.relation_path(from_table, to_table)
        return path[0] if path else None

    def reachable_tables(self, root: str) -> list[str]:
        """
        All tables transitively related to `root`, in breadth-first discovery order.

        `root` itself is never part of the result, even if it references itself.
        """
        visited = {root}
        reachable = []
        queue = deque([root])

        while queue:
            current = queue.popleft()
            for related in self.related_tables(current):
                if related in visited:
                    continue
                visited.add(related)
                reachable.append(related)
                queue.append(related)

        return reachable

    def non_related_tables(self, root: str, table_names: Iterable[str]) -> list[str]:
        """Tables of the schema that are neither `root` nor reachable from it."""
        related = set(self.reachable_tables(root)) | {root}
        return [table for table in table_names if table not in related]
