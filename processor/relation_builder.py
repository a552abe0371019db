"""
Relation accumulation for one graph build.
"""
from itertools import permutations
from typing import Dict, Iterable, List

import networkx as nx

from storage.database import SQLiteStorage
from storage.models import EntityRelation, EntitySource
from utils.errors import PersistenceError
from utils.logger import setup_logger

logger = setup_logger(__name__)

CO_OCCURRENCE_RELATION = 'mentioned_with'
CO_OCCURRENCE_WEIGHT = 0.5


class RelationBuilder:
    """
    Accumulates typed, weighted edges between entity ids.

    Edges live in a MultiDiGraph keyed by relation type, so (from, to, type)
    identifies an edge. Adding an existing edge sums its weight and upgrades
    its provenance to SCHEMA when either contributor is SCHEMA.
    """

    def __init__(self):
        self.graph = nx.MultiDiGraph()

    def add_relation(
        self,
        from_entity_id: str,
        to_entity_id: str,
        relation_type: str,
        weight: float = 1.0,
        source: EntitySource = EntitySource.STRUCTURE,
    ) -> None:
        if self.graph.has_edge(from_entity_id, to_entity_id, key=relation_type):
            data = self.graph.edges[from_entity_id, to_entity_id, relation_type]
            data['weight'] += weight
            if source == EntitySource.SCHEMA:
                data['source'] = EntitySource.SCHEMA
        else:
            self.graph.add_edge(
                from_entity_id,
                to_entity_id,
                key=relation_type,
                weight=weight,
                source=source,
            )

    def build_co_occurrence_relations(self, entity_ids: Iterable[str]) -> None:
        """Link every ordered pair of distinct entities seen on the same page."""
        unique_ids: List[str] = list(dict.fromkeys(entity_ids))
        for from_id, to_id in permutations(unique_ids, 2):
            self.add_relation(from_id, to_id, CO_OCCURRENCE_RELATION, CO_OCCURRENCE_WEIGHT, EntitySource.STRUCTURE)

    def get_relations(self) -> List[EntityRelation]:
        return [
            EntityRelation(
                from_entity_id=from_id,
                to_entity_id=to_id,
                relation_type=relation_type,
                weight=data['weight'],
                source=data['source'],
            )
            for from_id, to_id, relation_type, data in self.graph.edges(keys=True, data=True)
        ]

    def save_relations(self, storage: SQLiteStorage) -> int:
        """
        Upsert every accumulated edge.

        Args:
            storage: Storage collaborator

        Returns:
            Number of edges written; failed edges are logged and skipped
        """
        saved = 0
        for relation in self.get_relations():
            try:
                storage.upsert_relation(relation)
                saved += 1
            except PersistenceError as e:
                logger.warning(
                    f"Failed to save relation {relation.from_entity_id} -[{relation.relation_type}]-> "
                    f"{relation.to_entity_id}: {e}"
                )
        logger.info(f"Saved {saved}/{self.get_relation_count()} relations")
        return saved

    def get_relation_count(self) -> int:
        return self.graph.number_of_edges()

    def get_graph(self) -> nx.MultiDiGraph:
        """Get the accumulated relation graph."""
        return self.graph

    def get_statistics(self) -> Dict[str, int]:
        return {
            'entities': self.graph.number_of_nodes(),
            'relations': self.graph.number_of_edges(),
        }
