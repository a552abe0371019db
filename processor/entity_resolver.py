"""
Entity resolution: map extracted candidates onto the site's canonical entities.
"""
from typing import Dict, List, Optional, Tuple

from processor.entity_disambiguation import EntityDisambiguator, normalize_entity_name
from processor.schema_extractor import ExtractedEntity
from storage.database import SQLiteStorage
from storage.models import Entity, EntitySource, EntityType
from utils.errors import PersistenceError
from utils.logger import setup_logger

logger = setup_logger(__name__)

IndexKey = Tuple[EntityType, str]


class EntityResolver:
    """
    Resolves entity candidates for one site against a write-through cache.

    The cache holds every entity of the site by id plus an index from
    (type, normalized name or alias) to id. Resolution tries an exact index
    hit, then a scan of same-type entities with the disambiguator's merge
    rule, and finally creates a new entity.

    The scan is linear in the number of cached entities of the type.
    """

    def __init__(
        self,
        site_id: str,
        storage: SQLiteStorage,
        disambiguator: Optional[EntityDisambiguator] = None,
    ):
        self.site_id = site_id
        self.storage = storage
        self.disambiguator = disambiguator or EntityDisambiguator()
        self.by_id: Dict[str, Entity] = {}
        self.index: Dict[IndexKey, str] = {}

    def load_existing_entities(self) -> None:
        """Clear the cache and reload it from storage."""
        self.by_id.clear()
        self.index.clear()
        for entity in self.storage.list_entities(self.site_id):
            self._cache(entity)
        logger.info(f"Loaded {len(self.by_id)} existing entities for site {self.site_id}")

    def _cache(self, entity: Entity) -> None:
        self.by_id[entity.id] = entity
        for name in [entity.name, *entity.aliases]:
            key = normalize_entity_name(name)
            if key:
                self.index.setdefault((entity.type, key), entity.id)

    def resolve_entity(self, candidate: ExtractedEntity) -> Optional[Entity]:
        """
        Resolve a candidate to a canonical entity, merging or creating as needed.

        Args:
            candidate: Extracted entity candidate

        Returns:
            The resolved entity, or None when it could not be created
        """
        key = normalize_entity_name(candidate.name)
        if not key:
            return None

        entity_id = self.index.get((candidate.type, key))
        if entity_id is not None:
            return self._merge(self.by_id[entity_id], candidate)

        similar = self._find_similar(candidate.name, candidate.type)
        if similar is not None:
            return self._merge(similar, candidate)

        return self._create(candidate)

    def _find_similar(self, name: str, entity_type: EntityType) -> Optional[Entity]:
        for entity in self.by_id.values():
            if entity.type != entity_type:
                continue
            if self.disambiguator.should_merge(name, entity.name):
                return entity
            for alias in entity.aliases:
                if self.disambiguator.should_merge(name, alias):
                    return entity
        return None

    def merged_fields(self, existing: Entity, candidate: ExtractedEntity) -> Tuple[str, List[str], float, EntitySource]:
        """Name, aliases, confidence and source after folding a candidate into an entity."""
        names = self.disambiguator.unique_names(
            [existing.name, *existing.aliases, candidate.name, *candidate.aliases]
        )
        if candidate.source == EntitySource.SCHEMA:
            canonical = candidate.name
        else:
            canonical = self.disambiguator.select_canonical_name(names)
        canonical_key = normalize_entity_name(canonical)
        aliases = [n for n in names if normalize_entity_name(n) != canonical_key]

        confidence = max(existing.confidence, candidate.confidence)
        if EntitySource.SCHEMA in (existing.source, candidate.source):
            source = EntitySource.SCHEMA
        else:
            source = existing.source
        return canonical, aliases, confidence, source

    def _merge(self, existing: Entity, candidate: ExtractedEntity) -> Entity:
        name, aliases, confidence, source = self.merged_fields(existing, candidate)
        if (name, aliases, confidence, source) == (
            existing.name, existing.aliases, existing.confidence, existing.source
        ):
            return existing

        updated = Entity(
            id=existing.id,
            site_id=existing.site_id,
            name=name,
            type=existing.type,
            aliases=aliases,
            source=source,
            confidence=confidence,
        )
        try:
            self.storage.update_entity(updated)
        except PersistenceError as e:
            logger.warning(f"Failed to merge '{candidate.name}' into '{existing.name}': {e}")
            return existing

        self._cache(updated)
        logger.debug(f"Merged '{candidate.name}' into '{existing.name}' -> '{name}'")
        return updated

    def _create(self, candidate: ExtractedEntity) -> Optional[Entity]:
        entity = Entity(
            site_id=self.site_id,
            name=candidate.name,
            type=candidate.type,
            aliases=self.disambiguator.unique_names(
                a for a in candidate.aliases
                if normalize_entity_name(a) != normalize_entity_name(candidate.name)
            ),
            source=candidate.source,
            confidence=candidate.confidence,
        )
        try:
            self.storage.create_entity(entity)
        except PersistenceError as e:
            logger.warning(f"Failed to create entity '{candidate.name}': {e}")
            return None

        self._cache(entity)
        logger.debug(f"Created new entity '{entity.name}' ({entity.type.value})")
        return entity

    def find_by_name(self, name: str, entity_type: Optional[EntityType] = None) -> Optional[Entity]:
        """Look up a resolved entity by normalized name or alias, optionally within one type."""
        key = normalize_entity_name(name)
        if not key:
            return None
        if entity_type is not None:
            entity_id = self.index.get((entity_type, key))
            return self.by_id.get(entity_id) if entity_id else None
        for entity_type_candidate in EntityType:
            entity_id = self.index.get((entity_type_candidate, key))
            if entity_id:
                return self.by_id[entity_id]
        return None

    def get_all_entities(self) -> List[Entity]:
        return list(self.by_id.values())
