"""
Entity and relation extraction from schema.org JSON-LD blocks.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from storage.models import EntitySource, EntityType
from utils.logger import setup_logger

logger = setup_logger(__name__)

SCHEMA_TYPE_MAP: Dict[str, EntityType] = {
    'Organization': EntityType.ORGANIZATION,
    'Corporation': EntityType.ORGANIZATION,
    'LocalBusiness': EntityType.ORGANIZATION,
    'Service': EntityType.SERVICE,
    'Product': EntityType.PRODUCT,
    'Person': EntityType.PERSON,
    'Place': EntityType.LOCATION,
    'PostalAddress': EntityType.LOCATION,
    'City': EntityType.LOCATION,
    'Country': EntityType.LOCATION,
}

# (schema type, property naming the counterpart, relation type)
SCHEMA_RELATION_RULES = (
    ('Service', 'provider', 'offered_by'),
    ('Product', 'manufacturer', 'provided_by'),
)

SCHEMA_PREFIXES = ('https://schema.org/', 'http://schema.org/')


@dataclass
class ExtractedEntity:
    """Entity candidate produced by an extractor, before resolution."""
    name: str
    type: EntityType
    source: EntitySource
    confidence: float
    aliases: List[str] = field(default_factory=list)
    context: Optional[str] = None


@dataclass
class ExtractedRelation:
    from_name: str
    to_name: str
    relation_type: str


def _strip_prefix(type_name: str) -> str:
    for prefix in SCHEMA_PREFIXES:
        if type_name.startswith(prefix):
            return type_name[len(prefix):]
    return type_name


def schema_types(node: Dict[str, Any]) -> List[str]:
    """The @type discriminant of a node as a list of bare schema.org names."""
    raw = node.get('@type')
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [_strip_prefix(t) for t in raw if isinstance(t, str)]


def map_schema_type(node: Dict[str, Any]) -> Optional[EntityType]:
    for type_name in schema_types(node):
        if type_name in SCHEMA_TYPE_MAP:
            return SCHEMA_TYPE_MAP[type_name]
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def iter_schema_nodes(node: Any) -> Iterator[Dict[str, Any]]:
    """Visit every dict node of a JSON-LD tree in document order, @graph included."""
    if isinstance(node, dict):
        yield node
        for value in node.values():
            yield from iter_schema_nodes(value)
    elif isinstance(node, list):
        for item in node:
            yield from iter_schema_nodes(item)


def entity_from_node(node: Dict[str, Any]) -> Optional[ExtractedEntity]:
    entity_type = map_schema_type(node)
    if entity_type is None:
        return None

    legal_name = _as_text(node.get('legalName'))
    name = _as_text(node.get('name')) or legal_name
    if not name:
        return None

    aliases: List[str] = []
    alternate = node.get('alternateName')
    if isinstance(alternate, list):
        aliases.extend(a for a in (_as_text(v) for v in alternate) if a)
    elif _as_text(alternate):
        aliases.append(_as_text(alternate))
    if legal_name and legal_name != name:
        aliases.append(legal_name)

    return ExtractedEntity(
        name=name,
        type=entity_type,
        source=EntitySource.SCHEMA,
        confidence=1.0,
        aliases=aliases,
        context=_as_text(node.get('description')),
    )


def extract_entities_from_json_ld(json_ld_blocks: List[Any]) -> List[ExtractedEntity]:
    """
    Extract schema.org entities from parsed JSON-LD blocks.

    Args:
        json_ld_blocks: Parsed JSON-LD values (dicts or lists)

    Returns:
        Entity candidates with SCHEMA provenance and confidence 1.0
    """
    entities: List[ExtractedEntity] = []
    for block in json_ld_blocks or []:
        try:
            for node in iter_schema_nodes(block):
                entity = entity_from_node(node)
                if entity:
                    entities.append(entity)
        except (TypeError, AttributeError, RecursionError) as e:
            logger.debug(f"Failed to extract entities from JSON-LD block: {e}")
    return entities


def _counterpart_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return _as_text(value.get('name'))
    return _as_text(value)


def extract_relationships_from_json_ld(json_ld_blocks: List[Any]) -> List[ExtractedRelation]:
    """
    Extract provider and manufacturer relations anywhere in the JSON-LD trees.

    Service.provider becomes offered_by, Product.manufacturer provided_by.
    """
    relations: List[ExtractedRelation] = []
    for block in json_ld_blocks or []:
        try:
            for node in iter_schema_nodes(block):
                types = schema_types(node)
                for schema_type, prop, relation_type in SCHEMA_RELATION_RULES:
                    if schema_type not in types or prop not in node:
                        continue
                    from_name = _as_text(node.get('name'))
                    to_name = _counterpart_name(node[prop])
                    if from_name and to_name:
                        relations.append(ExtractedRelation(from_name, to_name, relation_type))
        except (TypeError, AttributeError, RecursionError) as e:
            logger.debug(f"Failed to extract relationships from JSON-LD: {e}")
    return relations
