"""
Entity candidates from page structure (headings, navigation, breadcrumbs)
and heading-scoped content chunks.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from processor.schema_extractor import ExtractedEntity
from storage.models import EntitySource, EntityType
from utils.logger import setup_logger

logger = setup_logger(__name__)

# Ordered (keyword, type) rules; first match wins
HEADING_TYPE_RULES: Sequence[Tuple[str, EntityType]] = (
    ('service', EntityType.SERVICE),
    ('solution', EntityType.SERVICE),
    ('product', EntityType.PRODUCT),
)
NAVIGATION_TYPE_RULES: Sequence[Tuple[str, EntityType]] = (
    ('about', EntityType.TOPIC),
    ('contact', EntityType.TOPIC),
    ('team', EntityType.TOPIC),
)

NAVIGATION_SELECTOR = 'nav a, [role="navigation"] a'
BREADCRUMB_SELECTOR = '[itemtype*="BreadcrumbList"] a, .breadcrumb a, [aria-label="breadcrumb"] a'

REMOVED_TAGS = ['script', 'style', 'nav', 'header', 'footer', 'aside']
CHUNK_TAGS = {'p', 'div', 'section'}
HEADING_TAGS = {'h1': 1, 'h2': 2, 'h3': 3}
BLOCK_TAGS = {
    'address', 'article', 'aside', 'blockquote', 'dd', 'details', 'dialog', 'div', 'dl', 'dt',
    'fieldset', 'figcaption', 'figure', 'footer', 'form', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'header', 'hgroup', 'hr', 'li', 'main', 'nav', 'ol', 'p', 'pre', 'section', 'table',
    'tbody', 'td', 'tfoot', 'th', 'thead', 'tr', 'ul',
}


@dataclass
class ChunkData:
    text: str
    heading_path: List[str] = field(default_factory=list)
    position: int = 0


def classify(text: str, rules: Sequence[Tuple[str, EntityType]], default: EntityType) -> EntityType:
    """Type of the first rule whose keyword occurs in the lowercased text."""
    lower = text.lower()
    for keyword, entity_type in rules:
        if keyword in lower:
            return entity_type
    return default


def _collapse(text: str) -> str:
    return re.sub(r'\s+', ' ', text).strip()


def extract_entities_from_headings(metadata: Optional[Dict[str, Any]]) -> List[ExtractedEntity]:
    """
    H1 headings become TOPIC candidates (0.8); H2/H3 headings are typed by
    keyword rules (0.6). Headings of two characters or fewer are ignored.
    """
    entities: List[ExtractedEntity] = []
    headings = (metadata or {}).get('headings') or {}

    for heading in headings.get('h1') or []:
        name = heading.strip() if isinstance(heading, str) else ''
        if len(name) > 2:
            entities.append(ExtractedEntity(name, EntityType.TOPIC, EntitySource.STRUCTURE, 0.8))

    subheadings = list(headings.get('h2') or []) + list(headings.get('h3') or [])
    for heading in subheadings:
        name = heading.strip() if isinstance(heading, str) else ''
        if len(name) > 2:
            entity_type = classify(name, HEADING_TYPE_RULES, EntityType.TOPIC)
            entities.append(ExtractedEntity(name, entity_type, EntitySource.STRUCTURE, 0.6))

    return entities


def _link_texts(html: str, selector: str) -> List[str]:
    soup = BeautifulSoup(html, 'html.parser')
    texts = []
    for anchor in soup.select(selector):
        text = _collapse(anchor.get_text(' '))
        if 2 < len(text) < 50:
            texts.append(text)
    return texts


def extract_entities_from_navigation(html: str) -> List[ExtractedEntity]:
    """Navigation link labels: SERVICE unless an about/contact/team label (0.5)."""
    try:
        return [
            ExtractedEntity(
                name=text,
                type=classify(text, NAVIGATION_TYPE_RULES, EntityType.SERVICE),
                source=EntitySource.STRUCTURE,
                confidence=0.5,
            )
            for text in _link_texts(html, NAVIGATION_SELECTOR)
        ]
    except Exception as e:
        logger.debug(f"Failed to extract entities from navigation: {e}")
        return []


def extract_entities_from_breadcrumbs(html: str) -> List[ExtractedEntity]:
    try:
        return [
            ExtractedEntity(text, EntityType.TOPIC, EntitySource.STRUCTURE, 0.7)
            for text in _link_texts(html, BREADCRUMB_SELECTOR)
        ]
    except Exception as e:
        logger.debug(f"Failed to extract entities from breadcrumbs: {e}")
        return []


def own_text(element: Tag) -> str:
    """Text of an element and its inline descendants, skipping nested blocks."""
    parts: List[str] = []
    for child in element.children:
        if isinstance(child, Comment):
            continue
        if isinstance(child, NavigableString):
            parts.append(str(child))
        elif isinstance(child, Tag) and child.name not in BLOCK_TAGS:
            parts.append(own_text(child))
    return ''.join(parts)


def extract_chunks_from_html(html: str, max_chunks: int = 20, min_length: int = 50) -> List[ChunkData]:
    """
    Split a page into heading-scoped text chunks.

    Elements are walked in document order. H1-H3 maintain a heading stack;
    p/div/section elements whose own text is longer than min_length become
    chunks tagged with the current heading path.

    Args:
        html: Page HTML
        max_chunks: Chunks kept per page
        min_length: Own-text characters a block must exceed

    Returns:
        Chunks with running positions, at most max_chunks
    """
    chunks: List[ChunkData] = []
    try:
        soup = BeautifulSoup(html, 'html.parser')
        for tag in soup(REMOVED_TAGS):
            tag.decompose()

        root = soup.body or soup
        heading_stack: List[str] = []

        for element in root.find_all(True):
            name = element.name.lower()

            if name in HEADING_TAGS:
                level = HEADING_TAGS[name]
                heading_stack = heading_stack[:level - 1]
                heading_stack.extend([''] * (level - 1 - len(heading_stack)))
                heading_stack.append(_collapse(element.get_text(' ')))
                continue

            if name in CHUNK_TAGS:
                text = _collapse(own_text(element))
                if len(text) > min_length:
                    chunks.append(ChunkData(
                        text=text,
                        heading_path=[h for h in heading_stack if h],
                        position=len(chunks),
                    ))
                    if len(chunks) >= max_chunks:
                        break
    except Exception as e:
        logger.debug(f"Failed to extract chunks from HTML: {e}")

    return chunks
