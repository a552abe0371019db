"""
Knowledge graph construction from crawled pages.
"""
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Iterator, List, Optional, Set

from processor.entity_resolver import EntityResolver
from processor.entity_disambiguation import EntityDisambiguator
from processor.relation_builder import RelationBuilder
from processor.schema_extractor import (
    ExtractedEntity,
    extract_entities_from_json_ld,
    extract_relationships_from_json_ld,
)
from processor.structure_extractor import (
    extract_chunks_from_html,
    extract_entities_from_breadcrumbs,
    extract_entities_from_headings,
    extract_entities_from_navigation,
)
from storage.database import SQLiteStorage
from storage.models import ContentChunk, EntityMention, EntitySource, Page, PageStatus, SiteStatus
from utils.config import GraphConfig
from utils.errors import GraphBuildInProgressError, PersistenceError
from utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class GraphBuildStats:
    entities: int = 0
    relations: int = 0
    pages_processed: int = 0
    pages_failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class BuildRegistry:
    """Tracks which sites have a graph build in progress."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_progress: Set[str] = set()

    def acquire(self, site_id: str) -> None:
        """
        Mark a site as building.

        Raises:
            GraphBuildInProgressError: If the site is already building
        """
        with self._lock:
            if site_id in self._in_progress:
                raise GraphBuildInProgressError(site_id)
            self._in_progress.add(site_id)

    def release(self, site_id: str) -> None:
        with self._lock:
            self._in_progress.discard(site_id)

    def is_building(self, site_id: str) -> bool:
        with self._lock:
            return site_id in self._in_progress

    @contextmanager
    def building(self, site_id: str) -> Iterator[None]:
        self.acquire(site_id)
        try:
            yield
        finally:
            self.release(site_id)


class _PageEntities:
    """Distinct entity ids resolved on one page, in extraction order."""

    def __init__(self):
        self.ids: List[str] = []

    def add(self, entity_id: str) -> bool:
        if entity_id in self.ids:
            return False
        self.ids.append(entity_id)
        return True


class GraphBuilder:
    """
    Builds the site-scoped entity graph from persisted pages.

    Each page goes through the schema, heading, navigation and breadcrumb
    extractors; candidates are resolved into canonical entities, mentions and
    chunks are written, and co-occurrence relations are accumulated and saved
    once at the end. A failing page is logged and counted; it does not abort
    the build.
    """

    def __init__(
        self,
        storage: SQLiteStorage,
        config: Optional[GraphConfig] = None,
        registry: Optional[BuildRegistry] = None,
    ):
        """
        Initialize the graph builder.

        Args:
            storage: Storage collaborator
            config: Graph configuration settings
            registry: Shared registry of in-progress builds
        """
        self.storage = storage
        self.config = config or GraphConfig()
        self.registry = registry or BuildRegistry()

    def build_graph(self, site_id: str) -> GraphBuildStats:
        """
        Build or refresh the graph of one site.

        Args:
            site_id: Site to build

        Returns:
            GraphBuildStats with entity and relation totals

        Raises:
            GraphBuildInProgressError: If the site is already being built
        """
        with self.registry.building(site_id):
            logger.info(f"Starting graph build for site {site_id}")
            self.storage.update_site(site_id, status=SiteStatus.ACTIVE)
            try:
                stats = self._build(site_id)
            except Exception as e:
                logger.error(f"Graph build failed for site {site_id}: {e}")
                try:
                    self.storage.update_site(site_id, status=SiteStatus.ERROR)
                except PersistenceError as status_error:
                    logger.error(f"Could not mark site {site_id} as failed: {status_error}")
                raise
            self.storage.update_site(site_id, status=SiteStatus.COMPLETED)

        logger.info(
            f"Graph build completed for site {site_id}: {stats.entities} entities, "
            f"{stats.relations} relations, {stats.pages_processed} pages ({stats.pages_failed} failed)"
        )
        return stats

    def _build(self, site_id: str) -> GraphBuildStats:
        resolver = EntityResolver(
            site_id, self.storage, EntityDisambiguator(self.config.merge_threshold)
        )
        resolver.load_existing_entities()
        relations = RelationBuilder()
        stats = GraphBuildStats()

        pages = self.storage.list_pages(site_id, status=PageStatus.COMPLETED)
        logger.info(f"Processing {len(pages)} pages for graph building")

        for page in pages:
            try:
                logger.info(f"Processing page for graph: {page.url}")
                self.process_page(page, resolver, relations)
                stats.pages_processed += 1
                if stats.pages_processed % 10 == 0:
                    logger.info(f"Graph build progress: {stats.pages_processed}/{len(pages)}")
            except Exception as e:
                stats.pages_failed += 1
                logger.error(f"Failed to process page {page.url} for graph: {e}")

        relations.save_relations(self.storage)
        stats.entities = len(resolver.get_all_entities())
        stats.relations = relations.get_relation_count()
        return stats

    def process_page(self, page: Page, resolver: EntityResolver, relations: RelationBuilder) -> List[str]:
        """
        Extract and resolve everything one page contributes to the graph.

        Returns:
            Distinct entity ids found on the page
        """
        metadata = page.metadata or {}
        page_entities = _PageEntities()

        # 1. JSON-LD, highest confidence
        json_ld = metadata.get('jsonLd') or []
        if isinstance(json_ld, list) and json_ld:
            fallback_context = (page.text_content or '')[:self.config.mention_context_length]
            for extracted in extract_entities_from_json_ld(json_ld):
                resolved = resolver.resolve_entity(extracted)
                if resolved and page_entities.add(resolved.id):
                    self._create_mention(resolved.id, page.id, extracted.context or fallback_context)

            for rel in extract_relationships_from_json_ld(json_ld):
                from_entity = resolver.find_by_name(rel.from_name)
                to_entity = resolver.find_by_name(rel.to_name)
                if from_entity and to_entity:
                    relations.add_relation(
                        from_entity.id, to_entity.id, rel.relation_type, 1.0, EntitySource.SCHEMA
                    )

        # 2. Headings
        self._resolve_structural(extract_entities_from_headings(metadata), page, resolver, page_entities)

        # 3. Navigation, breadcrumbs and chunks
        html = page.html
        if html:
            structural = extract_entities_from_navigation(html) + extract_entities_from_breadcrumbs(html)
            self._resolve_structural(structural, page, resolver, page_entities)

            chunks = extract_chunks_from_html(
                html,
                max_chunks=self.config.max_chunks_per_page,
                min_length=self.config.min_chunk_length,
            )
            self.storage.replace_chunks(page.id, [
                ContentChunk(
                    page_id=page.id,
                    text=chunk.text,
                    heading_path=chunk.heading_path,
                    position=chunk.position,
                )
                for chunk in chunks[:self.config.max_chunks_per_page]
            ])

        # 4. Co-occurrence
        if len(page_entities.ids) > 1:
            relations.build_co_occurrence_relations(page_entities.ids)

        return page_entities.ids

    def _resolve_structural(
        self,
        candidates: List[ExtractedEntity],
        page: Page,
        resolver: EntityResolver,
        page_entities: _PageEntities,
    ) -> None:
        for extracted in candidates:
            resolved = resolver.resolve_entity(extracted)
            if resolved and page_entities.add(resolved.id):
                self._create_mention(resolved.id, page.id, extracted.name)

    def _create_mention(self, entity_id: str, page_id: str, context: str) -> None:
        try:
            self.storage.create_mention(EntityMention(
                entity_id=entity_id,
                page_id=page_id,
                context_snippet=(context or '')[:self.config.max_snippet_length],
            ))
        except PersistenceError as e:
            # Ignore duplicate mentions
            logger.debug(f"Entity mention already exists for {entity_id} on {page_id}: {e}")
