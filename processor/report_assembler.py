"""
Assembles the site report snapshot consumed by the question engine.
"""
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from storage.database import SQLiteStorage
from storage.models import CrawlJob, FetchMethod, PageStatus, new_id, utc_now
from utils.errors import ReportError
from utils.logger import setup_logger
from version import APP_NAME, CURRENT_VERSION

logger = setup_logger(__name__)


@dataclass
class SiteInfo:
    id: str
    url: str
    domain: str
    title: Optional[str]
    description: Optional[str]
    status: str
    last_crawled_at: Optional[str]


@dataclass
class CrawlStats:
    total_pages: int = 0
    max_depth: int = 0
    pages_completed: int = 0
    pages_pending: int = 0
    pages_error: int = 0
    crawl_duration: Optional[float] = None  # seconds, latest job
    last_crawl_job_status: Optional[str] = None
    fetch_methods: Dict[str, int] = field(default_factory=lambda: {'http': 0, 'browser': 0})


@dataclass
class PageInfo:
    id: str
    url: str
    title: Optional[str]
    depth: int
    status: str
    fetch_method: Optional[str]
    crawled_at: Optional[str]
    entity_count: int = 0
    chunk_count: int = 0


@dataclass
class ChunkInfo:
    id: str
    page_id: str
    page_url: str
    heading_path: List[str]
    text: str
    position: int


@dataclass
class EntityInfo:
    id: str
    name: str
    type: str
    aliases: List[str]
    source: str
    confidence: float
    mention_count: int = 0
    pages_mentioned: List[str] = field(default_factory=list)
    relations_count: int = 0


@dataclass
class RelationshipInfo:
    id: str
    from_entity_id: str
    from_entity_name: str
    from_entity_type: str
    to_entity_id: str
    to_entity_name: str
    to_entity_type: str
    relation_type: str
    weight: float
    source: str


@dataclass
class ReportMetadata:
    tool_name: str
    tool_version: str
    generated_at: str
    report_id: str


@dataclass
class SiteReport:
    """Point-in-time snapshot of everything known about a site."""
    site: SiteInfo
    crawl_stats: CrawlStats
    pages: List[PageInfo]
    chunks: List[ChunkInfo]
    entities: List[EntityInfo]
    relationships: List[RelationshipInfo]
    summaries: Dict[str, Dict[str, Any]]
    metadata: ReportMetadata

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _duration_seconds(job: CrawlJob) -> Optional[float]:
    if not job.started_at or not job.completed_at:
        return None
    try:
        started = datetime.fromisoformat(job.started_at)
        completed = datetime.fromisoformat(job.completed_at)
    except ValueError:
        return None
    return (completed - started).total_seconds()


class ReportAssembler:
    """Reads a site's pages, chunks and graph from storage into a SiteReport."""

    def __init__(self, storage: SQLiteStorage):
        self.storage = storage

    def build_report(self, site_id: str) -> SiteReport:
        """
        Build the report snapshot of a site.

        Args:
            site_id: Site to report on

        Returns:
            SiteReport

        Raises:
            ReportError: If the site does not exist
        """
        logger.info(f"Building site report for {site_id}")

        site = self.storage.get_site(site_id)
        if site is None:
            raise ReportError(f"Site not found: {site_id}")

        pages = self._pages(site_id)
        chunks = self._chunks(site_id, pages)
        entities = self._entities(site_id)
        relationships = self._relationships(site_id, entities)
        crawl_jobs = self.storage.list_crawl_jobs(site_id)

        report = SiteReport(
            site=SiteInfo(
                id=site.id,
                url=site.url,
                domain=site.domain,
                title=site.title,
                description=site.description,
                status=site.status.value,
                last_crawled_at=site.last_crawled_at,
            ),
            crawl_stats=self._crawl_stats(pages, crawl_jobs),
            pages=pages,
            chunks=chunks,
            entities=entities,
            relationships=relationships,
            summaries=self._summaries(pages, chunks, entities),
            metadata=ReportMetadata(
                tool_name=APP_NAME,
                tool_version=CURRENT_VERSION,
                generated_at=utc_now(),
                report_id=f"{site_id}-{new_id()[:12]}",
            ),
        )

        logger.info(
            f"Site report built for {site_id}: {len(pages)} pages, {len(chunks)} chunks, "
            f"{len(entities)} entities, {len(relationships)} relationships"
        )
        return report

    def _pages(self, site_id: str) -> List[PageInfo]:
        mention_counts = self.storage.count_mentions_by_page(site_id)
        chunk_counts = self.storage.count_chunks_by_page(site_id)
        return [
            PageInfo(
                id=page.id,
                url=page.url,
                title=page.title,
                depth=page.depth,
                status=page.status.value,
                fetch_method=page.fetch_method.value if page.fetch_method else None,
                crawled_at=page.crawled_at,
                entity_count=mention_counts.get(page.id, 0),
                chunk_count=chunk_counts.get(page.id, 0),
            )
            for page in self.storage.list_pages(site_id)
        ]

    def _chunks(self, site_id: str, pages: List[PageInfo]) -> List[ChunkInfo]:
        urls = {page.id: page.url for page in pages}
        return [
            ChunkInfo(
                id=chunk.id,
                page_id=chunk.page_id,
                page_url=urls.get(chunk.page_id, ''),
                heading_path=chunk.heading_path,
                text=chunk.text,
                position=chunk.position,
            )
            for chunk in self.storage.list_chunks(site_id)
        ]

    def _entities(self, site_id: str) -> List[EntityInfo]:
        mention_counts = self.storage.count_mentions_by_entity(site_id)
        relation_counts = self.storage.count_relations_by_entity(site_id)
        pages_by_entity = self.storage.pages_mentioning_entities(site_id)
        return [
            EntityInfo(
                id=entity.id,
                name=entity.name,
                type=entity.type.value,
                aliases=entity.aliases,
                source=entity.source.value,
                confidence=entity.confidence,
                mention_count=mention_counts.get(entity.id, 0),
                pages_mentioned=pages_by_entity.get(entity.id, []),
                relations_count=relation_counts.get(entity.id, 0),
            )
            for entity in self.storage.list_entities(site_id)
        ]

    def _relationships(self, site_id: str, entities: List[EntityInfo]) -> List[RelationshipInfo]:
        by_id = {entity.id: entity for entity in entities}
        relationships = []
        for relation in self.storage.list_relations(site_id):
            from_entity = by_id.get(relation.from_entity_id)
            to_entity = by_id.get(relation.to_entity_id)
            if from_entity is None or to_entity is None:
                logger.debug(f"Skipping relation {relation.id} with an unknown endpoint")
                continue
            relationships.append(RelationshipInfo(
                id=relation.id,
                from_entity_id=from_entity.id,
                from_entity_name=from_entity.name,
                from_entity_type=from_entity.type,
                to_entity_id=to_entity.id,
                to_entity_name=to_entity.name,
                to_entity_type=to_entity.type,
                relation_type=relation.relation_type,
                weight=relation.weight,
                source=relation.source.value,
            ))
        return relationships

    @staticmethod
    def _crawl_stats(pages: List[PageInfo], crawl_jobs: List[CrawlJob]) -> CrawlStats:
        statuses = Counter(page.status for page in pages)
        methods = Counter(page.fetch_method for page in pages)
        latest_job = crawl_jobs[0] if crawl_jobs else None

        return CrawlStats(
            total_pages=len(pages),
            max_depth=max((page.depth for page in pages), default=0),
            pages_completed=statuses[PageStatus.COMPLETED.value],
            pages_pending=statuses[PageStatus.PENDING.value],
            pages_error=statuses[PageStatus.ERROR.value],
            crawl_duration=_duration_seconds(latest_job) if latest_job else None,
            last_crawl_job_status=latest_job.status.value if latest_job else None,
            fetch_methods={
                'http': methods[FetchMethod.HTTP.value],
                'browser': methods[FetchMethod.BROWSER.value],
            },
        )

    @staticmethod
    def _summaries(
        pages: List[PageInfo],
        chunks: List[ChunkInfo],
        entities: List[EntityInfo],
    ) -> Dict[str, Dict[str, Any]]:
        total_text_length = sum(len(chunk.text) for chunk in chunks)
        avg_chunk_length = round(total_text_length / len(chunks)) if chunks else 0

        depth_counts = Counter(page.depth for page in pages)
        avg_depth = sum(page.depth for page in pages) / len(pages) if pages else 0.0

        pages_with_entities = sum(1 for page in pages if page.entity_count > 0)
        most_connected = None
        for entity in entities:
            if entity.relations_count > (most_connected.relations_count if most_connected else 0):
                most_connected = entity

        return {
            'content': {
                'total_chunks': len(chunks),
                'avg_chunk_length': avg_chunk_length,
                'total_text_length': total_text_length,
            },
            'structure': {
                'avg_depth': round(avg_depth, 2),
                'max_depth_reached': max((page.depth for page in pages), default=0),
                'pages_per_depth_level': dict(sorted(depth_counts.items())),
            },
            'coverage': {
                'pages_with_entities': pages_with_entities,
                'pages_without_entities': len(pages) - pages_with_entities,
                'orphan_entities': sum(1 for entity in entities if entity.relations_count == 0),
                'most_connected_entity': most_connected.name if most_connected else None,
            },
        }
