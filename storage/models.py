"""
Records persisted by the crawl and graph-build passes.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SiteStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class CrawlJobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PageStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class FetchMethod(str, Enum):
    HTTP = "HTTP"
    BROWSER = "BROWSER"


class EntityType(str, Enum):
    ORGANIZATION = "ORGANIZATION"
    SERVICE = "SERVICE"
    PRODUCT = "PRODUCT"
    PERSON = "PERSON"
    LOCATION = "LOCATION"
    TOPIC = "TOPIC"


class EntitySource(str, Enum):
    """Provenance of an extracted fact; SCHEMA outranks STRUCTURE."""
    SCHEMA = "SCHEMA"
    STRUCTURE = "STRUCTURE"


@dataclass
class Site:
    url: str
    domain: str
    id: str = field(default_factory=new_id)
    title: Optional[str] = None
    description: Optional[str] = None
    status: SiteStatus = SiteStatus.PENDING
    last_crawled_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CrawlJob:
    site_id: str
    max_depth: int
    max_pages: int
    id: str = field(default_factory=new_id)
    status: CrawlJobStatus = CrawlJobStatus.PENDING
    pages_processed: int = 0
    error_message: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Page:
    """
    One fetched URL.

    Attributes:
        url: Normalized URL, unique per site
        content_hash: SHA-256 of the extracted text
        html_content: HTML returned by the plain HTTP fetch
        rendered_html: HTML captured by the browser, when the fallback ran
        metadata: Headings, JSON-LD blocks, author and language
    """
    site_id: str
    url: str
    id: str = field(default_factory=new_id)
    title: Optional[str] = None
    meta_description: Optional[str] = None
    canonical_url: Optional[str] = None
    content_hash: Optional[str] = None
    html_content: Optional[str] = None
    rendered_html: Optional[str] = None
    text_content: Optional[str] = None
    fetch_method: Optional[FetchMethod] = None
    depth: int = 0
    status: PageStatus = PageStatus.COMPLETED
    metadata: Dict[str, Any] = field(default_factory=dict)
    crawled_at: str = field(default_factory=utc_now)

    @property
    def html(self) -> Optional[str]:
        """Rendered HTML when available, else the raw HTTP body."""
        return self.rendered_html or self.html_content

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContentChunk:
    page_id: str
    text: str
    heading_path: List[str] = field(default_factory=list)
    position: int = 0
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Entity:
    site_id: str
    name: str
    type: EntityType
    id: str = field(default_factory=new_id)
    aliases: List[str] = field(default_factory=list)
    source: EntitySource = EntitySource.STRUCTURE
    confidence: float = 0.5

    def __post_init__(self):
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EntityMention:
    entity_id: str
    page_id: str
    context_snippet: str = ""
    chunk_id: Optional[str] = None
    position: int = 0
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EntityRelation:
    """Directed, typed, weighted edge keyed by (from, to, relation_type)."""
    from_entity_id: str
    to_entity_id: str
    relation_type: str
    weight: float = 1.0
    source: EntitySource = EntitySource.STRUCTURE
    id: str = field(default_factory=new_id)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_entity_id, self.to_entity_id, self.relation_type)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
