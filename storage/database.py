"""
SQLite-backed storage for sites, crawl jobs, pages and the entity graph.

Features:
- Upsert-by-URL for pages and upsert-by-triple for relations
- Per-operation connections with a busy timeout, safe for a single writer
- Every sqlite3 failure surfaces as PersistenceError
"""
import json
import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from storage.models import (
    ContentChunk,
    CrawlJob,
    CrawlJobStatus,
    Entity,
    EntityMention,
    EntityRelation,
    EntitySource,
    EntityType,
    FetchMethod,
    Page,
    PageStatus,
    Site,
    SiteStatus,
)
from utils.errors import PersistenceError
from utils.logger import setup_logger
from utils.url_utils import extract_domain, normalize_url

logger = setup_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sites (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    domain TEXT NOT NULL,
    title TEXT,
    description TEXT,
    status TEXT NOT NULL,
    last_crawled_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS crawl_jobs (
    id TEXT PRIMARY KEY,
    site_id TEXT NOT NULL REFERENCES sites(id),
    max_depth INTEGER NOT NULL,
    max_pages INTEGER NOT NULL,
    status TEXT NOT NULL,
    pages_processed INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS pages (
    id TEXT PRIMARY KEY,
    site_id TEXT NOT NULL REFERENCES sites(id),
    url TEXT NOT NULL,
    title TEXT,
    meta_description TEXT,
    canonical_url TEXT,
    content_hash TEXT,
    html_content TEXT,
    rendered_html TEXT,
    text_content TEXT,
    fetch_method TEXT,
    depth INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    crawled_at TEXT NOT NULL,
    UNIQUE (site_id, url)
);

CREATE TABLE IF NOT EXISTS content_chunks (
    id TEXT PRIMARY KEY,
    page_id TEXT NOT NULL REFERENCES pages(id),
    heading_path TEXT NOT NULL DEFAULT '[]',
    text TEXT NOT NULL,
    position INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    site_id TEXT NOT NULL REFERENCES sites(id),
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    aliases TEXT NOT NULL DEFAULT '[]',
    source TEXT NOT NULL,
    confidence REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS entity_mentions (
    id TEXT PRIMARY KEY,
    entity_id TEXT NOT NULL REFERENCES entities(id),
    page_id TEXT NOT NULL REFERENCES pages(id),
    chunk_id TEXT,
    context_snippet TEXT NOT NULL DEFAULT '',
    position INTEGER NOT NULL DEFAULT 0,
    UNIQUE (entity_id, page_id)
);

CREATE TABLE IF NOT EXISTS entity_relations (
    id TEXT PRIMARY KEY,
    from_entity_id TEXT NOT NULL REFERENCES entities(id),
    to_entity_id TEXT NOT NULL REFERENCES entities(id),
    relation_type TEXT NOT NULL,
    weight REAL NOT NULL,
    source TEXT NOT NULL,
    UNIQUE (from_entity_id, to_entity_id, relation_type)
);

CREATE INDEX IF NOT EXISTS idx_pages_site ON pages(site_id);
CREATE INDEX IF NOT EXISTS idx_chunks_page ON content_chunks(page_id);
CREATE INDEX IF NOT EXISTS idx_entities_site ON entities(site_id);
CREATE INDEX IF NOT EXISTS idx_mentions_page ON entity_mentions(page_id);
CREATE INDEX IF NOT EXISTS idx_jobs_site ON crawl_jobs(site_id);
"""

_SITE_COLUMNS = {"title", "description", "status", "last_crawled_at"}
_JOB_COLUMNS = {"status", "pages_processed", "error_message", "started_at", "completed_at"}


def _value(value: Any) -> Any:
    """Unwrap enums for sqlite parameters."""
    return value.value if hasattr(value, "value") else value


class SQLiteStorage:
    """
    Storage collaborator used by the crawler, graph builder and report assembler.

    A file-backed database is expected: each operation opens its own connection,
    so an in-memory database would not survive between calls.
    """

    def __init__(self, db_path: str = "sitegraph.db", busy_timeout: float = 30.0):
        """
        Initialize storage.

        Args:
            db_path: Path of the SQLite database file
            busy_timeout: Seconds to wait for a locked database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._init_database()
        logger.info(f"Storage initialized at {self.db_path}")

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections; commits on success."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def create_site(self, site: Site) -> Site:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO sites (id, url, domain, title, description, status, last_crawled_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (site.id, site.url, site.domain, site.title, site.description,
                 _value(site.status), site.last_crawled_at, site.created_at),
            )
        return site

    def get_site(self, site_id: str) -> Optional[Site]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return self._row_to_site(row) if row else None

    def get_site_by_url(self, url: str) -> Optional[Site]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sites WHERE url = ?", (normalize_url(url),)).fetchone()
        return self._row_to_site(row) if row else None

    def get_or_create_site(self, url: str) -> Site:
        """Return the site for a root URL, creating it on first analysis request."""
        normalized = normalize_url(url)
        existing = self.get_site_by_url(normalized)
        if existing:
            return existing
        site = Site(url=normalized, domain=extract_domain(normalized))
        logger.info(f"Creating site {site.id} for {normalized}")
        return self.create_site(site)

    def update_site(self, site_id: str, **fields: Any) -> None:
        self._update("sites", _SITE_COLUMNS, site_id, fields)

    # ------------------------------------------------------------------
    # Crawl jobs
    # ------------------------------------------------------------------

    def create_crawl_job(self, job: CrawlJob) -> CrawlJob:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO crawl_jobs (id, site_id, max_depth, max_pages, status, pages_processed, "
                "error_message, created_at, started_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (job.id, job.site_id, job.max_depth, job.max_pages, _value(job.status),
                 job.pages_processed, job.error_message, job.created_at, job.started_at, job.completed_at),
            )
        return job

    def get_crawl_job(self, job_id: str) -> Optional[CrawlJob]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM crawl_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_crawl_jobs(self, site_id: str) -> List[CrawlJob]:
        """Crawl jobs for a site, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM crawl_jobs WHERE site_id = ? ORDER BY created_at DESC, rowid DESC",
                (site_id,),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def update_crawl_job(self, job_id: str, **fields: Any) -> None:
        self._update("crawl_jobs", _JOB_COLUMNS, job_id, fields)

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def get_page_by_url(self, site_id: str, url: str) -> Optional[Page]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM pages WHERE site_id = ? AND url = ?", (site_id, url)
            ).fetchone()
        return self._row_to_page(row) if row else None

    def upsert_page(self, page: Page) -> Page:
        """Insert or update a page keyed by (site_id, url); the stored id is kept on update."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO pages (id, site_id, url, title, meta_description, canonical_url, content_hash,
                                   html_content, rendered_html, text_content, fetch_method, depth, status,
                                   metadata, crawled_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(site_id, url) DO UPDATE SET
                    title = excluded.title,
                    meta_description = excluded.meta_description,
                    canonical_url = excluded.canonical_url,
                    content_hash = excluded.content_hash,
                    html_content = excluded.html_content,
                    rendered_html = excluded.rendered_html,
                    text_content = excluded.text_content,
                    fetch_method = excluded.fetch_method,
                    depth = excluded.depth,
                    status = excluded.status,
                    metadata = excluded.metadata,
                    crawled_at = excluded.crawled_at
                """,
                (page.id, page.site_id, page.url, page.title, page.meta_description, page.canonical_url,
                 page.content_hash, page.html_content, page.rendered_html, page.text_content,
                 _value(page.fetch_method), page.depth, _value(page.status),
                 json.dumps(page.metadata, ensure_ascii=False), page.crawled_at),
            )
            row = conn.execute(
                "SELECT id FROM pages WHERE site_id = ? AND url = ?", (page.site_id, page.url)
            ).fetchone()
        page.id = row["id"]
        return page

    def list_pages(self, site_id: str, status: Optional[PageStatus] = None) -> List[Page]:
        query = "SELECT * FROM pages WHERE site_id = ?"
        params: list = [site_id]
        if status is not None:
            query += " AND status = ?"
            params.append(_value(status))
        query += " ORDER BY depth ASC, crawled_at ASC, rowid ASC"
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_page(row) for row in rows]

    # ------------------------------------------------------------------
    # Content chunks
    # ------------------------------------------------------------------

    def replace_chunks(self, page_id: str, chunks: List[ContentChunk]) -> List[ContentChunk]:
        """Swap a page's chunks for a freshly extracted set in one transaction."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM content_chunks WHERE page_id = ?", (page_id,))
            conn.executemany(
                "INSERT INTO content_chunks (id, page_id, heading_path, text, position) VALUES (?, ?, ?, ?, ?)",
                [(c.id, page_id, json.dumps(c.heading_path, ensure_ascii=False), c.text, c.position)
                 for c in chunks],
            )
        return chunks

    def list_chunks(self, site_id: str) -> List[ContentChunk]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT c.* FROM content_chunks c JOIN pages p ON p.id = c.page_id "
                "WHERE p.site_id = ? ORDER BY c.position ASC, c.rowid ASC",
                (site_id,),
            ).fetchall()
        return [
            ContentChunk(
                id=row["id"],
                page_id=row["page_id"],
                heading_path=json.loads(row["heading_path"] or "[]"),
                text=row["text"],
                position=row["position"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Entities, mentions, relations
    # ------------------------------------------------------------------

    def list_entities(self, site_id: str) -> List[Entity]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE site_id = ? ORDER BY confidence DESC, rowid ASC", (site_id,)
            ).fetchall()
        return [self._row_to_entity(row) for row in rows]

    def create_entity(self, entity: Entity) -> Entity:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO entities (id, site_id, name, type, aliases, source, confidence) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (entity.id, entity.site_id, entity.name, _value(entity.type),
                 json.dumps(entity.aliases, ensure_ascii=False), _value(entity.source), entity.confidence),
            )
        return entity

    def update_entity(self, entity: Entity) -> Entity:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE entities SET name = ?, aliases = ?, source = ?, confidence = ? WHERE id = ?",
                (entity.name, json.dumps(entity.aliases, ensure_ascii=False), _value(entity.source),
                 entity.confidence, entity.id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Entity not found: {entity.id}")
        return entity

    def create_mention(self, mention: EntityMention) -> EntityMention:
        """Insert a mention; a second mention of the same entity on a page raises PersistenceError."""
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO entity_mentions (id, entity_id, page_id, chunk_id, context_snippet, position) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (mention.id, mention.entity_id, mention.page_id, mention.chunk_id,
                 mention.context_snippet, mention.position),
            )
        return mention

    def upsert_relation(self, relation: EntityRelation) -> EntityRelation:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO entity_relations (id, from_entity_id, to_entity_id, relation_type, weight, source)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(from_entity_id, to_entity_id, relation_type) DO UPDATE SET
                    weight = excluded.weight,
                    source = excluded.source
                """,
                (relation.id, relation.from_entity_id, relation.to_entity_id, relation.relation_type,
                 relation.weight, _value(relation.source)),
            )
        return relation

    def list_relations(self, site_id: str) -> List[EntityRelation]:
        """Relations whose source entity belongs to the site, heaviest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT r.* FROM entity_relations r JOIN entities e ON e.id = r.from_entity_id "
                "WHERE e.site_id = ? ORDER BY r.weight DESC, r.rowid ASC",
                (site_id,),
            ).fetchall()
        return [
            EntityRelation(
                id=row["id"],
                from_entity_id=row["from_entity_id"],
                to_entity_id=row["to_entity_id"],
                relation_type=row["relation_type"],
                weight=row["weight"],
                source=EntitySource(row["source"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Report queries
    # ------------------------------------------------------------------

    def count_mentions_by_page(self, site_id: str) -> Dict[str, int]:
        return self._count_by(
            "SELECT m.page_id AS key, COUNT(*) AS n FROM entity_mentions m JOIN pages p ON p.id = m.page_id "
            "WHERE p.site_id = ? GROUP BY m.page_id",
            site_id,
        )

    def count_chunks_by_page(self, site_id: str) -> Dict[str, int]:
        return self._count_by(
            "SELECT c.page_id AS key, COUNT(*) AS n FROM content_chunks c JOIN pages p ON p.id = c.page_id "
            "WHERE p.site_id = ? GROUP BY c.page_id",
            site_id,
        )

    def count_mentions_by_entity(self, site_id: str) -> Dict[str, int]:
        return self._count_by(
            "SELECT m.entity_id AS key, COUNT(*) AS n FROM entity_mentions m JOIN entities e ON e.id = m.entity_id "
            "WHERE e.site_id = ? GROUP BY m.entity_id",
            site_id,
        )

    def count_relations_by_entity(self, site_id: str) -> Dict[str, int]:
        """Outgoing plus incoming relation count per entity."""
        counts: Dict[str, int] = defaultdict(int)
        for relation in self.list_relations(site_id):
            counts[relation.from_entity_id] += 1
            counts[relation.to_entity_id] += 1
        return dict(counts)

    def pages_mentioning_entities(self, site_id: str) -> Dict[str, List[str]]:
        """Map entity id -> distinct URLs of the pages that mention it."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT m.entity_id, p.url FROM entity_mentions m JOIN pages p ON p.id = m.page_id "
                "WHERE p.site_id = ? ORDER BY m.rowid ASC",
                (site_id,),
            ).fetchall()
        result: Dict[str, List[str]] = defaultdict(list)
        for row in rows:
            if row["url"] not in result[row["entity_id"]]:
                result[row["entity_id"]].append(row["url"])
        return dict(result)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count_by(self, query: str, site_id: str) -> Dict[str, int]:
        with self._get_connection() as conn:
            rows = conn.execute(query, (site_id,)).fetchall()
        return {row["key"]: row["n"] for row in rows}

    def _update(self, table: str, allowed: set, row_id: str, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_value(v) for v in fields.values()] + [row_id]
        with self._get_connection() as conn:
            cursor = conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)
            if cursor.rowcount == 0:
                raise PersistenceError(f"No row {row_id} in {table}")

    @staticmethod
    def _row_to_site(row: sqlite3.Row) -> Site:
        return Site(
            id=row["id"],
            url=row["url"],
            domain=row["domain"],
            title=row["title"],
            description=row["description"],
            status=SiteStatus(row["status"]),
            last_crawled_at=row["last_crawled_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> CrawlJob:
        return CrawlJob(
            id=row["id"],
            site_id=row["site_id"],
            max_depth=row["max_depth"],
            max_pages=row["max_pages"],
            status=CrawlJobStatus(row["status"]),
            pages_processed=row["pages_processed"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_page(row: sqlite3.Row) -> Page:
        return Page(
            id=row["id"],
            site_id=row["site_id"],
            url=row["url"],
            title=row["title"],
            meta_description=row["meta_description"],
            canonical_url=row["canonical_url"],
            content_hash=row["content_hash"],
            html_content=row["html_content"],
            rendered_html=row["rendered_html"],
            text_content=row["text_content"],
            fetch_method=FetchMethod(row["fetch_method"]) if row["fetch_method"] else None,
            depth=row["depth"],
            status=PageStatus(row["status"]),
            metadata=json.loads(row["metadata"] or "{}"),
            crawled_at=row["crawled_at"],
        )

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        return Entity(
            id=row["id"],
            site_id=row["site_id"],
            name=row["name"],
            type=EntityType(row["type"]),
            aliases=json.loads(row["aliases"] or "[]"),
            source=EntitySource(row["source"]),
            confidence=row["confidence"],
        )
