"""Tests for the SQLite storage collaborator."""

import pytest

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
    SiteStatus,
)
from utils.errors import PersistenceError


class TestSites:
    """Test suite for site records."""

    def test_get_or_create_normalizes(self, storage):
        first = storage.get_or_create_site("HTTPS://Example.com/")
        second = storage.get_or_create_site("https://example.com")

        assert first.id == second.id
        assert first.url == "https://example.com/"
        assert first.domain == "example.com"
        assert first.status == SiteStatus.PENDING

    def test_update_site(self, storage, site):
        storage.update_site(site.id, status=SiteStatus.COMPLETED, title="Acme")

        stored = storage.get_site(site.id)
        assert stored.status == SiteStatus.COMPLETED
        assert stored.title == "Acme"

    def test_unknown_column_is_rejected(self, storage, site):
        with pytest.raises(ValueError):
            storage.update_site(site.id, url="https://elsewhere.example")

    def test_update_missing_row(self, storage):
        with pytest.raises(PersistenceError):
            storage.update_site("missing", status=SiteStatus.ERROR)


class TestCrawlJobs:
    """Test suite for crawl job records."""

    def test_job_lifecycle(self, storage, crawl_job_factory):
        job = crawl_job_factory(max_depth=2, max_pages=10)

        storage.update_crawl_job(job.id, status=CrawlJobStatus.RUNNING, pages_processed=3)

        stored = storage.get_crawl_job(job.id)
        assert stored.status == CrawlJobStatus.RUNNING
        assert stored.pages_processed == 3
        assert (stored.max_depth, stored.max_pages) == (2, 10)

    def test_list_newest_first(self, storage, site):
        older = storage.create_crawl_job(CrawlJob(site_id=site.id, max_depth=1, max_pages=1,
                                                  created_at="2026-01-01T00:00:00+00:00"))
        newer = storage.create_crawl_job(CrawlJob(site_id=site.id, max_depth=1, max_pages=1,
                                                  created_at="2026-02-01T00:00:00+00:00"))

        assert [job.id for job in storage.list_crawl_jobs(site.id)] == [newer.id, older.id]


class TestPages:
    """Test suite for page records."""

    def test_upsert_keeps_id(self, storage, site):
        first = storage.upsert_page(Page(site_id=site.id, url="https://example.com/a", title="Old",
                                         metadata={"headings": {"h1": ["Old"]}}))
        second = storage.upsert_page(Page(site_id=site.id, url="https://example.com/a", title="New",
                                          fetch_method=FetchMethod.BROWSER, depth=2))

        assert second.id == first.id
        stored = storage.get_page_by_url(site.id, "https://example.com/a")
        assert stored.title == "New"
        assert stored.fetch_method == FetchMethod.BROWSER
        assert stored.depth == 2
        assert stored.metadata == {}
        assert len(storage.list_pages(site.id)) == 1

    def test_list_pages_by_status(self, storage, site):
        storage.upsert_page(Page(site_id=site.id, url="https://example.com/ok"))
        storage.upsert_page(Page(site_id=site.id, url="https://example.com/bad", status=PageStatus.ERROR))

        completed = storage.list_pages(site.id, status=PageStatus.COMPLETED)

        assert [p.url for p in completed] == ["https://example.com/ok"]

    def test_replace_chunks(self, storage, site):
        page = storage.upsert_page(Page(site_id=site.id, url="https://example.com/"))
        storage.replace_chunks(page.id, [ContentChunk(page_id=page.id, text="one", heading_path=["A"])])
        storage.replace_chunks(page.id, [
            ContentChunk(page_id=page.id, text="two", heading_path=["B"], position=0),
            ContentChunk(page_id=page.id, text="three", position=1),
        ])

        chunks = storage.list_chunks(site.id)

        assert [(c.text, c.heading_path) for c in chunks] == [("two", ["B"]), ("three", [])]
        assert storage.count_chunks_by_page(site.id) == {page.id: 2}


class TestGraphRecords:
    """Test suite for entities, mentions and relations."""

    @pytest.fixture
    def graph(self, storage, site):
        page = storage.upsert_page(Page(site_id=site.id, url="https://example.com/"))
        a = storage.create_entity(Entity(site_id=site.id, name="Acme", type=EntityType.ORGANIZATION,
                                         aliases=["Acme Inc"], source=EntitySource.SCHEMA, confidence=1.0))
        b = storage.create_entity(Entity(site_id=site.id, name="Audits", type=EntityType.SERVICE))
        return page, a, b

    def test_entity_round_trip(self, storage, site, graph):
        _, a, b = graph

        entities = storage.list_entities(site.id)

        assert [e.id for e in entities] == [a.id, b.id]
        assert entities[0].aliases == ["Acme Inc"]
        assert entities[0].source == EntitySource.SCHEMA

    def test_confidence_is_clamped(self, site):
        assert Entity(site_id=site.id, name="X", type=EntityType.TOPIC, confidence=1.7).confidence == 1.0
        assert Entity(site_id=site.id, name="X", type=EntityType.TOPIC, confidence=-1).confidence == 0.0

    def test_update_missing_entity(self, storage, site):
        with pytest.raises(PersistenceError):
            storage.update_entity(Entity(site_id=site.id, name="Ghost", type=EntityType.TOPIC))

    def test_duplicate_mention_is_rejected(self, storage, site, graph):
        page, a, _ = graph
        storage.create_mention(EntityMention(entity_id=a.id, page_id=page.id, context_snippet="Acme"))

        with pytest.raises(PersistenceError):
            storage.create_mention(EntityMention(entity_id=a.id, page_id=page.id))

        assert storage.count_mentions_by_entity(site.id) == {a.id: 1}
        assert storage.pages_mentioning_entities(site.id) == {a.id: ["https://example.com/"]}

    def test_relation_upsert_overwrites(self, storage, site, graph):
        _, a, b = graph
        storage.upsert_relation(EntityRelation(b.id, a.id, "offered_by", 1.0, EntitySource.SCHEMA))
        storage.upsert_relation(EntityRelation(b.id, a.id, "offered_by", 2.5, EntitySource.STRUCTURE))
        storage.upsert_relation(EntityRelation(a.id, b.id, "mentioned_with", 0.5))

        relations = storage.list_relations(site.id)

        assert len(relations) == 2
        assert (relations[0].weight, relations[0].source) == (2.5, EntitySource.STRUCTURE)
        assert storage.count_relations_by_entity(site.id) == {a.id: 2, b.id: 2}
