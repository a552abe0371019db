"""Tests for knowledge graph construction."""

import json

import pytest
from unittest.mock import patch

from processor.graph_builder import BuildRegistry, GraphBuilder
from scraper.content_extractor import extract_content
from storage.models import EntitySource, EntityType, Page, PageStatus, SiteStatus
from utils.errors import GraphBuildInProgressError, PersistenceError

SERVICE_HTML = """<html><head><title>Cloud Migration</title>
<script type="application/ld+json">%s</script></head>
<body><h1>Cloud Migration</h1>
<p>We move your workloads to the cloud in weeks, not months, with zero downtime planning.</p>
</body></html>""" % json.dumps({
    "@context": "https://schema.org",
    "@type": "Service",
    "name": "Cloud Migration",
    "provider": {"@type": "Organization", "name": "Acme Corp"},
})


def store_page(storage, site, url, html, status=PageStatus.COMPLETED, depth=0):
    content = extract_content(html, url)
    return storage.upsert_page(Page(
        site_id=site.id,
        url=url,
        title=content.title,
        html_content=html,
        text_content=content.text_content,
        depth=depth,
        status=status,
        metadata=content.metadata,
    ))


def relation_index(storage, site):
    return {(r.from_entity_id, r.to_entity_id, r.relation_type): r for r in storage.list_relations(site.id)}


class TestGraphBuilder:
    """Test suite for GraphBuilder."""

    def test_entities_from_all_extractors(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)

        stats = GraphBuilder(storage).build_graph(site.id)

        entities = {e.name: e for e in storage.list_entities(site.id)}
        assert set(entities) == {
            "Acme Corp", "Welcome to Acme", "Our Services", "Product Catalog",
            "Consulting Services", "About Us", "Email", "Home", "Solutions",
        }
        assert entities["Acme Corp"].type == EntityType.ORGANIZATION
        assert entities["Acme Corp"].source == EntitySource.SCHEMA
        assert entities["Acme Corp"].aliases == ["Acme"]
        assert entities["Product Catalog"].type == EntityType.PRODUCT
        assert entities["Home"].confidence == 0.7
        assert stats.entities == 9
        assert stats.pages_processed == 1
        assert stats.pages_failed == 0
        assert storage.get_site(site.id).status == SiteStatus.COMPLETED

    def test_mentions_and_chunks(self, storage, site, sample_html):
        page = store_page(storage, site, "https://example.com/", sample_html)

        GraphBuilder(storage).build_graph(site.id)

        assert storage.count_mentions_by_page(site.id) == {page.id: 9}
        chunks = storage.list_chunks(site.id)
        assert len(chunks) == 4
        assert chunks[0].heading_path == ["Welcome to Acme"]

    def test_co_occurrence_is_symmetric(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)

        stats = GraphBuilder(storage).build_graph(site.id)

        relations = relation_index(storage, site)
        assert stats.relations == 9 * 8
        for from_id, to_id, relation_type in relations:
            assert relation_type == "mentioned_with"
            assert (to_id, from_id, relation_type) in relations
        assert all(r.weight == 0.5 for r in relations.values())

    def test_schema_relation_across_pages(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)
        store_page(storage, site, "https://example.com/migration", SERVICE_HTML, depth=1)

        GraphBuilder(storage).build_graph(site.id)

        by_key = {(e.name, e.type): e for e in storage.list_entities(site.id)}
        service = by_key[("Cloud Migration", EntityType.SERVICE)]
        acme = by_key[("Acme Corp", EntityType.ORGANIZATION)]
        assert ("Cloud Migration", EntityType.TOPIC) in by_key
        relations = relation_index(storage, site)

        offered_by = relations[(service.id, acme.id, "offered_by")]
        assert offered_by.source == EntitySource.SCHEMA
        assert offered_by.weight == 1.0
        assert relations[(service.id, acme.id, "mentioned_with")].weight == 0.5
        assert relations[(acme.id, service.id, "mentioned_with")].weight == 0.5

    def test_schema_entity_mention_uses_description_or_page_text(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)
        migration = store_page(storage, site, "https://example.com/migration", SERVICE_HTML, depth=1)

        with patch.object(storage, "create_mention", wraps=storage.create_mention) as create_mention:
            GraphBuilder(storage).build_graph(site.id)

        snippets = {
            call.args[0].page_id: call.args[0].context_snippet
            for call in create_mention.call_args_list
            if call.args[0].entity_id == storage.list_entities(site.id)[0].id
        }
        assert "Cloud consulting firm" in snippets.values()
        assert snippets[migration.id] == (migration.text_content or "")[:200]

    def test_rebuild_is_idempotent(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)
        store_page(storage, site, "https://example.com/migration", SERVICE_HTML, depth=1)
        builder = GraphBuilder(storage)

        builder.build_graph(site.id)
        first_entities = {(e.id, e.name) for e in storage.list_entities(site.id)}
        first_relations = {key: r.weight for key, r in relation_index(storage, site).items()}
        first_chunks = len(storage.list_chunks(site.id))

        builder.build_graph(site.id)

        assert {(e.id, e.name) for e in storage.list_entities(site.id)} == first_entities
        assert {key: r.weight for key, r in relation_index(storage, site).items()} == first_relations
        assert len(storage.list_chunks(site.id)) == first_chunks

    def test_only_completed_pages_are_used(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html, status=PageStatus.ERROR)

        stats = GraphBuilder(storage).build_graph(site.id)

        assert stats.pages_processed == 0
        assert storage.list_entities(site.id) == []

    def test_failing_page_is_counted(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)
        store_page(storage, site, "https://example.com/migration", SERVICE_HTML, depth=1)
        builder = GraphBuilder(storage)
        original = builder.process_page

        def flaky(page, resolver, relations):
            if page.url.endswith("/migration"):
                raise ValueError("boom")
            return original(page, resolver, relations)

        with patch.object(builder, "process_page", side_effect=flaky):
            stats = builder.build_graph(site.id)

        assert stats.pages_processed == 1
        assert stats.pages_failed == 1
        assert storage.get_site(site.id).status == SiteStatus.COMPLETED

    def test_relation_save_failure_does_not_fail_build(self, storage, site, sample_html):
        store_page(storage, site, "https://example.com/", sample_html)

        with patch.object(storage, "upsert_relation", side_effect=PersistenceError("locked")):
            stats = GraphBuilder(storage).build_graph(site.id)

        assert stats.entities == 9
        assert storage.list_relations(site.id) == []

    def test_fatal_error_marks_site(self, storage, site):
        with patch.object(storage, "list_pages", side_effect=PersistenceError("gone")):
            with pytest.raises(PersistenceError):
                GraphBuilder(storage).build_graph(site.id)

        assert storage.get_site(site.id).status == SiteStatus.ERROR


class TestBuildRegistry:
    """Test suite for the per-site build guard."""

    def test_concurrent_build_is_rejected(self, storage, site):
        registry = BuildRegistry()
        registry.acquire(site.id)

        with pytest.raises(GraphBuildInProgressError):
            GraphBuilder(storage, registry=registry).build_graph(site.id)

        registry.release(site.id)
        GraphBuilder(storage, registry=registry).build_graph(site.id)
        assert not registry.is_building(site.id)

    def test_guard_released_after_failure(self, storage, site):
        registry = BuildRegistry()

        with patch.object(storage, "list_pages", side_effect=PersistenceError("gone")):
            with pytest.raises(PersistenceError):
                GraphBuilder(storage, registry=registry).build_graph(site.id)

        assert not registry.is_building(site.id)

    def test_building_context(self):
        registry = BuildRegistry()
        with registry.building("s1"):
            assert registry.is_building("s1")
            with pytest.raises(GraphBuildInProgressError):
                registry.acquire("s1")
        assert not registry.is_building("s1")
