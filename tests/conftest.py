"""Pytest configuration and shared fixtures."""

import pytest

from storage.database import SQLiteStorage
from storage.models import CrawlJob, Site


@pytest.fixture
def storage(tmp_path) -> SQLiteStorage:
    """Create a file-backed SQLite storage in a temporary directory.

    Returns:
        SQLiteStorage: Empty storage instance
    """
    return SQLiteStorage(str(tmp_path / "sitegraph-test.db"))


@pytest.fixture
def site(storage) -> Site:
    """Create the example.com site record."""
    return storage.get_or_create_site("https://example.com")


@pytest.fixture
def crawl_job_factory(storage, site):
    """Create crawl job records for the example site."""

    def factory(max_depth: int = 3, max_pages: int = 100) -> CrawlJob:
        return storage.create_crawl_job(CrawlJob(site_id=site.id, max_depth=max_depth, max_pages=max_pages))

    return factory


@pytest.fixture
def sample_html() -> str:
    """A small company home page with JSON-LD, navigation and content blocks."""
    return """<!DOCTYPE html>
<html lang="en">
<head>
  <title>Acme Corp | Cloud Consulting</title>
  <meta name="description" content="Acme Corp helps teams move to the cloud.">
  <meta name="author" content="Acme Marketing">
  <link rel="canonical" href="/home/">
  <script type="application/ld+json">
  {"@context": "https://schema.org", "@type": "Organization", "name": "Acme Corp",
   "alternateName": "Acme", "description": "Cloud consulting firm"}
  </script>
  <script type="application/ld+json">{ this is not json }</script>
</head>
<body>
  <header><p>Site header text that should never become a content chunk at all.</p></header>
  <nav>
    <a href="/services">Consulting Services</a>
    <a href="/about">About Us</a>
    <a href="mailto:hello@example.com">Email</a>
  </nav>
  <ol class="breadcrumb"><li><a href="/">Home</a></li><li><a href="/solutions">Solutions</a></li></ol>
  <main>
    <h1>Welcome to Acme</h1>
    <p>Acme Corp provides cloud consulting to enterprise customers across the world today.</p>
    <h2>Our Services</h2>
    <section>First, we assess your infrastructure. Then we plan the migration step by step.</section>
    <h3>Product Catalog</h3>
    <div>Our catalog lists every managed product we support, with <b>pricing</b> and availability.
      <p>Nested paragraph that belongs to its own chunk rather than the parent div block.</p>
    </div>
    <a href="https://other.org/partner">Partner</a>
    <a href="/contact#form">Contact</a>
  </main>
  <footer><p>Copyright Acme Corp. All rights reserved. Footer text is not content.</p></footer>
</body>
</html>"""
