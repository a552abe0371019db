"""
Error taxonomy for the crawl-and-extract pipeline.

Each stage raises its own type so callers can decide what is recoverable:
fetch and extraction failures are recorded per URL, persistence failures on
graph records are skipped, and orchestration failures end the crawl job.
"""
from typing import Optional


class SiteGraphError(Exception):
    """Base class for all pipeline errors."""


class FetchError(SiteGraphError):
    """A page could not be retrieved (timeout, bad status, wrong content type)."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.message = message
        self.status_code = status_code


class SitemapError(SiteGraphError):
    """A sitemap could not be fetched or parsed."""


class ExtractionError(SiteGraphError):
    """Content could not be extracted from a page."""


class PersistenceError(SiteGraphError):
    """A storage operation failed."""


class OrchestrationError(SiteGraphError):
    """A crawl job failed outside the per-page error handling."""

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id
        self.message = message


class GraphBuildInProgressError(SiteGraphError):
    """A graph build for the same site is already running."""

    def __init__(self, site_id: str):
        super().__init__(f"Graph build already in progress for site {site_id}")
        self.site_id = site_id


class ReportError(SiteGraphError):
    """A site report could not be assembled."""
