"""
Crawl orchestrator: drives a single site crawl from seed URLs to persisted pages.
"""
import asyncio
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from typing import Deque, List, Optional, Set, Tuple

from scraper.content_extractor import extract_content
from scraper.fetcher import PageFetcher
from scraper.url_discovery import extract_links_from_html, parse_sitemap
from storage.database import SQLiteStorage
from storage.models import CrawlJobStatus, Page, PageStatus, SiteStatus, utc_now
from utils.config import AppConfig, CrawlerConfig
from utils.errors import OrchestrationError, PersistenceError
from utils.hashing import content_hash
from utils.logger import setup_logger
from utils.url_utils import extract_domain, normalize_url, resolve_url

logger = setup_logger(__name__)


@dataclass
class CrawlJobRequest:
    """Work item accepted by run_crawl_job."""
    job_id: str
    site_id: str
    base_url: str
    max_depth: int
    max_pages: int


@dataclass
class CrawlResult:
    job_id: str
    status: CrawlJobStatus
    pages_processed: int = 0
    error_message: Optional[str] = None
    errors: List[Tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['status'] = self.status.value
        return data


class SiteCrawler:
    """
    Breadth-first crawler for one site.

    The frontier is a FIFO of (url, depth) pairs seeded from the sitemap and
    the start URL. Exactly one fetch is in flight at a time and consecutive
    fetches are separated by the configured delay.
    """

    def __init__(
        self,
        request: CrawlJobRequest,
        storage: SQLiteStorage,
        fetcher: PageFetcher,
        config: Optional[CrawlerConfig] = None,
        user_agent: Optional[str] = None,
    ):
        """
        Initialize the crawler.

        Args:
            request: Job, site and limits for this crawl
            storage: Storage collaborator for pages, jobs and sites
            fetcher: Page fetcher (HTTP first, browser fallback)
            config: Crawler configuration settings
            user_agent: User-Agent sent with sitemap requests
        """
        self.request = request
        self.storage = storage
        self.fetcher = fetcher
        self.config = config or CrawlerConfig()
        self.user_agent = user_agent
        self.base_domain = extract_domain(request.base_url)

        self.frontier: Deque[Tuple[str, int]] = deque()
        self.queued: Set[str] = set()
        self.visited: Set[str] = set()
        self.pages_processed = 0
        self.errors: List[Tuple[str, str]] = []
        self._fetched_once = False

    def _enqueue(self, url: str, depth: int, front: bool = False) -> None:
        if front:
            self.frontier.appendleft((url, depth))
        else:
            self.frontier.append((url, depth))
        self.queued.add(url)

    async def crawl(self) -> CrawlResult:
        """
        Run the crawl to completion.

        Returns:
            CrawlResult with terminal status COMPLETED

        Raises:
            OrchestrationError: If anything fails outside the per-page handler
        """
        job_id = self.request.job_id
        site_id = self.request.site_id
        logger.info(f"Starting crawl job {job_id} for {self.request.base_url}")

        try:
            self.storage.update_crawl_job(job_id, status=CrawlJobStatus.RUNNING, started_at=utc_now())
            self.storage.update_site(site_id, status=SiteStatus.ACTIVE)

            await self._seed_from_sitemap()

            start_url = normalize_url(self.request.base_url)
            if start_url not in self.queued:
                self._enqueue(start_url, 0, front=True)

            await self._process_frontier()

            error_message = self.build_error_summary() if self.pages_processed == 0 else None
            self.storage.update_crawl_job(
                job_id,
                status=CrawlJobStatus.COMPLETED,
                completed_at=utc_now(),
                pages_processed=self.pages_processed,
                error_message=error_message,
            )
            self.storage.update_site(site_id, status=SiteStatus.COMPLETED, last_crawled_at=utc_now())

            logger.info(
                f"Crawl job {job_id} completed: {self.pages_processed} pages, {len(self.errors)} errors"
            )
            return CrawlResult(
                job_id=job_id,
                status=CrawlJobStatus.COMPLETED,
                pages_processed=self.pages_processed,
                error_message=error_message,
                errors=list(self.errors),
            )

        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Crawl job {job_id} failed: {message}")
            self._mark_failed(message)
            raise OrchestrationError(job_id, message) from e

    def _mark_failed(self, message: str) -> None:
        # Storage may be the thing that failed; never mask the original error
        try:
            self.storage.update_crawl_job(
                self.request.job_id,
                status=CrawlJobStatus.FAILED,
                completed_at=utc_now(),
                pages_processed=self.pages_processed,
                error_message=message,
            )
            self.storage.update_site(self.request.site_id, status=SiteStatus.ERROR)
        except PersistenceError as e:
            logger.error(f"Could not record failure of job {self.request.job_id}: {e}")

    async def _seed_from_sitemap(self) -> None:
        sitemap_url = resolve_url(self.request.base_url, self.config.sitemap_path)
        logger.info(f"Discovering URLs from sitemap: {sitemap_url}")

        urls = await parse_sitemap(
            sitemap_url,
            self.base_domain,
            timeout=self.config.sitemap_timeout,
            user_agent=self.user_agent,
        )
        logger.info(f"Found {len(urls)} URLs in sitemap")

        # Sitemap URLs are treated as root level
        for url in urls:
            if len(self.frontier) >= self.request.max_pages:
                break
            if url not in self.queued:
                self._enqueue(url, 0)

    async def _process_frontier(self) -> None:
        max_pages = self.request.max_pages
        max_depth = self.request.max_depth

        while self.frontier and self.pages_processed < max_pages:
            url, depth = self.frontier.popleft()
            self.queued.discard(url)

            if url in self.visited:
                logger.debug(f"Skipping already processed URL: {url}")
                continue
            if depth > max_depth:
                logger.debug(f"Skipping {url}: depth {depth} exceeds limit {max_depth}")
                continue

            logger.info(
                f"Processing {url} (depth {depth}, {len(self.frontier)} queued, "
                f"{self.pages_processed}/{max_pages})"
            )

            await self._wait_between_fetches()
            try:
                links = await self.process_page(url, depth)
            except PersistenceError:
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                self.errors.append((url, error))
                logger.error(f"Failed to process page {url}: {error}")
            else:
                self.pages_processed += 1
                self.storage.update_crawl_job(self.request.job_id, pages_processed=self.pages_processed)
                self._enqueue_links(links, depth + 1)
            finally:
                self.visited.add(url)

    async def _wait_between_fetches(self) -> None:
        if self._fetched_once and self.config.request_delay > 0:
            await asyncio.sleep(self.config.request_delay)
        self._fetched_once = True

    def _enqueue_links(self, links: List[str], depth: int) -> None:
        added = 0
        for link in links:
            if len(self.frontier) + self.pages_processed >= self.request.max_pages:
                break
            if link in self.visited or link in self.queued:
                continue
            self._enqueue(link, depth)
            added += 1
        if added:
            logger.debug(f"Queued {added} new links at depth {depth}")

    async def process_page(self, url: str, depth: int) -> List[str]:
        """
        Fetch, extract and persist one page.

        Args:
            url: Normalized URL
            depth: Link distance from the seeds

        Returns:
            In-domain links to follow; empty when the content is unchanged or
            the page sits at the depth limit
        """
        existing = self.storage.get_page_by_url(self.request.site_id, url)

        result = await self.fetcher.fetch(url)
        html = result.content_html
        extracted = extract_content(html, url)
        text_hash = content_hash(extracted.text_content)

        canonical_url = None
        if extracted.canonical_url:
            canonical_url = normalize_url(resolve_url(url, extracted.canonical_url))

        page = Page(
            site_id=self.request.site_id,
            url=url,
            title=extracted.title,
            meta_description=extracted.meta_description,
            canonical_url=canonical_url,
            content_hash=text_hash,
            html_content=result.html,
            rendered_html=result.rendered_html,
            text_content=extracted.text_content,
            fetch_method=result.method,
            depth=depth,
            status=PageStatus.COMPLETED,
            metadata=extracted.metadata,
        )
        self.storage.upsert_page(page)

        if existing is not None and existing.content_hash == text_hash:
            logger.debug(f"Page content unchanged, skipping link discovery: {url}")
            return []

        if depth >= self.request.max_depth:
            return []

        return extract_links_from_html(html, url, self.base_domain)

    def build_error_summary(self) -> str:
        """Human-readable explanation for a crawl that produced no pages."""
        if not self.errors:
            return "No pages were successfully crawled."

        histogram = Counter(error for _, error in self.errors)
        samples = [f"{url}: {error}" for url, error in self.errors[:self.config.max_error_samples]]

        lines = [
            f"Failed to crawl {len(self.errors)} URL(s).",
            "",
            "Common errors:",
            *(f"  • {error} ({count}x)" for error, count in histogram.items()),
            "",
            "Sample failures:",
            *(f"  • {sample}" for sample in samples),
        ]
        return "\n".join(lines)


async def run_crawl_job(
    request: CrawlJobRequest,
    storage: SQLiteStorage,
    fetcher: Optional[PageFetcher] = None,
    config: Optional[AppConfig] = None,
) -> CrawlResult:
    """
    Job-intake entry point: crawl a site for an existing job record.

    Args:
        request: Job request (job id, site id, base URL, limits)
        storage: Storage collaborator
        fetcher: Optional shared fetcher; one is created and closed when omitted
        config: Application configuration

    Returns:
        CrawlResult of the finished job

    Raises:
        OrchestrationError: If the job failed
    """
    config = config or AppConfig.default()
    owns_fetcher = fetcher is None
    if owns_fetcher:
        fetcher = PageFetcher(config.fetch, cache_config=config.cache)

    try:
        crawler = SiteCrawler(
            request, storage, fetcher, config.crawler, user_agent=config.fetch.user_agent
        )
        return await crawler.crawl()
    finally:
        if owns_fetcher:
            await fetcher.close()
