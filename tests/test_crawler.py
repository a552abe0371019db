"""Tests for the crawl orchestrator and job intake."""

import pytest
from unittest.mock import AsyncMock, patch

from scraper.crawler import CrawlJobRequest, SiteCrawler, run_crawl_job
from scraper.fetcher import FetchResult
from storage.models import CrawlJobStatus, FetchMethod, SiteStatus
from utils.config import AppConfig, CrawlerConfig
from utils.errors import FetchError, OrchestrationError, PersistenceError

BASE = "https://example.com"
BODY_TEXT = "This page describes the consulting work we do for enterprise customers in detail."


def page_html(title: str, links=(), text: str = BODY_TEXT) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><h1>{title}</h1><p>{text}</p>{anchors}</body></html>"
    )


class FakeSite:
    """Serves canned HTML per URL; unknown URLs fail like a 404."""

    def __init__(self, pages):
        self.pages = pages
        self.fetched = []

    async def fetch(self, url):
        self.fetched.append(url)
        outcome = self.pages.get(url)
        if outcome is None:
            raise FetchError(url, "HTTP 404", status_code=404)
        if isinstance(outcome, Exception):
            raise outcome
        return FetchResult(url=url, html=outcome, method=FetchMethod.HTTP, status_code=200)


def no_sitemap():
    return patch("scraper.crawler.parse_sitemap", AsyncMock(return_value=[]))


def make_request(job, site_url=BASE) -> CrawlJobRequest:
    return CrawlJobRequest(
        job_id=job.id,
        site_id=job.site_id,
        base_url=site_url,
        max_depth=job.max_depth,
        max_pages=job.max_pages,
    )


FAST = CrawlerConfig(request_delay=0)


class TestSiteCrawler:
    """Test suite for SiteCrawler."""

    @pytest.mark.asyncio
    async def test_depth_and_page_limits(self, storage, site, crawl_job_factory):
        children = [f"/page-{i}" for i in range(1, 11)]
        pages = {f"{BASE}/": page_html("Home", children)}
        for child in children:
            pages[f"{BASE}{child}"] = page_html(child, ["/deeper"])
        fake = FakeSite(pages)
        job = crawl_job_factory(max_depth=1, max_pages=5)

        with no_sitemap():
            result = await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        assert result.status == CrawlJobStatus.COMPLETED
        assert result.pages_processed == 5
        assert fake.fetched == [f"{BASE}/"] + [f"{BASE}/page-{i}" for i in range(1, 5)]

        stored = storage.list_pages(site.id)
        assert len(stored) == 5
        assert all(page.depth <= 1 for page in stored)
        assert {page.depth for page in stored} == {0, 1}

    @pytest.mark.asyncio
    async def test_job_and_site_bookkeeping(self, storage, site, crawl_job_factory):
        fake = FakeSite({f"{BASE}/": page_html("Home")})
        job = crawl_job_factory(max_depth=2, max_pages=10)

        with no_sitemap():
            await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        stored_job = storage.get_crawl_job(job.id)
        assert stored_job.status == CrawlJobStatus.COMPLETED
        assert stored_job.pages_processed == 1
        assert stored_job.started_at and stored_job.completed_at
        assert stored_job.error_message is None

        stored_site = storage.get_site(site.id)
        assert stored_site.status == SiteStatus.COMPLETED
        assert stored_site.last_crawled_at is not None

    @pytest.mark.asyncio
    async def test_sitemap_seeds_are_capped_and_start_url_goes_first(self, storage, site, crawl_job_factory):
        seeds = [f"{BASE}/s{i}" for i in range(6)]
        pages = {url: page_html(url) for url in seeds}
        pages[f"{BASE}/"] = page_html("Home")
        fake = FakeSite(pages)
        job = crawl_job_factory(max_depth=0, max_pages=3)

        with patch("scraper.crawler.parse_sitemap", AsyncMock(return_value=seeds)):
            result = await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        assert fake.fetched == [f"{BASE}/", f"{BASE}/s0", f"{BASE}/s1"]
        assert result.pages_processed == 3

    @pytest.mark.asyncio
    async def test_start_url_already_in_sitemap_is_not_duplicated(self, storage, site, crawl_job_factory):
        fake = FakeSite({f"{BASE}/a": page_html("A"), f"{BASE}/": page_html("Home")})
        job = crawl_job_factory(max_depth=0, max_pages=10)

        with patch("scraper.crawler.parse_sitemap", AsyncMock(return_value=[f"{BASE}/a", f"{BASE}/"])):
            await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        assert fake.fetched == [f"{BASE}/a", f"{BASE}/"]

    @pytest.mark.asyncio
    async def test_fetch_failures_are_recorded_and_crawl_continues(self, storage, site, crawl_job_factory):
        pdf_url = f"{BASE}/brochure.pdf"
        fake = FakeSite({
            f"{BASE}/": page_html("Home", ["/brochure.pdf", "/about"]),
            pdf_url: FetchError(pdf_url, "Non-HTML content type: application/pdf"),
            f"{BASE}/about": page_html("About"),
        })
        job = crawl_job_factory(max_depth=1, max_pages=10)

        with no_sitemap():
            result = await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        assert result.status == CrawlJobStatus.COMPLETED
        assert result.pages_processed == 2
        assert result.errors == [(pdf_url, "Non-HTML content type: application/pdf")]
        assert result.error_message is None
        assert storage.get_page_by_url(site.id, pdf_url) is None

    @pytest.mark.asyncio
    async def test_zero_pages_produces_error_summary(self, storage, site, crawl_job_factory):
        fake = FakeSite({})
        job = crawl_job_factory(max_depth=1, max_pages=10)

        with no_sitemap():
            result = await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        assert result.status == CrawlJobStatus.COMPLETED
        assert result.pages_processed == 0
        assert result.error_message.splitlines() == [
            "Failed to crawl 1 URL(s).",
            "",
            "Common errors:",
            "  • HTTP 404 (1x)",
            "",
            "Sample failures:",
            f"  • {BASE}/: HTTP 404",
        ]
        assert storage.get_crawl_job(job.id).error_message == result.error_message

    def test_summary_without_errors(self, storage, site, crawl_job_factory):
        crawler = SiteCrawler(make_request(crawl_job_factory()), storage, FakeSite({}), FAST)
        assert crawler.build_error_summary() == "No pages were successfully crawled."

    def test_summary_samples_at_most_three_failures(self, storage, site, crawl_job_factory):
        crawler = SiteCrawler(make_request(crawl_job_factory()), storage, FakeSite({}), FAST)
        crawler.errors = [(f"{BASE}/{i}", "HTTP 500") for i in range(5)] + [(f"{BASE}/x", "timeout")]

        summary = crawler.build_error_summary()

        assert summary.startswith("Failed to crawl 6 URL(s).")
        assert "  • HTTP 500 (5x)" in summary
        assert "  • timeout (1x)" in summary
        assert summary.count(": HTTP 500") == 3

    @pytest.mark.asyncio
    async def test_unchanged_content_skips_link_discovery(self, storage, site, crawl_job_factory):
        pages = {
            f"{BASE}/": page_html("Home", ["/about"]),
            f"{BASE}/about": page_html("About"),
        }

        with no_sitemap():
            first = FakeSite(pages)
            await SiteCrawler(make_request(crawl_job_factory(2, 10)), storage, first, FAST).crawl()
            second = FakeSite(pages)
            result = await SiteCrawler(make_request(crawl_job_factory(2, 10)), storage, second, FAST).crawl()

        assert first.fetched == [f"{BASE}/", f"{BASE}/about"]
        assert second.fetched == [f"{BASE}/"]
        assert result.pages_processed == 1
        assert len(storage.list_pages(site.id)) == 2

    @pytest.mark.asyncio
    async def test_changed_content_rediscovers_links(self, storage, site, crawl_job_factory):
        with no_sitemap():
            first = FakeSite({f"{BASE}/": page_html("Home")})
            await SiteCrawler(make_request(crawl_job_factory(2, 10)), storage, first, FAST).crawl()
            second = FakeSite({
                f"{BASE}/": page_html("Home", ["/new"], text=BODY_TEXT + " Now with a new section."),
                f"{BASE}/new": page_html("New"),
            })
            await SiteCrawler(make_request(crawl_job_factory(2, 10)), storage, second, FAST).crawl()

        assert second.fetched == [f"{BASE}/", f"{BASE}/new"]

    @pytest.mark.asyncio
    async def test_canonical_url_resolved_and_normalized(self, storage, site, crawl_job_factory):
        html = (
            '<html><head><title>Home</title><link rel="canonical" href="/index/?b=1&a=2#x"></head>'
            f"<body><p>{BODY_TEXT}</p></body></html>"
        )
        job = crawl_job_factory(max_depth=0, max_pages=1)

        with no_sitemap():
            await SiteCrawler(make_request(job), storage, FakeSite({f"{BASE}/": html}), FAST).crawl()

        page = storage.get_page_by_url(site.id, f"{BASE}/")
        assert page.canonical_url == f"{BASE}/index?a=2&b=1"
        assert page.fetch_method == FetchMethod.HTTP
        assert page.content_hash

    @pytest.mark.asyncio
    async def test_storage_failure_fails_the_job(self, storage, site, crawl_job_factory):
        fake = FakeSite({f"{BASE}/": page_html("Home", ["/a"]), f"{BASE}/a": page_html("A")})
        job = crawl_job_factory(max_depth=1, max_pages=10)

        with no_sitemap(), patch.object(storage, "upsert_page", side_effect=PersistenceError("disk I/O error")):
            with pytest.raises(OrchestrationError) as exc_info:
                await SiteCrawler(make_request(job), storage, fake, FAST).crawl()

        assert exc_info.value.job_id == job.id
        assert fake.fetched == [f"{BASE}/"]
        stored_job = storage.get_crawl_job(job.id)
        assert stored_job.status == CrawlJobStatus.FAILED
        assert stored_job.error_message == "disk I/O error"
        assert storage.get_site(site.id).status == SiteStatus.ERROR

    @pytest.mark.asyncio
    async def test_delay_separates_consecutive_fetches(self, storage, site, crawl_job_factory):
        fake = FakeSite({f"{BASE}/": page_html("Home", ["/a", "/b"]), f"{BASE}/a": page_html("A")})
        job = crawl_job_factory(max_depth=1, max_pages=10)

        with no_sitemap(), patch("scraper.crawler.asyncio.sleep", AsyncMock()) as sleep:
            await SiteCrawler(make_request(job), storage, fake, CrawlerConfig(request_delay=1.5)).crawl()

        assert len(fake.fetched) == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)


class TestRunCrawlJob:
    """Test suite for the job-intake entry point."""

    @pytest.mark.asyncio
    async def test_runs_with_injected_fetcher(self, storage, site, crawl_job_factory):
        job = crawl_job_factory(max_depth=0, max_pages=5)
        config = AppConfig.default()
        config.crawler.request_delay = 0

        with no_sitemap():
            result = await run_crawl_job(make_request(job), storage, FakeSite({f"{BASE}/": page_html("Home")}), config)

        assert result.job_id == job.id
        assert result.to_dict()["status"] == "COMPLETED"
        assert result.pages_processed == 1

    @pytest.mark.asyncio
    async def test_owned_fetcher_is_closed(self, storage, site, crawl_job_factory):
        job = crawl_job_factory(max_depth=0, max_pages=5)
        fetcher = AsyncMock()
        fetcher.fetch = FakeSite({f"{BASE}/": page_html("Home")}).fetch

        with no_sitemap(), patch("scraper.crawler.PageFetcher", return_value=fetcher):
            config = AppConfig.default()
            config.crawler.request_delay = 0
            await run_crawl_job(make_request(job), storage, config=config)

        fetcher.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sitemap_request_uses_fetch_user_agent(self, storage, site, crawl_job_factory):
        job = crawl_job_factory(max_depth=0, max_pages=5)
        config = AppConfig.default()
        config.crawler.request_delay = 0
        config.fetch.user_agent = "AcmeBot/2.0"

        with patch("scraper.crawler.parse_sitemap", AsyncMock(return_value=[])) as sitemap:
            await run_crawl_job(make_request(job), storage, FakeSite({f"{BASE}/": page_html("Home")}), config)

        assert sitemap.await_args.kwargs["user_agent"] == "AcmeBot/2.0"
