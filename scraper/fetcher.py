"""
Page fetching with an HTTP-first strategy and a headless browser fallback.

A plain GET is tried first. When the response looks like a single-page
application shell or carries too little visible text, the page is rendered
in a pooled nodriver browser instead.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import asdict, dataclass
from typing import Optional

import aiohttp
import nodriver as uc
from bs4 import BeautifulSoup

from storage.models import FetchMethod
from utils.cache_manager import PageCache
from utils.config import CacheConfig, FetchConfig
from utils.errors import FetchError
from utils.logger import setup_logger

logger = setup_logger(__name__)

# Attribute/script signatures left in the HTML shell by client-side frameworks
SPA_INDICATORS = (
    'data-reactroot',
    'data-react-helmet',
    'ng-version',
    'data-vue-',
    '__NEXT_DATA__',
    'nuxt',
)


@dataclass
class FetchResult:
    url: str
    html: str
    method: FetchMethod
    status_code: int
    rendered_html: Optional[str] = None

    @property
    def content_html(self) -> str:
        """HTML to extract from: the rendered DOM when the browser ran."""
        return self.rendered_html or self.html

    def to_dict(self) -> dict:
        data = asdict(self)
        data['method'] = self.method.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'FetchResult':
        return cls(
            url=data['url'],
            html=data['html'],
            method=FetchMethod(data['method']),
            status_code=int(data['status_code']),
            rendered_html=data.get('rendered_html'),
        )


def has_spa_indicators(html: str) -> bool:
    return any(indicator in html for indicator in SPA_INDICATORS)


def visible_body_text(html: str) -> Optional[str]:
    """Text inside <body> with scripts and styles removed, or None without a body."""
    soup = BeautifulSoup(html, 'html.parser')
    body = soup.body
    if body is None:
        return None
    for tag in body(['script', 'style', 'noscript']):
        tag.decompose()
    return body.get_text().strip()


def is_content_sufficient(html: str, min_chars: int = 100) -> bool:
    text = visible_body_text(html)
    return text is not None and len(text) >= min_chars


def needs_browser(html: str, min_chars: int = 100) -> bool:
    """True when the HTTP response should be re-fetched through the browser."""
    return has_spa_indicators(html) or not is_content_sufficient(html, min_chars)


class BrowserPool:
    """
    Owns the one headless browser shared by every fetch in the process.

    The browser starts lazily on the first acquire(), is reused afterwards and
    is started again if it has stopped. close() shuts it down; using the pool
    as an async context manager guarantees that on exit.
    """

    def __init__(self, config: FetchConfig):
        self.config = config
        self.browser = None
        self._lock = asyncio.Lock()

    def _is_alive(self) -> bool:
        if self.browser is None:
            return False
        return not getattr(self.browser, 'stopped', False)

    async def acquire(self):
        """Return a connected browser, starting one if needed."""
        async with self._lock:
            if not self._is_alive():
                if self.browser is not None:
                    logger.warning("Browser found disconnected; starting a new one")
                    await self._shutdown()
                logger.info("Starting browser...")
                self.browser = await uc.start(
                    headless=self.config.browser_headless,
                    browser_args=[*self.config.browser_args, f"--user-agent={self.config.user_agent}"],
                    sandbox=False,
                )
            return self.browser

    async def release(self, tab) -> None:
        """Close a tab opened from the pooled browser."""
        if tab is None:
            return
        try:
            await tab.close()
        except Exception as e:
            logger.debug(f"Failed to close tab: {e}")

    async def close(self) -> None:
        async with self._lock:
            if self.browser is None:
                logger.debug("No browser to close.")
                return
            logger.info("Closing browser...")
            await self._shutdown()

    async def _shutdown(self) -> None:
        # nodriver exposes a synchronous stop(); tolerate an awaitable one too
        try:
            result = self.browser.stop()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            self.browser = None

    async def __aenter__(self) -> 'BrowserPool':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class PageFetcher:
    """Fetch strategy selector: HTTP first, rendered browser when the page needs it."""

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        browser_pool: Optional[BrowserPool] = None,
        cache_config: Optional[CacheConfig] = None,
    ):
        """
        Initialize the fetcher.

        Args:
            config: Fetch configuration settings
            browser_pool: Shared browser; a private pool is created when omitted
            cache_config: Page cache settings (disabled unless enabled=True)
        """
        self.config = config or FetchConfig()
        self.browser_pool = browser_pool or BrowserPool(self.config)
        self._session: Optional[aiohttp.ClientSession] = None

        cache_config = cache_config or CacheConfig()
        self.cache: Optional[PageCache] = PageCache(cache_config) if cache_config.enabled else None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={'User-Agent': self.config.user_agent},
                timeout=aiohttp.ClientTimeout(total=self.config.http_timeout),
            )
        return self._session

    async def fetch(self, url: str) -> FetchResult:
        """
        Retrieve a page's HTML and the method used.

        Args:
            url: URL to fetch

        Returns:
            FetchResult with the HTTP body and, when the browser ran, the rendered HTML

        Raises:
            FetchError: timeout, non-2xx status, non-HTML content or a browser failure
        """
        if self.cache is not None:
            cached = self.cache.get(url)
            if cached:
                logger.info(f"Using cached content for: {url}")
                return FetchResult.from_dict(cached)

        try:
            html, status_code = await self._fetch_with_http(url)

            if needs_browser(html, self.config.min_body_text):
                logger.info(f"HTTP fetch insufficient, using browser fallback: {url}")
                rendered_html, browser_status = await self._fetch_with_browser(url)
                result = FetchResult(
                    url=url,
                    html=html,
                    rendered_html=rendered_html,
                    method=FetchMethod.BROWSER,
                    status_code=browser_status or status_code,
                )
            else:
                result = FetchResult(url=url, html=html, method=FetchMethod.HTTP, status_code=status_code)
        except FetchError as e:
            logger.error(f"Failed to fetch page {url}: {e}")
            raise

        if self.cache is not None:
            self.cache.set(url, result.to_dict())
        return result

    async def _fetch_with_http(self, url: str) -> tuple[str, int]:
        logger.debug(f"Fetching with HTTP: {url}")
        session = await self._get_session()
        try:
            async with session.get(url, allow_redirects=True) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(url, f"HTTP {response.status}", status_code=response.status)

                content_type = response.headers.get('Content-Type', '')
                if 'text/html' not in content_type:
                    raise FetchError(url, f"Non-HTML content type: {content_type}", status_code=response.status)

                html = await response.text(errors='replace')
                return html, response.status
        except asyncio.TimeoutError as e:
            raise FetchError(url, f"Request timeout ({self.config.http_timeout:g}s)") from e
        except aiohttp.ClientError as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e

    async def _fetch_with_browser(self, url: str) -> tuple[str, Optional[int]]:
        logger.info(f"Fetching with browser: {url}")
        browser = await self.browser_pool.acquire()
        tab = None
        try:
            tab = await asyncio.wait_for(browser.get(url, new_tab=True), timeout=self.config.navigation_timeout)
            await self._wait_for_network_idle(tab, url)

            status_code = await self._navigation_status(tab)
            # No status from Navigation Timing keeps the page; fetch() then reports the HTTP status
            if status_code is not None and status_code != 200:
                raise FetchError(url, f"HTTP {status_code}", status_code=status_code)

            # Wait a bit more for dynamic content
            await asyncio.sleep(self.config.settle_delay)

            rendered_html = await asyncio.wait_for(tab.get_content(), timeout=self.config.navigation_timeout)
            if not rendered_html:
                raise FetchError(url, "Browser returned no HTML content")
            return rendered_html, status_code
        except asyncio.TimeoutError as e:
            raise FetchError(url, f"Browser navigation timeout ({self.config.navigation_timeout:g}s)") from e
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(url, f"Browser fetch failed: {e}") from e
        finally:
            await self.browser_pool.release(tab)

    async def _wait_for_network_idle(self, tab, url: str) -> None:
        """Wait until the document is complete and no new resources load for the idle window."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.navigation_timeout
        window = self.config.network_idle_window
        last_count = -1
        stable_since = None

        while loop.time() < deadline:
            state = await tab.evaluate(
                "[document.readyState, performance.getEntriesByType('resource').length]"
            )
            if not isinstance(state, (list, tuple)) or len(state) != 2:
                logger.debug(f"Unreadable load state for {url}; relying on settle delay")
                return
            ready, count = state
            now = loop.time()
            if ready == 'complete' and count == last_count:
                if stable_since is not None and now - stable_since >= window:
                    return
            else:
                stable_since = now
                last_count = count
            await asyncio.sleep(window / 2)

        raise asyncio.TimeoutError(f"Network never went idle for {url}")

    @staticmethod
    async def _navigation_status(tab) -> Optional[int]:
        """HTTP status of the main document from Navigation Timing, when the browser exposes it."""
        try:
            status = await tab.evaluate(
                "(performance.getEntriesByType('navigation')[0] || {}).responseStatus || 0"
            )
            status = int(status or 0)
        except Exception as e:
            logger.debug(f"Could not read navigation status: {e}")
            return None
        return status or None

    async def close(self) -> None:
        """Close the HTTP session, the page cache and the pooled browser."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        if self.cache is not None:
            self.cache.close()
        await self.browser_pool.close()

    async def __aenter__(self) -> 'PageFetcher':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
