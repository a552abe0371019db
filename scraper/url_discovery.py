"""
URL discovery from XML sitemaps and from links in fetched HTML.
"""
from __future__ import annotations

import asyncio
from typing import List, Optional, Set

import aiohttp
from bs4 import BeautifulSoup

from utils.errors import SitemapError
from utils.logger import setup_logger
from utils.url_utils import is_same_host, is_valid_url, normalize_url, resolve_url, extract_domain

logger = setup_logger(__name__)

SKIPPED_HREF_PREFIXES = ('mailto:', 'tel:', 'javascript:', '#')


async def parse_sitemap(
    sitemap_url: str,
    base_domain: str,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: float = 30.0,
    user_agent: Optional[str] = None,
    _seen: Optional[Set[str]] = None,
) -> List[str]:
    """
    Collect same-domain page URLs from a sitemap or sitemap index.

    Child sitemaps listed by an index are followed only when they live on the
    same domain. Any failure is logged and yields an empty list.

    Args:
        sitemap_url: Absolute URL of the sitemap
        base_domain: Hostname of the crawled site
        session: Optional shared aiohttp session
        timeout: Total seconds allowed per sitemap request
        user_agent: User-Agent header for a session created here

    Returns:
        Normalized page URLs in document order
    """
    seen = _seen if _seen is not None else set()
    if sitemap_url in seen:
        return []
    seen.add(sitemap_url)

    owns_session = session is None
    if owns_session:
        headers = {'User-Agent': user_agent} if user_agent else None
        session = aiohttp.ClientSession(headers=headers)

    try:
        logger.info(f"Fetching sitemap: {sitemap_url}")
        xml_content = await _fetch_sitemap(session, sitemap_url, timeout)
        try:
            soup = BeautifulSoup(xml_content, 'xml')
        except Exception as e:
            raise SitemapError(f"Malformed sitemap XML: {e}") from e

        index = soup.find('sitemapindex')
        if index is not None:
            logger.info(f"Found sitemap index: {sitemap_url}")
            all_urls: List[str] = []
            for entry in index.find_all('sitemap', recursive=False):
                child_url = _direct_loc(entry)
                if child_url and is_same_host(extract_domain(child_url), base_domain):
                    all_urls.extend(
                        await parse_sitemap(child_url, base_domain, session, timeout, user_agent, seen)
                    )
            return all_urls

        urlset = soup.find('urlset')
        if urlset is None:
            raise SitemapError(f"No <urlset> or <sitemapindex> in {sitemap_url}")

        urls: List[str] = []
        # Only the <loc> directly under <url>; extensions like <image:loc> are not pages
        for entry in urlset.find_all('url', recursive=False):
            page_url = _direct_loc(entry)
            if page_url and is_valid_url(page_url) and is_same_host(extract_domain(page_url), base_domain):
                urls.append(normalize_url(page_url))
        return urls

    except SitemapError as e:
        logger.warning(f"Failed to parse sitemap {sitemap_url}: {e}")
        return []
    finally:
        if owns_session:
            await session.close()


def _direct_loc(entry) -> str:
    loc = entry.find('loc', recursive=False)
    return loc.get_text(strip=True) if loc is not None else ''


async def _fetch_sitemap(session: aiohttp.ClientSession, sitemap_url: str, timeout: float) -> str:
    try:
        async with session.get(
            sitemap_url,
            allow_redirects=True,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status != 200:
                raise SitemapError(f"Sitemap fetch failed with HTTP {response.status}")
            return await response.text(errors='replace')
    except asyncio.TimeoutError as e:
        raise SitemapError(f"Sitemap fetch timeout ({timeout:g}s)") from e
    except aiohttp.ClientError as e:
        raise SitemapError(str(e)) from e


def extract_links_from_html(html: str, base_url: str, base_domain: str) -> List[str]:
    """
    Find same-domain links on a page.

    Args:
        html: Raw or rendered HTML
        base_url: URL of the page, used to resolve relative links
        base_domain: Hostname of the crawled site

    Returns:
        Normalized, de-duplicated absolute URLs in document order
    """
    links: List[str] = []
    seen: Set[str] = set()
    total_hrefs = 0
    skipped_non_http = 0
    skipped_external = 0

    try:
        soup = BeautifulSoup(html, 'html.parser')
    except Exception as e:
        logger.warning(f"Failed to extract links from {base_url}: {e}")
        return []

    for anchor in soup.find_all('a', href=True):
        href = str(anchor.get('href', '')).strip()
        if not href:
            continue
        total_hrefs += 1

        if href.lower().startswith(SKIPPED_HREF_PREFIXES):
            skipped_non_http += 1
            continue

        absolute_url = resolve_url(base_url, href)
        if not is_valid_url(absolute_url):
            skipped_non_http += 1
            continue

        if not is_same_host(extract_domain(absolute_url), base_domain):
            skipped_external += 1
            logger.debug(f"Skipping external link: {absolute_url}")
            continue

        normalized = normalize_url(absolute_url)
        if normalized not in seen:
            seen.add(normalized)
            links.append(normalized)

    logger.info(
        f"Link extraction for {base_url}: {total_hrefs} hrefs, {len(links)} internal, "
        f"{skipped_external} external, {skipped_non_http} non-http"
    )
    return links
