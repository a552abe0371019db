"""
Turn raw or rendered HTML into the normalized fields stored on a page.
"""
from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import trafilatura
from bs4 import BeautifulSoup

from utils.errors import ExtractionError
from utils.logger import setup_logger

logger = setup_logger(__name__)

BOILERPLATE_TAGS = ['script', 'style', 'noscript', 'nav', 'header', 'footer', 'aside']


@dataclass
class ExtractedContent:
    title: Optional[str] = None
    meta_description: Optional[str] = None
    canonical_url: Optional[str] = None
    text_content: Optional[str] = None
    headings: Dict[str, List[str]] = field(default_factory=lambda: {'h1': [], 'h2': [], 'h3': []})
    json_ld: List[Any] = field(default_factory=list)
    author: Optional[str] = None
    language: Optional[str] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        """The page metadata blob persisted alongside the page."""
        return {
            'headings': self.headings,
            'jsonLd': self.json_ld,
            'author': self.author,
            'language': self.language,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = re.sub(r'\s+', ' ', text).strip()
    return text or None


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find('meta', attrs=attrs)
    if tag is None:
        return None
    return _clean(tag.get('content'))


def extract_json_ld(soup: BeautifulSoup) -> List[Any]:
    """Parse every application/ld+json block; malformed blocks are skipped."""
    blocks: List[Any] = []
    scripts = soup.find_all(
        'script',
        attrs={'type': lambda value: bool(value) and 'application/ld+json' in value.lower()},
    )
    for script in scripts:
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            blocks.append(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.debug(f"Failed to parse JSON-LD: {e}")
    return blocks


def extract_main_text(html: str, url: Optional[str] = None) -> Optional[str]:
    """
    Extract the readable main content of a page.

    trafilatura is tried first with precision-oriented settings, then with its
    defaults; if both fail the stripped <body> text is used.

    Args:
        html: Page HTML
        url: Page URL, passed to trafilatura for link resolution

    Returns:
        Extracted text or None when the page has no text at all
    """
    text_content = None
    try:
        text_content = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=True,
            include_links=False,
            favor_precision=True,
        )

        # Fallback: try with default settings if nothing extracted
        if not text_content:
            logger.debug("First extraction failed, trying with default settings...")
            text_content = trafilatura.extract(html, url=url)
    except Exception as e:
        logger.debug(f"Readability extraction failed for {url}, using fallback: {e}")
        text_content = None

    if not text_content:
        text_content = body_text(html)

    return _clean(text_content)


def body_text(html: str) -> Optional[str]:
    """<body> text with scripts, styles and page chrome removed."""
    soup = BeautifulSoup(html, 'html.parser')
    body = soup.body or soup
    for tag in body(BOILERPLATE_TAGS):
        tag.decompose()
    return _clean(body.get_text(' '))


def extract_content(html: str, url: str) -> ExtractedContent:
    """
    Parse HTML into title, description, canonical link, headings, JSON-LD,
    author/language metadata and main readable text.

    Args:
        html: Raw or rendered HTML
        url: URL the HTML was fetched from

    Returns:
        ExtractedContent

    Raises:
        ExtractionError: If the document cannot be parsed at all
    """
    try:
        soup = BeautifulSoup(html, 'html.parser')
    except Exception as e:
        logger.error(f"Content extraction failed for {url}: {e}")
        raise ExtractionError(f"Could not parse HTML from {url}: {e}") from e

    title_tag = soup.find('title')
    canonical_tag = soup.find('link', rel=lambda value: bool(value) and 'canonical' in value)
    html_tag = soup.find('html')

    headings = {
        level: [text for text in (_clean(h.get_text(' ')) for h in soup.find_all(level)) if text]
        for level in ('h1', 'h2', 'h3')
    }

    language = None
    if html_tag is not None and html_tag.get('lang'):
        language = _clean(html_tag.get('lang'))
    if not language:
        language = _meta_content(soup, **{'http-equiv': 'content-language'})

    return ExtractedContent(
        title=_clean(title_tag.get_text()) if title_tag else None,
        meta_description=_meta_content(soup, name='description'),
        canonical_url=_clean(canonical_tag.get('href')) if canonical_tag else None,
        text_content=extract_main_text(html, url),
        headings=headings,
        json_ld=extract_json_ld(soup),
        author=_meta_content(soup, name='author'),
        language=language,
    )
