"""
Disk cache for fetched pages.

Stores the HTML produced by the fetcher keyed by URL so repeated development
runs do not hit the target site again. Entries expire after the configured TTL.
"""
import hashlib
from typing import Any, Dict, Optional

import diskcache

from utils.config import CacheConfig
from utils.logger import setup_logger

logger = setup_logger(__name__)


class PageCache:
    """diskcache-backed store of fetch results."""

    def __init__(self, config: CacheConfig):
        """
        Initialize the page cache.

        Args:
            config: Cache configuration settings
        """
        self.config = config
        self.cache = diskcache.Cache(
            config.cache_dir,
            size_limit=config.max_cache_size
        )
        logger.info(f"Disk cache enabled at {config.cache_dir}")

    @staticmethod
    def _get_cache_key(url: str) -> str:
        """Generate cache key for a URL."""
        return f"page:{hashlib.sha256(url.encode()).hexdigest()}"

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        """
        Get cached fetch result if available and not expired.

        Args:
            url: URL to check cache for

        Returns:
            Cached payload or None
        """
        try:
            payload = self.cache.get(self._get_cache_key(url))
        except Exception as e:
            logger.warning(f"Cache read error for {url}: {e}")
            return None

        if isinstance(payload, dict):
            logger.debug(f"Cache HIT for {url}")
            return payload
        logger.debug(f"Cache MISS for {url}")
        return None

    def set(self, url: str, payload: Dict[str, Any]) -> None:
        """
        Cache a fetch result with TTL.

        Args:
            url: URL to cache
            payload: Serializable fetch result
        """
        try:
            self.cache.set(
                self._get_cache_key(url),
                payload,
                expire=self.config.page_cache_ttl
            )
            logger.debug(f"Cached page: {url}")
        except Exception as e:
            logger.warning(f"Cache write error for {url}: {e}")

    def close(self) -> None:
        self.cache.close()
