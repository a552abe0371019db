import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class FetchConfig:
    """Configuration for the HTTP-first / browser-fallback fetcher."""
    user_agent: str = "SiteKnowledgeGraph/1.0 (Web Crawler)"
    http_timeout: float = 60.0  # seconds, total request time
    navigation_timeout: float = 60.0  # seconds, browser navigation + network idle
    settle_delay: float = 2.0  # extra wait after network idle for late scripts
    network_idle_window: float = 0.5  # resource count must stay stable this long
    min_body_text: int = 100  # visible body characters below this trigger the browser
    browser_headless: bool = True
    browser_args: list[str] = field(default_factory=lambda: ["--no-sandbox", "--disable-setuid-sandbox"])


@dataclass
class CacheConfig:
    """Configuration for disk caching of fetched pages."""
    enabled: bool = False  # a warm cache hides content changes from re-crawls
    cache_dir: str = "cache"
    page_cache_ttl: int = 86400  # 24 hours in seconds
    max_cache_size: int = 1024 * 1024 * 1024  # 1GB


@dataclass
class CrawlerConfig:
    """Configuration for the crawl orchestrator."""
    max_depth: int = 3
    max_pages: int = 100
    request_delay: float = 1.0  # seconds between consecutive fetches
    sitemap_path: str = "/sitemap.xml"
    sitemap_timeout: float = 30.0
    max_error_samples: int = 3  # failures quoted in the zero-pages summary


@dataclass
class GraphConfig:
    """Configuration for graph building."""
    max_chunks_per_page: int = 20
    min_chunk_length: int = 50  # own-text characters a block needs to become a chunk
    merge_threshold: float = 0.8  # word-level Jaccard for entity merging
    mention_context_length: int = 200  # fallback snippet taken from page text
    max_snippet_length: int = 500


@dataclass
class QuestionConfig:
    """Configuration for question generation."""
    similarity_threshold: float = 0.7  # Jaccard above this marks near-duplicates
    confidence_boost: float = 0.05
    min_chunk_length: int = 50


@dataclass
class StorageConfig:
    """Configuration for the SQLite storage collaborator."""
    db_path: str = "sitegraph.db"
    busy_timeout: float = 30.0


@dataclass
class AppConfig:
    """Main application configuration."""
    fetch: FetchConfig
    cache: CacheConfig
    crawler: CrawlerConfig
    graph: GraphConfig
    questions: QuestionConfig
    storage: StorageConfig

    @classmethod
    def default(cls) -> 'AppConfig':
        """Create default configuration."""
        return cls(
            fetch=FetchConfig(),
            cache=CacheConfig(),
            crawler=CrawlerConfig(),
            graph=GraphConfig(),
            questions=QuestionConfig(),
            storage=StorageConfig()
        )

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from defaults overridden by SITEGRAPH_* variables."""
        config = cls.default()
        env = os.environ

        if env.get("SITEGRAPH_DB_PATH"):
            config.storage.db_path = env["SITEGRAPH_DB_PATH"]
        if env.get("SITEGRAPH_MAX_DEPTH"):
            config.crawler.max_depth = int(env["SITEGRAPH_MAX_DEPTH"])
        if env.get("SITEGRAPH_MAX_PAGES"):
            config.crawler.max_pages = int(env["SITEGRAPH_MAX_PAGES"])
        if env.get("SITEGRAPH_REQUEST_DELAY"):
            config.crawler.request_delay = float(env["SITEGRAPH_REQUEST_DELAY"])
        if env.get("SITEGRAPH_CACHE_DIR"):
            config.cache.cache_dir = env["SITEGRAPH_CACHE_DIR"]

        config.fetch.browser_headless = _env_bool("SITEGRAPH_HEADLESS", config.fetch.browser_headless)
        config.cache.enabled = _env_bool("SITEGRAPH_CACHE_ENABLED", config.cache.enabled)
        return config
