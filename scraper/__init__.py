"""Crawling: fetching, URL discovery, content extraction and orchestration."""
