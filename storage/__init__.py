"""Persistence of sites, crawl jobs, pages and the entity graph."""
