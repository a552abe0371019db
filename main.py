"""
Main entry point for the Site Knowledge Graph tool.

Subcommands:
    crawl URL          crawl a site into the database
    build-graph SITE   extract entities and relations from crawled pages
    questions SITE     generate traceable questions from the site report
    analyze URL        crawl, build the graph and generate questions in one go
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from processor.graph_builder import GraphBuildStats, GraphBuilder
from processor.question_engine import QuestionEngine, QuestionSet
from processor.question_exporter import to_csv, to_json
from processor.report_assembler import ReportAssembler
from scraper.crawler import CrawlJobRequest, CrawlResult, run_crawl_job
from storage.database import SQLiteStorage
from storage.models import CrawlJob, Site
from utils.config import AppConfig
from utils.errors import SiteGraphError
from utils.logger import set_level, setup_logger
from utils.url_utils import is_valid_url
from version import APP_NAME, CURRENT_VERSION

logger = setup_logger("main")


def configure_asyncio_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Suppress benign websocket close errors the browser connection emits after shutdown."""
    previous_handler = loop.get_exception_handler()

    def is_benign_websocket_error(exc: Optional[BaseException]) -> bool:
        if exc is None:
            return False
        if isinstance(exc, (ConnectionClosedError, ConnectionClosedOK)):
            return True
        message = str(exc).lower()
        return "websocket" in message and "closed" in message

    def handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exception = context.get("exception")
        if is_benign_websocket_error(exception):
            logger.debug(f"Suppressed websocket exception during shutdown: {exception}")
            return

        future = context.get("future")
        if isinstance(future, asyncio.Future) and future.done() and not future.cancelled():
            if is_benign_websocket_error(future.exception()):
                logger.debug("Suppressed websocket future exception during shutdown")
                return

        if previous_handler is not None:
            previous_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    loop.set_exception_handler(handler)


async def crawl_site(
    storage: SQLiteStorage,
    config: AppConfig,
    url: str,
    max_depth: int,
    max_pages: int,
) -> Tuple[Site, CrawlResult]:
    """
    Create (or reuse) the site for a URL, open a crawl job and run it.

    Returns:
        The site and the finished crawl result
    """
    site = storage.get_or_create_site(url)
    job = storage.create_crawl_job(CrawlJob(site_id=site.id, max_depth=max_depth, max_pages=max_pages))
    logger.info(f"Created crawl job {job.id} for site {site.id} (depth {max_depth}, pages {max_pages})")

    request = CrawlJobRequest(
        job_id=job.id,
        site_id=site.id,
        base_url=site.url,
        max_depth=max_depth,
        max_pages=max_pages,
    )
    result = await run_crawl_job(request, storage, config=config)
    return site, result


def build_graph(storage: SQLiteStorage, config: AppConfig, site_id: str) -> GraphBuildStats:
    return GraphBuilder(storage, config.graph).build_graph(site_id)


def generate_questions(storage: SQLiteStorage, config: AppConfig, site_id: str) -> QuestionSet:
    report = ReportAssembler(storage).build_report(site_id)
    return QuestionEngine(report, config.questions).generate_questions()


def export_questions(question_set: QuestionSet, fmt: str, output: Optional[str]) -> None:
    """Write the question set as JSON or CSV to a file, or stdout when no path is given."""
    text = to_csv(question_set) if fmt == "csv" else to_json(question_set)
    if output:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        logger.info(f"Wrote {len(question_set.questions)} questions to {path}")
    else:
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")


def _log_crawl_result(result: CrawlResult) -> None:
    logger.info(f"Crawl job {result.job_id}: {result.status.value}, {result.pages_processed} pages processed")
    if result.error_message:
        logger.warning(result.error_message)


def build_parser(config: AppConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitegraph",
        description="Crawl a website, build its entity knowledge graph and derive traceable questions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Crawl a site two levels deep
  sitegraph crawl https://example.com --max-depth 2 --max-pages 50

  # Build the graph and export questions as CSV
  sitegraph build-graph <site-id>
  sitegraph questions <site-id> --format csv --output questions.csv

  # Everything in one go
  sitegraph analyze https://example.com
        """
    )
    parser.add_argument('--version', action='version', version=f"{APP_NAME} {CURRENT_VERSION}")
    parser.add_argument(
        '--db',
        default=config.storage.db_path,
        help=f"Path to the SQLite database (default: {config.storage.db_path})"
    )
    parser.add_argument(
        '--log-level',
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: LOG_LEVEL or INFO)'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_crawl_limits(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            '--max-depth',
            type=int,
            default=config.crawler.max_depth,
            help=f"Maximum link depth (default: {config.crawler.max_depth})"
        )
        sub.add_argument(
            '--max-pages',
            type=int,
            default=config.crawler.max_pages,
            help=f"Maximum pages to crawl (default: {config.crawler.max_pages})"
        )

    def add_export_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument('--format', choices=['json', 'csv'], default='json', help='Export format')
        sub.add_argument('--output', '-o', default=None, help='Output file (default: stdout)')

    crawl = subparsers.add_parser('crawl', help='Crawl a website')
    crawl.add_argument('url', help='Root URL of the site')
    add_crawl_limits(crawl)

    graph = subparsers.add_parser('build-graph', help='Build the entity graph of a crawled site')
    graph.add_argument('site_id', help='Site identifier')

    questions = subparsers.add_parser('questions', help='Generate questions for a site')
    questions.add_argument('site_id', help='Site identifier')
    add_export_options(questions)

    analyze = subparsers.add_parser('analyze', help='Crawl, build the graph and generate questions')
    analyze.add_argument('url', help='Root URL of the site')
    add_crawl_limits(analyze)
    add_export_options(analyze)

    return parser


def _validate_limits(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if not is_valid_url(args.url):
        parser.error(f"not an http(s) URL: {args.url}")
    if args.max_depth < 0:
        parser.error("--max-depth must be >= 0")
    if args.max_pages < 1:
        parser.error("--max-pages must be >= 1")


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one CLI command.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Process exit code
    """
    loop = asyncio.get_running_loop()
    configure_asyncio_exception_handler(loop)

    config = AppConfig.from_env()
    parser = build_parser(config)
    args = parser.parse_args(argv)

    if args.log_level:
        set_level(getattr(logging, args.log_level))
    if args.command in ('crawl', 'analyze'):
        _validate_limits(parser, args)

    config.storage.db_path = args.db
    storage = SQLiteStorage(config.storage.db_path, config.storage.busy_timeout)

    try:
        if args.command == 'crawl':
            site, result = await crawl_site(storage, config, args.url, args.max_depth, args.max_pages)
            _log_crawl_result(result)
            print(site.id)

        elif args.command == 'build-graph':
            stats = build_graph(storage, config, args.site_id)
            logger.info(f"Graph build stats: {stats.to_dict()}")

        elif args.command == 'questions':
            export_questions(generate_questions(storage, config, args.site_id), args.format, args.output)

        elif args.command == 'analyze':
            logger.info("=" * 60)
            logger.info(f"Analyzing {args.url}")
            logger.info("=" * 60)
            site, result = await crawl_site(storage, config, args.url, args.max_depth, args.max_pages)
            _log_crawl_result(result)
            stats = build_graph(storage, config, site.id)
            logger.info(f"Graph build stats: {stats.to_dict()}")
            export_questions(generate_questions(storage, config, site.id), args.format, args.output)
            logger.info(f"Analysis of site {site.id} finished")

    except SiteGraphError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
