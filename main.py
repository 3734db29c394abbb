#!/usr/bin/env python3
"""
Main entry point for the crawl index pipeline.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

from crawlindex import __version__
from crawlindex.crawler.orchestrator import CrawlOrchestrator, CrawlResult, IndexingError
from crawlindex.crawler.request import CrawlRequest
from crawlindex.utils.config import Config, load_config
from crawlindex.utils.logger import setup_logging
from crawlindex.utils.monitoring import initialize_monitoring


class CrawlerApp:
    """Main application class for the crawl index pipeline."""

    def __init__(self):
        self.orchestrator: Optional[CrawlOrchestrator] = None
        self.logger = logging.getLogger(__name__)

    def setup_signal_handlers(self):
        """Stop the current run on SIGINT/SIGTERM; buffered pages are still flushed."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            if self.orchestrator:
                self.orchestrator.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def run(self, config: Config, request: Optional[CrawlRequest] = None,
                  sitemap_url: Optional[str] = None, output: Optional[str] = None,
                  dry_run: bool = False) -> int:
        """Run one crawl request or a sitemap crawl."""
        setup_logging(asdict(config.logging))
        self.setup_signal_handlers()

        self.logger.info("=== CRAWL INDEX STARTING ===")
        self.logger.info(f"Max concurrency: {config.crawler.max_concurrency}")
        self.logger.info(f"Max retries: {config.crawler.max_retries}")
        self.logger.info(f"Index store: {config.indexer.type} (batch size {config.indexer.batch_size})")

        monitor = initialize_monitoring(config.monitoring.metrics_enabled,
                                        config.monitoring.prometheus_port)
        await monitor.metrics.start_prometheus_server()

        self.orchestrator = CrawlOrchestrator(config, monitor=monitor)
        results: List[CrawlResult] = []
        exit_code = 0

        try:
            await self.orchestrator.initialize()

            if dry_run:
                self.logger.info("DRY RUN MODE: configuration and index store are usable, nothing crawled")
                return 0

            if request is not None:
                results.append(await self.orchestrator.run_crawl(request.source, request.urls))
            else:
                results.extend(await self.orchestrator.run_sitemap(sitemap_url))

        except IndexingError as e:
            self.logger.error(f"Indexing failed: {e}")
            results.append(e.result)
            exit_code = 1

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            exit_code = 1

        finally:
            await self.orchestrator.close()
            self.logger.info("=== CRAWL INDEX FINISHED ===")

        summary = [result.to_dict() for result in results]
        if output:
            Path(output).write_text(json.dumps(summary, indent=2, ensure_ascii=False), encoding='utf-8')
            self.logger.info(f"Wrote crawl summary to {output}")
        else:
            for result in results:
                self.logger.info(f"{result.source}: {result.succeeded} succeeded, "
                                 f"{result.failed} failed, {result.skipped} skipped")

        return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Crawl pages and index them into a search service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --source docs --url https://example.com/a --url https://example.com/b
  python main.py --source docs --urls-file urls.txt
  python main.py --request payload.json          # {"source": ..., "urls": [...]}
  python main.py --sitemap https://example.com/sitemap.xml
  python main.py --dry-run                        # Test configuration only
        """
    )

    parser.add_argument('--config', default='config.yaml',
                        help='Path to configuration file (default: config.yaml)')
    parser.add_argument('--source', help='Source label stored with every indexed page')
    parser.add_argument('--url', dest='urls', action='append', default=[],
                        help='URL to crawl (repeatable)')
    parser.add_argument('--urls-file', help='File with one URL per line')
    parser.add_argument('--request', help='JSON file holding a {"source", "urls"} payload')
    parser.add_argument('--sitemap', help='Sitemap or sitemap index URL to crawl')
    parser.add_argument('--output', help='Write the crawl summary as JSON to this file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Test configuration without actually crawling')
    parser.add_argument('--version', action='version', version=f'Crawl Index {__version__}')
    return parser


def build_request(args: argparse.Namespace) -> Optional[CrawlRequest]:
    """Turn the URL-related arguments into a request, or None for a sitemap crawl."""
    if args.request:
        return CrawlRequest.from_json(Path(args.request).read_text(encoding='utf-8'))

    urls = list(args.urls)
    if args.urls_file:
        lines = Path(args.urls_file).read_text(encoding='utf-8').splitlines()
        urls.extend(line.strip() for line in lines if line.strip() and not line.startswith('#'))

    if not urls:
        return None

    return CrawlRequest.from_dict({'source': args.source, 'urls': urls})


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    try:
        config = load_config(args.config)
        request = build_request(args)
    except (ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1

    if request is None and not args.dry_run and not (args.sitemap or config.sitemap.root_url):
        print("Error: nothing to crawl. Give --url/--urls-file/--request or --sitemap.")
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config,
            request=request,
            sitemap_url=args.sitemap,
            output=args.output,
            dry_run=args.dry_run
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
