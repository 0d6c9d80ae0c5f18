"""
Command line entry point.

    crawl-ingest run catalog-api [--force] [--page N] [--target QUERY]
    crawl-ingest run catalog-images [--force] [--target TEMPLATE_ID]
    crawl-ingest run catalog-store [--store ID] [--target ITEM_ID] [--reviews] [--description]
    crawl-ingest run tracking [--force] [--target TRACKING_CODE]
    crawl-ingest run fix-sizes [--target PRODUCT_ID]
    crawl-ingest run product-types [--force]
    crawl-ingest init-db
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, List, Optional
import logging

from core.database import engine
from core.logging import setup_logging
from ingestion.pipelines import PIPELINES, DEFAULT_STORE_ID, PipelineOptions, build_pipeline
from models.base import Base
import models  # noqa: F401  registers every table on Base.metadata

logger = logging.getLogger(__name__)


async def init_database() -> None:
    """Create every table that does not exist yet."""
    logger.info("Creating tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Tables created successfully")


async def _run_cancellable(coro) -> Any:
    """Run coro as a task cancelled on SIGINT/SIGTERM, so pending sleeps end at once."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # No signal handlers outside the main thread or on Windows
            pass
    try:
        return await task
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


async def run_pipeline(name: str, options: PipelineOptions) -> Dict[str, Any]:
    pipeline = build_pipeline(name, options)
    try:
        return await pipeline.run()
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crawl-ingest", description="Resumable crawl-ingest pipelines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log more details")
    sub = parser.add_subparsers(dest="cmd")

    run_parser = sub.add_parser("run", help="Run one pipeline until its source is exhausted")
    run_parser.add_argument("pipeline", choices=sorted(PIPELINES), help="Pipeline to run")
    run_parser.add_argument("-f", "--force", action="store_true", help="Refresh records that are already stored")
    run_parser.add_argument(
        "-t", "--target",
        help="Restrict the run: search query, template id, store item id, tracking code or product id"
    )
    run_parser.add_argument("-p", "--page", type=int, help="First page of a fresh crawl")
    run_parser.add_argument("-s", "--store", default=DEFAULT_STORE_ID, help="Store id for catalog-store")
    run_parser.add_argument("-r", "--reviews", action="store_true", help="Include product reviews")
    run_parser.add_argument("-d", "--description", action="store_true", help="Include product descriptions")
    run_parser.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Log more details")

    sub.add_parser("init-db", help="Create database tables")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 1

    setup_logging(verbose=args.verbose)

    if args.cmd == "init-db":
        asyncio.run(init_database())
        return 0

    options = PipelineOptions(
        force=args.force,
        target=args.target,
        page=args.page,
        store_id=args.store,
        reviews=args.reviews,
        description=args.description,
    )
    logger.info(f"> Start {args.pipeline} pipeline")
    try:
        stats = asyncio.run(_run_cancellable(run_pipeline(args.pipeline, options)))
    except asyncio.CancelledError:
        logger.warning(f"> {args.pipeline} cancelled")
        return 1

    if stats.get("status") != "success":
        logger.error(f"> {args.pipeline} failed: {stats.get('error')}")
        return 1

    logger.info(f"> Done {args.pipeline}: {stats}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
