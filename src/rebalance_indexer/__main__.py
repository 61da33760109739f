"""Command-line entry point: ``python -m rebalance_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import asdict

from rebalance_indexer.config import Settings, get_settings
from rebalance_indexer.errors import IndexerError
from rebalance_indexer.ingestor.backfill import BackfillScanner
from rebalance_indexer.ingestor.queue import InMemoryIngestionQueue
from rebalance_indexer.pipeline import IndexerPipeline
from rebalance_indexer.storage.database import DatabaseManager
from rebalance_indexer.storage.repos import DeadLetterRepository

logger = logging.getLogger("rebalance_indexer")


def _print(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run(settings: Settings) -> None:
    pipeline = IndexerPipeline(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, pipeline.request_stop)
    await pipeline.run()


async def _backfill(settings: Settings, args: argparse.Namespace, *, resume: bool) -> None:
    async with IndexerPipeline(settings, live=False) as pipeline:
        chain = settings.get_chain(args.chain)
        if resume:
            result = await pipeline.scanner.resume(chain.name, to_block=args.to_block)
        elif args.contract:
            result = await pipeline.scanner.backfill_contract(
                chain.name, args.contract, args.from_block, args.to_block
            )
        else:
            result = await pipeline.scanner.run(chain.name, args.from_block, args.to_block)
        logger.info("Waiting for the queue to drain...")
        drained = await pipeline.drain(timeout=args.drain_timeout)
        if not drained:
            logger.warning("Queue not drained after %.0fs; remaining items stay queued", args.drain_timeout)
        _print({"chain": chain.name, **asdict(result), "stats": asdict(pipeline.stats)})


async def _progress(settings: Settings, args: argparse.Namespace) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        scanner = BackfillScanner(db=db, queue=InMemoryIngestionQueue(), chains=settings.chains, clients={})
        chains = [settings.get_chain(args.chain)] if args.chain else settings.chains
        _print([(await scanner.get_progress(c.name)).to_dict() for c in chains])
    finally:
        await db.dispose_async()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _dead_letters(settings: Settings, args: argparse.Namespace) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        chain_id = settings.get_chain(args.chain).chain_id if args.chain else None
        async with db.get_async_session() as session:
            rows = await DeadLetterRepository(session).list_dead_letters(chain_id=chain_id, limit=args.limit)
        _print([asdict(r) for r in rows])
    finally:
        await db.dispose_async()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rebalance-indexer",
        description="Index StrategyRegistry and RebalanceExecutor events",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run consumers and live subscribers until interrupted")

    backfill = sub.add_parser("backfill", help="Scan a block range for a chain")
    backfill.add_argument("chain", help="Chain name or id (monad, base-sepolia, 10143, ...)")
    backfill.add_argument("--from-block", type=int, default=None, help="First block (default: deployment block)")
    backfill.add_argument("--to-block", type=int, default=None, help="Last block (default: current head)")
    backfill.add_argument("--contract", default=None, help="Only re-index this contract address")
    backfill.add_argument("--drain-timeout", type=float, default=300.0, help="Seconds to wait for the queue")

    resume = sub.add_parser("resume", help="Continue a backfill from the last indexed block")
    resume.add_argument("chain")
    resume.add_argument("--to-block", type=int, default=None)
    resume.add_argument("--drain-timeout", type=float, default=300.0)

    progress = sub.add_parser("progress", help="Show backfill progress")
    progress.add_argument("chain", nargs="?", default=None)

    sub.add_parser("init-db", help="Create tables (development; use alembic in production)")

    dead = sub.add_parser("dead-letters", help="List dead-lettered events")
    dead.add_argument("--chain", default=None)
    dead.add_argument("--limit", type=int, default=50)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        if args.command == "run":
            asyncio.run(_run(settings))
        elif args.command == "backfill":
            asyncio.run(_backfill(settings, args, resume=False))
        elif args.command == "resume":
            asyncio.run(_backfill(settings, args, resume=True))
        elif args.command == "progress":
            asyncio.run(_progress(settings, args))
        elif args.command == "init-db":
            asyncio.run(_init_db(settings))
        elif args.command == "dead-letters":
            asyncio.run(_dead_letters(settings, args))
    except IndexerError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
