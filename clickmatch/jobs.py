"""
Batch jobs for the external scheduler.

    python -m clickmatch.jobs match [--limit N]
    python -m clickmatch.jobs sync  [--max-size N]

Each run processes one batch, prints its summary as JSON and exits.
SIGINT/SIGTERM cancel the running batch; the engine and the pipeline leave
already-touched records in a consistent, retryable state.
"""

import argparse
import asyncio
import json
import signal
import sys

from clickmatch.config import get_settings
from clickmatch.core.errors import StoreUnavailableError
from clickmatch.core.google_ads import GoogleAdsConversionClient
from clickmatch.core.matching import AttributionEngine
from clickmatch.core.sync import ConversionSyncPipeline
from clickmatch.main import configure_logging
from clickmatch.models.database import dispose_engine
from clickmatch.models.store import get_store

import structlog

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_STORE_UNAVAILABLE = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m clickmatch.jobs",
        description="Run one attribution or conversion-sync batch.",
    )
    sub = parser.add_subparsers(dest="job", required=True)

    match = sub.add_parser("match", help="match stored purchases that are unmatched or upgradable")
    match.add_argument("--limit", type=int, default=500, help="max purchases to process (default: 500)")

    sync = sub.add_parser("sync", help="upload matched purchases to the ad platform")
    sync.add_argument(
        "--max-size", type=int, default=None,
        help="max records in the upload batch (default: CM_SYNC_DEFAULT_BATCH_SIZE)",
    )
    return parser


async def run_match(limit: int) -> dict:
    engine = AttributionEngine(get_store())
    _, summary = await engine.match_pending(limit)
    return summary.to_dict()


async def run_sync(max_size: int | None) -> dict:
    pipeline = ConversionSyncPipeline(get_store(), GoogleAdsConversionClient())
    report = await pipeline.sync_batch(max_size)
    return report.to_dict()


async def run_cancellable(job) -> dict:
    """Run a job coroutine; SIGINT/SIGTERM cancel it."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(job)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform / thread
    try:
        return await task
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        await dispose_engine()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().debug)

    if args.job == "match":
        if args.limit < 1:
            print("--limit must be >= 1", file=sys.stderr)
            return 1
        job = run_match(args.limit)
    else:
        if args.max_size is not None and args.max_size < 1:
            print("--max-size must be >= 1", file=sys.stderr)
            return 1
        job = run_sync(args.max_size)

    try:
        summary = asyncio.run(run_cancellable(job))
    except asyncio.CancelledError:
        logger.warning("job_cancelled", job=args.job)
        return EXIT_CANCELLED
    except StoreUnavailableError as e:
        logger.error("job_store_unavailable", job=args.job, error=str(e))
        return EXIT_STORE_UNAVAILABLE

    print(json.dumps({"job": args.job, **summary}))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
