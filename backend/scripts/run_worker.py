"""
Standalone job worker.

Usage:
    cd backend
    python -m scripts.run_worker
    python -m scripts.run_worker --once --max-jobs 10
    python -m scripts.run_worker --metrics-port 9108

Several workers may run against the same database; each job is claimed by
exactly one of them.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv
from prometheus_client import start_http_server
from sqlalchemy.ext.asyncio import AsyncEngine

# Load .env from the repository root
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(os.path.dirname(backend_dir), ".env"))

from bookforge.core.config import Settings  # noqa: E402
from bookforge.db.base import Base  # noqa: E402
from bookforge.infrastructure.di import build_container  # noqa: E402
from bookforge.infrastructure.observability import configure_logging  # noqa: E402
from bookforge.services.job_worker import JobWorker  # noqa: E402

logger = logging.getLogger("bookforge.worker")


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the bookforge job worker.")
    parser.add_argument("--once", action="store_true", help="Drain eligible jobs then exit.")
    parser.add_argument("--max-jobs", type=int, default=None, help="Stop after this many jobs (with --once).")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before starting (development databases).",
    )
    parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    settings = Settings()
    configure_logging(settings)
    container = build_container(settings)
    engine = container.resolve(AsyncEngine)
    try:
        if args.create_tables:
            import bookforge.models  # noqa: F401

            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        worker = container.resolve(JobWorker)
        if args.once:
            await worker.recover_stale_jobs()
            processed = await worker.run_until_idle(max_jobs=args.max_jobs)
            logger.info("Processed %d job(s)", processed)
            return 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await worker.run_forever(stop_event)
        return 0
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    args = _parse_args(argv)
    if args.metrics_port:
        start_http_server(args.metrics_port)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
