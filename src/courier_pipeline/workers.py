"""
Courier Pipeline - Worker Launcher.

Runs one long-lived consumer process:

    courier-worker tier 1       # drain the tier-1 stream into the channel streams
    courier-worker channel sms  # priority-ordered delivery of the sms stream
"""
from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Sequence

import structlog

from courier_common.logging import configure_logging
from courier_events.topology import Channel, Priority

from .bootstrap import PipelineResources, build_channel_scheduler, build_tier_worker
from .settings import ServiceSettings

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="courier-worker", description="Run a Courier pipeline worker")
    sub = parser.add_subparsers(dest="role", required=True)

    tier = sub.add_parser("tier", help="Fan out one priority tier to the channel streams")
    tier.add_argument("priority", type=int, choices=[int(p) for p in Priority])

    channel = sub.add_parser("channel", help="Deliver one channel stream in priority order")
    channel.add_argument("channel", choices=[c.value for c in Channel])

    parser.add_argument("--max-cycles", type=int, default=None,
                        help="Stop after this many poll cycles")
    return parser


async def run_worker(args: argparse.Namespace, settings: ServiceSettings | None = None) -> None:
    settings = settings or ServiceSettings()
    async with PipelineResources(settings) as resources:
        if args.role == "tier":
            worker = build_tier_worker(resources, args.priority)
        else:
            worker = build_channel_scheduler(resources, args.channel)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, worker.stop)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        async with worker:
            logger.info("courier_worker_running", role=args.role,
                        target=getattr(args, "priority", None) or getattr(args, "channel", None))
            await worker.run(max_cycles=args.max_cycles)


def main(argv: Sequence[str] | None = None) -> None:
    """Console entry point for ``courier-worker``."""
    args = build_parser().parse_args(argv)
    settings = ServiceSettings()
    configure_logging(settings.log_level, settings.env.value)
    asyncio.run(run_worker(args, settings))


if __name__ == "__main__":
    main()
