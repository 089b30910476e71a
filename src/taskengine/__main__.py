"""Entry point: python -m taskengine"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from taskengine.errors import TaskEngineError
from taskengine.infrastructure.clock import utc_now
from taskengine.infrastructure.config import DEFAULT_TIMEZONE
from taskengine.infrastructure.logger import logger


async def main() -> None:
    from taskengine.app import Orchestrator

    orchestrator = Orchestrator()

    # Handle graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.start()

        # Wait for shutdown signal
        await shutdown_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await orchestrator.shutdown()


def run_preview(argv: list[str]) -> int:
    """Print the label and the next few occurrences of an expression."""
    from taskengine.scheduling.compiler import describe_schedule
    from taskengine.scheduling.next_run import NextRunCalculator

    parser = argparse.ArgumentParser(prog="taskengine preview", description="Preview a recurrence expression")
    parser.add_argument("expression", help='Five-field expression, e.g. "0 9 * * 1"')
    parser.add_argument("--timezone", default=DEFAULT_TIMEZONE, help="IANA timezone (default: %(default)s)")
    parser.add_argument("--count", type=int, default=5, help="Number of occurrences to show")
    args = parser.parse_args(argv)

    try:
        runs = NextRunCalculator().upcoming(args.expression, args.timezone, utc_now(), args.count)
    except TaskEngineError as err:
        print(err.message, file=sys.stderr)
        return 1

    print(describe_schedule(args.expression, args.timezone, next_run_at=runs[0] if runs else None))
    for occurrence in runs:
        print(f"  {occurrence.isoformat()}")
    return 0


def run() -> None:
    if len(sys.argv) > 1 and sys.argv[1] == "preview":
        sys.exit(run_preview(sys.argv[2:]))

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
