"""CLI command for running scheduler sweeps outside the API process.

Usage:
    python -m pixelforge.cli.sweep [OPTIONS]

Examples:
    # Run a single sweep over every scheduled state and exit
    python -m pixelforge.cli.sweep --once

    # Run the scheduler loop (SCHEDULER_INTERVAL_SECONDS between sweeps)
    python -m pixelforge.cli.sweep

    # Verbose logging
    python -m pixelforge.cli.sweep --once -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pixelforge.container import build_services
from pixelforge.core import timezone  # noqa: F401
from pixelforge.core.config import Settings, configure_logging
from pixelforge.workers.scheduler import run_scheduler, run_sweep

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Advance generation tasks through the pipeline",
        epilog="Runs the same sweep as the API process's background scheduler",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sweep and exit instead of looping",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    services = build_services(settings)
    logger.info("cli.started", once=args.once)

    try:
        if not args.once:
            await run_scheduler(services)
            return 0

        processed = await run_sweep(services)
        await services.launcher.drain()

        print("\n" + "=" * 60)
        print("Sweep Summary")
        print("=" * 60)
        if processed:
            for state, count in processed.items():
                print(f"{state}: {count}")
        else:
            print("No tasks to process")
        print("=" * 60 + "\n")
        return 0

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("cli.interrupted")
        print("\nSweep interrupted by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
