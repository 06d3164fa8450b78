"""CLI command for running one isolated worker invocation in the foreground.

Usage:
    python -m pixelforge.cli.run_worker TASK_ID WORKER_NAME

Useful for re-driving a handed-off task by hand; the worker's claim makes a
second run for the same task exit without doing anything.
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from uuid import UUID

import structlog

from pixelforge.container import build_services
from pixelforge.core import timezone  # noqa: F401
from pixelforge.core.config import Settings, configure_logging
from pixelforge.models.task import WORKER_BY_TYPE
from pixelforge.workers.generation_worker import run_generation_worker

logger = structlog.get_logger()

EXIT_CODES = {"completed": 0, "failed": 1, "skipped": 3}


def parse_args(argv: list[str] | None = None) -> Namespace:
    parser = ArgumentParser(description="Run an isolated generation worker for one task")
    parser.add_argument("task_id", type=UUID, help="Handed-off task id")
    parser.add_argument(
        "worker_name",
        choices=sorted(set(WORKER_BY_TYPE.values())),
        help="Worker to run",
    )
    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Run the worker and map its outcome to an exit code.

    Returns:
        Exit code: 0 (completed), 1 (failed), 3 (already claimed)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)
    services = build_services(settings)

    outcome = await run_generation_worker(args.task_id, args.worker_name, services)
    print(f"Task {args.task_id}: {outcome}")
    return EXIT_CODES[outcome]


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
