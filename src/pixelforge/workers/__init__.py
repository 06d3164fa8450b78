"""Background workers: the scheduler loop and isolated generation workers."""

from pixelforge.workers.generation_worker import run_generation_worker
from pixelforge.workers.scheduler import run_scheduler, run_sweep

__all__ = [
    "run_generation_worker",
    "run_scheduler",
    "run_sweep",
]
