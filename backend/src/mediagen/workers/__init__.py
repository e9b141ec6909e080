"""Background workers for periodic maintenance tasks."""

from mediagen.workers.sweep_worker import build_job_store, run_sweep_worker, sweep_once

__all__ = [
    "build_job_store",
    "run_sweep_worker",
    "sweep_once",
]
