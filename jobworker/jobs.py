"""
Sample Jobs

A WAIT_JOB job type that just waits, using a WAITER module. Registered by
the default entry point so a fresh worker has something to run.
"""

import logging
import threading

from .executor import ExecutionContext, JobRegistry

logger = logging.getLogger(__name__)

WAIT_JOB = 'WAIT_JOB'
WAITER = 'WAITER'


class WaiterModule:
    """Sleeps in a way that can be interrupted on shutdown."""

    def __init__(self):
        self._stop = threading.Event()

    def wait(self, seconds: float) -> bool:
        """Returns False if interrupted before the time elapsed."""
        return not self._stop.wait(seconds)

    def interrupt(self):
        self._stop.set()


class WaitJob:
    """Waits for parameters['seconds'] (default 1)."""

    def __call__(self, context: ExecutionContext):
        seconds = float(context.parameters.get('seconds', 1))
        waiter = context.modules[WAITER]

        logger.info(f"Execution {context.execution.id} waiting {seconds}s")
        if not waiter.wait(seconds):
            raise RuntimeError('wait interrupted')
        return f'waited {seconds}s'


def register_sample_jobs(registry: JobRegistry) -> WaiterModule:
    waiter = WaiterModule()
    registry.register_job(WAIT_JOB, WaitJob())
    registry.register_module(WAIT_JOB, WAITER, waiter)
    return waiter
