"""
Execution Runner

Runs executions fetched from the controller:
- Looks up the job function registered for the execution's job type
- Runs it on a background thread, bounded by the configured parallelism
- Records the attempt as an iteration
- Completes the execution with a severity derived from the outcome
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .channels import SchedulerChannel
from .models import CompletionSeverity, Execution, IterationInput, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """What a job function receives."""
    execution: Execution
    worker_id: str
    modules: Dict[str, Any] = field(default_factory=dict)

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.execution.parameters


# A job function may return a severity (e.g. WARNING) or a message
JobFunction = Callable[[ExecutionContext], Any]


@dataclass
class ExecutionResult:
    """Outcome of one execution run."""
    execution_id: str
    severity: CompletionSeverity
    started_at: datetime
    completed_at: datetime
    message: Optional[str] = None
    iteration_id: Optional[str] = None
    version: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.severity != CompletionSeverity.FAILED


class JobRegistry:
    """Job functions and their modules, keyed by job type."""

    def __init__(self):
        self._jobs: Dict[str, JobFunction] = {}
        self._modules: Dict[str, Dict[str, Any]] = {}

    def register_job(self, job_type: str, fn: JobFunction) -> 'JobRegistry':
        self._jobs[job_type] = fn
        return self

    def register_module(self, job_type: str, name: str, module: Any) -> 'JobRegistry':
        """Make a named helper object available to jobs of one type."""
        self._modules.setdefault(job_type, {})[name] = module
        return self

    def get(self, job_type: str) -> Optional[JobFunction]:
        return self._jobs.get(job_type)

    def modules_for(self, job_type: str) -> Dict[str, Any]:
        return dict(self._modules.get(job_type, {}))

    @property
    def supported_types(self) -> List[str]:
        return sorted(self._jobs)


class ExecutionRunner:
    """
    Executes jobs for fetched executions.

    Handles the full lifecycle:
    1. Receive execution from the service
    2. Run the registered job function
    3. Record the iteration on the controller
    4. Complete the execution
    """

    def __init__(self, channel: SchedulerChannel, registry: JobRegistry,
                 worker_id: str, parallelism: int = 1):
        """
        Args:
            channel: Execution protocol channel
            registry: Registered job functions and modules
            worker_id: This worker's controller-assigned id
            parallelism: Maximum concurrently running executions
        """
        self.channel = channel
        self.registry = registry
        self.worker_id = worker_id
        self.parallelism = parallelism

        self._active: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._on_complete_callbacks: List[Callable[[ExecutionResult], None]] = []

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def available_slots(self) -> int:
        return max(self.parallelism - self.active_count, 0)

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def on_complete(self, callback: Callable[[ExecutionResult], None]):
        """Register a callback for execution completion."""
        self._on_complete_callbacks.append(callback)

    def submit(self, execution: Execution) -> bool:
        """
        Start an execution on a background thread.

        Returns:
            True if started; False if no slot is free, no job function is
            registered for its type, or it is already running here
        """
        if self.registry.get(execution.job_type) is None:
            logger.warning(f"No job registered for type {execution.job_type}, skipping {execution.id}")
            return False

        with self._lock:
            if execution.id in self._active or len(self._active) >= self.parallelism:
                return False
            self._active[execution.id] = utcnow()

        thread = threading.Thread(
            target=self.run,
            args=(execution,),
            daemon=True,
            name=f"execution-{execution.id[:8]}"
        )
        thread.start()
        return True

    def run(self, execution: Execution) -> ExecutionResult:
        """
        Run an execution in the calling thread.

        Returns:
            ExecutionResult describing the outcome
        """
        with self._lock:
            started_at = self._active.setdefault(execution.id, utcnow())

        try:
            return self._run(execution, started_at)
        finally:
            with self._lock:
                self._active.pop(execution.id, None)

    def _run(self, execution: Execution, started_at: datetime) -> ExecutionResult:
        logger.info(f"Executing {execution.job_type} execution {execution.id}")
        job = self.registry.get(execution.job_type)
        context = ExecutionContext(
            execution=execution,
            worker_id=self.worker_id,
            modules=self.registry.modules_for(execution.job_type),
        )

        message = None
        try:
            outcome = job(context)
            if isinstance(outcome, CompletionSeverity):
                severity = outcome
            else:
                severity = CompletionSeverity.SUCCESS
                message = str(outcome) if outcome is not None else None
        except Exception as e:
            logger.exception(f"Execution {execution.id} failed: {e}")
            severity = CompletionSeverity.FAILED
            message = str(e) or e.__class__.__name__

        completed_at = utcnow()

        iteration = self.channel.iterate(IterationInput(
            execution_id=execution.id,
            worker_id=self.worker_id,
            started=started_at,
            finished=completed_at,
            status=severity.terminal_status,
            message=message,
        ))
        if iteration is None:
            logger.warning(f"Failed to record iteration for execution {execution.id}")

        updated = self.channel.complete(execution.id, severity)
        if updated is None:
            logger.warning(f"Failed to report completion of execution {execution.id}")

        result = ExecutionResult(
            execution_id=execution.id,
            severity=severity,
            started_at=started_at,
            completed_at=completed_at,
            message=message,
            iteration_id=iteration.id if iteration else None,
            version=updated.version if updated else None,
        )

        for callback in self._on_complete_callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Error in completion callback: {e}")

        duration = (completed_at - started_at).total_seconds()
        logger.info(f"Execution {execution.id} finished {severity.value} (duration: {duration:.1f}s)")
        return result

    def wait_for_executions(self, timeout: float = None) -> bool:
        """
        Wait for all active executions to complete.

        Returns:
            True if all completed, False on timeout
        """
        start = time.time()

        while self.active_count > 0:
            if timeout and (time.time() - start) > timeout:
                return False
            time.sleep(0.5)

        return True


__all__ = ['JobRegistry', 'ExecutionContext', 'ExecutionResult', 'ExecutionRunner']
