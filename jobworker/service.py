"""
Worker Service

Main worker service that manages the lifecycle of a worker process:
- Registration with the controller (bounded retries, fatal when exhausted)
- Periodic heartbeats
- Execution polling: index, diff, fetch, submit
- Graceful shutdown with a final OFFLINE heartbeat
"""

import logging
import os
import signal
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import psutil
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .channels import SchedulerChannel
from .config import ClusteringType, WorkerConfig
from .errors import ConfigurationError, RegistrationError
from .executor import ExecutionResult, ExecutionRunner, JobRegistry
from .models import CompletionSeverity, Execution, JobStatus, WorkerDefinition, WorkerHeartbeat, WorkerInput

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 60


class WorkerState(Enum):
    """Worker state machine states."""
    STARTING = 'starting'
    REGISTERING = 'registering'
    STANDBY = 'standby'  # heartbeat-only under exclusive clustering
    IDLE = 'idle'
    BUSY = 'busy'
    STOPPING = 'stopping'
    ERROR = 'error'


class WorkerService:
    """
    Main worker service.

    Drives the execution protocol: decides when to register, heartbeat and
    poll, while the channel decides how each exchange goes over the wire.
    """

    def __init__(self, config: WorkerConfig, channel: SchedulerChannel,
                 registry: JobRegistry, scheduler: Optional[BackgroundScheduler] = None):
        """
        Initialize worker service.

        Args:
            config: Worker configuration
            channel: Execution protocol channel to the controller
            registry: Job functions this worker can run
            scheduler: Scheduler for the heartbeat and poll loops
        """
        self.config = config
        self.channel = channel
        self.registry = registry
        self.scheduler = scheduler or BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers=2)},
            job_defaults={'coalesce': True, 'max_instances': 1},
            timezone='UTC'
        )

        # Initialized after registration
        self.runner: Optional[ExecutionRunner] = None

        self._state = WorkerState.STARTING
        self._worker: Optional[WorkerDefinition] = None
        self._known_versions: Dict[str, int] = {}
        # Completions the controller has not acknowledged yet
        self._unacknowledged: Dict[str, CompletionSeverity] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    @property
    def state(self) -> WorkerState:
        """Get current worker state."""
        return self._state

    @property
    def worker_id(self) -> Optional[str]:
        """Get worker ID (assigned after registration)."""
        return self._worker.id if self._worker else None

    @property
    def known_versions(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._known_versions)

    def _set_state(self, state: WorkerState):
        """Set worker state and log transition."""
        old_state = self._state
        if old_state == state:
            return
        self._state = state
        logger.info(f"State: {old_state.value} -> {state.value}")

    def _update_state(self):
        if self._state in (WorkerState.STOPPING, WorkerState.ERROR) or not self.runner:
            return
        if self.runner.active_count > 0:
            self._set_state(WorkerState.BUSY)
        elif self.config.polls:
            self._set_state(WorkerState.IDLE)
        else:
            self._set_state(WorkerState.STANDBY)

    def _get_system_stats(self) -> Dict:
        """Get current load metrics for heartbeats."""
        try:
            cpu_percent = psutil.cpu_percent(interval=None)
            memory = psutil.virtual_memory()
            stats = {
                'load_1m': os.getloadavg()[0] if hasattr(os, 'getloadavg') else cpu_percent / 100,
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
            }
        except (psutil.Error, OSError) as e:
            logger.warning(f"Error getting system stats: {e}")
            stats = {}

        if self.runner:
            stats['active_executions'] = self.runner.active_count
            stats['free_slots'] = self.runner.available_slots
        return stats

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self) -> WorkerDefinition:
        """
        Register with the controller.

        Retries up to config.registration_tries times. Running unregistered is
        not allowed, so exhausting the attempts raises.

        Raises:
            RegistrationError: if every attempt failed
        """
        self._set_state(WorkerState.REGISTERING)

        worker_input = WorkerInput(
            name=self.config.worker_name,
            cluster=self.config.cluster,
            tenant=self.config.tenant,
            supported_types=self.registry.supported_types,
            parallelism=self.config.parallelism,
        )
        tries = self.config.registration_tries

        for attempt in range(1, tries + 1):
            logger.info(f"Registering worker '{worker_input.name}' in {worker_input.cluster}/{worker_input.tenant} "
                        f"(attempt {attempt}/{tries})")
            worker = self.channel.registration(worker_input)
            if worker is not None:
                self._worker = worker
                logger.info(f"Registered successfully with ID: {worker.id}")
                return worker

            if attempt < tries:
                time.sleep(self.config.registration_retry_delay)

        self._set_state(WorkerState.ERROR)
        raise RegistrationError(worker_input.name, tries)

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def heartbeat(self, status: str = 'OK') -> Optional[WorkerDefinition]:
        """
        Send a heartbeat to the controller.

        Returns:
            The refreshed worker, or None (retried on the next tick)
        """
        if not self.worker_id:
            return None

        heartbeat = WorkerHeartbeat(status=status, load=self._get_system_stats())
        worker = self.channel.heartbeat(self.worker_id, heartbeat)

        if worker is None:
            logger.warning(f"Heartbeat for worker {self.worker_id} not acknowledged")
        else:
            self._worker = worker

        self._update_state()
        return worker

    # =========================================================================
    # Polling
    # =========================================================================

    def _remember(self, execution_id: str, version: int):
        with self._lock:
            self._known_versions[execution_id] = version

    def _forget(self, execution_id: str):
        with self._lock:
            self._known_versions.pop(execution_id, None)

    @property
    def unacknowledged_completions(self) -> Dict[str, CompletionSeverity]:
        with self._lock:
            return dict(self._unacknowledged)

    def _should_run(self, execution: Execution) -> bool:
        if execution.status != JobStatus.PENDING:
            return False
        if execution.worker_id != self.worker_id:
            # Shared clusters run only executions assigned to this worker
            if execution.worker_id is not None or self.config.clustering == ClusteringType.SHARED:
                return False
        return self.registry.get(execution.job_type) is not None

    def _resend_completions(self, current: Dict[str, int]):
        """
        Retry completions the controller did not acknowledge.

        A pending completion is dropped once its execution leaves the index
        or the controller changed it in the meantime.
        """
        with self._lock:
            pending = dict(self._unacknowledged)

        for execution_id, severity in pending.items():
            with self._lock:
                if current.get(execution_id) != self._known_versions.get(execution_id):
                    logger.info(f"Dropping completion of execution {execution_id}, changed on the controller")
                    del self._unacknowledged[execution_id]
                    continue

            updated = self.channel.complete(execution_id, severity)
            if updated is None:
                logger.warning(f"Completion of execution {execution_id} still not acknowledged")
                continue

            logger.info(f"Completion of execution {execution_id} acknowledged")
            with self._lock:
                self._unacknowledged.pop(execution_id, None)
                self._known_versions[execution_id] = updated.version
            current[execution_id] = updated.version

    def poll(self) -> List[Execution]:
        """
        Poll for changed executions and start the runnable ones.

        Only executions whose index version differs from the last one seen
        are fetched. An execution that could not be started for lack of a
        free slot is not remembered, so the next poll picks it up again.
        Completions the controller did not acknowledge are resent first.

        Returns:
            Executions that were started
        """
        if not self.worker_id or not self.runner or not self.config.polls:
            return []

        entries = self.channel.execution_index(self.config.tenant, self.config.cluster)
        if entries is None:
            return []

        current = {entry.id: entry.version for entry in entries}
        self._resend_completions(current)

        with self._lock:
            for gone in set(self._known_versions) - set(current):
                del self._known_versions[gone]
            changed = [eid for eid, version in current.items()
                       if self._known_versions.get(eid) != version]

        if not changed:
            return []

        response = self.channel.executions(changed)
        if response is None:
            return []

        started = []
        for execution in response.executions:
            if self.runner.is_active(execution.id):
                continue
            # Remembered before submit: a fast run reports its newer version on completion
            self._remember(execution.id, execution.version)
            if not self._should_run(execution):
                continue
            if self.runner.submit(execution):
                started.append(execution)
            else:
                self._forget(execution.id)

        if started:
            logger.info(f"Started {len(started)} execution(s)")
        self._update_state()
        return started

    def _on_execution_complete(self, result: ExecutionResult):
        # The completed version is already known, do not fetch it again
        if result.version is not None:
            self._remember(result.execution_id, result.version)
        else:
            with self._lock:
                self._unacknowledged[result.execution_id] = result.severity
            logger.info(f"Completion of execution {result.execution_id} will be resent on the next poll")
        self._update_state()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _init_runner(self):
        """Initialize the execution runner after registration."""
        self.runner = ExecutionRunner(
            channel=self.channel,
            registry=self.registry,
            worker_id=self.worker_id,
            parallelism=self.config.parallelism
        )
        self.runner.on_complete(self._on_execution_complete)
        logger.info(f"Execution runner initialized (parallelism: {self.config.parallelism})")

    def start(self):
        """
        Start the worker service without blocking.

        Raises:
            ConfigurationError: if the configuration is invalid
            RegistrationError: if registration failed
        """
        logger.info(f"Starting worker '{self.config.worker_name}' ({self.config.role.value}, "
                    f"{self.config.clustering.value} clustering)")

        errors = self.config.validate()
        if errors:
            raise ConfigurationError(errors)

        self.register()
        self._init_runner()

        now = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self.heartbeat,
            IntervalTrigger(seconds=self.config.heartbeat_interval),
            id='heartbeat',
            next_run_time=now
        )

        if self.config.polls:
            self.scheduler.add_job(
                self.poll,
                IntervalTrigger(seconds=self.config.poll_interval),
                id='poll',
                next_run_time=now
            )
        else:
            logger.info("Not polling for executions (standby)")

        self.scheduler.start()
        self._update_state()
        logger.info("Worker service started successfully")

    def stop(self):
        """Stop the worker service."""
        if self._state == WorkerState.STOPPING or self._stopped.is_set():
            return

        logger.info("Stopping worker service...")
        self._set_state(WorkerState.STOPPING)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        # Wait for running executions to complete (with timeout)
        if self.runner and self.runner.active_count > 0:
            logger.info(f"Waiting for {self.runner.active_count} active executions to complete...")
            if self.runner.wait_for_executions(timeout=SHUTDOWN_TIMEOUT):
                logger.info("All executions completed")
            else:
                logger.warning("Timeout waiting for executions - some may still be running")

        # Final heartbeat
        if self.worker_id:
            self.channel.heartbeat(self.worker_id, WorkerHeartbeat(status='OFFLINE'))

        self._stopped.set()
        logger.info("Worker service stopped")

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating shutdown...")
        threading.Thread(target=self.stop, name='worker-shutdown', daemon=True).start()

    def run(self):
        """Run the worker service (blocking until stopped)."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        self.start()
        try:
            while not self._stopped.wait(1):
                pass
        except KeyboardInterrupt:
            self.stop()
