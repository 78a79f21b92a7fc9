"""
Channel Interfaces

Two protocol generations are spoken with the controller. Each has its own
capability interface:

- WorkerChannel: job-oriented protocol (mutable job documents, agents)
- SchedulerChannel: execution-oriented protocol (immutable executions, workers)

Every operation blocks the calling thread and returns either a value or
None. None means the result is absent: the controller was unreachable,
answered with an error, or does not know the entity. Callers treat it as
"retry later".
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, TypeVar

from ..api_client import APIResponse
from ..models import (
    AgentDefinition,
    AgentHealth,
    CompletionSeverity,
    Execution,
    ExecutionIndexEntry,
    ExecutionsResponse,
    Iteration,
    IterationInput,
    JobDefinition,
    JobIteration,
    JobMetadataRequest,
    JobMetadataResponse,
    JobStatus,
    JobStatusExchangeRequest,
    JobStatusExchangeResponse,
    WorkerDefinition,
    WorkerHeartbeat,
    WorkerInput,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


def unwrap(response: APIResponse, decode: Callable[[object], T], operation: str) -> Optional[T]:
    """
    Turn an API response into a decoded result or None.

    Not-found answers are logged at INFO, other failures and undecodable
    bodies at WARNING, so the two kinds of absence stay apart in the logs.
    """
    if not response.success:
        if response.not_found:
            logger.info(f"{operation}: not found ({response.error})")
        else:
            logger.warning(f"{operation} failed [{response.status_code}]: {response.error}")
        return None

    if response.data is None:
        logger.warning(f"{operation}: empty response body")
        return None

    try:
        return decode(response.data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning(f"{operation}: malformed response body: {e}")
        return None


class WorkerChannel(ABC):
    """Job-oriented protocol between an agent and the controller."""

    @abstractmethod
    def metadata(self, request: JobMetadataRequest) -> Optional[JobMetadataResponse]:
        """Fetch job documents of the requested types."""
        pass

    @abstractmethod
    def status_exchange(self, request: JobStatusExchangeRequest) -> Optional[JobStatusExchangeResponse]:
        """Report believed job statuses and receive the controller's corrections."""
        pass

    @abstractmethod
    def iterate(self, iteration: JobIteration) -> Optional[JobIteration]:
        """Append an iteration record to a job."""
        pass

    @abstractmethod
    def mark_as(self, job_id: str, status: JobStatus) -> Optional[JobDefinition]:
        """Move a job to a new status."""
        pass

    @abstractmethod
    def registration(self, agent: AgentDefinition) -> Optional[AgentDefinition]:
        """Register (or re-register) an agent."""
        pass

    @abstractmethod
    def heartbeat(self, agent_id: str, health: AgentHealth) -> Optional[AgentDefinition]:
        """Refresh an agent's health."""
        pass


class SchedulerChannel(ABC):
    """Execution-oriented protocol between a worker and the controller."""

    @abstractmethod
    def execution_index(self, tenant: str, cluster: str) -> Optional[List[ExecutionIndexEntry]]:
        """List (id, version) of every execution in scope."""
        pass

    @abstractmethod
    def executions(self, ids: List[str]) -> Optional[ExecutionsResponse]:
        """Fetch the full bodies of the given executions."""
        pass

    @abstractmethod
    def complete(self, execution_id: str, severity: CompletionSeverity) -> Optional[Execution]:
        """Move an execution to its terminal status."""
        pass

    @abstractmethod
    def iterate(self, iteration: IterationInput) -> Optional[Iteration]:
        """Record one execution attempt."""
        pass

    @abstractmethod
    def registration(self, worker: WorkerInput) -> Optional[WorkerDefinition]:
        """Register (or re-register) a worker."""
        pass

    @abstractmethod
    def heartbeat(self, worker_id: str, heartbeat: WorkerHeartbeat) -> Optional[WorkerDefinition]:
        """Refresh a worker's liveness."""
        pass
