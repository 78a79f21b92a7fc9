"""
Execution Channel

Execution-oriented protocol. Change detection is two-phase: a cheap index
of (id, version) pairs, then a batch fetch of only the executions whose
version changed.

Endpoints:
    GET  /api/v1/scheduler/executions?tenant=&cluster=
    GET  /api/v1/scheduler/executions?ids=a,b
    PUT  /api/v1/scheduler/executions/{id}
    POST /api/v1/scheduler/iterations
    POST /api/v1/scheduler/workers
    POST /api/v1/scheduler/workers/{id}
"""

from typing import List, Optional
from urllib.parse import quote

from ..api_client import ControllerAPIClient
from ..models import (
    CompletionSeverity,
    Execution,
    ExecutionIndexEntry,
    ExecutionsResponse,
    Iteration,
    IterationInput,
    JobStatus,
    WorkerDefinition,
    WorkerHeartbeat,
    WorkerInput,
)
from .base import SchedulerChannel, unwrap

EXECUTIONS = '/api/v1/scheduler/executions'


def _decode_index(data) -> List[ExecutionIndexEntry]:
    return [ExecutionIndexEntry.from_dict(entry) for entry in data]


class ExecutionChannel(SchedulerChannel):
    """SchedulerChannel over the controller's REST API."""

    def __init__(self, api_client: ControllerAPIClient):
        self.api = api_client

    def execution_index(self, tenant: str, cluster: str) -> Optional[List[ExecutionIndexEntry]]:
        response = self.api.get(EXECUTIONS, params={'tenant': tenant, 'cluster': cluster})
        return unwrap(response, _decode_index, f'execution index {tenant}/{cluster}')

    def executions(self, ids: List[str]) -> Optional[ExecutionsResponse]:
        """
        Fetch full execution bodies.

        An empty id list is answered locally without a request.
        """
        if not ids:
            return ExecutionsResponse()
        response = self.api.get(EXECUTIONS, params={'ids': ','.join(ids)})
        return unwrap(response, ExecutionsResponse.from_dict, f'fetch {len(ids)} executions')

    def complete(self, execution_id: str, severity: CompletionSeverity) -> Optional[Execution]:
        # The controller resolves COMPLETED vs FAILED from the severity
        response = self.api.put(
            f'{EXECUTIONS}/{quote(execution_id, safe="")}',
            {'status': JobStatus.COMPLETED.value, 'severity': severity.value}
        )
        return unwrap(response, Execution.from_dict, f'complete execution {execution_id}')

    def iterate(self, iteration: IterationInput) -> Optional[Iteration]:
        response = self.api.post('/api/v1/scheduler/iterations', iteration.to_dict())
        return unwrap(response, Iteration.from_dict, f'iterate execution {iteration.execution_id}')

    def registration(self, worker: WorkerInput) -> Optional[WorkerDefinition]:
        response = self.api.post('/api/v1/scheduler/workers', worker.to_dict())
        return unwrap(response, WorkerDefinition.from_dict, f'register worker {worker.name}')

    def heartbeat(self, worker_id: str, heartbeat: WorkerHeartbeat) -> Optional[WorkerDefinition]:
        response = self.api.post(
            f'/api/v1/scheduler/workers/{quote(worker_id, safe="")}',
            heartbeat.to_dict()
        )
        return unwrap(response, WorkerDefinition.from_dict, f'heartbeat worker {worker_id}')
