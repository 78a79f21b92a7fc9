"""
Legacy Job Channel

Job-oriented protocol: the worker acts as an agent, jobs are mutable
documents on the controller, and each run is appended as a job iteration.

Endpoints:
    POST /api/v1/jobs/_metadata
    POST /api/v1/jobs/_exchange
    POST /api/v1/jobs/{jobId}/_iterations
    PUT  /api/v1/jobs/{id}/_status?status=S
    POST /api/v1/agents
    PUT  /api/v1/agents/{id}/health
"""

from typing import Optional
from urllib.parse import quote

from ..api_client import ControllerAPIClient
from ..models import (
    AgentDefinition,
    AgentHealth,
    JobDefinition,
    JobIteration,
    JobMetadataRequest,
    JobMetadataResponse,
    JobStatus,
    JobStatusExchangeRequest,
    JobStatusExchangeResponse,
)
from .base import WorkerChannel, unwrap


class LegacyJobChannel(WorkerChannel):
    """WorkerChannel over the controller's REST API."""

    def __init__(self, api_client: ControllerAPIClient):
        """
        Args:
            api_client: Transport to the controller (the only state held)
        """
        self.api = api_client

    def metadata(self, request: JobMetadataRequest) -> Optional[JobMetadataResponse]:
        response = self.api.post('/api/v1/jobs/_metadata', request.to_dict())
        return unwrap(response, JobMetadataResponse.from_dict, 'metadata')

    def status_exchange(self, request: JobStatusExchangeRequest) -> Optional[JobStatusExchangeResponse]:
        response = self.api.post('/api/v1/jobs/_exchange', request.to_dict())
        return unwrap(response, JobStatusExchangeResponse.from_dict, 'status exchange')

    def iterate(self, iteration: JobIteration) -> Optional[JobIteration]:
        """
        Append an iteration to its job.

        Returns:
            The stored iteration carrying its controller-assigned id
        """
        response = self.api.post(
            f'/api/v1/jobs/{quote(iteration.job_id, safe="")}/_iterations',
            iteration.to_dict()
        )
        return unwrap(response, JobIteration.from_dict, f'iterate job {iteration.job_id}')

    def mark_as(self, job_id: str, status: JobStatus) -> Optional[JobDefinition]:
        response = self.api.put(
            f'/api/v1/jobs/{quote(job_id, safe="")}/_status',
            params={'status': status.value}
        )
        return unwrap(response, JobDefinition.from_dict, f'mark job {job_id} as {status.value}')

    def registration(self, agent: AgentDefinition) -> Optional[AgentDefinition]:
        response = self.api.post('/api/v1/agents', agent.to_dict())
        return unwrap(response, AgentDefinition.from_dict, f'register agent {agent.name}')

    def heartbeat(self, agent_id: str, health: AgentHealth) -> Optional[AgentDefinition]:
        """
        Send an agent's health.

        Returns:
            The updated agent, or None if the id is unknown or the call failed
        """
        response = self.api.put(f'/api/v1/agents/{quote(agent_id, safe="")}/health', health.to_dict())
        return unwrap(response, AgentDefinition.from_dict, f'heartbeat agent {agent_id}')
