"""
Protocol Data Model

Entities exchanged between workers and the controller. Two protocol
generations share this module:

- Job-oriented (legacy): agents, mutable job definitions, job iterations,
  metadata and status-exchange documents.
- Execution-oriented: workers, immutable executions, index entries and
  iterations.

Every entity converts to and from its JSON wire shape with to_dict() and
from_dict(). Wire keys are camelCase, attributes are snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _prune(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in data.items() if v is not None}


# =========================================================================
# Status
# =========================================================================

class JobStatus(Enum):
    """Lifecycle status shared by jobs and executions."""
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'

    @property
    def rank(self) -> int:
        """Position in PENDING < RUNNING < {COMPLETED, FAILED, CANCELLED}."""
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2

    def can_transition_to(self, other: 'JobStatus') -> bool:
        """
        Check whether moving from this status to another is allowed.

        Transitions only move forward. Re-asserting the same non-terminal
        status is accepted; nothing leaves a terminal status.
        """
        if other.rank > self.rank:
            return True
        return other == self and not self.is_terminal


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELLED: 2,
}


class CompletionSeverity(Enum):
    """Qualifier attached to a finished execution."""
    SUCCESS = 'SUCCESS'
    WARNING = 'WARNING'
    FAILED = 'FAILED'

    @property
    def terminal_status(self) -> JobStatus:
        """Terminal status an execution reaches when completed with this severity."""
        if self == CompletionSeverity.FAILED:
            return JobStatus.FAILED
        return JobStatus.COMPLETED


def _status(value: Optional[str], default: Optional[JobStatus] = None) -> Optional[JobStatus]:
    return JobStatus(value) if value else default


def _severity(value: Optional[str]) -> Optional[CompletionSeverity]:
    return CompletionSeverity(value) if value else None


# =========================================================================
# Scheduling metadata
# =========================================================================

@dataclass
class ScheduleInfo:
    """When a job or execution is meant to fire."""
    cron: Optional[str] = None
    interval_seconds: Optional[int] = None

    def to_dict(self) -> Dict:
        return _prune({'cron': self.cron, 'intervalSeconds': self.interval_seconds})

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional['ScheduleInfo']:
        if not data:
            return None
        return cls(cron=data.get('cron'), interval_seconds=data.get('intervalSeconds'))


# =========================================================================
# Job-oriented protocol
# =========================================================================

@dataclass
class AgentHealth:
    """Point-in-time liveness signal of an agent."""
    status: str = 'OK'
    timestamp: datetime = field(default_factory=utcnow)
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'timestamp': _format_time(self.timestamp),
            'metrics': dict(self.metrics),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AgentHealth':
        return cls(
            status=data.get('status', 'OK'),
            timestamp=_parse_time(data.get('timestamp')) or utcnow(),
            metrics=dict(data.get('metrics') or {}),
        )


@dataclass
class AgentDefinition:
    """A worker agent as known by the job-oriented protocol."""
    name: str
    cluster: str
    tenant: str
    supported_types: List[str] = field(default_factory=list)
    id: Optional[str] = None
    health: Optional[AgentHealth] = None
    registered: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return _prune({
            'id': self.id,
            'name': self.name,
            'cluster': self.cluster,
            'tenant': self.tenant,
            'supportedTypes': list(self.supported_types),
            'health': self.health.to_dict() if self.health else None,
            'registered': _format_time(self.registered),
            'lastHeartbeat': _format_time(self.last_heartbeat),
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'AgentDefinition':
        health = data.get('health')
        return cls(
            id=data.get('id'),
            name=data['name'],
            cluster=data['cluster'],
            tenant=data['tenant'],
            supported_types=list(data.get('supportedTypes') or []),
            health=AgentHealth.from_dict(health) if health else None,
            registered=_parse_time(data.get('registered')),
            last_heartbeat=_parse_time(data.get('lastHeartbeat')),
        )


@dataclass
class JobDefinition:
    """Mutable job document owned by the controller."""
    id: str
    type: str
    cluster: str
    tenant: str
    status: JobStatus = JobStatus.PENDING
    schedule: Optional[ScheduleInfo] = None
    agent_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    modified: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return _prune({
            'id': self.id,
            'type': self.type,
            'cluster': self.cluster,
            'tenant': self.tenant,
            'status': self.status.value,
            'schedule': self.schedule.to_dict() if self.schedule else None,
            'agentId': self.agent_id,
            'parameters': dict(self.parameters),
            'modified': _format_time(self.modified),
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobDefinition':
        return cls(
            id=data['id'],
            type=data['type'],
            cluster=data['cluster'],
            tenant=data['tenant'],
            status=_status(data.get('status'), JobStatus.PENDING),
            schedule=ScheduleInfo.from_dict(data.get('schedule')),
            agent_id=data.get('agentId'),
            parameters=dict(data.get('parameters') or {}),
            modified=_parse_time(data.get('modified')),
        )


@dataclass(frozen=True)
class JobIteration:
    """One recorded run of a job. Never modified once created."""
    job_id: str
    started: datetime
    finished: Optional[datetime] = None
    status: JobStatus = JobStatus.COMPLETED
    agent_id: Optional[str] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict:
        return _prune({
            'id': self.id,
            'jobId': self.job_id,
            'agentId': self.agent_id,
            'started': _format_time(self.started),
            'finished': _format_time(self.finished),
            'status': self.status.value,
            'message': self.message,
            'payload': self.payload,
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobIteration':
        return cls(
            id=data.get('id'),
            job_id=data['jobId'],
            agent_id=data.get('agentId'),
            started=_parse_time(data['started']),
            finished=_parse_time(data.get('finished')),
            status=_status(data.get('status'), JobStatus.COMPLETED),
            message=data.get('message'),
            payload=data.get('payload'),
        )


@dataclass
class JobMetadataRequest:
    """Query for the job documents of given types within a scope."""
    cluster: str
    tenant: str
    job_types: List[str] = field(default_factory=list)
    agent_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return _prune({
            'cluster': self.cluster,
            'tenant': self.tenant,
            'jobTypes': list(self.job_types),
            'agentId': self.agent_id,
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobMetadataRequest':
        return cls(
            cluster=data['cluster'],
            tenant=data['tenant'],
            job_types=list(data.get('jobTypes') or []),
            agent_id=data.get('agentId'),
        )


@dataclass
class JobMetadataResponse:
    jobs: List[JobDefinition] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'jobs': [job.to_dict() for job in self.jobs]}

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobMetadataResponse':
        return cls(jobs=[JobDefinition.from_dict(j) for j in data.get('jobs') or []])


@dataclass
class JobStatusExchangeRequest:
    """The statuses an agent believes its jobs are in."""
    cluster: str
    tenant: str
    agent_id: Optional[str] = None
    statuses: Dict[str, JobStatus] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return _prune({
            'cluster': self.cluster,
            'tenant': self.tenant,
            'agentId': self.agent_id,
            'statuses': {job_id: status.value for job_id, status in self.statuses.items()},
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobStatusExchangeRequest':
        return cls(
            cluster=data['cluster'],
            tenant=data['tenant'],
            agent_id=data.get('agentId'),
            statuses={k: JobStatus(v) for k, v in (data.get('statuses') or {}).items()},
        )


@dataclass
class JobStatusExchangeResponse:
    """Controller corrections to an agent's view of its jobs."""
    added: List[JobDefinition] = field(default_factory=list)
    updated: List[JobDefinition] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'added': [job.to_dict() for job in self.added],
            'updated': [job.to_dict() for job in self.updated],
            'removed': list(self.removed),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'JobStatusExchangeResponse':
        return cls(
            added=[JobDefinition.from_dict(j) for j in data.get('added') or []],
            updated=[JobDefinition.from_dict(j) for j in data.get('updated') or []],
            removed=list(data.get('removed') or []),
        )


# =========================================================================
# Execution-oriented protocol
# =========================================================================

@dataclass(frozen=True)
class WorkerHeartbeat:
    """Liveness signal of a worker, superseded by the next one."""
    status: str = 'OK'
    timestamp: datetime = field(default_factory=utcnow)
    load: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'status': self.status,
            'timestamp': _format_time(self.timestamp),
            'load': dict(self.load),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'WorkerHeartbeat':
        return cls(
            status=data.get('status', 'OK'),
            timestamp=_parse_time(data.get('timestamp')) or utcnow(),
            load=dict(data.get('load') or {}),
        )


@dataclass
class WorkerInput:
    """Registration payload of a worker."""
    name: str
    cluster: str
    tenant: str
    supported_types: List[str] = field(default_factory=list)
    parallelism: int = 1

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'cluster': self.cluster,
            'tenant': self.tenant,
            'supportedTypes': list(self.supported_types),
            'parallelism': self.parallelism,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'WorkerInput':
        return cls(
            name=data['name'],
            cluster=data['cluster'],
            tenant=data['tenant'],
            supported_types=list(data.get('supportedTypes') or []),
            parallelism=int(data.get('parallelism', 1)),
        )


@dataclass
class WorkerDefinition:
    """A registered worker as returned by the controller."""
    id: str
    name: str
    cluster: str
    tenant: str
    supported_types: List[str] = field(default_factory=list)
    parallelism: int = 1
    status: str = 'OK'
    registered: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return _prune({
            'id': self.id,
            'name': self.name,
            'cluster': self.cluster,
            'tenant': self.tenant,
            'supportedTypes': list(self.supported_types),
            'parallelism': self.parallelism,
            'status': self.status,
            'registered': _format_time(self.registered),
            'lastHeartbeat': _format_time(self.last_heartbeat),
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'WorkerDefinition':
        return cls(
            id=data['id'],
            name=data['name'],
            cluster=data['cluster'],
            tenant=data['tenant'],
            supported_types=list(data.get('supportedTypes') or []),
            parallelism=int(data.get('parallelism', 1)),
            status=data.get('status', 'OK'),
            registered=_parse_time(data.get('registered')),
            last_heartbeat=_parse_time(data.get('lastHeartbeat')),
        )


@dataclass(frozen=True)
class ExecutionIndexEntry:
    """Id and version of an execution, used for change detection."""
    id: str
    version: int

    def to_dict(self) -> Dict:
        return {'id': self.id, 'version': self.version}

    @classmethod
    def from_dict(cls, data: Dict) -> 'ExecutionIndexEntry':
        return cls(id=data['id'], version=int(data['version']))


@dataclass
class Execution:
    """One schedulable unit of work tracked by the controller."""
    id: str
    job_type: str
    cluster: str
    tenant: str
    status: JobStatus = JobStatus.PENDING
    version: int = 0
    severity: Optional[CompletionSeverity] = None
    schedule: Optional[ScheduleInfo] = None
    worker_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    created: Optional[datetime] = None
    modified: Optional[datetime] = None

    @property
    def index_entry(self) -> ExecutionIndexEntry:
        return ExecutionIndexEntry(id=self.id, version=self.version)

    def to_dict(self) -> Dict:
        return _prune({
            'id': self.id,
            'jobType': self.job_type,
            'cluster': self.cluster,
            'tenant': self.tenant,
            'status': self.status.value,
            'version': self.version,
            'severity': self.severity.value if self.severity else None,
            'schedule': self.schedule.to_dict() if self.schedule else None,
            'workerId': self.worker_id,
            'parameters': dict(self.parameters),
            'created': _format_time(self.created),
            'modified': _format_time(self.modified),
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'Execution':
        return cls(
            id=data['id'],
            job_type=data['jobType'],
            cluster=data['cluster'],
            tenant=data['tenant'],
            status=_status(data.get('status'), JobStatus.PENDING),
            version=int(data.get('version', 0)),
            severity=_severity(data.get('severity')),
            schedule=ScheduleInfo.from_dict(data.get('schedule')),
            worker_id=data.get('workerId'),
            parameters=dict(data.get('parameters') or {}),
            created=_parse_time(data.get('created')),
            modified=_parse_time(data.get('modified')),
        )


@dataclass
class ExecutionsResponse:
    """Full bodies of a batch of executions."""
    executions: List[Execution] = field(default_factory=list)

    @property
    def ids(self) -> List[str]:
        return [e.id for e in self.executions]

    def to_dict(self) -> Dict:
        return {'executions': [e.to_dict() for e in self.executions]}

    @classmethod
    def from_dict(cls, data: Dict) -> 'ExecutionsResponse':
        return cls(executions=[Execution.from_dict(e) for e in data.get('executions') or []])


@dataclass
class IterationInput:
    """An execution attempt the worker wants recorded."""
    execution_id: str
    started: datetime
    finished: Optional[datetime] = None
    status: JobStatus = JobStatus.COMPLETED
    worker_id: Optional[str] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict:
        return _prune({
            'executionId': self.execution_id,
            'workerId': self.worker_id,
            'started': _format_time(self.started),
            'finished': _format_time(self.finished),
            'status': self.status.value,
            'message': self.message,
            'payload': self.payload,
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'IterationInput':
        return cls(
            execution_id=data['executionId'],
            worker_id=data.get('workerId'),
            started=_parse_time(data['started']),
            finished=_parse_time(data.get('finished')),
            status=_status(data.get('status'), JobStatus.COMPLETED),
            message=data.get('message'),
            payload=data.get('payload'),
        )


@dataclass(frozen=True)
class Iteration:
    """A persisted execution attempt. Append-only, never modified."""
    id: str
    execution_id: str
    started: datetime
    finished: Optional[datetime] = None
    status: JobStatus = JobStatus.COMPLETED
    worker_id: Optional[str] = None
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict:
        return _prune({
            'id': self.id,
            'executionId': self.execution_id,
            'workerId': self.worker_id,
            'started': _format_time(self.started),
            'finished': _format_time(self.finished),
            'status': self.status.value,
            'message': self.message,
            'payload': self.payload,
        })

    @classmethod
    def from_dict(cls, data: Dict) -> 'Iteration':
        return cls(
            id=data['id'],
            execution_id=data['executionId'],
            worker_id=data.get('workerId'),
            started=_parse_time(data['started']),
            finished=_parse_time(data.get('finished')),
            status=_status(data.get('status'), JobStatus.COMPLETED),
            message=data.get('message'),
            payload=data.get('payload'),
        )
