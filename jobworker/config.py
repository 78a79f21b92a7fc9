"""
Worker Configuration

Builds the immutable worker configuration from environment variables.
The configuration is created once at startup and handed to the runtime,
transport and channels; nothing else reads the environment.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import List


class WorkerRole(Enum):
    """Role of the worker instance within its cluster."""
    SUPERVISOR = 'SUPERVISOR'
    WORKER = 'WORKER'


class ClusteringType(Enum):
    """How workers of one cluster share polling."""
    EXCLUSIVE = 'EXCLUSIVE'  # only the supervisor polls
    SHARED = 'SHARED'


class PersistenceType(Enum):
    """Backend used by the job executor framework for its own state."""
    MEMORY = 'MEMORY'
    MYSQL = 'MYSQL'
    POSTGRES = 'POSTGRES'


SUPERVISOR_POLL_INTERVAL = 60


def _enum(enum_cls, name: str, default: str):
    raw = os.environ.get(name, default).strip().upper()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ', '.join(e.value for e in enum_cls)
        raise ValueError(f"{name} must be one of {allowed}, got '{raw}'")


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name, '')
    if raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")


@dataclass(frozen=True)
class WorkerConfig:
    """Worker service configuration."""

    # Identity
    worker_name: str
    cluster: str
    tenant: str = 'default'
    role: WorkerRole = WorkerRole.WORKER
    clustering: ClusteringType = ClusteringType.EXCLUSIVE

    # Executor framework persistence
    persistence: PersistenceType = PersistenceType.MEMORY
    data_source: str = ''
    data_source_uri: str = ''
    data_source_username: str = ''
    data_source_password: str = ''

    # Controller location
    controller_service: str = 'controller'
    controller_url: str = ''
    discovery_registry_url: str = ''

    # Timing settings (in seconds)
    poll_interval: int = 0  # 0 disables polling
    heartbeat_interval: int = 15
    registration_retry_delay: int = 5
    request_timeout: int = 30

    # Execution settings
    parallelism: int = 8
    registration_tries: int = 10

    log_level: str = 'INFO'

    @property
    def polls(self) -> bool:
        """Whether this instance polls for executions or stays heartbeat-only."""
        if self.poll_interval <= 0:
            return False
        if self.clustering == ClusteringType.EXCLUSIVE:
            return self.role == WorkerRole.SUPERVISOR
        return True

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """
        Load configuration from environment variables.

        Environment variables:
            WORKER_NAME: Unique name of this worker within its cluster (required)
            WORKER_CLUSTER_NAME: Cluster the worker belongs to (required)
            WORKER_TENANT: Tenant scope (default 'default')
            WORKER_ROLE: SUPERVISOR or WORKER (default WORKER)
            WORKER_CLUSTERING: EXCLUSIVE or SHARED (default EXCLUSIVE)
            WORKER_PERSISTENCE: MEMORY, MYSQL or POSTGRES (default MEMORY)
            WORKER_DATA_SOURCE, WORKER_DATA_SOURCE_URI,
            WORKER_DATA_SOURCE_USERNAME, WORKER_DATA_SOURCE_PASSWORD
            CONTROLLER_SERVICE: Logical name of the controller (default 'controller')
            CONTROLLER_URL: Static controller address
            DISCOVERY_REGISTRY_URL: Service registry used instead of CONTROLLER_URL
            POLL_INTERVAL: Seconds between polls (default 60 for supervisors, else 0)
            HEARTBEAT_INTERVAL: Seconds between heartbeats (default 15)
            PARALLELISM: Concurrent execution slots (default 8)
            REGISTRATION_TRIES: Registration attempts before giving up (default 10)
            REGISTRATION_RETRY_DELAY: Seconds between attempts (default 5)
            REQUEST_TIMEOUT: HTTP timeout in seconds (default 30)
            LOG_LEVEL: Logging level (default INFO)
        """
        worker_name = os.environ.get('WORKER_NAME', '')
        cluster = os.environ.get('WORKER_CLUSTER_NAME', '')

        if not worker_name:
            raise ValueError("WORKER_NAME environment variable is required")
        if not cluster:
            raise ValueError("WORKER_CLUSTER_NAME environment variable is required")

        # Anything other than SUPERVISOR is a plain worker
        if os.environ.get('WORKER_ROLE', '').strip().upper() == WorkerRole.SUPERVISOR.value:
            role = WorkerRole.SUPERVISOR
        else:
            role = WorkerRole.WORKER

        default_poll = SUPERVISOR_POLL_INTERVAL if role == WorkerRole.SUPERVISOR else 0

        return cls(
            worker_name=worker_name,
            cluster=cluster,
            tenant=os.environ.get('WORKER_TENANT', 'default'),
            role=role,
            clustering=_enum(ClusteringType, 'WORKER_CLUSTERING', 'EXCLUSIVE'),
            persistence=_enum(PersistenceType, 'WORKER_PERSISTENCE', 'MEMORY'),
            data_source=os.environ.get('WORKER_DATA_SOURCE', ''),
            data_source_uri=os.environ.get('WORKER_DATA_SOURCE_URI', ''),
            data_source_username=os.environ.get('WORKER_DATA_SOURCE_USERNAME', ''),
            data_source_password=os.environ.get('WORKER_DATA_SOURCE_PASSWORD', ''),
            controller_service=os.environ.get('CONTROLLER_SERVICE', 'controller'),
            controller_url=os.environ.get('CONTROLLER_URL', '').rstrip('/'),
            discovery_registry_url=os.environ.get('DISCOVERY_REGISTRY_URL', '').rstrip('/'),
            poll_interval=_int('POLL_INTERVAL', default_poll),
            heartbeat_interval=_int('HEARTBEAT_INTERVAL', 15),
            parallelism=_int('PARALLELISM', 8),
            registration_tries=_int('REGISTRATION_TRIES', 10),
            registration_retry_delay=_int('REGISTRATION_RETRY_DELAY', 5),
            request_timeout=_int('REQUEST_TIMEOUT', 30),
            log_level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        )

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.worker_name:
            errors.append("worker_name is required")

        if not self.cluster:
            errors.append("cluster is required")

        if not self.controller_url and not self.discovery_registry_url:
            errors.append("controller_url or discovery_registry_url is required")

        if self.poll_interval < 0:
            errors.append("poll_interval must not be negative")

        if self.heartbeat_interval < 1:
            errors.append("heartbeat_interval must be at least 1 second")

        if self.parallelism < 1:
            errors.append("parallelism must be at least 1")

        if self.registration_tries < 1:
            errors.append("registration_tries must be at least 1")

        if self.persistence != PersistenceType.MEMORY and not self.data_source_uri:
            errors.append(f"data_source_uri is required for {self.persistence.value} persistence")

        return errors

    def to_dict(self) -> dict:
        """Convert to dictionary (excluding sensitive data)."""
        return {
            'worker_name': self.worker_name,
            'cluster': self.cluster,
            'tenant': self.tenant,
            'role': self.role.value,
            'clustering': self.clustering.value,
            'persistence': self.persistence.value,
            'data_source': self.data_source,
            'controller_service': self.controller_service,
            'controller_url': self.controller_url,
            'discovery_registry_url': self.discovery_registry_url,
            'poll_interval': self.poll_interval,
            'heartbeat_interval': self.heartbeat_interval,
            'parallelism': self.parallelism,
            'registration_tries': self.registration_tries,
            'polls': self.polls,
        }
