"""
Controller Channels

Usage:
    from jobworker.channels import ExecutionChannel
    channel = ExecutionChannel(api_client)
    entries = channel.execution_index('tenant', 'cluster')
"""

from .base import SchedulerChannel, WorkerChannel
from .execution import ExecutionChannel
from .legacy import LegacyJobChannel

__all__ = ['WorkerChannel', 'SchedulerChannel', 'LegacyJobChannel', 'ExecutionChannel']
