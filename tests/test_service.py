"""
Unit tests for the worker service.

The channel and scheduler are mocked; these tests cover the lifecycle
decisions: registration retries, the poll diff, standby mode and shutdown.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jobworker.config import ClusteringType, WorkerConfig, WorkerRole
from jobworker.errors import ConfigurationError, RegistrationError
from jobworker.executor import ExecutionResult, JobRegistry
from jobworker.models import (
    CompletionSeverity,
    Execution,
    ExecutionIndexEntry,
    ExecutionsResponse,
    JobStatus,
    WorkerDefinition,
    utcnow,
)
from jobworker.service import WorkerService, WorkerState

WORKER = WorkerDefinition(id='w1', name='w1', cluster='c1', tenant='t1')


def _config(**overrides):
    values = dict(
        worker_name='w1',
        cluster='c1',
        tenant='t1',
        controller_url='http://localhost:8080',
        role=WorkerRole.SUPERVISOR,
        poll_interval=60,
        registration_tries=3,
        registration_retry_delay=1,
    )
    values.update(overrides)
    return WorkerConfig(**values)


def _execution(execution_id, version=1, **kwargs):
    return Execution(id=execution_id, job_type='TEST_JOB', cluster='c1', tenant='t1', version=version, **kwargs)


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.channel = Mock()
        self.channel.registration.return_value = WORKER
        self.channel.heartbeat.return_value = WORKER
        self.registry = JobRegistry().register_job('TEST_JOB', Mock(return_value=None))
        self.scheduler = Mock()

    def _service(self, **overrides):
        return WorkerService(_config(**overrides), self.channel, self.registry, scheduler=self.scheduler)


class TestRegistration(ServiceTestCase):

    @patch('jobworker.service.time.sleep')
    def test_register_first_attempt(self, mock_sleep):
        service = self._service()

        self.assertEqual(service.register(), WORKER)
        self.assertEqual(service.worker_id, 'w1')
        mock_sleep.assert_not_called()

        worker_input = self.channel.registration.call_args[0][0]
        self.assertEqual(worker_input.name, 'w1')
        self.assertEqual(worker_input.supported_types, ['TEST_JOB'])
        self.assertEqual(worker_input.parallelism, 8)

    @patch('jobworker.service.time.sleep')
    def test_register_retries_until_acknowledged(self, mock_sleep):
        self.channel.registration.side_effect = [None, None, WORKER]
        service = self._service()

        self.assertEqual(service.register(), WORKER)
        self.assertEqual(self.channel.registration.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        mock_sleep.assert_called_with(1)

    @patch('jobworker.service.time.sleep')
    def test_register_gives_up(self, mock_sleep):
        self.channel.registration.return_value = None
        service = self._service()

        with self.assertRaises(RegistrationError) as ctx:
            service.register()

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(service.state, WorkerState.ERROR)
        self.assertIsNone(service.worker_id)
        self.assertEqual(mock_sleep.call_count, 2)


class TestHeartbeat(ServiceTestCase):

    def test_heartbeat_before_registration(self):
        self.assertIsNone(self._service().heartbeat())
        self.channel.heartbeat.assert_not_called()

    def test_heartbeat_reports_load(self):
        service = self._service()
        service.register()
        service._init_runner()

        self.assertEqual(service.heartbeat(), WORKER)

        worker_id, heartbeat = self.channel.heartbeat.call_args[0]
        self.assertEqual(worker_id, 'w1')
        self.assertEqual(heartbeat.status, 'OK')
        self.assertEqual(heartbeat.load['active_executions'], 0)
        self.assertEqual(heartbeat.load['free_slots'], 8)

    def test_unacknowledged_heartbeat_keeps_registration(self):
        service = self._service()
        service.register()
        self.channel.heartbeat.return_value = None

        self.assertIsNone(service.heartbeat())
        self.assertEqual(service.worker_id, 'w1')


class TestPolling(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.service = self._service()
        self.service.register()

        self.runner = Mock()
        self.runner.active_count = 0
        self.runner.is_active.return_value = False
        self.runner.submit.return_value = True
        self.service.runner = self.runner

    def _index(self, **versions):
        self.channel.execution_index.return_value = [
            ExecutionIndexEntry(eid, version) for eid, version in versions.items()
        ]

    def _fetched(self, *executions):
        self.channel.executions.return_value = ExecutionsResponse(list(executions))

    def test_poll_fetches_only_changed_executions(self):
        self._index(e1=1, e2=1)
        self._fetched(_execution('e1'), _execution('e2'))

        started = self.service.poll()

        self.channel.execution_index.assert_called_once_with('t1', 'c1')
        self.channel.executions.assert_called_once_with(['e1', 'e2'])
        self.assertEqual([e.id for e in started], ['e1', 'e2'])
        self.assertEqual(self.service.known_versions, {'e1': 1, 'e2': 1})

        self._index(e1=1, e2=2)
        self._fetched(_execution('e2', version=2))

        self.service.poll()

        self.channel.executions.assert_called_with(['e2'])

    def test_unchanged_index_skips_fetch(self):
        self._index(e1=1)
        self._fetched(_execution('e1'))
        self.service.poll()
        self.channel.executions.reset_mock()

        self.assertEqual(self.service.poll(), [])
        self.channel.executions.assert_not_called()

    def test_vanished_executions_are_forgotten(self):
        self._index(e1=1)
        self._fetched(_execution('e1'))
        self.service.poll()

        self._index()
        self.service.poll()

        self.assertEqual(self.service.known_versions, {})

    def test_non_runnable_executions_are_remembered_not_started(self):
        self._index(e1=1, e2=1, e3=1)
        self._fetched(
            _execution('e1', status=JobStatus.RUNNING),
            _execution('e2', worker_id='w9'),
            Execution(id='e3', job_type='UNKNOWN', cluster='c1', tenant='t1', version=1),
        )

        self.assertEqual(self.service.poll(), [])
        self.runner.submit.assert_not_called()
        self.assertEqual(self.service.known_versions, {'e1': 1, 'e2': 1, 'e3': 1})

    def test_execution_assigned_to_this_worker_runs(self):
        self._index(e1=1)
        self._fetched(_execution('e1', worker_id='w1'))

        self.assertEqual(len(self.service.poll()), 1)

    def test_rejected_submission_is_retried_next_poll(self):
        self.runner.submit.return_value = False
        self._index(e1=1)
        self._fetched(_execution('e1'))

        self.assertEqual(self.service.poll(), [])
        self.assertEqual(self.service.known_versions, {})

        self.runner.submit.return_value = True
        self.assertEqual(len(self.service.poll()), 1)
        self.assertEqual(self.channel.executions.call_count, 2)

    def test_active_execution_not_resubmitted(self):
        self.runner.is_active.return_value = True
        self._index(e1=1)
        self._fetched(_execution('e1'))

        self.assertEqual(self.service.poll(), [])
        self.runner.submit.assert_not_called()

    def test_absent_index_is_skipped(self):
        self.channel.execution_index.return_value = None

        self.assertEqual(self.service.poll(), [])
        self.channel.executions.assert_not_called()

    def test_completion_remembers_new_version(self):
        now = utcnow()
        self.service._on_execution_complete(ExecutionResult(
            execution_id='e1', severity=CompletionSeverity.SUCCESS,
            started_at=now, completed_at=now, version=2
        ))

        self.assertEqual(self.service.known_versions, {'e1': 2})

    def test_unacknowledged_completion_is_resent(self):
        self._index(e1=1)
        self._fetched(_execution('e1'))
        self.service.poll()

        now = utcnow()
        self.service._on_execution_complete(ExecutionResult(
            execution_id='e1', severity=CompletionSeverity.FAILED,
            started_at=now, completed_at=now, version=None
        ))
        self.assertEqual(self.service.unacknowledged_completions, {'e1': CompletionSeverity.FAILED})

        # Controller still unreachable for completions
        self.channel.complete.return_value = None
        self.service.poll()
        self.service.poll()
        self.assertEqual(self.channel.complete.call_count, 2)
        self.assertEqual(self.channel.executions.call_count, 1)

        self.channel.complete.return_value = _execution('e1', version=2, status=JobStatus.FAILED)
        self.service.poll()

        self.channel.complete.assert_called_with('e1', CompletionSeverity.FAILED)
        self.assertEqual(self.service.unacknowledged_completions, {})
        self.assertEqual(self.service.known_versions, {'e1': 2})
        self.assertEqual(self.channel.executions.call_count, 1)

    def test_unacknowledged_completion_dropped_when_execution_changes(self):
        self._index(e1=1)
        self._fetched(_execution('e1'))
        self.service.poll()
        now = utcnow()
        self.service._on_execution_complete(ExecutionResult(
            execution_id='e1', severity=CompletionSeverity.SUCCESS,
            started_at=now, completed_at=now
        ))

        self._index(e1=2)
        self._fetched(_execution('e1', version=2, status=JobStatus.COMPLETED))
        self.service.poll()

        self.channel.complete.assert_not_called()
        self.assertEqual(self.service.unacknowledged_completions, {})
        self.assertEqual(self.service.known_versions, {'e1': 2})

    def test_fast_completion_version_is_not_overwritten(self):
        def complete_immediately(execution):
            self.service._on_execution_complete(ExecutionResult(
                execution_id=execution.id, severity=CompletionSeverity.SUCCESS,
                started_at=utcnow(), completed_at=utcnow(), version=execution.version + 1
            ))
            return True

        self.runner.submit.side_effect = complete_immediately
        self._index(e1=1)
        self._fetched(_execution('e1'))

        self.service.poll()

        self.assertEqual(self.service.known_versions, {'e1': 2})

    def test_exclusive_worker_stays_in_standby(self):
        service = self._service(role=WorkerRole.WORKER, clustering=ClusteringType.EXCLUSIVE)
        service.register()
        service.runner = self.runner

        self.assertEqual(service.poll(), [])
        self.channel.execution_index.assert_not_called()

    def test_shared_worker_polls(self):
        service = self._service(role=WorkerRole.WORKER, clustering=ClusteringType.SHARED)
        service.register()
        service.runner = self.runner
        self._index()

        service.poll()
        self.channel.execution_index.assert_called_once_with('t1', 'c1')

    def test_shared_workers_run_only_assigned_executions(self):
        ran_on = []
        for name in ('w1', 'w2'):
            channel = Mock()
            channel.registration.return_value = WorkerDefinition(id=name, name=name, cluster='c1', tenant='t1')
            channel.execution_index.return_value = [ExecutionIndexEntry('e1', 1), ExecutionIndexEntry('e2', 1)]
            channel.executions.return_value = ExecutionsResponse([_execution('e1'), _execution('e2', worker_id='w2')])

            runner = Mock()
            runner.active_count = 0
            runner.is_active.return_value = False
            runner.submit.return_value = True

            service = WorkerService(_config(worker_name=name, role=WorkerRole.WORKER,
                                            clustering=ClusteringType.SHARED),
                                    channel, self.registry, scheduler=Mock())
            service.register()
            service.runner = runner
            ran_on.extend((name, e.id) for e in service.poll())

        self.assertEqual(ran_on, [('w2', 'e2')])


class TestLifecycle(ServiceTestCase):

    def test_invalid_configuration(self):
        service = self._service(controller_url='')

        with self.assertRaises(ConfigurationError) as ctx:
            service.start()

        self.assertIn('controller_url or discovery_registry_url is required', ctx.exception.errors)
        self.channel.registration.assert_not_called()

    def test_start_schedules_heartbeat_and_poll(self):
        service = self._service()
        service.start()

        job_ids = [call.kwargs['id'] for call in self.scheduler.add_job.call_args_list]
        self.assertEqual(job_ids, ['heartbeat', 'poll'])
        self.scheduler.start.assert_called_once()
        self.assertIsNotNone(service.runner)
        self.assertEqual(service.state, WorkerState.IDLE)

    def test_start_in_standby(self):
        service = self._service(role=WorkerRole.WORKER)
        service.start()

        job_ids = [call.kwargs['id'] for call in self.scheduler.add_job.call_args_list]
        self.assertEqual(job_ids, ['heartbeat'])
        self.assertEqual(service.state, WorkerState.STANDBY)

    def test_stop_sends_offline_heartbeat(self):
        service = self._service()
        service.start()
        service.stop()

        self.scheduler.shutdown.assert_called_once_with(wait=False)
        worker_id, heartbeat = self.channel.heartbeat.call_args[0]
        self.assertEqual(worker_id, 'w1')
        self.assertEqual(heartbeat.status, 'OFFLINE')
        self.assertEqual(service.state, WorkerState.STOPPING)

    def test_stop_is_idempotent(self):
        service = self._service()
        service.start()
        service.stop()
        service.stop()

        self.assertEqual(self.scheduler.shutdown.call_count, 1)


if __name__ == '__main__':
    unittest.main()
