"""
Reference Controller

In-memory controller presenting the REST surface workers talk to. Meant
for local development and tests: nothing is persisted and nothing is
scheduled, executions and jobs are only created through seed_*().

Contract enforced here:
- Registration is idempotent by (cluster, tenant, name)
- Heartbeats for unknown ids answer 404
- Status changes only move forward (409 otherwise)
- Iterations are append-only, each POST creates a new record
- Every change to an execution bumps its version

Run with: python -m jobworker.controller
"""

import logging
import os
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from flask import Flask, jsonify, request

from .models import (
    AgentDefinition,
    AgentHealth,
    CompletionSeverity,
    Execution,
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
    utcnow,
)

logger = logging.getLogger(__name__)

Identity = Tuple[str, str, str]


class ControllerState:
    """Lock-protected in-memory records of one controller."""

    def __init__(self):
        self.lock = threading.RLock()
        self.agents: Dict[str, AgentDefinition] = {}
        self.workers: Dict[str, WorkerDefinition] = {}
        self.jobs: Dict[str, JobDefinition] = {}
        self.executions: Dict[str, Execution] = {}
        self.job_iterations: Dict[str, List[JobIteration]] = {}
        self.iterations: Dict[str, List[Iteration]] = {}

    # =========================================================================
    # Seeding
    # =========================================================================

    def seed_job(self, job: JobDefinition) -> JobDefinition:
        with self.lock:
            self.jobs[job.id] = job
            self.job_iterations.setdefault(job.id, [])
        return job

    def seed_execution(self, execution: Execution) -> Execution:
        with self.lock:
            now = utcnow()
            execution = replace(execution, created=execution.created or now, modified=now)
            self.executions[execution.id] = execution
            self.iterations.setdefault(execution.id, [])
        return execution

    # =========================================================================
    # Identity
    # =========================================================================

    @staticmethod
    def _find(records: Dict, identity: Identity):
        for record in records.values():
            if (record.cluster, record.tenant, record.name) == identity:
                return record
        return None

    @staticmethod
    def _new_id(records: Dict, name: str) -> str:
        """Use the name as id unless another identity already holds it."""
        return name if name not in records else uuid.uuid4().hex

    def register_agent(self, agent: AgentDefinition) -> Tuple[AgentDefinition, bool]:
        with self.lock:
            now = utcnow()
            existing = self._find(self.agents, (agent.cluster, agent.tenant, agent.name))
            if existing:
                updated = replace(existing, supported_types=agent.supported_types,
                                  health=agent.health or existing.health, last_heartbeat=now)
                self.agents[existing.id] = updated
                return updated, False

            created = replace(agent, id=self._new_id(self.agents, agent.name),
                              registered=now, last_heartbeat=now)
            self.agents[created.id] = created
            return created, True

    def register_worker(self, worker: WorkerInput) -> Tuple[WorkerDefinition, bool]:
        with self.lock:
            now = utcnow()
            existing = self._find(self.workers, (worker.cluster, worker.tenant, worker.name))
            if existing:
                updated = replace(existing, supported_types=worker.supported_types,
                                  parallelism=worker.parallelism, status='OK', last_heartbeat=now)
                self.workers[existing.id] = updated
                return updated, False

            created = WorkerDefinition(
                id=self._new_id(self.workers, worker.name),
                name=worker.name,
                cluster=worker.cluster,
                tenant=worker.tenant,
                supported_types=worker.supported_types,
                parallelism=worker.parallelism,
                registered=now,
                last_heartbeat=now,
            )
            self.workers[created.id] = created
            return created, True


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def _body() -> Optional[dict]:
    return request.get_json(silent=True)


def create_app(state: Optional[ControllerState] = None) -> Flask:
    """
    Build the controller application.

    Args:
        state: Records to serve (a fresh empty state by default)
    """
    state = state or ControllerState()
    app = Flask(__name__)
    app.config['CONTROLLER_STATE'] = state

    # =========================================================================
    # Job-oriented protocol
    # =========================================================================

    @app.route('/api/v1/jobs/_metadata', methods=['POST'])
    def job_metadata():
        data = _body()
        if not data:
            return _error('Request body required', 400)
        try:
            query = JobMetadataRequest.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid request body: {e}', 400)

        with state.lock:
            jobs = [
                job for job in state.jobs.values()
                if job.cluster == query.cluster and job.tenant == query.tenant
                and (not query.job_types or job.type in query.job_types)
            ]
        return jsonify(JobMetadataResponse(jobs=jobs).to_dict())

    @app.route('/api/v1/jobs/_exchange', methods=['POST'])
    def job_status_exchange():
        data = _body()
        if not data:
            return _error('Request body required', 400)
        try:
            exchange = JobStatusExchangeRequest.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid exchange request: {e}', 400)

        response = JobStatusExchangeResponse()
        with state.lock:
            for job in state.jobs.values():
                if job.cluster != exchange.cluster or job.tenant != exchange.tenant:
                    continue
                if job.agent_id not in (None, exchange.agent_id):
                    continue
                if job.id not in exchange.statuses and not job.status.is_terminal:
                    response.added.append(job)

            for job_id, believed in exchange.statuses.items():
                job = state.jobs.get(job_id)
                if job is None:
                    response.removed.append(job_id)
                elif job.status != believed:
                    response.updated.append(job)

        return jsonify(response.to_dict())

    @app.route('/api/v1/jobs/<job_id>/_iterations', methods=['POST'])
    def job_iterate(job_id):
        data = _body()
        if not data:
            return _error('Request body required', 400)

        try:
            iteration = replace(JobIteration.from_dict(dict(data, jobId=job_id)), id=uuid.uuid4().hex)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid iteration: {e}', 400)

        with state.lock:
            if job_id not in state.jobs:
                return _error(f'Job {job_id} not found', 404)
            state.job_iterations.setdefault(job_id, []).append(iteration)

        return jsonify(iteration.to_dict()), 201

    @app.route('/api/v1/jobs/<job_id>/_status', methods=['PUT'])
    def job_mark_as(job_id):
        try:
            status = JobStatus(request.args.get('status', ''))
        except ValueError:
            return _error('A valid status query parameter is required', 400)

        with state.lock:
            job = state.jobs.get(job_id)
            if job is None:
                return _error(f'Job {job_id} not found', 404)
            if not job.status.can_transition_to(status):
                return _error(f'Cannot move job {job_id} from {job.status.value} to {status.value}', 409)
            job = replace(job, status=status, modified=utcnow())
            state.jobs[job_id] = job

        return jsonify(job.to_dict())

    @app.route('/api/v1/agents', methods=['POST'])
    def agent_register():
        data = _body()
        if not data:
            return _error('Request body required', 400)
        try:
            agent = AgentDefinition.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid request body: {e}', 400)

        agent, created = state.register_agent(agent)
        logger.info(f"Agent {agent.id} {'registered' if created else 're-registered'}")
        return jsonify(agent.to_dict()), 201 if created else 200

    @app.route('/api/v1/agents/<agent_id>/health', methods=['PUT'])
    def agent_health(agent_id):
        try:
            health = AgentHealth.from_dict(_body() or {})
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid health report: {e}', 400)

        with state.lock:
            agent = state.agents.get(agent_id)
            if agent is None:
                return _error(f'Agent {agent_id} not found', 404)
            agent = replace(agent, health=health, last_heartbeat=utcnow())
            state.agents[agent_id] = agent

        return jsonify(agent.to_dict())

    # =========================================================================
    # Execution-oriented protocol
    # =========================================================================

    @app.route('/api/v1/scheduler/executions', methods=['GET'])
    def scheduler_executions():
        ids = request.args.get('ids')
        with state.lock:
            if ids is not None:
                wanted = [i for i in ids.split(',') if i]
                found = [state.executions[i] for i in wanted if i in state.executions]
                return jsonify(ExecutionsResponse(executions=found).to_dict())

            tenant = request.args.get('tenant')
            cluster = request.args.get('cluster')
            entries = [
                execution.index_entry.to_dict() for execution in state.executions.values()
                if (not tenant or execution.tenant == tenant)
                and (not cluster or execution.cluster == cluster)
            ]
        return jsonify(entries)

    @app.route('/api/v1/scheduler/executions/<execution_id>', methods=['PUT'])
    def scheduler_complete(execution_id):
        data = _body() or {}
        try:
            severity = CompletionSeverity(data.get('severity', CompletionSeverity.SUCCESS.value))
        except ValueError:
            return _error(f"Unknown severity {data.get('severity')}", 400)
        if data.get('status', JobStatus.COMPLETED.value) != JobStatus.COMPLETED.value:
            return _error('Executions can only be completed', 400)

        with state.lock:
            execution = state.executions.get(execution_id)
            if execution is None:
                return _error(f'Execution {execution_id} not found', 404)
            status = severity.terminal_status
            if not execution.status.can_transition_to(status):
                return _error(f'Execution {execution_id} is already {execution.status.value}', 409)
            execution = replace(execution, status=status, severity=severity,
                                version=execution.version + 1, modified=utcnow())
            state.executions[execution_id] = execution

        return jsonify(execution.to_dict())

    @app.route('/api/v1/scheduler/iterations', methods=['POST'])
    def scheduler_iterate():
        data = _body()
        if not data:
            return _error('Request body required', 400)
        try:
            attempt = IterationInput.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid request body: {e}', 400)

        with state.lock:
            if attempt.execution_id not in state.executions:
                return _error(f'Execution {attempt.execution_id} not found', 404)
            iteration = Iteration(
                id=uuid.uuid4().hex,
                execution_id=attempt.execution_id,
                worker_id=attempt.worker_id,
                started=attempt.started,
                finished=attempt.finished,
                status=attempt.status,
                message=attempt.message,
                payload=attempt.payload,
            )
            state.iterations.setdefault(attempt.execution_id, []).append(iteration)

        return jsonify(iteration.to_dict()), 201

    @app.route('/api/v1/scheduler/workers', methods=['POST'])
    def scheduler_register():
        data = _body()
        if not data:
            return _error('Request body required', 400)
        try:
            worker_input = WorkerInput.from_dict(data)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid request body: {e}', 400)

        worker, created = state.register_worker(worker_input)
        logger.info(f"Worker {worker.id} {'registered' if created else 're-registered'}")
        return jsonify(worker.to_dict()), 201 if created else 200

    @app.route('/api/v1/scheduler/workers/<worker_id>', methods=['POST'])
    def scheduler_heartbeat(worker_id):
        try:
            heartbeat = WorkerHeartbeat.from_dict(_body() or {})
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            return _error(f'Invalid heartbeat: {e}', 400)

        with state.lock:
            worker = state.workers.get(worker_id)
            if worker is None:
                return _error(f'Worker {worker_id} not found', 404)
            worker = replace(worker, status=heartbeat.status, last_heartbeat=utcnow())
            state.workers[worker_id] = worker

        return jsonify(worker.to_dict())

    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.environ.get('CONTROLLER_PORT', '8080'))
    create_app().run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
