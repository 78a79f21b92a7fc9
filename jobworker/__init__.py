"""
Job Worker

A worker process that runs scheduled executions on behalf of a remote
controller:
- Register with the controller and send periodic heartbeats
- Poll the execution index and fetch changed executions
- Execute jobs on a bounded set of execution slots
- Report iterations and completion back to the controller
"""

__version__ = '1.0.0'
