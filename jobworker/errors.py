"""
Worker Errors

Failures that stop the worker process. Transport problems are not
represented here: channels report them as absent results.
"""


class WorkerError(Exception):
    """Base class for fatal worker errors."""


class ConfigurationError(WorkerError):
    """Raised when the worker configuration is invalid."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors) or 'invalid configuration')


class RegistrationError(WorkerError):
    """Raised when the worker could not register with the controller."""

    def __init__(self, name: str, attempts: int):
        self.name = name
        self.attempts = attempts
        super().__init__(f"Worker '{name}' failed to register after {attempts} attempts")
