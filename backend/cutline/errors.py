"""Core exception types."""


class CutlineError(Exception):
    """Base class for core errors."""
    pass


class InvalidRequest(CutlineError, ValueError):
    """Caller error; raised before any job is created."""
    error_kind = "invalid_request"


class StorageError(CutlineError):
    """Storage collaborator failed to persist or fetch bytes."""
    error_kind = "storage"


class JobNotFound(CutlineError, KeyError):
    """No job with the given id."""

    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self):
        return f"Job {self.job_id} not found"


class InternalInvariantViolation(CutlineError):
    """A core invariant was broken. Fatal to the core instance."""
    error_kind = "internal"


class InvalidTransition(InternalInvariantViolation):
    """Illegal job state transition."""

    def __init__(self, job_id: str, current, target):
        super().__init__(f"Job {job_id}: illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target
