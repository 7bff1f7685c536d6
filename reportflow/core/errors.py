"""Error taxonomy for the workflow orchestrator."""
from __future__ import annotations


class ReportflowError(RuntimeError):
    """Base class for orchestrator failures."""


class DispatchError(ReportflowError):
    """Raised when the worker rejects or never receives a dispatch request."""

    def __init__(self, message: str, *, kind: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class WorkerReportedError(ReportflowError):
    """A progress record with ``status=error`` arrived for the job."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message or "The worker reported an error")
        self.job_id = job_id


class StaleJobError(ReportflowError):
    """No terminal signal arrived within the staleness window."""

    def __init__(self, job_id: str, message: str = "Previous attempt timed out") -> None:
        super().__init__(message)
        self.job_id = job_id


class SubscriptionError(ReportflowError):
    """The push channel for progress records failed."""


class WorkflowError(ReportflowError):
    """Invalid workflow step or transition."""
