"""Infrastructure layer exports."""

from .progress import InMemoryProgressStore, ProgressStore, ProgressSubscription
from .projects import InMemoryProjectRepository, ProjectRepository
from .worker import WorkerClient
from .workflow import InMemoryWorkflowRepository, WorkflowRepository

__all__ = [
    "InMemoryProgressStore",
    "InMemoryProjectRepository",
    "InMemoryWorkflowRepository",
    "ProgressStore",
    "ProgressSubscription",
    "ProjectRepository",
    "WorkerClient",
    "WorkflowRepository",
]
