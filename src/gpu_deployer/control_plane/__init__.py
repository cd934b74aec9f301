"""
Control Plane Core

Core orchestration components: admission, queue, lifecycle, teardown.
"""

from .admission_gate import AdmissionGate
from .command_executor import CommandExecutor
from .executor_adapter import MarketplaceAdapter
from .idempotency_engine import IdempotencyEngine
from .job_orchestrator import JobOrchestrator
from .models import DeploymentRecord, DeploymentStatus, JobRequest, QueuedJob
from .notifier import Notifier
from .queue_manager import (
    InMemoryJobQueue,
    JobQueue,
    RedisJobQueue,
    UnavailableJobQueue,
    build_queue,
)
from .queue_worker import QueueWorker
from .state_manager import StateManager
from .teardown import TeardownScheduler

__all__ = [
    "AdmissionGate",
    "CommandExecutor",
    "DeploymentRecord",
    "DeploymentStatus",
    "IdempotencyEngine",
    "InMemoryJobQueue",
    "JobOrchestrator",
    "JobQueue",
    "JobRequest",
    "MarketplaceAdapter",
    "Notifier",
    "QueueWorker",
    "QueuedJob",
    "RedisJobQueue",
    "StateManager",
    "TeardownScheduler",
    "UnavailableJobQueue",
    "build_queue",
]
