"""
Executor module - the runtime side of workflow orchestration.

This module contains the execution components:
- registry: StepHandler protocol and the injected HandlerRegistry
- step_executor: claim / run / record for a batch of steps
- concurrency: resource-pool pressure and batch sizing
- backoff: active retry scheduling and Retry-After parsing
- finalizer: StepGroup classification and task outcome
- orchestrator: the per-task pass loop
- reenqueue: queue boundary and delayed re-enqueue
- initializer: TaskRequest -> persisted task
- worker: queue consumer driving the orchestrator
"""

from pyconductor.executor.backoff import BackoffCalculator, RetryHeaderParser
from pyconductor.executor.concurrency import (
    EMERGENCY_FALLBACK_CONCURRENCY,
    ConcurrencyAdvisor,
    PoolAssessment,
    PoolProbe,
    PoolSample,
    PressureLevel,
    ResourcePool,
)
from pyconductor.executor.finalizer import (
    FinalizationAction,
    FinalizationResult,
    StepGroup,
    TaskFinalizer,
)
from pyconductor.executor.initializer import TaskInitializer, identity_hash
from pyconductor.executor.orchestrator import (
    OrchestrationAction,
    OrchestrationResult,
    Orchestrator,
)
from pyconductor.executor.reenqueue import (
    InMemoryTaskQueue,
    ReenqueueReason,
    TaskQueue,
    TaskReenqueuer,
    WorkQueue,
)
from pyconductor.executor.registry import (
    FunctionHandler,
    HandlerRegistry,
    StepContext,
    StepHandler,
)
from pyconductor.executor.step_executor import StepExecutor, StepOutcome
from pyconductor.executor.worker import Worker, WorkerHandle

__all__ = [
    # Handlers
    "StepHandler",
    "StepContext",
    "FunctionHandler",
    "HandlerRegistry",
    # Execution
    "StepExecutor",
    "StepOutcome",
    "Orchestrator",
    "OrchestrationAction",
    "OrchestrationResult",
    # Finalization
    "StepGroup",
    "TaskFinalizer",
    "FinalizationAction",
    "FinalizationResult",
    # Concurrency
    "ConcurrencyAdvisor",
    "PoolAssessment",
    "PoolProbe",
    "PoolSample",
    "PressureLevel",
    "ResourcePool",
    "EMERGENCY_FALLBACK_CONCURRENCY",
    # Backoff
    "BackoffCalculator",
    "RetryHeaderParser",
    # Queueing
    "TaskQueue",
    "WorkQueue",
    "InMemoryTaskQueue",
    "TaskReenqueuer",
    "ReenqueueReason",
    # Initialization
    "TaskInitializer",
    "identity_hash",
    # Worker
    "Worker",
    "WorkerHandle",
]
