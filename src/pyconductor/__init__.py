"""
pyconductor: DAG workflow orchestration for asyncio

Runs directed-acyclic-graph workflows of discrete steps, tracks every task
and step through an auditable transition ledger, decides which steps are
ready, applies retry/backoff policy to failures, and decides when a
workflow is complete, still pending, or blocked.

Design Pattern: Façade Pattern
This module re-exports the pieces an application needs, hiding how the
ledger, readiness engine, executor and finalizer are wired together.

Example:
    ```python
    import asyncio
    from pyconductor import (
        HandlerRegistry, InMemoryTaskQueue, Orchestrator, ResourcePool,
        SqliteWorkflowStore, StepTemplate, TaskInitializer, TaskRequest, TaskTemplate,
    )

    registry = HandlerRegistry()

    @registry.handler()
    async def fetch(ctx):
        return {"rows": 42}

    @registry.handler()
    async def load(ctx):
        return {"loaded": ctx.parent_results()["fetch"]["rows"]}

    registry.register_template(
        TaskTemplate("etl", [StepTemplate("fetch"), StepTemplate("load", depends_on=("fetch",))])
    )

    async def main():
        store = SqliteWorkflowStore("workflows.db")
        await store.connect()
        queue = InMemoryTaskQueue()

        orchestrator = Orchestrator.build(store, registry, queue, ResourcePool(10))
        initializer = TaskInitializer(registry, orchestrator.ledger, queue)

        task = await initializer.initialize_task(TaskRequest("etl"))
        result = await orchestrator.handle(await queue.dequeue())
        print(result.status)  # complete

        await store.close()

    asyncio.run(main())
    ```
"""

from pyconductor.config import BackoffConfig, ExecutionConfig, OrchestratorConfig
from pyconductor.core import (
    ConductorError,
    ConfigurationError,
    CycleDetectedError,
    DagSummary,
    GuardViolation,
    UnknownHandlerError,
    WorkflowGraph,
)
from pyconductor.core.events import EventPublisher, LifecycleEvent, WorkflowEvents
from pyconductor.core.ledger import StateLedger
from pyconductor.core.readiness import StepReadinessEngine
from pyconductor.executor import (
    EMERGENCY_FALLBACK_CONCURRENCY,
    BackoffCalculator,
    ConcurrencyAdvisor,
    FinalizationAction,
    FinalizationResult,
    FunctionHandler,
    HandlerRegistry,
    InMemoryTaskQueue,
    OrchestrationAction,
    OrchestrationResult,
    Orchestrator,
    PoolSample,
    PressureLevel,
    ResourcePool,
    RetryHeaderParser,
    StepContext,
    StepExecutor,
    StepGroup,
    StepHandler,
    TaskFinalizer,
    TaskInitializer,
    TaskQueue,
    TaskReenqueuer,
    Worker,
    WorkerHandle,
)
from pyconductor.models import (
    BlockingReason,
    Edge,
    PermanentError,
    RetryableError,
    RetryPolicy,
    Step,
    StepReadiness,
    StepState,
    StepTemplate,
    Task,
    TaskExecutionContext,
    TaskRequest,
    TaskSnapshot,
    TaskState,
    TaskTemplate,
    Transition,
)
from pyconductor.storage import (
    DuplicateTaskError,
    InMemoryWorkflowStore,
    RedisWorkflowStore,
    SqliteWorkflowStore,
    StaleTransitionError,
    StorageError,
    TaskNotFoundError,
    WorkflowStore,
)

__version__ = "0.1.0"

__all__ = [
    # Models
    "Task",
    "Step",
    "Edge",
    "TaskRequest",
    "TaskSnapshot",
    "TaskState",
    "StepState",
    "Transition",
    "StepTemplate",
    "TaskTemplate",
    "RetryPolicy",
    "PermanentError",
    "RetryableError",
    "BlockingReason",
    "StepReadiness",
    "TaskExecutionContext",
    # Core
    "WorkflowGraph",
    "DagSummary",
    "StateLedger",
    "StepReadinessEngine",
    "EventPublisher",
    "LifecycleEvent",
    "WorkflowEvents",
    # Errors
    "ConductorError",
    "ConfigurationError",
    "CycleDetectedError",
    "UnknownHandlerError",
    "GuardViolation",
    "StorageError",
    "TaskNotFoundError",
    "DuplicateTaskError",
    "StaleTransitionError",
    # Config
    "ExecutionConfig",
    "BackoffConfig",
    "OrchestratorConfig",
    # Storage
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SqliteWorkflowStore",
    "RedisWorkflowStore",
    # Execution
    "StepHandler",
    "StepContext",
    "FunctionHandler",
    "HandlerRegistry",
    "StepExecutor",
    "Orchestrator",
    "OrchestrationAction",
    "OrchestrationResult",
    "StepGroup",
    "TaskFinalizer",
    "FinalizationAction",
    "FinalizationResult",
    "ConcurrencyAdvisor",
    "PoolSample",
    "PressureLevel",
    "ResourcePool",
    "EMERGENCY_FALLBACK_CONCURRENCY",
    "BackoffCalculator",
    "RetryHeaderParser",
    "TaskQueue",
    "InMemoryTaskQueue",
    "TaskReenqueuer",
    "TaskInitializer",
    "Worker",
    "WorkerHandle",
    "__version__",
]
