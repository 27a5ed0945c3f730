"""BMAD pipeline core — state machine, dispatch, retry, approval and checkpoints.

Key exports:
    PipelineStateMachine — Runs one pipeline from start or a checkpoint
    AgentDispatcher, AgentInvoker — Task invocation with timeout and retry
    RetryPolicy — Backoff decisions
    ApprovalGate — Semi-mode approval between phases
    FileCheckpointStore, SqliteCheckpointStore, MemoryCheckpointStore — Persistence
    ShutdownCoordinator — Signal-driven interrupt checkpoints
"""

from kilo.pipeline.approval import ApprovalAction, ApprovalGate, ApprovalRequest, Decision
from kilo.pipeline.checkpoints import (
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    SqliteCheckpointStore,
)
from kilo.pipeline.dispatcher import AgentDispatcher, AgentInvoker
from kilo.pipeline.engine import PipelineStateMachine
from kilo.pipeline.models import (
    AgentRole,
    Checkpoint,
    CheckpointReason,
    ExecutionMode,
    Phase,
    PhaseConfig,
    PhaseSnapshot,
    PhaseStatus,
    PhaseSummary,
    Pipeline,
    PipelineResult,
    PipelineRunConfig,
    PipelineStatus,
    ResumeRef,
    Task,
    TaskOutcome,
    TaskSnapshot,
    TaskStatus,
    TaskTemplate,
)
from kilo.pipeline.retry import RetryDecision, RetryPolicy
from kilo.pipeline.shutdown import ShutdownCoordinator

__all__ = [
    # Engine
    "PipelineStateMachine",
    "ShutdownCoordinator",
    # Dispatch
    "AgentDispatcher",
    "AgentInvoker",
    "RetryPolicy",
    "RetryDecision",
    # Approval
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalAction",
    "Decision",
    # Stores
    "CheckpointStore",
    "FileCheckpointStore",
    "SqliteCheckpointStore",
    "MemoryCheckpointStore",
    # Configuration models
    "PipelineRunConfig",
    "PhaseConfig",
    "TaskTemplate",
    # Runtime state models
    "Pipeline",
    "Phase",
    "Task",
    "TaskOutcome",
    "PipelineResult",
    "PhaseSummary",
    # Persistence models
    "Checkpoint",
    "PhaseSnapshot",
    "TaskSnapshot",
    "ResumeRef",
    # Enums
    "AgentRole",
    "CheckpointReason",
    "ExecutionMode",
    "PhaseStatus",
    "PipelineStatus",
    "TaskStatus",
]
