"""Pipeline Pydantic models — run configuration, runtime state and checkpoints.

Key exports:
    Configuration models: PipelineRunConfig, PhaseConfig, TaskTemplate
    Runtime state models: Pipeline, Phase, Task, TaskOutcome
    Persistence models: Checkpoint, PhaseSnapshot, TaskSnapshot, ResumeRef
    Result models: PipelineResult, PhaseSummary
    Enums: ExecutionMode, AgentRole, PipelineStatus, PhaseStatus, TaskStatus,
        CheckpointReason
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# ── Enums ────────────────────────────────────────────────────────────────────


class ExecutionMode(str, Enum):
    """How a pipeline run treats approvals and side effects."""

    AUTO = "auto"
    SEMI = "semi"
    DRY_RUN = "dry-run"


class AgentRole(str, Enum):
    """The closed set of agent roles a task can be assigned to."""

    ARCHITECT = "architect"
    DEVELOPER = "developer"
    TESTER = "tester"
    DEBUGGER = "debugger"


class PipelineStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"
    INTERRUPTED = "INTERRUPTED"


TERMINAL_STATUSES = frozenset(
    {PipelineStatus.COMPLETED, PipelineStatus.FAILED, PipelineStatus.ABORTED}
)


class PhaseStatus(str, Enum):
    """Phase lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CheckpointReason(str, Enum):
    """Why a checkpoint was written."""

    INTERVAL = "interval"
    PHASE_COMPLETE = "phase-complete"
    INTERRUPTED = "interrupted"
    REJECTED = "rejected"
    ERROR = "error"


# ── Identifier validation ────────────────────────────────────────────────────

PHASE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

# Pipeline IDs become directory names in the file store: one path component,
# never "." or "..".
PIPELINE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def new_pipeline_id() -> str:
    return f"pl-{uuid.uuid4().hex[:12]}"


def new_task_id() -> str:
    return f"tk-{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for models that cross a boundary: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Run Configuration (validated at ingress) ─────────────────────────────────


class TaskTemplate(WireModel):
    """A unit of work a phase creates a Task from."""

    description: str = Field(min_length=1)
    role: AgentRole
    payload: dict[str, Any] = {}
    timeout_ms: int | None = Field(default=None, gt=0)


class PhaseConfig(WireModel):
    """Configuration for one phase of a run."""

    enabled: bool = True
    parallel: bool = False
    order: int | None = None  # None = declaration order
    tasks: list[TaskTemplate] = []


class PipelineRunConfig(WireModel):
    """Everything needed to start a run. Consumed, not owned, by the engine."""

    objective: str = Field(min_length=1)
    mode: ExecutionMode = ExecutionMode.AUTO
    phases: dict[str, PhaseConfig] = Field(min_length=1)
    max_retries: int = Field(default=3, ge=0)
    checkpoint_interval: int = Field(default=5, ge=1)
    task_timeout_ms: int = Field(default=300_000, gt=0)
    max_concurrency: int = Field(default=5, ge=1)

    @field_validator("phases")
    @classmethod
    def _validate_phases(cls, v: dict[str, PhaseConfig]) -> dict[str, PhaseConfig]:
        validate_phase_config(v)
        return v

    def ordered_phases(self) -> list[tuple[str, PhaseConfig]]:
        return order_phases(self.phases)


def validate_phase_config(phases: dict[str, PhaseConfig]) -> None:
    """Reject bad phase names and duplicate explicit orders. Raises ValueError."""
    for name in phases:
        if not PHASE_NAME_PATTERN.match(name):
            msg = f"Phase name '{name}' must match pattern {PHASE_NAME_PATTERN.pattern}"
            raise ValueError(msg)
    orders = [p.order for p in phases.values() if p.order is not None]
    dupes = sorted({o for o in orders if orders.count(o) > 1})
    if dupes:
        msg = f"Duplicate phase orders: {dupes}"
        raise ValueError(msg)


def order_phases(phases: dict[str, PhaseConfig]) -> list[tuple[str, PhaseConfig]]:
    """Sort phases by explicit ``order``, falling back to declaration position."""
    indexed = list(enumerate(phases.items()))
    indexed.sort(key=lambda item: (item[1][1].order if item[1][1].order is not None else item[0], item[0]))
    return [pair for _, pair in indexed]


# ── Runtime State Models ─────────────────────────────────────────────────────


class Task(WireModel):
    """Runtime state of a single dispatched unit of work."""

    id: str = Field(default_factory=new_task_id)
    phase_name: str
    description: str
    assigned_role: AgentRole
    payload: dict[str, Any] = {}
    timeout_ms: int | None = None

    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0  # invocations made
    result: dict[str, Any] | None = None
    error: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_template(cls, phase_name: str, template: TaskTemplate) -> Task:
        return cls(
            phase_name=phase_name,
            description=template.description,
            assigned_role=template.role,
            payload=dict(template.payload),
            timeout_ms=template.timeout_ms,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskOutcome(BaseModel):
    """What the dispatcher reports back to the owning phase."""

    task_id: str
    status: TaskStatus
    attempts: int
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class PhaseSummary(WireModel):
    name: str
    status: PhaseStatus
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0


class Phase(WireModel):
    """Runtime state of one phase. The phase is the only writer of its tasks."""

    name: str
    order: int
    enabled: bool = True
    parallel: bool = False
    status: PhaseStatus = PhaseStatus.PENDING
    tasks: list[Task] = []
    attempts: int = 0  # times the phase was entered

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def mark_running(self, task_id: str) -> Task:
        task = self._require(task_id)
        if task.status == TaskStatus.COMPLETED:
            msg = f"Task {task_id} is already completed and cannot be dispatched again"
            raise RuntimeError(msg)
        task.status = TaskStatus.RUNNING
        task.started_at = _utcnow()
        return task

    def apply_outcome(self, outcome: TaskOutcome) -> Task:
        """Record a dispatcher outcome on the owning task."""
        task = self._require(outcome.task_id)
        if task.status == TaskStatus.COMPLETED:
            msg = f"Task {task.id} is already completed; outcome rejected"
            raise RuntimeError(msg)
        task.status = outcome.status
        task.attempts = outcome.attempts
        task.result = outcome.result
        task.error = outcome.error
        task.completed_at = _utcnow()
        return task

    def remaining_tasks(self) -> list[Task]:
        """Tasks still to dispatch, in template order."""
        return [t for t in self.tasks if t.status != TaskStatus.COMPLETED]

    @property
    def has_failures(self) -> bool:
        return any(t.status == TaskStatus.FAILED for t in self.tasks)

    @property
    def has_open_work(self) -> bool:
        return any(t.status in (TaskStatus.PENDING, TaskStatus.RUNNING) for t in self.tasks)

    def summary(self) -> PhaseSummary:
        return PhaseSummary(
            name=self.name,
            status=self.status,
            total_tasks=len(self.tasks),
            completed_tasks=sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED),
            failed_tasks=sum(1 for t in self.tasks if t.status == TaskStatus.FAILED),
        )

    def _require(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} does not belong to phase '{self.name}'"
            raise KeyError(msg)
        return task


class Pipeline(WireModel):
    """Runtime state of a pipeline run. Mutated only by the state machine."""

    id: str = Field(default_factory=new_pipeline_id)
    objective: str
    mode: ExecutionMode = ExecutionMode.AUTO
    phases: list[Phase] = []
    status: PipelineStatus = PipelineStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_id(self) -> Pipeline:
        if not PIPELINE_ID_PATTERN.match(self.id):
            msg = f"Pipeline ID '{self.id}' must match pattern {PIPELINE_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return self

    @classmethod
    def build(
        cls,
        objective: str,
        mode: ExecutionMode,
        phases: dict[str, PhaseConfig],
        *,
        pipeline_id: str | None = None,
    ) -> Pipeline:
        """Build the ordered phase list. Disabled phases start out SKIPPED."""
        built: list[Phase] = []
        for order, (name, cfg) in enumerate(order_phases(phases)):
            built.append(
                Phase(
                    name=name,
                    order=order,
                    enabled=cfg.enabled,
                    parallel=cfg.parallel,
                    status=PhaseStatus.PENDING if cfg.enabled else PhaseStatus.SKIPPED,
                    tasks=[Task.from_template(name, t) for t in cfg.tasks],
                )
            )
        kwargs: dict[str, Any] = {"objective": objective, "mode": mode, "phases": built}
        if pipeline_id:
            kwargs["id"] = pipeline_id
        return cls(**kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_phase(self, name: str) -> Phase | None:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def active_phase(self) -> Phase | None:
        """The phase that is RUNNING or AWAITING_APPROVAL, if any."""
        for phase in self.phases:
            if phase.status in (PhaseStatus.RUNNING, PhaseStatus.AWAITING_APPROVAL):
                return phase
        return None

    def next_enabled_phase(self, after: Phase) -> Phase | None:
        for phase in self.phases:
            if phase.order > after.order and phase.enabled:
                return phase
        return None

    def all_tasks(self) -> list[Task]:
        return [t for p in self.phases for t in p.tasks]

    def progress(self) -> int:
        """Percentage of tasks that reached a terminal state."""
        tasks = self.all_tasks()
        if not tasks:
            return 0
        done = sum(1 for t in tasks if t.is_terminal)
        return round(done * 100 / len(tasks))

    def snapshot(self, reason: CheckpointReason, *, phase_name: str | None = None) -> Checkpoint:
        """Point-in-time copy of the run, ready for the checkpoint store.

        RUNNING tasks are persisted as PENDING with no progress: an
        invocation that has not reported back is not committed.
        """
        if phase_name is None:
            active = self.active_phase()
            phase_name = active.name if active else self._last_touched_phase()
        return Checkpoint(
            pipeline_id=self.id,
            phase_name=phase_name,
            pipeline_status=self.status,
            reason=reason,
            objective=self.objective,
            mode=self.mode,
            created_at=self.created_at,
            phases=[
                PhaseSnapshot(
                    name=p.name,
                    order=p.order,
                    enabled=p.enabled,
                    parallel=p.parallel,
                    status=p.status,
                    attempts=p.attempts,
                )
                for p in self.phases
            ],
            task_snapshots=[TaskSnapshot.from_task(t) for t in self.all_tasks()],
        )

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> Pipeline:
        """Reconstruct pipeline, phase and task state exactly as snapshotted."""
        phases = [
            Phase(
                name=ps.name,
                order=ps.order,
                enabled=ps.enabled,
                parallel=ps.parallel,
                status=ps.status,
                attempts=ps.attempts,
                tasks=[
                    ts.to_task() for ts in checkpoint.task_snapshots if ts.phase_name == ps.name
                ],
            )
            for ps in sorted(checkpoint.phases, key=lambda p: p.order)
        ]
        return cls(
            id=checkpoint.pipeline_id,
            objective=checkpoint.objective,
            mode=checkpoint.mode,
            phases=phases,
            status=checkpoint.pipeline_status,
            created_at=checkpoint.created_at or checkpoint.timestamp,
        )

    def _last_touched_phase(self) -> str:
        touched = [p for p in self.phases if p.status not in (PhaseStatus.PENDING, PhaseStatus.SKIPPED)]
        if touched:
            return touched[-1].name
        return self.phases[0].name if self.phases else ""


# ── Persistence Models ───────────────────────────────────────────────────────


class TaskSnapshot(WireModel):
    """Persisted copy of a task inside a checkpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    phase_name: str
    status: TaskStatus
    attempts: int = 0
    result: dict[str, Any] | None = None
    error: str | None = None
    description: str = ""
    assigned_role: AgentRole = AgentRole.DEVELOPER
    payload: dict[str, Any] = {}
    timeout_ms: int | None = None

    @classmethod
    def from_task(cls, task: Task) -> TaskSnapshot:
        if task.status == TaskStatus.RUNNING:
            return cls(
                id=task.id,
                phase_name=task.phase_name,
                status=TaskStatus.PENDING,
                description=task.description,
                assigned_role=task.assigned_role,
                payload=dict(task.payload),
                timeout_ms=task.timeout_ms,
            )
        return cls(
            id=task.id,
            phase_name=task.phase_name,
            status=task.status,
            attempts=task.attempts,
            result=task.result,
            error=task.error,
            description=task.description,
            assigned_role=task.assigned_role,
            payload=dict(task.payload),
            timeout_ms=task.timeout_ms,
        )

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            phase_name=self.phase_name,
            description=self.description,
            assigned_role=self.assigned_role,
            payload=dict(self.payload),
            timeout_ms=self.timeout_ms,
            status=self.status,
            attempts=self.attempts,
            result=self.result,
            error=self.error,
        )


class PhaseSnapshot(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str
    order: int
    enabled: bool = True
    parallel: bool = False
    status: PhaseStatus
    attempts: int = 0


class ResumeRef(WireModel):
    """Points at a checkpoint. ``sequence=None`` means the latest one."""

    pipeline_id: str
    sequence: int | None = Field(default=None, ge=0)

    @field_validator("pipeline_id")
    @classmethod
    def _validate_pipeline_id(cls, v: str) -> str:
        if not PIPELINE_ID_PATTERN.match(v):
            msg = f"Pipeline ID '{v}' must match pattern {PIPELINE_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return v


class Checkpoint(WireModel):
    """Immutable snapshot of a run. ``sequence`` is assigned by the store (0 = unsaved)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    pipeline_id: str
    sequence: int = Field(default=0, ge=0)
    phase_name: str
    pipeline_status: PipelineStatus
    reason: CheckpointReason
    timestamp: datetime = Field(default_factory=_utcnow)
    task_snapshots: list[TaskSnapshot] = []

    # Reconstruction data
    objective: str = ""
    mode: ExecutionMode = ExecutionMode.AUTO
    created_at: datetime | None = None
    phases: list[PhaseSnapshot] = []

    @property
    def ref(self) -> ResumeRef:
        return ResumeRef(pipeline_id=self.pipeline_id, sequence=self.sequence)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Checkpoint:
        return cls.model_validate_json(raw)


# ── Result Models ────────────────────────────────────────────────────────────


class PipelineResult(WireModel):
    """Exit contract of a run."""

    success: bool
    pipeline_id: str
    final_status: PipelineStatus
    phases: list[PhaseSummary] = []
    last_checkpoint: ResumeRef | None = None
    error: str | None = None
    progress: int = 0

    @classmethod
    def from_pipeline(
        cls,
        pipeline: Pipeline,
        *,
        last_checkpoint: ResumeRef | None = None,
        error: str | None = None,
    ) -> PipelineResult:
        return cls(
            success=pipeline.status == PipelineStatus.COMPLETED,
            pipeline_id=pipeline.id,
            final_status=pipeline.status,
            phases=[p.summary() for p in pipeline.phases],
            last_checkpoint=last_checkpoint,
            error=error,
            progress=pipeline.progress(),
        )
