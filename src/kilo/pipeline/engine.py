"""Pipeline state machine — phase/task sequencing, approval gating and checkpointing.

Key exports:
    PipelineStateMachine — start(), resume(), run(), request_stop(), halt(), status()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any

from kilo.errors import (
    ApprovalRejectedError,
    CheckpointNotFoundError,
    CheckpointWriteError,
    InvalidResumeStateError,
)
from kilo.pipeline.approval import ApprovalAction, ApprovalGate, ApprovalRequest
from kilo.pipeline.checkpoints import CheckpointStore
from kilo.pipeline.dispatcher import AgentDispatcher
from kilo.pipeline.models import (
    TERMINAL_STATUSES,
    Checkpoint,
    CheckpointReason,
    ExecutionMode,
    Phase,
    PhaseConfig,
    PhaseStatus,
    Pipeline,
    PipelineResult,
    PipelineRunConfig,
    PipelineStatus,
    ResumeRef,
    Task,
    TaskOutcome,
    TaskStatus,
)

logger = logging.getLogger("kilo.pipeline.engine")

CANCELLED_ERROR = "cancelled"


class PipelineStateMachine:
    """Drives one pipeline run from start (or a checkpoint) to a result.

    One instance per run. The instance is the only writer of the run's
    Pipeline/Phase/Task state; tasks are applied by their phase as soon as the
    dispatcher reports back.

    Usage:
        machine = PipelineStateMachine(dispatcher, store, gate)
        result = await machine.start("Build a todo app", ExecutionMode.AUTO, phases)

    Interruption:
        ``halt(grace)`` stops new dispatches, lets in-flight tasks finish for up
        to ``grace`` seconds, cancels the rest and returns the snapshot to
        persist. The caller saves it and hands it back via
        ``acknowledge_halt()``; the running ``start``/``resume`` call then
        returns an INTERRUPTED result pointing at that checkpoint.
    """

    def __init__(
        self,
        dispatcher: AgentDispatcher,
        store: CheckpointStore,
        gate: ApprovalGate,
        *,
        checkpoint_interval: int = 5,
        task_timeout_ms: int = 300_000,
        max_concurrency: int = 5,
    ):
        self._dispatcher = dispatcher
        self._store = store
        self._gate = gate
        self.checkpoint_interval = checkpoint_interval
        self.task_timeout_ms = task_timeout_ms
        self.max_concurrency = max_concurrency

        self._pipeline: Pipeline | None = None
        self._last_checkpoint: ResumeRef | None = None
        self._completed_since_checkpoint = 0

        # Stop/halt coordination
        self._stop = asyncio.Event()
        self._cancel = asyncio.Event()  # handed to providers when work is force-cancelled
        self._halt_started = False
        self._halted = asyncio.Event()
        self._in_flight: set[asyncio.Future[Any]] = set()

    # ── Public API ───────────────────────────────────────────────────────────

    @property
    def pipeline_id(self) -> str | None:
        return self._pipeline.id if self._pipeline else None

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def last_checkpoint(self) -> ResumeRef | None:
        return self._last_checkpoint

    def status(self) -> Pipeline | None:
        """A copy of the live pipeline state, or None before the run begins."""
        return self._pipeline.model_copy(deep=True) if self._pipeline else None

    async def start(
        self,
        objective: str,
        mode: ExecutionMode,
        phases: dict[str, PhaseConfig],
        *,
        pipeline_id: str | None = None,
    ) -> PipelineResult:
        pipeline = Pipeline.build(objective, mode, phases, pipeline_id=pipeline_id)
        logger.info(
            "Starting pipeline %s (mode=%s, phases=%s)",
            pipeline.id,
            mode.value,
            [p.name for p in pipeline.phases],
        )
        return await self._execute(pipeline)

    async def run(self, config: PipelineRunConfig, *, pipeline_id: str | None = None) -> PipelineResult:
        """Start a run from a validated ``PipelineRunConfig``."""
        self._dispatcher = self._dispatcher.with_max_retries(config.max_retries)
        self.checkpoint_interval = config.checkpoint_interval
        self.task_timeout_ms = config.task_timeout_ms
        self.max_concurrency = config.max_concurrency
        return await self.start(config.objective, config.mode, config.phases, pipeline_id=pipeline_id)

    async def resume(self, ref: ResumeRef) -> PipelineResult:
        """Continue a run from the referenced (or latest) checkpoint."""
        checkpoint = await self.load_resumable(self._store, ref)
        pipeline = self._reconstruct(checkpoint)
        self._last_checkpoint = checkpoint.ref
        logger.info(
            "Resuming pipeline %s from checkpoint %d (reason=%s, phase=%s)",
            pipeline.id,
            checkpoint.sequence,
            checkpoint.reason.value,
            checkpoint.phase_name,
        )
        return await self._execute(pipeline)

    @staticmethod
    async def load_resumable(store: CheckpointStore, ref: ResumeRef) -> Checkpoint:
        """Load the checkpoint ``ref`` points at and check a run can continue from it.

        Raises:
            CheckpointNotFoundError: No such checkpoint.
            InvalidResumeStateError: The checkpoint is rejected or terminal.
        """
        if ref.sequence is None:
            checkpoint = await store.load_latest(ref.pipeline_id)
        else:
            checkpoint = await store.load_by_id(ref.pipeline_id, ref.sequence)
        if checkpoint is None:
            raise CheckpointNotFoundError(ref.pipeline_id, ref.sequence)

        if checkpoint.reason == CheckpointReason.REJECTED:
            msg = f"Pipeline {ref.pipeline_id} was rejected at checkpoint {checkpoint.sequence}"
            raise InvalidResumeStateError(msg)
        if checkpoint.pipeline_status in TERMINAL_STATUSES:
            msg = (
                f"Pipeline {ref.pipeline_id} is {checkpoint.pipeline_status.value} "
                f"at checkpoint {checkpoint.sequence}"
            )
            raise InvalidResumeStateError(msg)
        return checkpoint

    def request_stop(self) -> None:
        """Stop dispatching new tasks. In-flight tasks are left to finish."""
        if not self._stop.is_set():
            logger.info("Stop requested for pipeline %s", self.pipeline_id)
        self._stop.set()

    async def halt(self, grace_seconds: float) -> Checkpoint | None:
        """Stop, drain in-flight work and return the INTERRUPTED snapshot to persist.

        Returns None when there is nothing to interrupt (not started, or
        already terminal).
        """
        self._halt_started = True
        self.request_stop()
        pipeline = self._pipeline
        if pipeline is None or pipeline.is_terminal:
            self._halted.set()
            return None

        in_flight = list(self._in_flight)
        if in_flight:
            logger.info(
                "Waiting up to %.1fs for %d in-flight task(s) of pipeline %s",
                grace_seconds,
                len(in_flight),
                pipeline.id,
            )
            _, pending = await asyncio.wait(in_flight, timeout=grace_seconds)
            if pending:
                logger.warning("Cancelling %d task(s) still running after grace period", len(pending))
                self._cancel.set()
                for fut in pending:
                    fut.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if pipeline.is_terminal:
            self._halted.set()
            return None
        pipeline.status = PipelineStatus.INTERRUPTED
        return pipeline.snapshot(CheckpointReason.INTERRUPTED)

    def acknowledge_halt(self, saved: Checkpoint | None) -> None:
        """Record the persisted interrupt checkpoint and release the run loop."""
        if saved is not None:
            self._last_checkpoint = saved.ref
        self._halted.set()

    # ── Execution ────────────────────────────────────────────────────────────

    async def _execute(self, pipeline: Pipeline) -> PipelineResult:
        if self._pipeline is not None:
            msg = "PipelineStateMachine instances run a single pipeline; create a new one"
            raise RuntimeError(msg)
        self._pipeline = pipeline
        pipeline.status = PipelineStatus.RUNNING

        dispatcher = self._dispatcher
        if pipeline.mode == ExecutionMode.DRY_RUN:
            dispatcher = dispatcher.simulated()

        try:
            for phase in pipeline.phases:
                if self._stop.is_set():
                    break
                if phase.status in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED):
                    continue
                if phase.status == PhaseStatus.AWAITING_APPROVAL:
                    if not await self._await_approval(pipeline, phase):
                        break
                    continue
                if not await self._run_phase(pipeline, phase, dispatcher):
                    break
        except ApprovalRejectedError as e:
            return self._result(pipeline, error=str(e))

        if self._stop.is_set() and not pipeline.is_terminal:
            return await self._interrupted_result(pipeline)
        if pipeline.status == PipelineStatus.FAILED:
            failed = [p.name for p in pipeline.phases if p.status == PhaseStatus.FAILED]
            return self._result(pipeline, error=f"Phase failed: {', '.join(failed)}")
        return self._result(pipeline)

    async def _run_phase(self, pipeline: Pipeline, phase: Phase, dispatcher: AgentDispatcher) -> bool:
        """Dispatch a phase's remaining tasks. Returns True when the run should advance."""
        phase.status = PhaseStatus.RUNNING
        phase.attempts += 1
        remaining = phase.remaining_tasks()
        logger.info(
            "Pipeline %s phase '%s' running (%d task(s), parallel=%s, attempt=%d)",
            pipeline.id,
            phase.name,
            len(remaining),
            phase.parallel,
            phase.attempts,
        )

        if phase.parallel:
            await self._dispatch_parallel(phase, remaining, dispatcher)
        else:
            await self._dispatch_sequential(phase, remaining, dispatcher)

        if self._stop.is_set():
            return False

        if phase.has_failures:
            phase.status = PhaseStatus.FAILED
            self._finish(pipeline, PipelineStatus.FAILED)
            logger.error("Pipeline %s failed in phase '%s'", pipeline.id, phase.name)
            await self._checkpoint(CheckpointReason.ERROR, phase)
            return False

        phase.status = PhaseStatus.COMPLETED
        next_phase = pipeline.next_enabled_phase(phase)
        if next_phase is None:
            self._finish(pipeline, PipelineStatus.COMPLETED)
        logger.info("Pipeline %s phase '%s' completed", pipeline.id, phase.name)
        await self._checkpoint(CheckpointReason.PHASE_COMPLETE, phase)

        if next_phase is not None and pipeline.mode == ExecutionMode.SEMI:
            phase.status = PhaseStatus.AWAITING_APPROVAL
            return await self._await_approval(pipeline, phase)
        return True

    async def _dispatch_sequential(
        self, phase: Phase, tasks: list[Task], dispatcher: AgentDispatcher
    ) -> None:
        for task in tasks:
            if self._stop.is_set():
                return
            fut = asyncio.ensure_future(self._dispatch_task(phase, task, dispatcher))
            self._in_flight.add(fut)
            try:
                await fut
            except asyncio.CancelledError:
                if fut.cancelled() and self._stop.is_set():
                    return
                raise
            finally:
                self._in_flight.discard(fut)
            if task.status == TaskStatus.FAILED:
                return

    async def _dispatch_parallel(
        self, phase: Phase, tasks: list[Task], dispatcher: AgentDispatcher
    ) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(task: Task) -> None:
            async with semaphore:
                if self._stop.is_set():
                    return
                await self._dispatch_task(phase, task, dispatcher)

        futures = [asyncio.ensure_future(run_one(task)) for task in tasks]
        self._in_flight.update(futures)
        try:
            results = await asyncio.gather(*futures, return_exceptions=True)
        finally:
            self._in_flight.difference_update(futures)

        for result in results:
            if isinstance(result, asyncio.CancelledError):
                continue
            if isinstance(result, BaseException):
                raise result

    async def _dispatch_task(self, phase: Phase, task: Task, dispatcher: AgentDispatcher) -> None:
        phase.mark_running(task.id)
        try:
            outcome = await dispatcher.dispatch(
                task,
                task.assigned_role,
                task.timeout_ms or self.task_timeout_ms,
                cancel=self._cancel,
                objective=self._pipeline.objective,
            )
        except asyncio.CancelledError:
            if task.status == TaskStatus.RUNNING:
                phase.apply_outcome(
                    TaskOutcome(
                        task_id=task.id,
                        status=TaskStatus.FAILED,
                        attempts=task.attempts + 1,
                        error=CANCELLED_ERROR,
                    )
                )
            raise
        phase.apply_outcome(outcome)

        if not outcome.succeeded:
            return
        self._completed_since_checkpoint += 1
        if (
            self._completed_since_checkpoint >= self.checkpoint_interval
            and phase.has_open_work
            and not self._stop.is_set()
        ):
            await self._checkpoint(CheckpointReason.INTERVAL, phase)

    async def _await_approval(self, pipeline: Pipeline, phase: Phase) -> bool:
        """Block on the approval gate. Returns False if the run was stopped meanwhile."""
        phase.status = PhaseStatus.AWAITING_APPROVAL
        next_phase = pipeline.next_enabled_phase(phase)
        request = ApprovalRequest(
            pipeline_id=pipeline.id,
            phase_name=phase.name,
            next_phase=next_phase.name if next_phase else None,
            summary=phase.summary(),
        )

        wait_task = asyncio.ensure_future(self._gate.wait(request))
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({wait_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (wait_task, stop_task):
                if not fut.done():
                    fut.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_task

        if not wait_task.done() or wait_task.cancelled():
            with contextlib.suppress(asyncio.CancelledError):
                await wait_task
            return False
        decision = wait_task.result()

        if decision.action == ApprovalAction.REJECT:
            phase.status = PhaseStatus.COMPLETED
            self._finish(pipeline, PipelineStatus.ABORTED)
            logger.warning("Pipeline %s rejected after phase '%s'", pipeline.id, phase.name)
            await self._checkpoint(CheckpointReason.REJECTED, phase)
            raise ApprovalRejectedError(pipeline.id, phase.name, decision.note)

        if decision.action == ApprovalAction.MODIFY and decision.payload and next_phase is not None:
            for task in next_phase.tasks:
                if task.status != TaskStatus.COMPLETED:
                    task.payload = {**task.payload, **decision.payload}
            logger.info(
                "Merged approval payload into %d task(s) of phase '%s'",
                len(next_phase.tasks),
                next_phase.name,
            )

        phase.status = PhaseStatus.COMPLETED
        return True

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _checkpoint(self, reason: CheckpointReason, phase: Phase | None = None) -> Checkpoint:
        pipeline = self._pipeline
        assert pipeline is not None
        snapshot = pipeline.snapshot(reason, phase_name=phase.name if phase else None)
        self._completed_since_checkpoint = 0
        try:
            saved = await self._store.save(snapshot)
        except CheckpointWriteError:
            self._finish(pipeline, PipelineStatus.FAILED)
            logger.exception("Pipeline %s aborted: checkpoint could not be written", pipeline.id)
            raise
        self._last_checkpoint = saved.ref
        return saved

    async def _interrupted_result(self, pipeline: Pipeline) -> PipelineResult:
        if self._halt_started:
            await self._halted.wait()
            # halted before the run began: nothing was snapshotted
            if pipeline.status == PipelineStatus.RUNNING:
                pipeline.status = PipelineStatus.INTERRUPTED
        else:
            pipeline.status = PipelineStatus.INTERRUPTED
            await self._checkpoint(CheckpointReason.INTERRUPTED)
        logger.info("Pipeline %s interrupted (checkpoint=%s)", pipeline.id, self._last_checkpoint)
        return self._result(pipeline)

    @staticmethod
    def _finish(pipeline: Pipeline, status: PipelineStatus) -> None:
        pipeline.status = status
        pipeline.completed_at = datetime.now(timezone.utc)

    def _result(self, pipeline: Pipeline, *, error: str | None = None) -> PipelineResult:
        return PipelineResult.from_pipeline(pipeline, last_checkpoint=self._last_checkpoint, error=error)

    @staticmethod
    def _reconstruct(checkpoint: Checkpoint) -> Pipeline:
        """Rebuild the run from a checkpoint and reset unfinished work."""
        pipeline = Pipeline.from_checkpoint(checkpoint)
        for task in pipeline.all_tasks():
            if task.status != TaskStatus.COMPLETED:
                task.status = TaskStatus.PENDING
                task.attempts = 0
                task.result = None
                task.error = None
                task.started_at = None
                task.completed_at = None

        # A semi-mode phase-complete checkpoint was written just before the gate opened
        if checkpoint.reason == CheckpointReason.PHASE_COMPLETE and pipeline.mode == ExecutionMode.SEMI:
            phase = pipeline.get_phase(checkpoint.phase_name)
            if (
                phase is not None
                and phase.status == PhaseStatus.COMPLETED
                and pipeline.next_enabled_phase(phase) is not None
            ):
                phase.status = PhaseStatus.AWAITING_APPROVAL
        return pipeline
