"""Tests for resuming a pipeline from its checkpoints.

Covers:
- Completed tasks are never re-invoked after resume
- Cancelled / unfinished tasks get a fresh retry budget
- Missing, rejected and terminal checkpoints are refused
- Semi-mode approval gates re-engage on resume
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import HANG, ScriptedAgent

from kilo.errors import CheckpointNotFoundError, InvalidResumeStateError
from kilo.pipeline.approval import ApprovalAction, ApprovalGate, Decision
from kilo.pipeline.models import (
    CheckpointReason,
    ExecutionMode,
    PhaseStatus,
    PipelineStatus,
    ResumeRef,
    TaskStatus,
)


class StopAfter(ScriptedAgent):
    """Requests a stop on ``machine`` once ``step`` has returned."""

    def __init__(self, step: str, script=None):
        super().__init__(script)
        self.stop_step = step
        self.machine = None

    async def __call__(self, role, payload, *, cancel):
        result = await super().__call__(role, payload, cancel=cancel)
        if payload.get("step") == self.stop_step:
            self.machine.request_stop()
        return result


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


async def interrupted_run(make_machine, phases, stop_step: str = "b1"):
    """Run business [b1, b2] → models [m1] and stop after ``stop_step``."""
    agent = StopAfter(stop_step)
    machine = make_machine(agent)
    agent.machine = machine
    result = await machine.start(
        "Build a todo app",
        ExecutionMode.AUTO,
        phases(("business", ["b1", "b2"]), ("models", ["m1"])),
    )
    return agent, result


async def halted_run(make_machine, phases, store):
    """Halt while b2 hangs: b2 is cancelled and recorded as FAILED."""
    agent = ScriptedAgent({"b2": [HANG]})
    machine = make_machine(agent)
    run = asyncio.ensure_future(
        machine.start("x", ExecutionMode.AUTO, phases(("business", ["b1", "b2"]), ("models", ["m1"])))
    )
    await wait_until(lambda: agent.calls_for("b2") == 1)

    snapshot = await machine.halt(0.01)
    saved = await store.save(snapshot)
    machine.acknowledge_halt(saved)
    return saved, await run


class TestResumeAfterInterrupt:
    @pytest.mark.asyncio
    async def test_stop_writes_interrupt_checkpoint(self, make_machine, phases, store):
        _, result = await interrupted_run(make_machine, phases)

        assert result.final_status == PipelineStatus.INTERRUPTED
        assert result.success is False
        latest = await store.load_latest(result.pipeline_id)
        assert latest.reason == CheckpointReason.INTERRUPTED
        assert latest.pipeline_status == PipelineStatus.INTERRUPTED
        assert [s.status for s in latest.task_snapshots] == [
            TaskStatus.COMPLETED,
            TaskStatus.PENDING,
            TaskStatus.PENDING,
        ]
        assert result.last_checkpoint == latest.ref

    @pytest.mark.asyncio
    async def test_completed_tasks_are_not_reinvoked(self, make_machine, phases):
        _, interrupted = await interrupted_run(make_machine, phases)

        agent = ScriptedAgent()
        result = await make_machine(agent).resume(ResumeRef(pipeline_id=interrupted.pipeline_id))

        assert result.success is True
        assert agent.calls_for("b1") == 0
        assert [p["step"] for _, p in agent.calls] == ["b2", "m1"]

    @pytest.mark.asyncio
    async def test_resuming_the_same_checkpoint_twice_is_repeatable(self, make_machine, phases):
        _, interrupted = await interrupted_run(make_machine, phases)
        ref = interrupted.last_checkpoint

        first = await make_machine(ScriptedAgent()).resume(ref)
        second = await make_machine(ScriptedAgent()).resume(ref)

        assert first.final_status == second.final_status == PipelineStatus.COMPLETED
        assert [(p.name, p.status, p.completed_tasks) for p in first.phases] == [
            (p.name, p.status, p.completed_tasks) for p in second.phases
        ]

    @pytest.mark.asyncio
    async def test_resume_continues_the_sequence(self, make_machine, phases, store):
        _, interrupted = await interrupted_run(make_machine, phases)
        await make_machine(ScriptedAgent()).resume(ResumeRef(pipeline_id=interrupted.pipeline_id))

        checkpoints = await store.list_checkpoints(interrupted.pipeline_id)
        assert [(c.sequence, c.reason) for c in checkpoints] == [
            (1, CheckpointReason.INTERRUPTED),
            (2, CheckpointReason.PHASE_COMPLETE),
            (3, CheckpointReason.PHASE_COMPLETE),
        ]


class TestResumeAfterHalt:
    @pytest.mark.asyncio
    async def test_halt_records_cancelled_task(self, make_machine, phases, store):
        saved, result = await halted_run(make_machine, phases, store)

        assert result.final_status == PipelineStatus.INTERRUPTED
        assert result.last_checkpoint == saved.ref
        b2 = saved.task_snapshots[1]
        assert b2.status == TaskStatus.FAILED
        assert b2.error == "cancelled"
        assert saved.pipeline_status == PipelineStatus.INTERRUPTED

    @pytest.mark.asyncio
    async def test_cancelled_task_gets_a_fresh_retry_budget(self, make_machine, phases, store):
        saved, _ = await halted_run(make_machine, phases, store)

        agent = ScriptedAgent({"b2": [RuntimeError("still warming up")]})
        machine = make_machine(agent, max_retries=1)
        result = await machine.resume(saved.ref)

        assert result.success is True
        b2 = machine.status().phases[0].tasks[1]
        assert b2.status == TaskStatus.COMPLETED
        assert b2.attempts == 2
        assert agent.calls_for("b1") == 0

    @pytest.mark.asyncio
    async def test_phase_attempts_are_counted(self, make_machine, phases, store):
        saved, _ = await halted_run(make_machine, phases, store)
        machine = make_machine(ScriptedAgent())
        await machine.resume(saved.ref)
        business, models = machine.status().phases
        assert business.attempts == 2
        assert models.attempts == 1


class TestResumeRefused:
    @pytest.mark.asyncio
    async def test_missing_pipeline(self, make_machine):
        with pytest.raises(CheckpointNotFoundError):
            await make_machine(ScriptedAgent()).resume(ResumeRef(pipeline_id="pl-nothing"))

    @pytest.mark.asyncio
    async def test_missing_sequence(self, make_machine, phases):
        _, interrupted = await interrupted_run(make_machine, phases)
        with pytest.raises(CheckpointNotFoundError, match="Checkpoint 7"):
            await make_machine(ScriptedAgent()).resume(ResumeRef(pipeline_id=interrupted.pipeline_id, sequence=7))

    @pytest.mark.asyncio
    async def test_completed_pipeline(self, make_machine, phases):
        result = await make_machine(ScriptedAgent()).start("x", ExecutionMode.AUTO, phases(("business", ["b1"])))
        with pytest.raises(InvalidResumeStateError, match="COMPLETED"):
            await make_machine(ScriptedAgent()).resume(ResumeRef(pipeline_id=result.pipeline_id))

    @pytest.mark.asyncio
    async def test_failed_pipeline(self, make_machine, phases):
        agent = ScriptedAgent({"b1": [RuntimeError("nope")]})
        result = await make_machine(agent, max_retries=0).start(
            "x", ExecutionMode.AUTO, phases(("business", ["b1"]))
        )
        with pytest.raises(InvalidResumeStateError, match="FAILED"):
            await make_machine(ScriptedAgent()).resume(ResumeRef(pipeline_id=result.pipeline_id))

    @pytest.mark.asyncio
    async def test_rejected_pipeline(self, make_machine, phases, gate: ApprovalGate):
        machine = make_machine(ScriptedAgent())
        run = asyncio.ensure_future(
            machine.start("x", ExecutionMode.SEMI, phases(("business", ["b1"]), ("models", ["m1"])))
        )
        await wait_until(lambda: bool(gate.pending()))
        gate.decide(machine.pipeline_id, Decision(action=ApprovalAction.REJECT))
        result = await run

        with pytest.raises(InvalidResumeStateError, match="rejected"):
            await make_machine(ScriptedAgent()).resume(ResumeRef(pipeline_id=result.pipeline_id))


class TestSemiModeResume:
    async def _start_semi(self, make_machine, phases, gate):
        machine = make_machine(ScriptedAgent())
        run = asyncio.ensure_future(
            machine.start("x", ExecutionMode.SEMI, phases(("business", ["b1"]), ("models", ["m1"])))
        )
        await wait_until(lambda: bool(gate.pending()))
        return machine, run

    @pytest.mark.asyncio
    async def test_stop_during_gate_then_resume_reopens_gate(self, make_machine, phases, gate, store):
        machine, run = await self._start_semi(make_machine, phases, gate)
        machine.request_stop()
        interrupted = await run

        assert interrupted.final_status == PipelineStatus.INTERRUPTED
        assert gate.pending() == []
        latest = await store.load_latest(interrupted.pipeline_id)
        assert latest.phases[0].status == PhaseStatus.AWAITING_APPROVAL

        agent = ScriptedAgent()
        resumed = asyncio.ensure_future(make_machine(agent).resume(latest.ref))
        await wait_until(lambda: bool(gate.pending()))
        assert gate.pending()[0].phase_name == "business"
        assert agent.calls == []

        gate.decide(interrupted.pipeline_id, Decision(action=ApprovalAction.APPROVE))
        result = await resumed
        assert result.success is True
        assert [p["step"] for _, p in agent.calls] == ["m1"]

    @pytest.mark.asyncio
    async def test_resume_from_phase_complete_checkpoint_reopens_gate(self, make_machine, phases, gate, store):
        machine, run = await self._start_semi(make_machine, phases, gate)
        machine.request_stop()
        interrupted = await run

        # sequence 1 is the phase-complete checkpoint written right before the gate
        first = await store.load_by_id(interrupted.pipeline_id, 1)
        assert first.reason == CheckpointReason.PHASE_COMPLETE
        assert first.phases[0].status == PhaseStatus.COMPLETED

        resumed = asyncio.ensure_future(make_machine(ScriptedAgent()).resume(first.ref))
        await wait_until(lambda: bool(gate.pending()))
        gate.decide(interrupted.pipeline_id, Decision(action=ApprovalAction.APPROVE))
        assert (await resumed).success is True
