"""Shared fixtures: a scripted agent provider and pipeline builders."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Mapping
from typing import Any

import pytest

from kilo.pipeline.approval import ApprovalGate
from kilo.pipeline.checkpoints import MemoryCheckpointStore
from kilo.pipeline.dispatcher import AgentDispatcher
from kilo.pipeline.engine import PipelineStateMachine
from kilo.pipeline.models import AgentRole, PhaseConfig, TaskTemplate
from kilo.pipeline.retry import RetryPolicy

HANG = "hang"


class ScriptedAgent:
    """Provider double keyed on ``payload["step"]``.

    Each step maps to a list of outcomes consumed one per invocation: a dict
    is returned, an exception is raised, ``HANG`` blocks until cancelled.
    Once a script runs out the step succeeds with ``{"step": step}``.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[tuple[AgentRole, dict[str, Any]]] = []
        self.started = asyncio.Event()

    async def __call__(
        self,
        role: AgentRole,
        payload: Mapping[str, Any],
        *,
        cancel: asyncio.Event,
    ) -> Any:
        step = payload.get("step")
        self.calls.append((role, dict(payload)))
        self.started.set()
        await asyncio.sleep(0)
        outcomes = self.script.get(step, [])
        outcome = outcomes.pop(0) if outcomes else {"step": step}
        if outcome == HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def calls_for(self, step: str) -> int:
        return sum(1 for _, payload in self.calls if payload.get("step") == step)


def build_phases(*phases: tuple[str, list[str]], parallel: tuple[str, ...] = (), disabled: tuple[str, ...] = ()):
    """``("business", ["b1", "b2"])`` → a phase with two developer tasks."""
    return {
        name: PhaseConfig(
            enabled=name not in disabled,
            parallel=name in parallel,
            tasks=[
                TaskTemplate(description=f"do {step}", role=AgentRole.DEVELOPER, payload={"step": step})
                for step in steps
            ],
        )
        for name, steps in phases
    }


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def build_dispatcher(agent, *, max_retries: int = 3) -> AgentDispatcher:
    policy = RetryPolicy(base_delay_ms=10, max_delay_ms=100, rng=random.Random(7))
    return AgentDispatcher(agent, policy, max_retries=max_retries, sleep=no_sleep)


@pytest.fixture
def store():
    return MemoryCheckpointStore()


@pytest.fixture
def gate():
    return ApprovalGate()


@pytest.fixture
def make_machine(store, gate):
    def _make(
        agent,
        *,
        max_retries: int = 3,
        checkpoint_interval: int = 5,
        task_timeout_ms: int = 1000,
        max_concurrency: int = 5,
        checkpoint_store=None,
    ) -> PipelineStateMachine:
        return PipelineStateMachine(
            build_dispatcher(agent, max_retries=max_retries),
            checkpoint_store or store,
            gate,
            checkpoint_interval=checkpoint_interval,
            task_timeout_ms=task_timeout_ms,
            max_concurrency=max_concurrency,
        )

    return _make


@pytest.fixture
def phases():
    return build_phases


@pytest.fixture
def scripted():
    return ScriptedAgent
