"""Agent dispatcher — invokes one task against its role's provider with timeout and retry.

Key exports:
    AgentDispatcher — dispatch(task, role, timeout_ms) -> TaskOutcome
    AgentInvoker — Protocol for the capability provider boundary
    task_context — the payload handed to a provider for one task
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from kilo.errors import AgentInvocationError, RetryExhaustedError, TaskTimeoutError
from kilo.pipeline.models import AgentRole, Task, TaskOutcome, TaskStatus
from kilo.pipeline.retry import RetryPolicy

logger = logging.getLogger("kilo.pipeline.dispatcher")

SIMULATE_FLAG = "simulate"


def task_context(task: Task, objective: str = "") -> dict[str, Any]:
    """The payload an agent receives: who the task is plus its template payload.

    Template payload keys (including approval modifications) take precedence.
    """
    return {
        "taskId": task.id,
        "phaseName": task.phase_name,
        "description": task.description,
        "objective": objective,
        **task.payload,
    }


# ── Callback Protocols ───────────────────────────────────────────────────────


class AgentInvoker(Protocol):
    """The capability provider boundary. Raising anything counts as an invocation error.

    ``payload`` carries ``taskId``, ``phaseName``, ``description`` and the run
    ``objective`` alongside the task template payload.
    """

    async def __call__(
        self,
        role: AgentRole,
        payload: Mapping[str, Any],
        *,
        cancel: asyncio.Event,
    ) -> Mapping[str, Any]: ...


SleepFn = Callable[[float], Awaitable[None]]


# ── Dispatcher ───────────────────────────────────────────────────────────────


class AgentDispatcher:
    """Stateless across tasks: every call works only on the task it was given.

    The dispatcher never mutates the task. It returns a ``TaskOutcome`` and the
    owning phase applies it.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        policy: RetryPolicy,
        *,
        max_retries: int = 3,
        simulate: bool = False,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._invoker = invoker
        self._policy = policy
        self.max_retries = max_retries
        self.simulate = simulate
        self._sleep = sleep

    def simulated(self) -> AgentDispatcher:
        """A copy that flags every payload with ``simulate: true`` (dry-run)."""
        return AgentDispatcher(
            self._invoker,
            self._policy,
            max_retries=self.max_retries,
            simulate=True,
            sleep=self._sleep,
        )

    def with_max_retries(self, max_retries: int) -> AgentDispatcher:
        return AgentDispatcher(
            self._invoker,
            self._policy,
            max_retries=max_retries,
            simulate=self.simulate,
            sleep=self._sleep,
        )

    async def dispatch(
        self,
        task: Task,
        role: AgentRole,
        timeout_ms: int,
        *,
        cancel: asyncio.Event | None = None,
        objective: str = "",
    ) -> TaskOutcome:
        payload = task_context(task, objective)
        if self.simulate:
            payload[SIMULATE_FLAG] = True
        cancel = cancel if cancel is not None else asyncio.Event()

        invocations = 0
        while True:
            invocations += 1
            try:
                result = await self._invoke_once(task, role, payload, timeout_ms, cancel)
            except (TaskTimeoutError, AgentInvocationError) as e:
                decision = self._policy.decide(invocations - 1, self.max_retries)
                if not decision.retry:
                    exhausted = RetryExhaustedError(task.id, task.attempts + invocations, e)
                    logger.error("%s", exhausted)
                    return TaskOutcome(
                        task_id=task.id,
                        status=TaskStatus.FAILED,
                        attempts=task.attempts + invocations,
                        error=str(exhausted),
                    )
                logger.warning(
                    "Task %s attempt %d failed (%s); retrying in %dms",
                    task.id,
                    invocations,
                    e,
                    decision.delay_ms,
                )
                await self._sleep(decision.delay_ms / 1000)
                continue

            logger.debug("Task %s completed after %d invocation(s)", task.id, invocations)
            return TaskOutcome(
                task_id=task.id,
                status=TaskStatus.COMPLETED,
                attempts=task.attempts + invocations,
                result=result,
            )

    async def _invoke_once(
        self,
        task: Task,
        role: AgentRole,
        payload: dict[str, Any],
        timeout_ms: int,
        cancel: asyncio.Event,
    ) -> dict[str, Any]:
        try:
            result = await asyncio.wait_for(
                self._invoker(role, dict(payload), cancel=cancel),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError:
            raise TaskTimeoutError(task.id, timeout_ms) from None
        except AgentInvocationError:
            raise
        except Exception as e:
            raise AgentInvocationError(
                f"{role.value} agent failed on task {task.id}: {e}", role=role.value
            ) from e

        if not isinstance(result, Mapping):
            msg = f"{role.value} agent returned {type(result).__name__}, expected a mapping"
            raise AgentInvocationError(msg, role=role.value)
        return dict(result)
