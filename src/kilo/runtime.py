"""Kilo runtime — composition root that builds every component once and wires them.

Startup:
1. Load .kilo/config.yaml (or take a KiloConfig)
2. Open the checkpoint store (file or SQLite)
3. Build retry policy, agent router, dispatcher, approval gate, shutdown coordinator

Each run gets its own PipelineStateMachine, registered with the shutdown
coordinator for as long as it runs. Dry-run pipelines checkpoint into a
process-local memory store.
"""

from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path

from kilo.agents import AgentRouter
from kilo.config import CONFIG_DIRNAME, SQLITE_FILENAME, KiloConfig, load_config
from kilo.pipeline.approval import ApprovalGate, RequestHook
from kilo.pipeline.checkpoints import (
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    SqliteCheckpointStore,
)
from kilo.pipeline.dispatcher import AgentDispatcher, AgentInvoker, SleepFn
from kilo.pipeline.engine import PipelineStateMachine
from kilo.pipeline.models import (
    ExecutionMode,
    Pipeline,
    PipelineResult,
    ResumeRef,
    new_pipeline_id,
)
from kilo.pipeline.retry import RetryPolicy
from kilo.pipeline.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


class KiloRuntime:
    """Owns the long-lived components and the set of live runs.

    Usage:
        async with KiloRuntime.from_root(Path.cwd()) as runtime:
            result = await runtime.run("Build a todo app")
    """

    def __init__(
        self,
        config: KiloConfig,
        *,
        root: Path | None = None,
        invoker: AgentInvoker | None = None,
        store: CheckpointStore | None = None,
        rng: random.Random | None = None,
        sleep: SleepFn = asyncio.sleep,
        on_approval_request: RequestHook | None = None,
    ):
        self.config = config
        self.root = root or Path.cwd()
        self._invoker = invoker
        self._rng = rng
        self._sleep = sleep

        self.store: CheckpointStore | None = store
        self.dry_run_store = MemoryCheckpointStore()
        self.gate = ApprovalGate(on_request=on_approval_request)
        self.shutdown = ShutdownCoordinator(
            grace_period_seconds=config.shutdown.grace_period_seconds
        )
        self.dispatcher: AgentDispatcher | None = None

        self._machines: dict[str, PipelineStateMachine] = {}
        self._results: dict[str, PipelineResult] = {}
        self._tasks: dict[str, asyncio.Task[PipelineResult]] = {}
        self._started = False

    @classmethod
    def from_root(cls, root: Path, **kwargs) -> KiloRuntime:
        config = load_config(root / CONFIG_DIRNAME)
        return cls(config, root=root, **kwargs)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        # A previous close() left the coordinator in its shut-down state
        self.shutdown.reset()
        if self.store is None:
            self.store = await self._open_store()

        policy = RetryPolicy(
            base_delay_ms=self.config.retry.base_delay_ms,
            max_delay_ms=self.config.retry.max_delay_ms,
            jitter_ratio=self.config.retry.jitter_ratio,
            rng=self._rng,
        )
        invoker = self._invoker or AgentRouter.from_config(self.config.agents)
        self.dispatcher = AgentDispatcher(
            invoker,
            policy,
            max_retries=self.config.pipeline.max_retries,
            sleep=self._sleep,
        )
        self._started = True
        logger.info(
            "Kilo runtime started (project=%s, checkpoints=%s)",
            self.config.project.name,
            self.config.checkpoints.backend,
        )

    async def close(self) -> None:
        """Halt live runs, wait for them to return, and close the store."""
        if self._tasks:
            await self.shutdown.shutdown("close")
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        if self.store is not None:
            await self.store.close()
        self._started = False
        logger.info("Kilo runtime stopped")

    async def __aenter__(self) -> KiloRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _open_store(self) -> CheckpointStore:
        directory = self.config.checkpoints.resolve(self.root)
        if self.config.checkpoints.backend == "sqlite":
            return await SqliteCheckpointStore.open(directory / SQLITE_FILENAME)
        return FileCheckpointStore(directory)

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def run(
        self,
        objective: str,
        mode: ExecutionMode | None = None,
        *,
        pipeline_id: str | None = None,
    ) -> PipelineResult:
        run_config = self.config.run_config(objective, mode)
        pipeline_id = pipeline_id or new_pipeline_id()
        machine = self._register(pipeline_id, run_config.mode)
        try:
            result = await machine.run(run_config, pipeline_id=pipeline_id)
        finally:
            self._unregister(pipeline_id, machine)
        self._results[pipeline_id] = result
        return result

    async def resume(self, ref: ResumeRef) -> PipelineResult:
        store = await self._store_for(ref.pipeline_id)
        machine = self._register(ref.pipeline_id, store=store)
        try:
            result = await machine.resume(ref)
        finally:
            self._unregister(ref.pipeline_id, machine)
        self._results[ref.pipeline_id] = result
        return result

    def launch(self, objective: str, mode: ExecutionMode | None = None) -> str:
        """Start a run in the background and return its pipeline ID."""
        self.config.run_config(objective, mode)  # validate before scheduling
        pipeline_id = new_pipeline_id()
        self._spawn(pipeline_id, self.run(objective, mode, pipeline_id=pipeline_id))
        return pipeline_id

    async def launch_resume(self, ref: ResumeRef) -> str:
        """Check ``ref`` is resumable, then resume it in the background."""
        if self.is_running(ref.pipeline_id):
            raise RuntimeError(f"Pipeline {ref.pipeline_id} is already running")
        store = await self._store_for(ref.pipeline_id)
        await PipelineStateMachine.load_resumable(store, ref)
        self._spawn(ref.pipeline_id, self.resume(ref))
        return ref.pipeline_id

    # ── Inspection ───────────────────────────────────────────────────────────

    def is_running(self, pipeline_id: str) -> bool:
        return pipeline_id in self._machines or pipeline_id in self._tasks

    def status(self, pipeline_id: str) -> Pipeline | None:
        machine = self._machines.get(pipeline_id)
        return machine.status() if machine else None

    def result(self, pipeline_id: str) -> PipelineResult | None:
        return self._results.get(pipeline_id)

    def live_pipelines(self) -> list[str]:
        return sorted(set(self._machines) | set(self._tasks))

    async def list_pipelines(self) -> list[str]:
        assert self.store is not None
        known = set(await self.store.list_pipelines())
        known.update(await self.dry_run_store.list_pipelines())
        known.update(self._machines)
        known.update(self._results)
        return sorted(known)

    async def store_for(self, pipeline_id: str) -> CheckpointStore:
        return await self._store_for(pipeline_id)

    # ── Internals ────────────────────────────────────────────────────────────

    def _register(
        self,
        pipeline_id: str,
        mode: ExecutionMode | None = None,
        *,
        store: CheckpointStore | None = None,
    ) -> PipelineStateMachine:
        if not self._started or self.dispatcher is None or self.store is None:
            raise RuntimeError("KiloRuntime.start() must be awaited before running pipelines")
        if pipeline_id in self._machines:
            raise RuntimeError(f"Pipeline {pipeline_id} is already running")
        if store is None:
            store = self.dry_run_store if mode == ExecutionMode.DRY_RUN else self.store

        settings = self.config.pipeline
        machine = PipelineStateMachine(
            self.dispatcher,
            store,
            self.gate,
            checkpoint_interval=settings.checkpoint_interval,
            task_timeout_ms=settings.task_timeout_ms,
            max_concurrency=settings.max_concurrency,
        )
        self._machines[pipeline_id] = machine
        self.shutdown.register(machine)
        return machine

    def _unregister(self, pipeline_id: str, machine: PipelineStateMachine) -> None:
        self.shutdown.unregister(machine)
        if self._machines.get(pipeline_id) is machine:
            del self._machines[pipeline_id]

    async def _store_for(self, pipeline_id: str) -> CheckpointStore:
        assert self.store is not None
        if pipeline_id in await self.dry_run_store.list_pipelines():
            return self.dry_run_store
        return self.store

    def _spawn(self, pipeline_id: str, coro) -> None:
        task = asyncio.create_task(coro, name=f"kilo-{pipeline_id}")
        self._tasks[pipeline_id] = task

        def _done(t: asyncio.Task[PipelineResult]) -> None:
            self._tasks.pop(pipeline_id, None)
            if t.cancelled():
                logger.warning("Pipeline %s task cancelled", pipeline_id)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Pipeline %s crashed: %s", pipeline_id, exc, exc_info=exc)

        task.add_done_callback(_done)
