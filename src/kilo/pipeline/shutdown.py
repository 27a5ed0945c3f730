"""Shutdown coordinator — the process's only signal hook.

On SIGINT/SIGTERM every registered state machine is halted, its interrupt
snapshot saved through that machine's checkpoint store, and ``terminated`` is set so the
composition root can exit.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from kilo.errors import CheckpointWriteError
from kilo.pipeline.engine import PipelineStateMachine
from kilo.pipeline.models import Checkpoint

logger = logging.getLogger("kilo.pipeline.shutdown")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    def __init__(self, *, grace_period_seconds: float = 5.0):
        self.grace_period_seconds = grace_period_seconds
        self._machines: list[PipelineStateMachine] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown_task: asyncio.Task[list[Checkpoint]] | None = None
        self._shutting_down = False
        self.terminated = asyncio.Event()
        self.signal_name: str | None = None

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def register(self, machine: PipelineStateMachine) -> None:
        """Track ``machine``. During a shutdown it is told to stop straight away.

        A run stopped this way writes its own interrupt checkpoint.
        """
        if machine not in self._machines:
            self._machines.append(machine)
        if self._shutting_down:
            logger.warning("Run registered during shutdown (%s); stopping it", self.signal_name)
            machine.request_stop()

    def unregister(self, machine: PipelineStateMachine) -> None:
        if machine in self._machines:
            self._machines.remove(machine)

    def reset(self) -> None:
        """Re-arm the coordinator after a completed shutdown."""
        if self._shutdown_task is not None and not self._shutdown_task.done():
            msg = "Cannot reset while a shutdown is in progress"
            raise RuntimeError(msg)
        self._shutting_down = False
        self._shutdown_task = None
        self.signal_name = None
        self.terminated = asyncio.Event()

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Register SIGINT/SIGTERM handlers on the running event loop."""
        self._loop = loop or asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            self._loop.add_signal_handler(sig, self._on_signal, sig.name)
        logger.debug("Signal handlers installed")

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in HANDLED_SIGNALS:
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def _on_signal(self, signal_name: str) -> None:
        if self._shutting_down:
            logger.warning("Received %s while already shutting down; ignoring", signal_name)
            return
        logger.info("Received %s, checkpointing running pipelines", signal_name)
        loop = self._loop or asyncio.get_running_loop()
        self._shutdown_task = loop.create_task(self.shutdown(signal_name))

    async def shutdown(self, signal_name: str = "shutdown") -> list[Checkpoint]:
        """Halt every registered run and persist its interrupt checkpoint."""
        if self._shutting_down:
            logger.warning("Shutdown already in progress (%s ignored)", signal_name)
            return []
        self._shutting_down = True
        self.signal_name = signal_name

        saved = await asyncio.gather(*(self._halt(m) for m in list(self._machines)))
        checkpoints = [c for c in saved if c is not None]
        logger.info("Shutdown complete: %d interrupt checkpoint(s) written", len(checkpoints))
        self.terminated.set()
        return checkpoints

    async def wait(self) -> None:
        await self.terminated.wait()

    async def _halt(self, machine: PipelineStateMachine) -> Checkpoint | None:
        snapshot = await machine.halt(self.grace_period_seconds)
        saved = None
        if snapshot is not None:
            try:
                saved = await machine.store.save(snapshot)
            except CheckpointWriteError:
                logger.exception("Could not write interrupt checkpoint for %s", snapshot.pipeline_id)
        machine.acknowledge_halt(saved)
        return saved
