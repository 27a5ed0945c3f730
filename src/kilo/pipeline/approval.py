"""Approval gate — suspends a semi-mode pipeline until an external decision arrives.

Key exports:
    ApprovalGate — wait(request) / decide(pipeline_id, decision) / pending()
    ApprovalRequest, Decision, ApprovalAction
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field

from kilo.pipeline.models import PhaseSummary, WireModel

logger = logging.getLogger("kilo.pipeline.approval")


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"


class Decision(WireModel):
    """External verdict on a completed phase. The payload is passed through unvalidated."""

    action: ApprovalAction
    payload: dict[str, Any] | None = None
    note: str | None = None


class ApprovalRequest(WireModel):
    pipeline_id: str
    phase_name: str
    next_phase: str | None = None
    summary: PhaseSummary | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


RequestHook = Callable[[ApprovalRequest], Awaitable[None]]


class ApprovalGate:
    """One outstanding request per pipeline, resolved by ``decide``.

    ``wait`` has no timeout. Cancelling the waiter clears the request, so a
    later ``decide`` for that pipeline returns False.
    """

    def __init__(self, *, on_request: RequestHook | None = None):
        self._on_request = on_request
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future[Decision]]] = {}

    async def wait(self, request: ApprovalRequest) -> Decision:
        if request.pipeline_id in self._pending:
            msg = f"Pipeline {request.pipeline_id} already has a pending approval request"
            raise RuntimeError(msg)

        future: asyncio.Future[Decision] = asyncio.get_running_loop().create_future()
        self._pending[request.pipeline_id] = (request, future)
        logger.info(
            "Pipeline %s awaiting approval after phase '%s'",
            request.pipeline_id,
            request.phase_name,
        )
        try:
            if self._on_request is not None:
                await self._on_request(request)
            decision = await future
        finally:
            self._pending.pop(request.pipeline_id, None)

        logger.info(
            "Pipeline %s phase '%s' decision: %s",
            request.pipeline_id,
            request.phase_name,
            decision.action.value,
        )
        return decision

    def decide(self, pipeline_id: str, decision: Decision) -> bool:
        """Resolve the pending request. Returns False when nothing is pending."""
        entry = self._pending.get(pipeline_id)
        if entry is None or entry[1].done():
            return False
        entry[1].set_result(decision)
        return True

    def pending(self) -> list[ApprovalRequest]:
        return [request for request, future in self._pending.values() if not future.done()]

    def get_pending(self, pipeline_id: str) -> ApprovalRequest | None:
        entry = self._pending.get(pipeline_id)
        if entry is None or entry[1].done():
            return None
        return entry[0]
