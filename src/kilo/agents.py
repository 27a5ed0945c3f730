"""Agent routing — maps each role to its configured capability provider.

Providers are loaded from ``capability_ref`` dotted paths
(``package.module:attribute``). The attribute may be an async callable
matching ``AgentInvoker``, or a class that is constructed with the role's
config and is itself callable.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from collections.abc import Mapping
from typing import Any

from kilo.config import RoleConfig
from kilo.errors import AgentInvocationError, ConfigError
from kilo.pipeline.dispatcher import SIMULATE_FLAG, AgentInvoker
from kilo.pipeline.models import AgentRole

logger = logging.getLogger(__name__)


class SimulatedAgent:
    """Built-in provider. Produces a placeholder result and touches nothing."""

    def __init__(self, config: RoleConfig | None = None):
        self.config = config

    async def __call__(
        self,
        role: AgentRole,
        payload: Mapping[str, Any],
        *,
        cancel: asyncio.Event,
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        return {
            "role": role.value,
            "model": self.config.model if self.config else "default",
            "summary": f"{role.value} completed: {payload.get('description', 'task')}",
            "simulated": bool(payload.get(SIMULATE_FLAG, False)),
        }


def load_capability(ref: str, config: RoleConfig | None = None) -> AgentInvoker:
    """Resolve a ``module:attribute`` reference to a provider.

    Raises:
        ConfigError: If the module or attribute can't be loaded, or isn't callable.
    """
    module_path, _, attr = ref.partition(":")
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigError(f"Cannot import capability module '{module_path}': {e}") from e

    target = getattr(module, attr, None)
    if target is None:
        raise ConfigError(f"Module '{module_path}' has no attribute '{attr}'")
    if isinstance(target, type):
        target = target(config)
    if not callable(target):
        raise ConfigError(f"Capability '{ref}' is not callable")
    return target


class AgentRouter:
    """An ``AgentInvoker`` that forwards each call to the provider for its role."""

    def __init__(self, providers: Mapping[AgentRole, AgentInvoker]):
        self._providers = dict(providers)

    @classmethod
    def from_config(cls, agents: list[RoleConfig]) -> AgentRouter:
        providers: dict[AgentRole, AgentInvoker] = {}
        for agent in agents:
            if not agent.enabled:
                logger.info("Agent role '%s' disabled", agent.role)
                continue
            providers[AgentRole(agent.role)] = load_capability(agent.capability_ref, agent)
            logger.info("Agent role '%s' → %s", agent.role, agent.capability_ref)
        return cls(providers)

    @property
    def roles(self) -> list[AgentRole]:
        return sorted(self._providers, key=lambda r: r.value)

    async def __call__(
        self,
        role: AgentRole,
        payload: Mapping[str, Any],
        *,
        cancel: asyncio.Event,
    ) -> Mapping[str, Any]:
        provider = self._providers.get(role)
        if provider is None:
            raise AgentInvocationError(f"No agent configured for role '{role.value}'", role=role.value)
        return await provider(role, payload, cancel=cancel)
