"""Configuration loading for Kilo.

Reads .kilo/config.yaml into a validated ``KiloConfig``. Environment variables
override a handful of deployment-sensitive settings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Annotated, Literal, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from kilo.errors import ConfigError
from kilo.pipeline.models import (
    AgentRole,
    ExecutionMode,
    PhaseConfig,
    PipelineRunConfig,
    TaskTemplate,
    validate_phase_config,
)

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".kilo"
CONFIG_FILENAME = "config.yaml"
SQLITE_FILENAME = "checkpoints.db"

DEFAULT_CAPABILITY_REF = "kilo.agents:SimulatedAgent"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "kilo-project"


class PipelineSettings(BaseModel):
    mode: ExecutionMode = ExecutionMode.SEMI
    max_retries: int = Field(default=3, ge=0)
    checkpoint_interval: int = Field(default=5, ge=1)
    task_timeout_ms: int = Field(default=300_000, gt=0)
    max_concurrency: int = Field(default=5, ge=1)


class RetrySettings(BaseModel):
    base_delay_ms: int = Field(default=500, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    jitter_ratio: float = Field(default=0.25, ge=0, le=1)


class ShutdownSettings(BaseModel):
    grace_period_seconds: float = Field(default=5.0, ge=0)


class CheckpointSettings(BaseModel):
    backend: Literal["file", "sqlite"] = "file"
    directory: str = f"{CONFIG_DIRNAME}/checkpoints"  # relative to the project root

    def resolve(self, root: Path) -> Path:
        path = Path(self.directory)
        return path if path.is_absolute() else root / path


# ── Per-role agent configuration ─────────────────────────────────────────────


class _RoleConfigBase(BaseModel):
    capability_ref: str = DEFAULT_CAPABILITY_REF  # "package.module:attribute"
    enabled: bool = True
    model: str = "default"
    temperature: float = Field(default=0.2, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)

    @field_validator("capability_ref")
    @classmethod
    def _validate_ref(cls, v: str) -> str:
        module, sep, attr = v.partition(":")
        if not sep or not module or not attr:
            raise ValueError(f"capability_ref must look like 'package.module:attribute', got {v!r}")
        return v


class ArchitectConfig(_RoleConfigBase):
    role: Literal["architect"] = "architect"
    patterns: list[str] = Field(default_factory=lambda: ["layered", "hexagonal"])


class DeveloperConfig(_RoleConfigBase):
    role: Literal["developer"] = "developer"
    language: str = "python"
    framework: str | None = None


class TesterConfig(_RoleConfigBase):
    role: Literal["tester"] = "tester"
    suite: Literal["unit", "integration", "e2e", "all"] = "all"
    coverage: bool = False


class DebuggerConfig(_RoleConfigBase):
    role: Literal["debugger"] = "debugger"
    max_fix_attempts: int = Field(default=3, ge=1)


RoleConfig = Annotated[
    Union[ArchitectConfig, DeveloperConfig, TesterConfig, DebuggerConfig],
    Field(discriminator="role"),
]


def default_agents() -> list[RoleConfig]:
    return [ArchitectConfig(), DeveloperConfig(), TesterConfig(), DebuggerConfig()]


def default_phases() -> dict[str, PhaseConfig]:
    """The four BMAD phases, one task each."""
    return {
        "business": PhaseConfig(
            tasks=[TaskTemplate(description="Capture business requirements", role=AgentRole.ARCHITECT)]
        ),
        "models": PhaseConfig(
            tasks=[TaskTemplate(description="Design architecture and data models", role=AgentRole.ARCHITECT)]
        ),
        "actions": PhaseConfig(
            tasks=[TaskTemplate(description="Implement the planned features", role=AgentRole.DEVELOPER)]
        ),
        "deliverables": PhaseConfig(
            tasks=[TaskTemplate(description="Validate deliverables", role=AgentRole.TESTER)]
        ),
    }


class KiloConfig(BaseModel):
    """Top-level Kilo configuration (matches .kilo/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    shutdown: ShutdownSettings = Field(default_factory=ShutdownSettings)
    checkpoints: CheckpointSettings = Field(default_factory=CheckpointSettings)
    agents: list[RoleConfig] = Field(default_factory=default_agents)
    phases: dict[str, PhaseConfig] = Field(default_factory=default_phases)

    @model_validator(mode="after")
    def _validate(self) -> KiloConfig:
        roles = [a.role for a in self.agents]
        dupes = sorted({r for r in roles if roles.count(r) > 1})
        if dupes:
            raise ValueError(f"Duplicate agent roles: {dupes}")

        if not self.phases:
            raise ValueError("At least one phase must be configured")
        validate_phase_config(self.phases)

        # Every role an enabled phase dispatches to needs an enabled agent
        enabled = {a.role for a in self.agents if a.enabled}
        for name, phase in self.phases.items():
            if not phase.enabled:
                continue
            for template in phase.tasks:
                if template.role.value not in enabled:
                    raise ValueError(
                        f"Phase '{name}' assigns a task to role '{template.role.value}' "
                        "but no enabled agent is configured for it"
                    )
        return self

    def agent_for(self, role: AgentRole) -> RoleConfig | None:
        for agent in self.agents:
            if agent.role == role.value:
                return agent
        return None

    def run_config(self, objective: str, mode: ExecutionMode | None = None) -> PipelineRunConfig:
        """Build a validated run configuration for ``objective``."""
        try:
            return PipelineRunConfig(
                objective=objective,
                mode=mode or self.pipeline.mode,
                phases=self.phases,
                max_retries=self.pipeline.max_retries,
                checkpoint_interval=self.pipeline.checkpoint_interval,
                task_timeout_ms=self.pipeline.task_timeout_ms,
                max_concurrency=self.pipeline.max_concurrency,
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid run configuration: {e}") from e


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(kilo_dir: Path) -> KiloConfig:
    """Load Kilo configuration from a .kilo/ directory.

    Args:
        kilo_dir: Path to the .kilo/ directory.

    Returns:
        Validated KiloConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ConfigError: If the file is not valid YAML or fails validation.
    """
    config_path = kilo_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"Kilo config not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    try:
        config = KiloConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e

    apply_env_overrides(config)
    logger.info("Loaded Kilo config: project=%s", config.project.name)
    return config


def apply_env_overrides(config: KiloConfig) -> KiloConfig:
    """Environment variable overrides for deployment."""
    mode = os.environ.get("KILO_MODE")
    if mode:
        try:
            config.pipeline.mode = ExecutionMode(mode)
        except ValueError as e:
            raise ConfigError(f"KILO_MODE must be one of auto, semi, dry-run; got {mode!r}") from e

    checkpoint_dir = os.environ.get("KILO_CHECKPOINT_DIR")
    if checkpoint_dir:
        config.checkpoints.directory = checkpoint_dir

    backend = os.environ.get("KILO_CHECKPOINT_BACKEND")
    if backend:
        if backend not in ("file", "sqlite"):
            raise ConfigError(f"KILO_CHECKPOINT_BACKEND must be 'file' or 'sqlite'; got {backend!r}")
        config.checkpoints.backend = backend

    max_retries = os.environ.get("KILO_MAX_RETRIES")
    if max_retries:
        try:
            value = int(max_retries)
        except ValueError as e:
            raise ConfigError(f"KILO_MAX_RETRIES must be an integer; got {max_retries!r}") from e
        if value < 0:
            raise ConfigError("KILO_MAX_RETRIES must be >= 0")
        config.pipeline.max_retries = value
    return config


def write_default_config(root: Path, *, project_name: str | None = None, force: bool = False) -> Path:
    """Write a default .kilo/config.yaml under ``root``. Returns the file path."""
    kilo_dir = root / CONFIG_DIRNAME
    config_path = kilo_dir / CONFIG_FILENAME
    if config_path.exists() and not force:
        raise FileExistsError(f"Config already exists: {config_path}")

    config = KiloConfig(project=ProjectConfig(name=project_name or root.resolve().name))
    kilo_dir.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    config_path.write_text(yaml.safe_dump(data, sort_keys=False))
    logger.info("Wrote default config to %s", config_path)
    return config_path
