"""Exception taxonomy for the orchestrator.

Transient errors (``retryable = True``) are retried inside the dispatcher and
never escape it unless the retry budget is exhausted. Everything else
surfaces to the caller, either as a failed ``PipelineResult`` or, for fatal
persistence problems, as a raised exception.
"""

from __future__ import annotations


class KiloError(Exception):
    """Base class for all orchestrator errors."""

    retryable: bool = False


class ConfigError(KiloError, ValueError):
    """Invalid configuration or an unloadable capability provider."""


class TaskTimeoutError(KiloError):
    """An agent invocation exceeded its per-task timeout."""

    retryable = True

    def __init__(self, task_id: str, timeout_ms: int):
        super().__init__(f"Task {task_id} timed out after {timeout_ms}ms")
        self.task_id = task_id
        self.timeout_ms = timeout_ms


class AgentInvocationError(KiloError):
    """The provider raised, or returned something that is not a result mapping."""

    retryable = True

    def __init__(self, message: str, *, role: str | None = None):
        super().__init__(message)
        self.role = role


class RetryExhaustedError(KiloError):
    """A task failed on every attempt its retry budget allowed."""

    def __init__(self, task_id: str, attempts: int, last_error: Exception | str | None):
        super().__init__(f"Task {task_id} failed after {attempts} attempt(s): {last_error}")
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class ApprovalRejectedError(KiloError):
    """A semi-mode approval gate was rejected. Not an engineering failure."""

    def __init__(self, pipeline_id: str, phase_name: str, note: str | None = None):
        msg = f"Pipeline {pipeline_id} rejected after phase '{phase_name}'"
        if note:
            msg = f"{msg}: {note}"
        super().__init__(msg)
        self.pipeline_id = pipeline_id
        self.phase_name = phase_name
        self.note = note


class CheckpointWriteError(KiloError):
    """A checkpoint could not be committed. Fatal for the run."""

    def __init__(self, pipeline_id: str, reason: str):
        super().__init__(f"Failed to write checkpoint for pipeline {pipeline_id}: {reason}")
        self.pipeline_id = pipeline_id


class CheckpointNotFoundError(KiloError, LookupError):
    """A resume reference points at no stored checkpoint."""

    def __init__(self, pipeline_id: str, sequence: int | None = None):
        if sequence is None:
            msg = f"No checkpoints found for pipeline {pipeline_id}"
        else:
            msg = f"Checkpoint {sequence} not found for pipeline {pipeline_id}"
        super().__init__(msg)
        self.pipeline_id = pipeline_id
        self.sequence = sequence


class InvalidResumeStateError(KiloError):
    """Resume was attempted from a terminal or rejected checkpoint."""
