"""Kilo — BMAD pipeline orchestrator with checkpoint/resume."""

__version__ = "0.3.0"
