"""Subprocess orchestration for reasoning-engine agents and approval-gated pipelines."""

__version__ = "0.1.0"
