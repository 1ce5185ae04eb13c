"""Sandboxed agent execution orchestrator for chat groups."""

__version__ = "0.1.0"
