"""Durable storage layer for the orchestrator."""
