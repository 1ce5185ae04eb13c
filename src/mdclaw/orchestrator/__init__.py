"""Agent execution orchestrator.

Turns chat messages into sandboxed agent runs: the engine polls stored
messages per group, the execution queue bounds concurrency, the container
runner streams marker-delimited output back to the conversation, and the
command bus applies file-based requests written by agents from inside
their sandboxes.
"""
