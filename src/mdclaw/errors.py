"""Error taxonomy shared by the orchestrator components."""

from __future__ import annotations


class MdclawError(RuntimeError):
    """Base error; ``recoverable`` tells the control loop whether to keep running."""

    recoverable = True

    def __init__(self, message: str) -> None:
        super().__init__(message)


class TransportDisconnected(MdclawError):
    """A transport adapter could not send or receive; retried next poll."""


class ExecutionTimeout(MdclawError):
    """A subprocess exceeded its wall-clock deadline and was killed."""


class ExecutionCrash(MdclawError):
    """A subprocess exited non-zero or overflowed its output budget."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class StoreUnavailable(MdclawError):
    """The durable store failed; the process must exit."""

    recoverable = False


class ResourceExhausted(MdclawError):
    """Host resources (disk space) ran out; the process must exit."""

    recoverable = False


class MalformedCommand(MdclawError):
    """A command bus file could not be parsed or validated."""

    def __init__(self, message: str, *, source_group: str | None = None) -> None:
        super().__init__(message)
        self.source_group = source_group


class UnauthorizedCommand(MdclawError):
    """A well-formed command failed the authorization rules."""

    def __init__(self, message: str, *, source_group: str | None = None) -> None:
        super().__init__(message)
        self.source_group = source_group


class CommandRejected(MdclawError):
    """An authorized command referenced state that does not exist."""
