"""Deterministic classification of how an execution ended."""

from __future__ import annotations

from dataclasses import dataclass

from mdclaw.orchestrator.models import ExitKind, FailureClass

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "oauth",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "usage limit",
    "billing",
    "credits",
    "too many requests",
    "rate limit",
    "429",
)
_RUNTIME_PATTERNS: tuple[str, ...] = (
    "unable to find image",
    "no such image",
    "cannot connect to the docker daemon",
    "permission denied while trying to connect",
    "oci runtime",
)


@dataclass(slots=True)
class ExitClassification:
    """Normalized outcome with a short machine-readable reason."""

    exit_kind: ExitKind
    failure_class: FailureClass | None
    reason_code: str


def classify_exit(  # noqa: PLR0913
    *,
    exit_code: int | None,
    timed_out: bool,
    output_overflow: bool,
    spawn_error: str | None = None,
    killed: bool = False,
    stderr_tail: str = "",
) -> ExitClassification:
    """Map raw process facts to clean / timeout / crashed."""

    if spawn_error is not None:
        return ExitClassification(ExitKind.CRASHED, FailureClass.SPAWN_FAILED, "spawn_failed")
    if timed_out:
        return ExitClassification(ExitKind.TIMEOUT, FailureClass.TIMEOUT, "deadline_exceeded")
    if output_overflow:
        return ExitClassification(ExitKind.CRASHED, FailureClass.OUTPUT_LIMIT, "output_limit")
    if killed:
        return ExitClassification(ExitKind.CRASHED, FailureClass.KILLED, "killed")
    if exit_code == 0:
        return ExitClassification(ExitKind.CLEAN, None, "ok")
    return ExitClassification(
        ExitKind.CRASHED,
        FailureClass.NONZERO_EXIT,
        _stderr_reason(stderr_tail),
    )


def _stderr_reason(stderr_tail: str) -> str:
    lowered = stderr_tail.lower()
    if any(pattern in lowered for pattern in _ACCESS_OR_AUTH_PATTERNS):
        return "access_or_auth"
    if any(pattern in lowered for pattern in _QUOTA_PATTERNS):
        return "quota_or_rate_limit"
    if any(pattern in lowered for pattern in _RUNTIME_PATTERNS):
        return "sandbox_runtime"
    return "nonzero_exit"
