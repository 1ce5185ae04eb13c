"""Local stand-in agent that speaks the execution I/O protocol.

Reads the input document from stdin, replies with ``echo: <prompt>`` inside
output markers, then answers follow-up messages from ``input/`` until the
close marker appears. Bracketed directives in the prompt change behavior:
``[[silent]]`` (no reply), ``[[once]]`` (exit after the first reply),
``[[sleep:S]]``, ``[[exit:N]]``, ``[[flood:BYTES]]`` and ``[[refresh]]``
(issue a ``refresh_groups`` command).
"""

from __future__ import annotations

import argparse
import json
import re
import sys
import time
from pathlib import Path

from mdclaw.orchestrator.contracts import (
    CLOSE_MARKER_NAME,
    IpcCommand,
    IpcCommandType,
    parse_continuation_message,
    parse_execution_input,
)
from mdclaw.orchestrator.ipc import write_command
from mdclaw.orchestrator.output_parser import OUTPUT_END_MARKER, OUTPUT_START_MARKER

_DIRECTIVE = re.compile(r"\[\[(\w+)(?::([^\]]*))?\]\]")
POLL_INTERVAL_SECONDS = 0.1


def main(argv: list[str] | None = None) -> int:
    """Run one echo execution."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--ipc-dir", required=True)
    parser.add_argument("--secrets-file", default="")
    parser.add_argument("--max-wait-seconds", type=float, default=30.0)
    args = parser.parse_args(argv)

    document = parse_execution_input(sys.stdin.buffer.read())
    ipc_dir = Path(args.ipc_dir)
    directives = {name: value for name, value in _DIRECTIVE.findall(document.prompt)}
    prompt = _DIRECTIVE.sub("", document.prompt).strip()

    secrets = dict(document.secrets)
    if args.secrets_file and Path(args.secrets_file).exists():
        secrets.update(json.loads(Path(args.secrets_file).read_text("utf-8")))

    _emit_noise(f"echo agent session={document.session_id} group={document.group_folder}")
    if "sleep" in directives:
        time.sleep(float(directives["sleep"]))
    if "flood" in directives:
        _emit_noise("x" * int(directives["flood"]))
    if "refresh" in directives:
        write_command(
            ipc_dir / "tasks",
            IpcCommand(
                type=IpcCommandType.REFRESH_GROUPS,
                payload={},
                source_group=document.group_folder,
            ),
        )
    if "silent" not in directives:
        reply = f"echo: {prompt}"
        if secrets:
            reply += f" [secrets: {','.join(sorted(secrets))}]"
        _emit_block(reply)
    if "exit" in directives:
        return int(directives["exit"])
    if document.is_scheduled_task or "once" in directives:
        return 0
    return _serve_follow_ups(ipc_dir / "input", max_wait_seconds=args.max_wait_seconds)


def _serve_follow_ups(input_dir: Path, *, max_wait_seconds: float) -> int:
    deadline = time.monotonic() + max_wait_seconds
    close_marker = input_dir / CLOSE_MARKER_NAME
    while time.monotonic() < deadline:
        if close_marker.exists():
            close_marker.unlink(missing_ok=True)
            return 0
        for path in sorted(input_dir.glob("*.json")):
            if path.name.startswith("."):
                continue
            message = parse_continuation_message(path.read_bytes())
            path.unlink(missing_ok=True)
            _emit_block(f"echo: {message.content}")
            deadline = time.monotonic() + max_wait_seconds
        time.sleep(POLL_INTERVAL_SECONDS)
    return 0


def _emit_block(text: str) -> None:
    out = sys.stdout.buffer
    out.write(b"\n" + OUTPUT_START_MARKER + b"\n")
    out.write(text.encode("utf-8"))
    out.write(b"\n" + OUTPUT_END_MARKER + b"\n")
    out.flush()


def _emit_noise(text: str) -> None:
    sys.stdout.buffer.write(f"[echo-agent] {text}\n".encode())
    sys.stdout.buffer.flush()
    print(f"[echo-agent] {text[:200]}", file=sys.stderr, flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
