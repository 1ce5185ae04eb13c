"""Default trigger evaluation, prompt assembly and outbound text cleanup."""

from __future__ import annotations

import re
from functools import lru_cache
from html import escape

from mdclaw.orchestrator.models import NewMessage, RegisteredGroup
from mdclaw.storage.common import to_iso

_INTERNAL_SPAN = re.compile(r"<internal>.*?</internal>", re.DOTALL)


@lru_cache(maxsize=128)
def trigger_regex(trigger_pattern: str) -> re.Pattern[str]:
    """Case-insensitive match of the trigger as a standalone token."""

    return re.compile(rf"(?:^|\s){re.escape(trigger_pattern.strip())}(?!\w)", re.IGNORECASE)


def is_triggered(group: RegisteredGroup, messages: list[NewMessage], *, is_admin: bool) -> bool:
    if is_admin or not group.requires_trigger:
        return True
    pattern = trigger_regex(group.trigger_pattern)
    return any(pattern.search(message.content.strip()) for message in messages)


def format_messages(messages: list[NewMessage]) -> str:
    lines = [
        f'<message sender="{escape(message.sender_name)}" '
        f'time="{to_iso(message.timestamp)}">{escape(message.content, quote=False)}</message>'
        for message in messages
    ]
    return "<messages>\n" + "\n".join(lines) + "\n</messages>"


def format_outbound(text: str) -> str:
    """Drop ``<internal>`` reasoning spans; empty means nothing to send."""

    return _INTERNAL_SPAN.sub("", text).strip()
