"""Transport adapters that carry chat messages in and out."""

from __future__ import annotations

from pathlib import Path

from mdclaw.channels.base import Channel, OnChatMetadata, OnInboundMessage
from mdclaw.channels.local import LocalChannel


def build_channels(
    names: tuple[str, ...],
    *,
    outbox_dir: Path,
    on_message: OnInboundMessage,
    on_chat_metadata: OnChatMetadata,
) -> list[Channel]:
    """Instantiate the configured adapters."""

    channels: list[Channel] = []
    for name in names:
        if name == "local":
            channels.append(
                LocalChannel(
                    outbox_dir,
                    on_message=on_message,
                    on_chat_metadata=on_chat_metadata,
                ),
            )
            continue
        raise ValueError(f"Unsupported channel: {name}")
    return channels


__all__ = ["Channel", "LocalChannel", "OnChatMetadata", "OnInboundMessage", "build_channels"]
