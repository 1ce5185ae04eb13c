"""Collaborator contract required from transport adapters."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from mdclaw.orchestrator.models import NewMessage


class OnInboundMessage(Protocol):
    def __call__(self, chat_jid: str, message: NewMessage) -> None: ...


class OnChatMetadata(Protocol):
    def __call__(
        self,
        chat_jid: str,
        timestamp: datetime,
        *,
        name: str | None = None,
        channel: str | None = None,
        is_group: bool | None = None,
    ) -> None: ...


class Channel(Protocol):
    """A messaging network connection owning a set of conversations."""

    name: str

    def connect(self) -> None:
        """Open the connection; raises ``TransportDisconnected`` on failure."""

    def disconnect(self) -> None:
        """Close the connection."""

    def send_message(self, chat_jid: str, text: str) -> None:
        """Deliver text; raises ``TransportDisconnected`` when the adapter is down."""

    def is_connected(self) -> bool:
        """Whether sends and receives currently work."""

    def owns_jid(self, chat_jid: str) -> bool:
        """Whether this adapter serves the conversation."""
