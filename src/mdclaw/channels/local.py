"""File-backed channel used for development, demos and tests."""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime
from pathlib import Path

from mdclaw.channels.base import OnChatMetadata, OnInboundMessage
from mdclaw.errors import TransportDisconnected
from mdclaw.orchestrator.models import NewMessage
from mdclaw.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9@._-]")


class LocalChannel:
    """Writes outbound messages as JSON lines to ``outbox/<jid>.jsonl``."""

    name = "local"

    def __init__(
        self,
        outbox_dir: Path,
        *,
        on_message: OnInboundMessage | None = None,
        on_chat_metadata: OnChatMetadata | None = None,
        jid_prefixes: tuple[str, ...] = (),
    ) -> None:
        self.outbox_dir = outbox_dir
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self.jid_prefixes = jid_prefixes
        self._connected = False
        self._lock = threading.Lock()

    def connect(self) -> None:
        self.outbox_dir.mkdir(parents=True, exist_ok=True)
        self._connected = True
        logger.info("Local channel connected (outbox=%s)", self.outbox_dir)

    def disconnect(self) -> None:
        self._connected = False
        logger.info("Local channel disconnected")

    def is_connected(self) -> bool:
        return self._connected

    def owns_jid(self, chat_jid: str) -> bool:
        if not self.jid_prefixes:
            return True
        return chat_jid.startswith(self.jid_prefixes)

    def send_message(self, chat_jid: str, text: str) -> None:
        if not self._connected:
            raise TransportDisconnected("Local channel is not connected")
        record = {"chat_jid": chat_jid, "text": text, "sent_at": to_iso(utc_now())}
        with self._lock, self.outbox_path(chat_jid).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        logger.info("Local channel delivered %d chars to %s", len(text), chat_jid)

    def outbox_path(self, chat_jid: str) -> Path:
        return self.outbox_dir / f"{_UNSAFE_CHARS.sub('_', chat_jid)}.jsonl"

    def read_outbox(self, chat_jid: str) -> list[str]:
        path = self.outbox_path(chat_jid)
        if not path.exists():
            return []
        return [
            json.loads(line)["text"]
            for line in path.read_text("utf-8").splitlines()
            if line.strip()
        ]

    def receive(
        self,
        message: NewMessage,
        *,
        chat_name: str | None = None,
        is_group: bool | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        """Feed an inbound message through the adapter callbacks."""

        if self._on_chat_metadata is not None:
            self._on_chat_metadata(
                message.chat_jid,
                timestamp or message.timestamp,
                name=chat_name,
                channel=self.name,
                is_group=is_group,
            )
        if self._on_message is not None:
            self._on_message(message.chat_jid, message)
