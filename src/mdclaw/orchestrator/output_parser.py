"""Streaming extraction of delimited reply blocks from subprocess output.

The scanner keeps only the partial-match progress against whichever marker it
is currently looking for, plus the bytes of the block being collected. A block
is handed to the callback the moment its end marker completes, so replies can
be delivered while the subprocess is still running.
"""

from __future__ import annotations

from collections.abc import Callable

OUTPUT_START_MARKER = b"---NANOCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = b"---NANOCLAW_OUTPUT_END---"


class _MarkerMatcher:
    """Incremental Knuth-Morris-Pratt matcher for one fixed marker."""

    __slots__ = ("marker", "_failure", "progress")

    def __init__(self, marker: bytes) -> None:
        if not marker:
            raise ValueError("marker must be non-empty")
        self.marker = marker
        self._failure = _failure_table(marker)
        self.progress = 0

    def reset(self) -> None:
        self.progress = 0

    def find(self, data: bytes, start: int) -> int:
        """Scan ``data[start:]``; return the index just past a completed match, else -1."""

        marker = self.marker
        first = marker[0]
        size = len(marker)
        index = start
        end = len(data)
        while index < end:
            if self.progress == 0:
                index = data.find(first, index)
                if index < 0:
                    return -1
            byte = data[index]
            while self.progress and marker[self.progress] != byte:
                self.progress = self._failure[self.progress - 1]
            if marker[self.progress] == byte:
                self.progress += 1
            index += 1
            if self.progress == size:
                self.progress = 0
                return index
        return -1


def _failure_table(marker: bytes) -> list[int]:
    table = [0] * len(marker)
    matched = 0
    for index in range(1, len(marker)):
        while matched and marker[index] != marker[matched]:
            matched = table[matched - 1]
        if marker[index] == marker[matched]:
            matched += 1
        table[index] = matched
    return table


class OutputParser:
    """Feed raw stdout chunks; ``on_block`` receives each completed block in order."""

    def __init__(
        self,
        on_block: Callable[[str], None],
        *,
        start_marker: bytes = OUTPUT_START_MARKER,
        end_marker: bytes = OUTPUT_END_MARKER,
    ) -> None:
        if start_marker == end_marker:
            raise ValueError("start and end markers must differ")
        self._on_block = on_block
        self._start = _MarkerMatcher(start_marker)
        self._end = _MarkerMatcher(end_marker)
        self._inside = False
        self._buffer = bytearray()
        self.blocks_emitted = 0

    @property
    def inside_block(self) -> bool:
        return self._inside

    def feed(self, data: bytes) -> int:
        """Consume one chunk; returns how many blocks it completed."""

        emitted = 0
        position = 0
        while position < len(data):
            if not self._inside:
                found = self._start.find(data, position)
                if found < 0:
                    return emitted
                self._inside = True
                self._buffer.clear()
                self._end.reset()
                position = found
                continue

            found = self._end.find(data, position)
            if found < 0:
                self._buffer += data[position:]
                return emitted
            self._buffer += data[position:found]
            del self._buffer[len(self._buffer) - len(self._end.marker) :]
            self._inside = False
            position = found
            self._emit()
            emitted += 1
        return emitted

    def close(self) -> bool:
        """Finish the stream; returns True if a block was left unterminated."""

        truncated = self._inside
        self._inside = False
        self._buffer.clear()
        self._start.reset()
        self._end.reset()
        return truncated

    def _emit(self) -> None:
        text = self._buffer.decode("utf-8", errors="replace").strip()
        self._buffer.clear()
        self.blocks_emitted += 1
        self._on_block(text)


def extract_blocks(data: bytes) -> list[str]:
    """Parse a complete byte stream and return its blocks."""

    blocks: list[str] = []
    parser = OutputParser(blocks.append)
    parser.feed(data)
    parser.close()
    return blocks
