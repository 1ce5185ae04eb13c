from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from mdclaw.orchestrator.output_parser import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    OutputParser,
    extract_blocks,
)

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Output Parser"),
]

STREAMS_DIR = Path(__file__).parent / "data" / "streams"
STREAM_NAMES = sorted(path.stem for path in STREAMS_DIR.glob("*.txt"))


def _expected(name: str) -> list[str]:
    return json.loads((STREAMS_DIR / f"{name}.expected.json").read_text("utf-8"))


def _feed_in_chunks(data: bytes, size: int) -> tuple[list[str], bool]:
    blocks: list[str] = []
    parser = OutputParser(blocks.append)
    for offset in range(0, len(data), size):
        parser.feed(data[offset : offset + size])
    return blocks, parser.close()


@pytest.mark.parametrize("name", STREAM_NAMES)
def test_golden_stream_whole(name: str) -> None:
    data = (STREAMS_DIR / f"{name}.txt").read_bytes()

    assert extract_blocks(data) == _expected(name)


@pytest.mark.parametrize("name", STREAM_NAMES)
@pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 26, 64])
def test_golden_stream_is_independent_of_chunk_boundaries(name: str, chunk_size: int) -> None:
    data = (STREAMS_DIR / f"{name}.txt").read_bytes()

    blocks, _ = _feed_in_chunks(data, chunk_size)

    assert blocks == _expected(name)


def test_every_single_split_point_yields_same_blocks() -> None:
    data = b"noise" + OUTPUT_START_MARKER + b" hello " + OUTPUT_END_MARKER + b"tail"

    for split in range(len(data) + 1):
        blocks: list[str] = []
        parser = OutputParser(blocks.append)
        parser.feed(data[:split])
        parser.feed(data[split:])
        assert blocks == ["hello"], split


def test_block_is_emitted_as_soon_as_end_marker_completes() -> None:
    blocks: list[str] = []
    parser = OutputParser(blocks.append)

    assert parser.feed(OUTPUT_START_MARKER + b"partial") == 0
    assert parser.inside_block
    assert blocks == []
    assert parser.feed(b" reply" + OUTPUT_END_MARKER[:5]) == 0
    assert parser.feed(OUTPUT_END_MARKER[5:] + b"more noise") == 1

    assert blocks == ["partial reply"]
    assert parser.blocks_emitted == 1
    assert not parser.inside_block


def test_unterminated_block_is_discarded_and_reported() -> None:
    blocks: list[str] = []
    parser = OutputParser(blocks.append)
    parser.feed(OUTPUT_START_MARKER + b"never closed")

    assert parser.close() is True
    assert blocks == []


def test_close_without_open_block_reports_clean_end() -> None:
    parser = OutputParser(lambda _text: None)
    parser.feed(b"only logs\n")

    assert parser.close() is False


def test_invalid_utf8_inside_block_is_replaced() -> None:
    data = OUTPUT_START_MARKER + b"caf\xc3 ok" + OUTPUT_END_MARKER

    assert extract_blocks(data) == ["caf� ok"]


def test_multibyte_character_split_across_chunks_is_preserved() -> None:
    encoded = "naïve ✓".encode()
    data = OUTPUT_START_MARKER + encoded + OUTPUT_END_MARKER

    blocks, _ = _feed_in_chunks(data, 1)

    assert blocks == ["naïve ✓"]


def test_empty_block_is_emitted_as_empty_string() -> None:
    assert extract_blocks(OUTPUT_START_MARKER + b" \n\t " + OUTPUT_END_MARKER) == [""]


def test_repeated_prefix_before_start_marker_still_matches() -> None:
    data = b"---" + OUTPUT_START_MARKER + b"x" + OUTPUT_END_MARKER

    assert extract_blocks(data) == ["x"]


def test_custom_markers() -> None:
    blocks: list[str] = []
    parser = OutputParser(blocks.append, start_marker=b"<<", end_marker=b">>")
    parser.feed(b"a<<one>>b<<two>")
    parser.feed(b">")

    assert blocks == ["one", "two"]


def test_identical_markers_are_rejected() -> None:
    with pytest.raises(ValueError, match="differ"):
        OutputParser(lambda _text: None, start_marker=b"##", end_marker=b"##")
