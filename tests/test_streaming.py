"""Tests for the SSE relay and streamed usage metering."""

from typing import AsyncIterator, List, Tuple

import pytest

from coach_gateway.streaming import StreamUsageMeter, estimate_tokens, relay_stream


async def _chunks(parts: List[bytes]) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


def test_estimate_tokens() -> None:
    assert estimate_tokens(0) == 0
    assert estimate_tokens(1) == 1
    assert estimate_tokens(8) == 2


def test_meter_counts_openai_deltas_and_skips_garbage() -> None:
    meter = StreamUsageMeter(prompt_chars=40)
    meter.feed(b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n')
    meter.feed(b"data: {not json\n\n")
    meter.feed(b'data: {"choices":[{"delta":{"content":" world!!"}}]}\n\n')
    meter.feed(b": keep-alive comment\n\ndata: [DONE]\n\n")

    assert meter.completion_chars == 13
    assert meter.skipped_lines == 1
    assert meter.totals() == (10, 4)


def test_meter_handles_lines_split_across_chunks() -> None:
    meter = StreamUsageMeter()
    meter.feed(b'data: {"response":"Str')
    meter.feed(b'ong"}\r\n\r\ndata: {"response":"er"}')
    meter.flush()

    assert meter.completion_chars == 8
    assert meter.skipped_lines == 0


def test_meter_prefers_reported_usage() -> None:
    meter = StreamUsageMeter(prompt_chars=4000)
    meter.feed(b'data: {"choices":[{"delta":{"content":"abc"}}]}\n\n')
    meter.feed(
        b'data: {"choices":[],"x_groq":{"usage":{"prompt_tokens":900,"completion_tokens":3}}}\n\n'
    )
    assert meter.totals() == (900, 3)


def test_meter_reads_anthropic_events() -> None:
    meter = StreamUsageMeter()
    meter.feed(
        b'event: message_start\ndata: {"type":"message_start","message":{"usage":{"input_tokens":25,"output_tokens":1}}}\n\n'
        b'event: content_block_delta\ndata: {"type":"content_block_delta","delta":{"type":"text_delta","text":"Hi there"}}\n\n'
        b'event: message_delta\ndata: {"type":"message_delta","usage":{"output_tokens":7}}\n\n'
    )
    assert meter.completion_chars == 8
    assert meter.totals() == (25, 7)


def test_meter_reads_gemini_events() -> None:
    meter = StreamUsageMeter()
    meter.feed(
        b'data: {"candidates":[{"content":{"parts":[{"text":"Led team"}]}}],'
        b'"usageMetadata":{"promptTokenCount":11,"candidatesTokenCount":2}}\r\n\r\n'
    )
    assert meter.completion_chars == 8
    assert meter.totals() == (11, 2)


@pytest.mark.asyncio
async def test_relay_yields_bytes_unchanged_and_reports_once() -> None:
    parts = [
        b'data: {"response":"Hi"}\n',
        b"\ndata: garbage\n\n",
        b"data: [DONE]\n\n",
    ]
    reports: List[Tuple[int, int]] = []
    meter = StreamUsageMeter(prompt_chars=8)

    received = [
        chunk
        async for chunk in relay_stream(
            _chunks(parts), meter, lambda p, c: reports.append((p, c))
        )
    ]

    assert received == parts
    assert reports == [(2, 1)]
    assert meter.skipped_lines == 1


@pytest.mark.asyncio
async def test_relay_stops_quietly_on_upstream_failure() -> None:
    async def failing() -> AsyncIterator[bytes]:
        yield b'data: {"response":"partial"}\n\n'
        raise ConnectionError("upstream reset")

    reports: List[Tuple[int, int]] = []
    received = [
        chunk
        async for chunk in relay_stream(
            failing(), StreamUsageMeter(), lambda p, c: reports.append((p, c))
        )
    ]

    assert received == [b'data: {"response":"partial"}\n\n']
    assert reports == [(0, 2)]


@pytest.mark.asyncio
async def test_relay_reports_when_consumer_disconnects() -> None:
    reports: List[Tuple[int, int]] = []
    relay = relay_stream(
        _chunks([b'data: {"response":"abcd"}\n\n', b'data: {"response":"efgh"}\n\n']),
        StreamUsageMeter(),
        lambda p, c: reports.append((p, c)),
    )

    first = await relay.__anext__()
    await relay.aclose()

    assert first == b'data: {"response":"abcd"}\n\n'
    assert reports == [(0, 1)]
