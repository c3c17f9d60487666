"""Server-Sent-Events relay with side-channel usage metering.

Upstream bytes are forwarded to the caller exactly as received. While they
pass through, ``data:`` lines are parsed so token usage can be recorded once
the stream ends. Lines that fail to parse are skipped.
"""

import json
import logging
import math
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

_logger = logging.getLogger("gateway")

CHARS_PER_TOKEN = 4


def estimate_tokens(chars: int) -> int:
    return math.ceil(chars / CHARS_PER_TOKEN)


def _event_text(event: Dict[str, Any]) -> str:
    """Extract generated text from one streamed event of any provider."""
    text = ""
    for choice in event.get("choices") or []:
        if isinstance(choice, dict):
            text += (choice.get("delta") or {}).get("content") or ""
    response = event.get("response")
    if isinstance(response, str):
        text += response
    for candidate in event.get("candidates") or []:
        if isinstance(candidate, dict):
            for part in (candidate.get("content") or {}).get("parts") or []:
                text += part.get("text", "")
    delta = event.get("delta")
    if event.get("type") == "content_block_delta" and isinstance(delta, dict):
        text += delta.get("text") or ""
    return text


class StreamUsageMeter:
    """Accumulates usage from an SSE byte stream."""

    def __init__(self, prompt_chars: int = 0) -> None:
        self.prompt_chars = prompt_chars
        self.completion_chars = 0
        self.prompt_tokens: Optional[int] = None
        self.completion_tokens: Optional[int] = None
        self.skipped_lines = 0
        self._pending = b""

    def feed(self, chunk: bytes) -> None:
        lines = (self._pending + chunk).split(b"\n")
        self._pending = lines.pop()
        for line in lines:
            self._handle_line(line)

    def flush(self) -> None:
        if self._pending:
            self._handle_line(self._pending)
            self._pending = b""

    def totals(self) -> Tuple[int, int]:
        """Reported usage where the upstream sent it, else an estimate."""
        prompt = self.prompt_tokens
        if prompt is None:
            prompt = estimate_tokens(self.prompt_chars)
        completion = self.completion_tokens
        if completion is None:
            completion = estimate_tokens(self.completion_chars)
        return prompt, completion

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line.startswith("data:"):
            return
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except ValueError:
            self.skipped_lines += 1
            return
        if isinstance(event, dict):
            self.completion_chars += len(_event_text(event))
            self._observe_usage(event)

    def _observe_usage(self, event: Dict[str, Any]) -> None:
        usage = event.get("usage") or (event.get("x_groq") or {}).get("usage")
        self._apply(usage, "prompt_tokens", "completion_tokens")
        self._apply(usage, "input_tokens", "output_tokens")

        message = event.get("message")
        if isinstance(message, dict):
            self._apply(message.get("usage"), "input_tokens", "output_tokens")

        self._apply(event.get("usageMetadata"), "promptTokenCount", "candidatesTokenCount")

    def _apply(self, usage: Any, prompt_key: str, completion_key: str) -> None:
        if not isinstance(usage, dict):
            return
        if isinstance(usage.get(prompt_key), int):
            self.prompt_tokens = usage[prompt_key]
        if isinstance(usage.get(completion_key), int):
            self.completion_tokens = usage[completion_key]


async def relay_stream(
    chunks: AsyncIterator[bytes],
    meter: StreamUsageMeter,
    on_complete: Callable[[int, int], None],
) -> AsyncIterator[bytes]:
    """Yield ``chunks`` unchanged, then report usage via ``on_complete``.

    ``on_complete`` runs exactly once, also when the caller disconnects or
    the upstream fails mid-stream.
    """
    try:
        async for chunk in chunks:
            meter.feed(chunk)
            yield chunk
    except Exception as exc:
        _logger.error("Upstream stream aborted: %s", exc)
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        meter.flush()
        prompt_tokens, completion_tokens = meter.totals()
        on_complete(prompt_tokens, completion_tokens)
