"""Provider adapters for the supported LLM backends.

Every adapter exposes the same ``call`` signature and returns either a
canonical (OpenAI-shaped) ChatResponse or, for streaming calls, the upstream
byte stream untouched. Two families exist:

- OpenAI-compatible HTTP APIs (Groq, OpenAI): messages pass through as-is.
- Native APIs (Gemini, Anthropic, Workers AI binding): the request is
  translated into the provider's shape and the response envelope is mapped
  back to the canonical one.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from coach_gateway.models import (
    ChatMessage,
    ChatResponse,
    Choice,
    ChoiceMessage,
    UsageInfo,
)
from coach_gateway.registry import PROVIDER_REGISTRY, Provider

ANTHROPIC_VERSION = "2023-06-01"

# Model turn that follows the synthesized system prompt for Gemini.
GEMINI_SYSTEM_ACK = "Understood. I will follow these instructions."

_GEMINI_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}

_ANTHROPIC_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


class ProviderError(Exception):
    """Raised when an upstream provider call fails.

    ``detail`` holds the upstream error text. It is meant for server logs and
    must never be returned to the caller.
    """

    def __init__(
        self, provider: str, status_code: Optional[int], detail: str
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.detail = detail
        super().__init__(
            "Provider '{}' call failed ({}): {}".format(
                provider, status_code or "no response", detail
            )
        )


class ProviderNotConfiguredError(Exception):
    """Raised when the selected provider has no credential or binding."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__("Provider '{}' is not configured.".format(provider))


@dataclass
class CompletionOptions:
    """Sampling options forwarded to the provider."""

    max_tokens: int = 3000
    temperature: float = 0.7
    stream: bool = False


@dataclass
class ProviderResult:
    """Result returned by a provider adapter.

    Exactly one of ``response`` and ``stream`` is set.
    """

    provider: Provider
    model: str
    response: Optional[ChatResponse] = None
    stream: Optional[AsyncIterator[bytes]] = None

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


def split_system(messages: List[ChatMessage]) -> Tuple[Optional[str], List[ChatMessage]]:
    """Separate system prompts from the conversation turns."""
    system_parts = [m.content for m in messages if m.role == "system"]
    turns = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), turns


def build_response(
    provider: Provider,
    model: str,
    content: str,
    finish_reason: Optional[str],
    prompt_tokens: Optional[int] = None,
    completion_tokens: Optional[int] = None,
    response_id: Optional[str] = None,
) -> ChatResponse:
    """Assemble a canonical ChatResponse."""
    usage = None
    if prompt_tokens is not None or completion_tokens is not None:
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        usage = UsageInfo(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )
    return ChatResponse(
        id=response_id or "chatcmpl-{}".format(uuid.uuid4().hex[:12]),
        model=model,
        provider=provider.value,
        choices=[
            Choice(
                message=ChoiceMessage(role="assistant", content=content),
                finish_reason=finish_reason,
            )
        ],
        usage=usage,
    )


async def open_upstream_stream(
    client: httpx.AsyncClient,
    source: str,
    url: str,
    *,
    headers: Dict[str, str],
    payload: Dict[str, Any],
) -> AsyncIterator[bytes]:
    """Send a streaming POST and return an iterator over the body bytes.

    The client is owned by the returned iterator and closed when it is
    exhausted or closed. A non-2xx status raises ProviderError before any
    bytes are yielded.
    """
    request = client.build_request("POST", url, json=payload, headers=headers)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        await client.aclose()
        raise ProviderError(
            source, None, "{}: {}".format(type(exc).__name__, exc)
        ) from exc

    if response.is_error:
        try:
            await response.aread()
            detail = response.text
        except httpx.HTTPError as exc:
            detail = str(exc)
        finally:
            await response.aclose()
            await client.aclose()
        raise ProviderError(source, response.status_code, detail)

    return _iter_response(response, client)


async def _iter_response(
    response: httpx.Response, client: httpx.AsyncClient
) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()
        await client.aclose()


class ProviderAdapter(ABC):
    """Translate canonical chat requests to one provider's wire format."""

    provider: Provider

    def __init__(
        self,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    @property
    def endpoint(self) -> str:
        return PROVIDER_REGISTRY[self.provider].endpoint

    @abstractmethod
    async def call(
        self,
        credential: Any,
        model: str,
        messages: List[ChatMessage],
        options: CompletionOptions,
    ) -> ProviderResult:
        """Send the request and return a canonical response or raw stream.

        Raises:
            ProviderError: If the upstream call fails or times out.
        """

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _post_json(
        self, url: str, headers: Dict[str, str], payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await asyncio.wait_for(
                    client.post(url, json=payload, headers=headers),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                self.provider.value,
                None,
                "Request timed out after {}s".format(self.timeout),
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                self.provider.value, None, "{}: {}".format(type(exc).__name__, exc)
            ) from exc

        if resp.is_error:
            raise ProviderError(self.provider.value, resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(
                self.provider.value, resp.status_code, "Response body is not JSON"
            ) from exc

    async def _open_stream(
        self, url: str, headers: Dict[str, str], payload: Dict[str, Any]
    ) -> AsyncIterator[bytes]:
        return await open_upstream_stream(
            self._client(), self.provider.value, url, headers=headers, payload=payload
        )


class OpenAICompatibleAdapter(ProviderAdapter):
    """Adapter for APIs that accept the OpenAI chat completions format."""

    async def call(
        self,
        credential: Any,
        model: str,
        messages: List[ChatMessage],
        options: CompletionOptions,
    ) -> ProviderResult:
        headers = {
            "Authorization": "Bearer {}".format(credential),
            "Content-Type": "application/json",
        }
        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stream": options.stream,
        }

        if options.stream:
            stream = await self._open_stream(self.endpoint, headers, payload)
            return ProviderResult(provider=self.provider, model=model, stream=stream)

        data = await self._post_json(self.endpoint, headers, payload)
        choice = (data.get("choices") or [{}])[0]
        msg = choice.get("message") or {}
        usage_raw = data.get("usage") or {}

        response = build_response(
            self.provider,
            data.get("model") or model,
            msg.get("content") or "",
            choice.get("finish_reason"),
            prompt_tokens=usage_raw.get("prompt_tokens"),
            completion_tokens=usage_raw.get("completion_tokens"),
            response_id=data.get("id"),
        )
        return ProviderResult(provider=self.provider, model=model, response=response)


class GroqAdapter(OpenAICompatibleAdapter):
    provider = Provider.GROQ


class OpenAIAdapter(OpenAICompatibleAdapter):
    provider = Provider.OPENAI


def to_gemini_contents(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Convert canonical messages to Gemini ``contents``.

    Gemini names the assistant role ``model``. The system prompt becomes a
    leading user turn followed by a short model acknowledgment.
    """
    system, turns = split_system(messages)
    contents: List[Dict[str, Any]] = []
    if system:
        contents.append({"role": "user", "parts": [{"text": system}]})
        contents.append({"role": "model", "parts": [{"text": GEMINI_SYSTEM_ACK}]})
    for m in turns:
        role = "model" if m.role == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": m.content}]})
    return contents


class GeminiAdapter(ProviderAdapter):
    """Adapter for the Google Gemini generateContent API."""

    provider = Provider.GEMINI

    async def call(
        self,
        credential: Any,
        model: str,
        messages: List[ChatMessage],
        options: CompletionOptions,
    ) -> ProviderResult:
        headers = {
            "x-goog-api-key": str(credential),
            "Content-Type": "application/json",
        }
        payload = {
            "contents": to_gemini_contents(messages),
            "generationConfig": {
                "maxOutputTokens": options.max_tokens,
                "temperature": options.temperature,
            },
        }
        base = "{}/{}".format(self.endpoint.rstrip("/"), model)

        if options.stream:
            url = "{}:streamGenerateContent?alt=sse".format(base)
            stream = await self._open_stream(url, headers, payload)
            return ProviderResult(provider=self.provider, model=model, stream=stream)

        data = await self._post_json("{}:generateContent".format(base), headers, payload)
        candidate = (data.get("candidates") or [{}])[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        raw_reason = candidate.get("finishReason")
        usage_raw = data.get("usageMetadata") or {}

        response = build_response(
            self.provider,
            model,
            text,
            _GEMINI_FINISH_REASONS.get(raw_reason, raw_reason.lower() if raw_reason else None),
            prompt_tokens=usage_raw.get("promptTokenCount"),
            completion_tokens=usage_raw.get("candidatesTokenCount"),
            response_id=data.get("responseId"),
        )
        return ProviderResult(provider=self.provider, model=model, response=response)


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    provider = Provider.ANTHROPIC

    async def call(
        self,
        credential: Any,
        model: str,
        messages: List[ChatMessage],
        options: CompletionOptions,
    ) -> ProviderResult:
        headers = {
            "x-api-key": str(credential),
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        system, turns = split_system(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in turns],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stream": options.stream,
        }
        if system:
            payload["system"] = system

        if options.stream:
            stream = await self._open_stream(self.endpoint, headers, payload)
            return ProviderResult(provider=self.provider, model=model, stream=stream)

        data = await self._post_json(self.endpoint, headers, payload)
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        raw_reason = data.get("stop_reason")
        usage_raw = data.get("usage") or {}

        response = build_response(
            self.provider,
            data.get("model") or model,
            text,
            _ANTHROPIC_FINISH_REASONS.get(raw_reason, raw_reason),
            prompt_tokens=usage_raw.get("input_tokens"),
            completion_tokens=usage_raw.get("output_tokens"),
            response_id=data.get("id"),
        )
        return ProviderResult(provider=self.provider, model=model, response=response)


class CloudflareAdapter(ProviderAdapter):
    """Adapter for Workers AI, invoked through the runtime ``AI`` binding.

    The credential is the binding object itself; it must provide
    ``async run(model, inputs)``.
    """

    provider = Provider.CLOUDFLARE

    async def call(
        self,
        credential: Any,
        model: str,
        messages: List[ChatMessage],
        options: CompletionOptions,
    ) -> ProviderResult:
        inputs = {
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stream": options.stream,
        }

        try:
            result = await asyncio.wait_for(
                credential.run(model, inputs), timeout=self.timeout
            )
        except ProviderError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                self.provider.value,
                None,
                "Binding call timed out after {}s".format(self.timeout),
            ) from exc
        except Exception as exc:
            raise ProviderError(
                self.provider.value, None, "{}: {}".format(type(exc).__name__, exc)
            ) from exc

        if options.stream:
            if not isinstance(result, (bytes, bytearray, str)) and not hasattr(
                result, "__aiter__"
            ):
                raise ProviderError(
                    self.provider.value,
                    None,
                    "Unexpected binding stream type {}".format(type(result).__name__),
                )
            return ProviderResult(
                provider=self.provider, model=model, stream=_as_byte_stream(result)
            )

        if not isinstance(result, dict):
            raise ProviderError(
                self.provider.value,
                None,
                "Unexpected binding result type {}".format(type(result).__name__),
            )
        text = result.get("response")
        if text is not None and not isinstance(text, str):
            raise ProviderError(
                self.provider.value,
                None,
                "Unexpected binding response type {}".format(type(text).__name__),
            )
        usage_raw = result.get("usage")
        if not isinstance(usage_raw, dict):
            usage_raw = {}
        response = build_response(
            self.provider,
            model,
            text or "",
            "stop",
            prompt_tokens=usage_raw.get("prompt_tokens"),
            completion_tokens=usage_raw.get("completion_tokens"),
        )
        return ProviderResult(provider=self.provider, model=model, response=response)


async def _as_byte_stream(result: Any) -> AsyncIterator[bytes]:
    if isinstance(result, (bytes, bytearray)):
        yield bytes(result)
        return
    if isinstance(result, str):
        yield result.encode("utf-8")
        return
    async for chunk in result:
        yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk


_ADAPTERS = {
    Provider.CLOUDFLARE: CloudflareAdapter,
    Provider.GROQ: GroqAdapter,
    Provider.GEMINI: GeminiAdapter,
    Provider.OPENAI: OpenAIAdapter,
    Provider.ANTHROPIC: AnthropicAdapter,
}


def get_adapter(
    provider: Provider,
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderAdapter:
    """Return the adapter for ``provider``."""
    return _ADAPTERS[provider](timeout=timeout, transport=transport)
