"""FastAPI application for the resume coach AI gateway.

Provides a single /api/chat endpoint that rate-limits the caller, validates
the request, selects a provider, forwards the conversation through that
provider's adapter, and records token usage for free-tier management.

Request flow:
1. Rate-limit by client IP (before anything else, so malformed requests
   still consume quota)
2. Validate the JSON body
3. Select a provider from the configured strategy
4. Call the provider adapter (buffered or streaming)
5. Record usage and return the canonical response
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

import httpx
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from coach_gateway.binding import default_runtime
from coach_gateway.config import GatewayConfig, RuntimeContext, load_config
from coach_gateway.limiter import RateLimiter, get_client_ip
from coach_gateway.models import ChatRequest, ErrorResponse
from coach_gateway.provider import (
    CompletionOptions,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderResult,
    get_adapter,
)
from coach_gateway.registry import PROVIDER_REGISTRY, Provider, get_credential
from coach_gateway.router import (
    RouteResult,
    describe_providers,
    get_strategy,
    resolve_route,
)
from coach_gateway.streaming import StreamUsageMeter, estimate_tokens, relay_stream
from coach_gateway.telemetry import log_request, logger, setup_logging
from coach_gateway.usage import UsageTracker, estimate_neurons

CONFIG_PATH = os.getenv("GATEWAY_CONFIG")

RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."
CONFIG_ERROR_MESSAGE = "Server configuration error"
UPSTREAM_ERROR_MESSAGE = "AI service temporarily unavailable"
INTERNAL_ERROR_MESSAGE = "Internal server error"


def cors_headers(
    origin: Optional[str], allowed_origins: List[str], methods: str = "POST, OPTIONS"
) -> Dict[str, str]:
    """Echo allow-listed origins; everyone else gets the primary origin."""
    allow = origin if origin and origin in allowed_origins else allowed_origins[0]
    return {
        "Access-Control-Allow-Origin": allow,
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type",
        "Vary": "Origin",
    }


def _error_response(
    status: int, message: str, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=message)
    return JSONResponse(status_code=status, content=body.model_dump(), headers=headers)


def _validation_message(exc: ValidationError) -> str:
    fields = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
    if not fields or "messages" in fields:
        return "Invalid request: messages array required"
    return "Invalid request: invalid {}".format(", ".join(sorted(fields)))


class Gateway:
    """Owns the shared state used to serve chat requests.

    The limiter and tracker are process-wide for one Gateway instance; tests
    build isolated instances instead of resetting globals.
    """

    def __init__(
        self,
        config: GatewayConfig,
        limiter: Optional[RateLimiter] = None,
        tracker: Optional[UsageTracker] = None,
        runtime_factory: Optional[Callable[[], RuntimeContext]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        if limiter is None:
            limiter = RateLimiter(
                limit=config.rate_limit.limit,
                window_seconds=config.rate_limit.window_seconds,
                max_keys=config.rate_limit.max_keys,
            )
        self.limiter = limiter
        self.tracker = tracker if tracker is not None else UsageTracker()
        self.runtime_factory = runtime_factory or (
            lambda: default_runtime(config.request_timeout_seconds)
        )
        self.transport = transport

    def record_usage(
        self, provider: Provider, prompt_tokens: int, completion_tokens: int
    ) -> None:
        """Record tokens, plus estimated neurons for the free-tier binding."""
        neurons = None
        if PROVIDER_REGISTRY[provider].is_binding:
            neurons = estimate_neurons(prompt_tokens, completion_tokens)
        self.tracker.record_usage(provider, prompt_tokens, completion_tokens, neurons)

    async def dispatch(
        self, route: RouteResult, runtime: RuntimeContext, chat_request: ChatRequest
    ) -> ProviderResult:
        """Call the adapter for the selected route.

        Raises:
            ProviderNotConfiguredError: If the provider has no credential.
            ProviderError: If the upstream call fails.
        """
        credential = get_credential(route.provider, runtime)
        if credential is None:
            raise ProviderNotConfiguredError(route.provider.value)

        adapter = get_adapter(
            route.provider,
            timeout=self.config.request_timeout_seconds,
            transport=self.transport,
        )
        options = CompletionOptions(
            max_tokens=chat_request.max_tokens,
            temperature=chat_request.temperature,
            stream=chat_request.stream,
        )
        return await adapter.call(credential, route.model, chat_request.messages, options)

    async def handle_chat(self, request: Request) -> Response:
        config = self.config
        request_id = "gw-{}".format(uuid.uuid4().hex[:12])
        cors = cors_headers(request.headers.get("origin"), config.allowed_origins)
        client_ip = get_client_ip(request.headers)

        # --- Rate limiting ---
        limit = self.limiter.check(client_ip)
        if not limit.allowed:
            log_request(client_ip=client_ip, outcome="rate_limited", request_id=request_id)
            return _error_response(
                429,
                RATE_LIMITED_MESSAGE,
                {
                    **cors,
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(limit.retry_after()),
                },
            )
        headers = {**cors, "X-RateLimit-Remaining": str(limit.remaining)}

        # --- Validation ---
        def reject(message: str) -> JSONResponse:
            log_request(
                client_ip=client_ip,
                outcome="validation_error",
                request_id=request_id,
                error=message,
            )
            return _error_response(400, message, headers)

        try:
            body = await request.json()
        except ValueError:
            return reject("Invalid request: body must be JSON")

        if not isinstance(body, dict):
            return reject("Invalid request: messages array required")

        try:
            chat_request = ChatRequest.model_validate(
                {
                    "max_tokens": config.default_max_tokens,
                    "temperature": config.default_temperature,
                    **body,
                }
            )
        except ValidationError as exc:
            return reject(_validation_message(exc))

        runtime = self.runtime_factory()
        strategy = get_strategy(runtime).value
        route = resolve_route(runtime, self.tracker)
        context = {
            "client_ip": client_ip,
            "request_id": request_id,
            "strategy": strategy,
            "provider": route.provider.value,
            "model": route.model,
            "stream": chat_request.stream,
        }

        # --- Provider call ---
        try:
            result = await self.dispatch(route, runtime, chat_request)
        except ProviderNotConfiguredError as exc:
            logger.error("Provider %s selected but not configured", exc.provider)
            log_request(outcome="config_error", error=str(exc), **context)
            return _error_response(500, CONFIG_ERROR_MESSAGE, headers)
        except ProviderError as exc:
            logger.error("%s API error: %s", exc.provider, exc.detail)
            log_request(
                outcome="provider_error",
                error="Provider returned {}".format(exc.status_code or "no response"),
                **context,
            )
            return _error_response(502, UPSTREAM_ERROR_MESSAGE, headers)
        except Exception as exc:
            logger.exception("Chat request %s failed", request_id)
            log_request(outcome="internal_error", error=str(exc), **context)
            return _error_response(500, INTERNAL_ERROR_MESSAGE, headers)

        if result.is_stream:
            return self._stream_response(result, chat_request, headers, context)

        return self._buffered_response(result, chat_request, headers, context)

    def _buffered_response(
        self,
        result: ProviderResult,
        chat_request: ChatRequest,
        headers: Dict[str, str],
        context: Dict[str, object],
    ) -> JSONResponse:
        response = result.response
        if response.usage is not None:
            prompt_tokens = response.usage.prompt_tokens
            completion_tokens = response.usage.completion_tokens
        else:
            prompt_chars = sum(len(m.content) for m in chat_request.messages)
            prompt_tokens = estimate_tokens(prompt_chars)
            completion_tokens = estimate_tokens(len(response.content))

        self.record_usage(result.provider, prompt_tokens, completion_tokens)
        log_request(
            outcome="success",
            usage={"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
            **context,
        )
        return JSONResponse(
            status_code=200,
            content=response.model_dump(exclude_none=True),
            headers=headers,
        )

    def _stream_response(
        self,
        result: ProviderResult,
        chat_request: ChatRequest,
        headers: Dict[str, str],
        context: Dict[str, object],
    ) -> StreamingResponse:
        meter = StreamUsageMeter(
            prompt_chars=sum(len(m.content) for m in chat_request.messages)
        )

        def on_complete(prompt_tokens: int, completion_tokens: int) -> None:
            self.record_usage(result.provider, prompt_tokens, completion_tokens)
            log_request(
                outcome="success",
                usage={
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "skipped_lines": meter.skipped_lines,
                },
                **context,
            )

        return StreamingResponse(
            relay_stream(result.stream, meter, on_complete),
            status_code=200,
            media_type="text/event-stream",
            headers={**headers, "Cache-Control": "no-cache"},
        )


router = APIRouter()


def _gateway(request: Request) -> Gateway:
    return request.app.state.gateway


@router.post("/api/chat", response_model=None)
async def chat(request: Request) -> Response:
    """Handle a chat completion request from the coach UI."""
    return await _gateway(request).handle_chat(request)


@router.options("/api/chat", response_model=None)
async def chat_preflight(request: Request) -> Response:
    gateway = _gateway(request)
    headers = cors_headers(
        request.headers.get("origin"), gateway.config.allowed_origins
    )
    return Response(status_code=204, headers=headers)


@router.get("/api/usage", response_model=None)
async def usage(request: Request) -> JSONResponse:
    """Report today's usage and the current routing state."""
    gateway = _gateway(request)
    runtime = gateway.runtime_factory()
    headers = cors_headers(
        request.headers.get("origin"),
        gateway.config.allowed_origins,
        methods="GET, OPTIONS",
    )
    return JSONResponse(
        status_code=200,
        content={
            "usage": gateway.tracker.get_usage_summary(),
            "providers": describe_providers(runtime, gateway.tracker),
        },
        headers=headers,
    )


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    limiter: Optional[RateLimiter] = None,
    tracker: Optional[UsageTracker] = None,
    runtime_factory: Optional[Callable[[], RuntimeContext]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gateway application with its own limiter and usage state."""
    if config is None:
        config = load_config(CONFIG_PATH)
    gateway = Gateway(
        config,
        limiter=limiter,
        tracker=tracker,
        runtime_factory=runtime_factory,
        transport=transport,
    )

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        """Initialize logging on startup."""
        setup_logging(config.log_file)
        yield

    application = FastAPI(
        title="Resume Coach AI Gateway", version="0.1.0", lifespan=lifespan
    )
    application.state.gateway = gateway
    application.include_router(router)
    return application


app = create_app()
