"""Routing: choose which provider serves a request.

Selection is a pure function of the configured strategy, the primary
provider, which providers have credentials, and the Workers AI free-tier
state. It never performs network I/O.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from coach_gateway.config import RuntimeContext
from coach_gateway.registry import (
    PROVIDER_REGISTRY,
    Provider,
    is_provider_configured,
)
from coach_gateway.usage import UsageTracker


class Strategy(str, Enum):
    SINGLE = "single"
    FREE_FIRST = "free-first"
    CHEAPEST = "cheapest"


# Paid fallbacks tried once the free tier is exhausted or missing.
FALLBACK_ORDER: List[Provider] = [Provider.GROQ, Provider.GEMINI]

CHEAPEST_ORDER: List[Provider] = [
    Provider.GROQ,
    Provider.GEMINI,
    Provider.CLOUDFLARE,
    Provider.OPENAI,
    Provider.ANTHROPIC,
]


@dataclass
class RouteResult:
    """Resolved route for a request."""

    provider: Provider
    model: str
    endpoint: str
    is_binding: bool = False


def get_strategy(runtime: Optional[RuntimeContext]) -> Strategy:
    """Configured strategy; empty or unknown values mean free-first."""
    raw = (runtime or RuntimeContext()).get("AI_STRATEGY")
    try:
        return Strategy(str(raw).strip().lower()) if raw else Strategy.FREE_FIRST
    except ValueError:
        return Strategy.FREE_FIRST


def get_primary_provider(runtime: Optional[RuntimeContext]) -> Provider:
    """Configured primary provider, or the strategy's default."""
    provider = Provider.parse((runtime or RuntimeContext()).get("AI_PROVIDER"))
    if provider is not None:
        return provider
    if get_strategy(runtime) is Strategy.FREE_FIRST:
        return Provider.CLOUDFLARE
    return Provider.GROQ


def get_model_override(runtime: Optional[RuntimeContext]) -> Optional[str]:
    return (runtime or RuntimeContext()).get("AI_MODEL")


def select_provider(
    runtime: Optional[RuntimeContext], tracker: UsageTracker
) -> Provider:
    """Pick the provider for the next request.

    - single: the primary, even when it has no credential.
    - free-first: Workers AI while under the free-tier threshold, then the
      first configured paid fallback, then the primary as a last resort.
    - cheapest: the first configured provider in ascending cost order.
    """
    strategy = get_strategy(runtime)
    primary = get_primary_provider(runtime)

    if strategy is Strategy.SINGLE:
        return primary

    if strategy is Strategy.FREE_FIRST:
        if (
            is_provider_configured(Provider.CLOUDFLARE, runtime)
            and not tracker.is_cloudflare_free_tier_exhausted()
        ):
            return Provider.CLOUDFLARE
        for fallback in FALLBACK_ORDER:
            if is_provider_configured(fallback, runtime):
                return fallback
        return primary

    for provider in CHEAPEST_ORDER:
        if is_provider_configured(provider, runtime):
            return provider
    return primary


def resolve_route(
    runtime: Optional[RuntimeContext], tracker: UsageTracker
) -> RouteResult:
    """Select a provider and resolve its model, honouring AI_MODEL."""
    provider = select_provider(runtime, tracker)
    spec = PROVIDER_REGISTRY[provider]
    return RouteResult(
        provider=provider,
        model=get_model_override(runtime) or spec.model,
        endpoint=spec.endpoint,
        is_binding=spec.is_binding,
    )


def describe_providers(
    runtime: Optional[RuntimeContext], tracker: UsageTracker
) -> Dict[str, Any]:
    """Snapshot of the routing state for logs and the usage endpoint."""
    return {
        "strategy": get_strategy(runtime).value,
        "primary": get_primary_provider(runtime).value,
        "selected": select_provider(runtime, tracker).value,
        "configured": [
            p.value for p in Provider if is_provider_configured(p, runtime)
        ],
        "cloudflare_exhausted": tracker.is_cloudflare_free_tier_exhausted(),
    }
