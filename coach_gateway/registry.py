"""Static metadata for every supported LLM backend.

The selector and adapters look providers up here instead of hard-coding
models, endpoints or credential names.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from coach_gateway.config import RuntimeContext

BINDING_ENV_NAME = "AI"


class Provider(str, Enum):
    """Supported LLM backends."""

    CLOUDFLARE = "cloudflare"
    GROQ = "groq"
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Provider"]:
        """Return the matching provider, or None for unknown names."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class Pricing:
    """USD per million tokens."""

    input: float
    output: float


@dataclass(frozen=True)
class ProviderSpec:
    """Immutable registry entry for a provider."""

    provider: Provider
    model: str
    endpoint: str
    credential_name: str
    pricing: Pricing
    is_binding: bool = False


PROVIDER_REGISTRY: Dict[Provider, ProviderSpec] = {
    Provider.CLOUDFLARE: ProviderSpec(
        provider=Provider.CLOUDFLARE,
        model="@cf/meta/llama-3.1-70b-instruct",
        endpoint="",
        credential_name=BINDING_ENV_NAME,
        pricing=Pricing(input=0.29, output=2.25),
        is_binding=True,
    ),
    Provider.GROQ: ProviderSpec(
        provider=Provider.GROQ,
        model="llama-3.3-70b-versatile",
        endpoint="https://api.groq.com/openai/v1/chat/completions",
        credential_name="GROQ_API_KEY",
        pricing=Pricing(input=0.59, output=0.79),
    ),
    Provider.GEMINI: ProviderSpec(
        provider=Provider.GEMINI,
        model="gemini-1.5-flash",
        endpoint="https://generativelanguage.googleapis.com/v1beta/models",
        credential_name="GEMINI_API_KEY",
        pricing=Pricing(input=0.075, output=0.30),
    ),
    Provider.OPENAI: ProviderSpec(
        provider=Provider.OPENAI,
        model="gpt-4o-mini",
        endpoint="https://api.openai.com/v1/chat/completions",
        credential_name="OPENAI_API_KEY",
        pricing=Pricing(input=0.15, output=0.60),
    ),
    Provider.ANTHROPIC: ProviderSpec(
        provider=Provider.ANTHROPIC,
        model="claude-3-haiku-20240307",
        endpoint="https://api.anthropic.com/v1/messages",
        credential_name="ANTHROPIC_API_KEY",
        pricing=Pricing(input=0.25, output=1.25),
    ),
}


def get_spec(provider: Provider) -> ProviderSpec:
    return PROVIDER_REGISTRY[provider]


def get_credential(provider: Provider, runtime: Optional[RuntimeContext]) -> Any:
    """Return the binding object or API key for ``provider``, or None.

    The binding only ever comes from the runtime context. API keys are looked
    up in the runtime context first, then the process environment.
    """
    runtime = runtime or RuntimeContext()
    spec = PROVIDER_REGISTRY[provider]
    if spec.is_binding:
        return runtime.env.get(spec.credential_name) or None
    return runtime.get(spec.credential_name)


def is_provider_configured(
    provider: Provider, runtime: Optional[RuntimeContext]
) -> bool:
    """True if the provider has a usable credential or binding."""
    return get_credential(provider, runtime) is not None


def estimate_cost_usd(provider: Provider, input_tokens: int, output_tokens: int) -> float:
    """Approximate list-price cost of a call in USD."""
    pricing = PROVIDER_REGISTRY[provider].pricing
    return (input_tokens * pricing.input + output_tokens * pricing.output) / 1_000_000
