"""Configuration loader for the resume coach gateway.

Reads an optional JSON config file containing rate-limit, CORS and upstream
timeout parameters. Provider selection settings and API keys are resolved per
request from a runtime-scoped environment first, then the process environment.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

DEFAULT_ALLOWED_ORIGINS = [
    "https://prettify-ai.com",
    "https://www.prettify-ai.com",
    "https://prettifyai.pages.dev",
    "http://localhost:4321",
    "http://localhost:3000",
]


@dataclass
class RateLimitConfig:
    """Fixed-window rate-limit parameters (per client IP)."""

    limit: int = 20
    window_seconds: float = 3600.0
    max_keys: int = 10000


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    allowed_origins: List[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS)
    )
    default_max_tokens: int = 3000
    default_temperature: float = 0.7
    request_timeout_seconds: float = 60.0
    log_file: str = "logs/gateway.log"


@dataclass
class RuntimeContext:
    """Runtime-scoped environment for a single request.

    Holds per-tenant settings and host bindings (e.g. the Workers AI ``AI``
    object). Values here take precedence over the process environment.
    """

    env: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str) -> Any:
        """Resolve a setting from this context, falling back to os.environ."""
        return resolve_setting(name, self.env, os.environ)


def resolve_setting(name: str, *sources: Optional[Mapping[str, Any]]) -> Any:
    """Return the first non-empty value for ``name`` across ``sources``.

    Sources are consulted in order. ``None`` sources are skipped, and empty
    strings count as unset.
    """
    for source in sources:
        if source is None:
            continue
        value = source.get(name)
        if value is not None and value != "":
            return value
    return None


def load_config(path: Union[str, Path, None]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file, or None for defaults.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    if path is None:
        return GatewayConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object")

    rate_limit_raw = raw.get("rate_limit", {})
    try:
        rate_limit = RateLimitConfig(
            limit=int(rate_limit_raw.get("limit", 20)),
            window_seconds=float(rate_limit_raw.get("window_seconds", 3600.0)),
            max_keys=int(rate_limit_raw.get("max_keys", 10000)),
        )
        config = GatewayConfig(
            rate_limit=rate_limit,
            allowed_origins=list(
                raw.get("allowed_origins", DEFAULT_ALLOWED_ORIGINS)
            ),
            default_max_tokens=int(raw.get("default_max_tokens", 3000)),
            default_temperature=float(raw.get("default_temperature", 0.7)),
            request_timeout_seconds=float(
                raw.get("request_timeout_seconds", 60.0)
            ),
            log_file=raw.get("log_file", "logs/gateway.log"),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid gateway config: {exc}") from exc

    if rate_limit.limit < 1 or rate_limit.window_seconds <= 0:
        raise ValueError("rate_limit.limit and window_seconds must be positive")
    if not config.allowed_origins:
        raise ValueError("allowed_origins must list at least one origin")

    return config
