"""Daily token and neuron usage tracking.

Keeps a process-wide accumulator for the current UTC day so the selector can
move off the Workers AI free tier before it runs out. The accumulator is
in-memory only and resets lazily on the first read or write of a new day.
"""

import copy
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from coach_gateway.registry import Provider, estimate_cost_usd

FREE_TIER_NEURON_LIMIT = 10000
# Switch providers before the hard cap to leave room for in-flight requests.
FREE_TIER_SWITCH_THRESHOLD = 0.75


@dataclass
class ProviderUsage:
    input: int = 0
    output: int = 0
    requests: int = 0


@dataclass
class DailyUsage:
    """Usage accumulated during one UTC day."""

    date: str
    neurons: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0
    by_provider: Dict[str, ProviderUsage] = field(default_factory=dict)


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def estimate_neurons(input_tokens: int, output_tokens: int) -> int:
    """Estimate Workers AI neurons for a call.

    Output tokens weigh twice as much as input tokens. Any nonzero usage
    counts as at least one neuron.
    """
    return math.ceil(input_tokens / 10 + output_tokens / 5)


class UsageTracker:
    """Thread-safe daily usage accumulator."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._usage = DailyUsage(date=_today())

    def _current_locked(self) -> DailyUsage:
        today = _today()
        if self._usage.date != today:
            self._usage = DailyUsage(date=today)
        return self._usage

    def get_daily_usage(self) -> DailyUsage:
        """Return a snapshot of today's totals, resetting them first if stale."""
        with self._lock:
            return copy.deepcopy(self._current_locked())

    def record_usage(
        self,
        provider: Union[Provider, str],
        input_tokens: int,
        output_tokens: int,
        neurons: Optional[int] = None,
    ) -> None:
        """Add one request's usage to today's totals."""
        name = provider.value if isinstance(provider, Provider) else provider
        with self._lock:
            usage = self._current_locked()
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens
            usage.requests += 1
            if neurons:
                usage.neurons += neurons

            per_provider = usage.by_provider.setdefault(name, ProviderUsage())
            per_provider.input += input_tokens
            per_provider.output += output_tokens
            per_provider.requests += 1

    def is_cloudflare_free_tier_exhausted(self) -> bool:
        """True once 75% of the daily free neuron allowance is used."""
        used = self.get_daily_usage().neurons
        return used >= FREE_TIER_NEURON_LIMIT * FREE_TIER_SWITCH_THRESHOLD

    def get_remaining_free_neurons(self) -> int:
        return max(0, FREE_TIER_NEURON_LIMIT - self.get_daily_usage().neurons)

    def get_usage_summary(self) -> Dict[str, Any]:
        """Read-only aggregate view for logging and the usage endpoint."""
        with self._lock:
            usage = self._current_locked()
            by_provider: Dict[str, Dict[str, Any]] = {}
            for name, totals in usage.by_provider.items():
                entry: Dict[str, Any] = {
                    "input": totals.input,
                    "output": totals.output,
                    "requests": totals.requests,
                }
                known = Provider.parse(name)
                if known is not None:
                    entry["estimated_cost_usd"] = round(
                        estimate_cost_usd(known, totals.input, totals.output), 6
                    )
                by_provider[name] = entry
            neurons = usage.neurons
            summary = {
                "date": usage.date,
                "total_requests": usage.requests,
                "total_tokens": {
                    "input": usage.input_tokens,
                    "output": usage.output_tokens,
                },
                "by_provider": by_provider,
            }

        summary["cloudflare_neurons"] = {
            "used": neurons,
            "remaining": max(0, FREE_TIER_NEURON_LIMIT - neurons),
            "exhausted": neurons >= FREE_TIER_NEURON_LIMIT * FREE_TIER_SWITCH_THRESHOLD,
        }
        return summary

    def reset(self) -> None:
        with self._lock:
            self._usage = DailyUsage(date=_today())
