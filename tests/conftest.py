"""Shared test fixtures for the resume coach gateway tests."""

import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from coach_gateway.config import GatewayConfig, load_config

PROVIDER_ENV_VARS = [
    "AI_STRATEGY",
    "AI_PROVIDER",
    "AI_MODEL",
    "GROQ_API_KEY",
    "GEMINI_API_KEY",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "CLOUDFLARE_ACCOUNT_ID",
    "CLOUDFLARE_API_TOKEN",
]


@pytest.fixture(autouse=True)
def _clean_provider_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Start every test without provider settings from the host environment."""
    for name in PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "rate_limit": {"limit": 5, "window_seconds": 60},
        "allowed_origins": ["https://coach.example.com", "http://localhost:4321"],
        "default_max_tokens": 1000,
        "request_timeout_seconds": 5,
        "log_file": str(tmp_path / "test.log"),
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


async def _aiter(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


class FakeBinding:
    """Stand-in for the Workers AI ``AI`` binding."""

    def __init__(
        self,
        response: str = "Here is a stronger summary for your resume.",
        usage: Optional[Dict[str, int]] = None,
        chunks: Optional[List[bytes]] = None,
        error: Optional[Exception] = None,
        raw: Any = None,
    ) -> None:
        self.response = response
        self.usage = usage
        self.chunks = chunks or [
            b'data: {"response":"Strong "}\n\n',
            b'data: {"response":"summary"}\n\n',
            b"data: [DONE]\n\n",
        ]
        self.error = error
        self.raw = raw
        self.calls: List[Any] = []

    async def run(self, model: str, inputs: Dict[str, Any]) -> Any:
        self.calls.append((model, inputs))
        if self.error is not None:
            raise self.error
        if self.raw is not None:
            return self.raw
        if inputs.get("stream"):
            return _aiter(self.chunks)
        result: Dict[str, Any] = {"response": self.response}
        if self.usage is not None:
            result["usage"] = self.usage
        return result


@pytest.fixture()
def fake_binding() -> FakeBinding:
    return FakeBinding()


@pytest.fixture()
def make_binding():
    """Factory for FakeBinding instances with custom behaviour."""
    return FakeBinding
