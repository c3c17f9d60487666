"""Workers AI binding backed by the Cloudflare REST API.

Inside a Cloudflare Worker the host injects an ``AI`` object whose ``run``
method invokes a model in-process. This class offers the same ``run``
contract over HTTPS so the gateway can use Workers AI from any Python host.
"""

from typing import Any, Dict, Optional

import httpx

from coach_gateway.config import RuntimeContext
from coach_gateway.provider import ProviderError, open_upstream_stream
from coach_gateway.registry import BINDING_ENV_NAME

WORKERS_AI_BASE_URL = "https://api.cloudflare.com/client/v4/accounts"


class WorkersAIRestBinding:
    """Call Workers AI models through ``/accounts/{id}/ai/run/{model}``."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_id = account_id
        self._api_token = api_token
        self.timeout = timeout
        self.transport = transport

    def _url(self, model: str) -> str:
        return "{}/{}/ai/run/{}".format(WORKERS_AI_BASE_URL, self.account_id, model)

    async def run(self, model: str, inputs: Dict[str, Any]) -> Any:
        """Run ``model``; returns the result dict, or a byte iterator if streaming."""
        headers = {
            "Authorization": "Bearer {}".format(self._api_token),
            "Content-Type": "application/json",
        }
        client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

        if inputs.get("stream"):
            return await open_upstream_stream(
                client, "cloudflare", self._url(model), headers=headers, payload=inputs
            )

        async with client:
            resp = await client.post(self._url(model), json=inputs, headers=headers)

        if resp.is_error:
            raise ProviderError("cloudflare", resp.status_code, resp.text)

        data = resp.json()
        if not data.get("success", True):
            raise ProviderError("cloudflare", resp.status_code, str(data.get("errors")))
        return data.get("result") or {}


def default_runtime(timeout: float = 60.0) -> RuntimeContext:
    """Build the runtime context for a request from the process environment.

    Installs a REST-backed ``AI`` binding when Cloudflare credentials are set.
    """
    probe = RuntimeContext()
    account_id = probe.get("CLOUDFLARE_ACCOUNT_ID")
    api_token = probe.get("CLOUDFLARE_API_TOKEN")

    env: Dict[str, Any] = {}
    if account_id and api_token:
        env[BINDING_ENV_NAME] = WorkersAIRestBinding(account_id, api_token, timeout=timeout)
    return RuntimeContext(env=env)
