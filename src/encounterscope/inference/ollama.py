"""Ollama-backed inference gateway.

Calls ``POST /api/generate`` with JSON output mode and maps HTTP failures
onto the inference error taxonomy.
"""

import logging
from typing import Optional

import httpx

from encounterscope.errors import (
    ContextTooLargeError,
    ProviderError,
    RateLimitedError,
    UnauthorizedError,
)

from .base import InferenceGateway, InferenceRequest, InferenceResponse, ModelPricing

logger = logging.getLogger(__name__)


class OllamaGateway(InferenceGateway):
    """Inference gateway for a local or remote Ollama server."""

    def __init__(
        self,
        host: str,
        model: str,
        timeout: float = 300.0,
        pricing: Optional[ModelPricing] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the gateway.

        Args:
            host: Ollama base URL, e.g. http://localhost:11434
            model: Model tag to run
            timeout: Request timeout in seconds
            pricing: Token prices for cost accounting (local models default to free)
            client: Pre-built client, mainly for tests
        """
        self.host = host.rstrip("/")
        self.model = model
        self.pricing = pricing or ModelPricing()
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def model_name(self) -> str:
        return self.model

    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        options = {"num_predict": request.max_output_tokens}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        payload = {
            "model": self.model,
            "prompt": request.prompt_text,
            "format": "json",
            "stream": False,
            "options": options,
        }

        try:
            resp = await self._client.post(f"{self.host}/api/generate", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(f"ollama request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError(f"ollama transport error: {e}") from e

        self._raise_for_status(resp)
        body = resp.json()
        input_tokens = int(body.get("prompt_eval_count") or 0)
        output_tokens = int(body.get("eval_count") or 0)
        logger.debug(
            "ollama %s: %d in / %d out tokens", self.model, input_tokens, output_tokens
        )
        return InferenceResponse(
            content=body.get("response", ""),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=self.pricing.cost(input_tokens, output_tokens),
            model=body.get("model", self.model),
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        status = resp.status_code
        detail = resp.text[:500]
        if status == 429:
            raise RateLimitedError(f"rate limited: {detail}")
        if status in (401, 403):
            raise UnauthorizedError(f"unauthorized ({status}): {detail}")
        if status == 413 or (400 <= status < 500 and "context" in detail.lower()):
            raise ContextTooLargeError(f"prompt too large ({status}): {detail}")
        if status >= 500:
            raise ProviderError(f"server error {status}: {detail}", retryable=True)
        raise ProviderError(f"request rejected {status}: {detail}", retryable=False)

    async def aclose(self) -> None:
        await self._client.aclose()
