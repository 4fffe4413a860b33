import json
import logging

import httpx

from quotecall.circuit_breaker import CircuitBreaker
from quotecall.errors import LLMProviderError, LLMTimeout, MalformedLLMOutput

logger = logging.getLogger(__name__)


class LLMProvider:
    """OpenAI-compatible chat completions client that only speaks JSON.

    Wrapped in a circuit breaker: after 3 consecutive failures the provider
    is skipped for 60s and calls fail fast, so a live call degrades to a
    canned line immediately instead of waiting out another timeout.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="LLM provider",
        )
        self._client = client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()

    async def generate_json(
        self,
        system_prompt: str,
        messages: list[dict],
        *,
        timeout: float,
        model: str | None = None,
        temperature: float = 0.2,
    ) -> dict:
        """One chat completion with ``response_format=json_object``, parsed to a dict.

        Raises LLMTimeout, LLMProviderError or MalformedLLMOutput. Never retries:
        callers that can afford to wait do that themselves.
        """
        if not self._circuit.should_try():
            raise LLMProviderError("LLM provider circuit open")

        body = {
            "model": model or self.model,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "messages": [{"role": "system", "content": system_prompt}, *messages],
        }
        try:
            resp = await self._post(body, timeout)
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except httpx.TimeoutException as e:
            self._circuit.record_failure()
            raise LLMTimeout(f"LLM call timed out after {timeout}s") from e
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            self._circuit.record_failure()
            raise LLMProviderError(f"LLM call failed: {e}") from e

        self._circuit.record_success()
        try:
            parsed = json.loads(content or "")
        except (TypeError, ValueError) as e:
            raise MalformedLLMOutput(f"LLM returned non-JSON content: {content!r:.200}") from e
        if not isinstance(parsed, dict):
            raise MalformedLLMOutput(f"LLM returned {type(parsed).__name__}, expected object")
        return parsed

    async def _post(self, body: dict, timeout: float) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/chat/completions"
        if self._client is not None:
            return await self._client.post(url, json=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=body, headers=headers)
