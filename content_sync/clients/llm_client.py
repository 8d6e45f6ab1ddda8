import json
from typing import Any

import httpx


class LlmClientError(RuntimeError):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class OllamaClient:
    def __init__(
        self,
        endpoint: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if endpoint is None or model is None or timeout_seconds is None:
            from content_sync.core.config import settings

            endpoint = endpoint or settings.LLM_ENDPOINT
            model = model or settings.LLM_MODEL
            timeout_seconds = timeout_seconds or settings.LLM_TIMEOUT_SECONDS
        self.endpoint = str(endpoint)
        self.model = str(model)
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    async def generate(self, prompt: str, *, response_format: str | None = None, keep_alive: int = 0) -> dict:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "keep_alive": keep_alive,
            "options": {"temperature": 0, "top_p": 1},
        }
        if response_format:
            payload["format"] = response_format
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.endpoint, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as exc:
            raise LlmClientError("X-LLM-UNAVAILABLE", f"LLM request failed: {exc}") from exc
        except ValueError as exc:
            raise LlmClientError("X-LLM-BAD-RESPONSE", "LLM returned a non-JSON envelope") from exc

    async def generate_json(self, prompt: str) -> dict[str, Any]:
        body = await self.generate(prompt, response_format="json")
        raw = body.get("response") if isinstance(body, dict) else None
        if not isinstance(raw, str) or not raw.strip():
            raise LlmClientError("X-LLM-EMPTY", "LLM returned an empty response")
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise LlmClientError("X-LLM-BAD-RESPONSE", "LLM response is not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise LlmClientError("X-LLM-BAD-RESPONSE", "LLM response is not a JSON object")
        return parsed
