from __future__ import annotations

from typing import Protocol

import httpx

from bulkops_api.services.augment.errors import ItemTransformError, ProviderThrottled
from bulkops_api.services.augment.types import TransformResult

# 402 is how the gateway reports exhausted credits.
THROTTLE_STATUS_CODES = frozenset({402, 429})


class AugmentationClient(Protocol):
    def transform(self, *, text: str, instruction: str) -> TransformResult: ...


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


def _provider_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return response.text.strip()[:200]


class ChatCompletionsClient:
    """Calls an OpenAI-compatible /chat/completions endpoint once per item."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds

    def transform(self, *, text: str, instruction: str) -> TransformResult:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = httpx.post(
                f"{self._base_url}/chat/completions",
                json={
                    "model": self._model,
                    "messages": [
                        {"role": "system", "content": instruction},
                        {"role": "user", "content": text},
                    ],
                    "temperature": self._temperature,
                },
                headers=headers,
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ItemTransformError(f"augmentation request failed: {exc}") from exc

        if response.status_code in THROTTLE_STATUS_CODES:
            raise ProviderThrottled(
                f"augmentation service throttled ({response.status_code}): {_provider_message(response)}",
                status_code=response.status_code,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if not response.is_success:
            raise ItemTransformError(
                f"augmentation service error {response.status_code}: {_provider_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ItemTransformError("no content generated: response was not JSON") from exc

        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            raise ItemTransformError("no content generated")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ItemTransformError("no content generated")

        model = payload.get("model") if isinstance(payload.get("model"), str) else self._model
        return TransformResult(content=content.strip(), model=model)
