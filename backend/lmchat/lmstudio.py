from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .config import ChatConfig
from .logging_utils import get_logger

log = get_logger(__name__)


class LMStudioError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class Completion:
    content: str
    model: str | None = None
    usage: dict[str, Any] | None = None


def _first_choice_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise LMStudioError(f"Unexpected LM Studio response shape: {data}") from e
    return "" if content is None else str(content)


def _number(name: str, value: Any, default: Any, cast: type) -> Any:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{name} must be a number")
    try:
        return cast(value)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"{name} must be a number") from e


class InferenceClient:
    """Chat-completions client for the local model server (OpenAI request shape, no retries)."""

    def __init__(self, config: ChatConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    @property
    def completions_url(self) -> str:
        return f"{self.config.backend_url}/v1/chat/completions"

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Raises ``ValueError`` when ``temperature`` or ``max_tokens`` is not numeric."""
        model_id = str(model).strip() if isinstance(model, str) and model.strip() else self.config.default_model
        return {
            "model": model_id,
            "messages": messages,
            "temperature": _number("temperature", temperature, self.config.temperature, float),
            "max_tokens": _number("max_tokens", max_tokens, self.config.max_tokens, int),
            "stream": False,
        }

    async def _post(self, payload: dict[str, Any]) -> Any:
        timeout_s = self.config.llm_timeout_s
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=self._transport) as client:
            try:
                resp = await client.post(self.completions_url, json=payload)
            except httpx.TimeoutException as e:
                raise LMStudioError(f"LM Studio request timed out after {timeout_s:.1f}s ({type(e).__name__}).") from e
            except httpx.HTTPError as e:
                msg = str(e).strip() or repr(e)
                raise LMStudioError(f"LM Studio request failed ({type(e).__name__}): {msg}") from e

            if not resp.is_success:
                detail = resp.text
                raise LMStudioError(
                    f"LM Studio API error: {resp.reason_phrase} - {detail}".strip(" -"),
                    status_code=resp.status_code,
                    detail=detail,
                )
            try:
                return resp.json()
            except ValueError as e:
                raise LMStudioError(f"LM Studio returned invalid JSON: {resp.text[:400]}") from e

    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        payload = self.build_payload(messages, model=model, temperature=temperature, max_tokens=max_tokens)
        log.debug("Sending %d messages to %s (model=%s)", len(messages), self.completions_url, payload["model"])
        data = await self._post(payload)
        usage = data.get("usage") if isinstance(data, dict) else None
        return Completion(
            content=_first_choice_content(data),
            model=data.get("model") if isinstance(data, dict) else None,
            usage=usage if isinstance(usage, dict) else None,
        )

    async def forward_completion(self, body: dict[str, Any]) -> dict[str, Any]:
        """Relay an OpenAI-style request body and return the backend's JSON untouched.

        Unknown fields pass through; ``model``, ``temperature`` and ``max_tokens``
        fall back to configured defaults when absent or null.
        """
        payload = dict(body)
        payload.update(
            self.build_payload(
                list(body.get("messages") or []),
                model=body.get("model"),
                temperature=body.get("temperature"),
                max_tokens=body.get("max_tokens"),
            )
        )
        data = await self._post(payload)
        if not isinstance(data, dict):
            raise LMStudioError(f"Unexpected LM Studio response shape: {data}")
        return data
