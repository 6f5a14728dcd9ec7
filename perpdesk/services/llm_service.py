from __future__ import annotations

import logging
from typing import Any

from openrouter import OpenRouter, errors as openrouter_errors

from perpdesk.core.config import get_settings
from perpdesk.core.errors import ConfigurationError, LLMServiceError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "deepseek/deepseek-chat"

# upstream statuses surfaced to callers as-is
_PASSTHROUGH_STATUSES = {401, 429}


class LLMService:
    """Plain-text completions routed through OpenRouter."""

    def __init__(self, model_id: str | None = None, api_key: str | None = None) -> None:
        self.model_id = model_id or DEFAULT_MODEL_ID
        self._api_key = api_key
        self._client: OpenRouter | None = None
        self._client_api_key: str | None = None

    def set_model(self, model_id: str | None) -> None:
        if model_id:
            self.model_id = model_id

    @property
    def api_key(self) -> str | None:
        return self._api_key or get_settings().openrouter_api_key

    def _get_client(self, api_key: str) -> OpenRouter:
        if self._client and self._client_api_key == api_key:
            return self._client
        self._client = OpenRouter(api_key=api_key)
        self._client_api_key = api_key
        return self._client

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        model: str | None = None,
    ) -> str:
        api_key = self.api_key
        if not api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is not configured")
        request_kwargs: dict[str, Any] = {
            "model": model or self.model_id,
            "messages": self._build_messages(prompt, system),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        payload = await self._dispatch_chat_request(self._get_client(api_key), request_kwargs)
        text = self._extract_text(payload)
        if not text:
            raise LLMServiceError("LLM returned an empty response")
        return text

    @staticmethod
    def _build_messages(prompt: str, system: str | None) -> list[dict[str, Any]]:
        def _text_chunk(value: str) -> list[dict[str, str]]:
            return [{"type": "text", "text": value}]

        messages: list[dict[str, Any]] = []
        if system and system.strip():
            messages.append({"role": "system", "content": _text_chunk(system.strip())})
        messages.append({"role": "user", "content": _text_chunk(prompt)})
        return messages

    async def _dispatch_chat_request(self, client: OpenRouter, request_kwargs: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await client.chat.send_async(**request_kwargs)
        except openrouter_errors.OpenRouterError as exc:
            detail = self._describe_openrouter_error(exc)
            status = getattr(exc, "status_code", None)
            logger.warning("OpenRouter request failed (status=%s): %s", status, detail)
            body = getattr(exc, "body", None)
            if body:
                logger.debug("OpenRouter error body: %s", body.strip())
            if status == 401:
                message = f"invalid LLM API key: {detail}"
            elif status == 429:
                message = f"LLM rate limit exceeded: {detail}"
            else:
                message = f"LLM request failed: {detail}"
            raise LLMServiceError(
                message,
                status_code=status if status in _PASSTHROUGH_STATUSES else None,
            ) from exc
        except Exception as exc:
            logger.warning("OpenRouter transport failure: %s", exc)
            raise LLMServiceError(f"LLM request failed: {exc}") from exc
        return self._response_to_dict(response)

    @staticmethod
    def _response_to_dict(response: Any) -> dict[str, Any]:
        if hasattr(response, "model_dump"):
            return response.model_dump()
        if isinstance(response, dict):
            return response
        raise LLMServiceError("OpenRouter returned unsupported response type")

    def _extract_text(self, payload: dict[str, Any]) -> str:
        choices = payload.get("choices") or []
        if not choices:
            raise LLMServiceError("OpenRouter response missing choices")
        message = choices[0].get("message") or {}
        return self._coerce_text(message.get("content"))

    @staticmethod
    def _coerce_text(content: Any) -> str:
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, str):
                    parts.append(item)
                elif isinstance(item, dict):
                    text_value = item.get("text")
                    if isinstance(text_value, str):
                        parts.append(text_value)
            return "\n".join(parts).strip()
        return ""

    @staticmethod
    def _describe_openrouter_error(error: openrouter_errors.OpenRouterError) -> str:
        data = getattr(error, "data", None)
        err_payload = getattr(data, "error", None) if data else None
        if err_payload is not None:
            code = getattr(err_payload, "code", None)
            message = getattr(err_payload, "message", None)
            if code is not None and message:
                return f"{message} (code={code})"
            if message:
                return str(message)
        body = getattr(error, "body", None)
        if body:
            return body.strip()
        return str(error)


__all__ = ["DEFAULT_MODEL_ID", "LLMService"]
