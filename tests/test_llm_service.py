import asyncio
from types import SimpleNamespace

import pytest

from perpdesk.core import config
from perpdesk.core.errors import ConfigurationError, LLMServiceError
from perpdesk.services.llm_service import DEFAULT_MODEL_ID, LLMService


class _StubChat:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    async def send_async(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        return self.response


def _service_with(chat: _StubChat, **kwargs) -> LLMService:
    service = LLMService(api_key="sk-test", **kwargs)
    service._get_client = lambda api_key: SimpleNamespace(chat=chat)  # type: ignore[method-assign]
    return service


def test_complete_sends_messages_and_returns_text() -> None:
    chat = _StubChat(response={"choices": [{"message": {"content": "  看涨  "}}]})
    service = _service_with(chat)

    text = asyncio.run(service.complete("analyse BTC", system="be brief", temperature=0.3, max_tokens=100))

    assert text == "看涨"
    [request] = chat.requests
    assert request["model"] == DEFAULT_MODEL_ID
    assert request["temperature"] == 0.3
    assert request["max_tokens"] == 100
    assert [message["role"] for message in request["messages"]] == ["system", "user"]
    assert request["messages"][1]["content"] == [{"type": "text", "text": "analyse BTC"}]


def test_content_parts_are_joined() -> None:
    chat = _StubChat(
        response={"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}]}
    )
    service = _service_with(chat, model_id="openai/gpt-4o-mini")

    assert asyncio.run(service.complete("hi")) == "a\nb"
    assert chat.requests[0]["model"] == "openai/gpt-4o-mini"
    assert [message["role"] for message in chat.requests[0]["messages"]] == ["user"]


def test_empty_reply_is_an_error() -> None:
    service = _service_with(_StubChat(response={"choices": [{"message": {"content": ""}}]}))

    with pytest.raises(LLMServiceError):
        asyncio.run(service.complete("hi"))


def test_transport_failure_is_wrapped() -> None:
    service = _service_with(_StubChat(error=RuntimeError("socket closed")))

    with pytest.raises(LLMServiceError) as excinfo:
        asyncio.run(service.complete("hi"))

    assert excinfo.value.status_code == 500
    assert "socket closed" in excinfo.value.message


def test_missing_api_key_is_configuration_error(monkeypatch) -> None:
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.chdir("/")
    config.get_settings.cache_clear()
    try:
        with pytest.raises(ConfigurationError):
            asyncio.run(LLMService().complete("hi"))
    finally:
        config.get_settings.cache_clear()


def test_set_model_ignores_blank_values() -> None:
    service = LLMService(model_id="a/b")
    service.set_model("")
    assert service.model_id == "a/b"
    service.set_model("c/d")
    assert service.model_id == "c/d"
