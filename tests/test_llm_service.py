from __future__ import annotations

import pytest
from pydantic import BaseModel

from marketing_pipeline.core.errors import InferenceTimeout, InferenceUnavailable
from marketing_pipeline.services.llm import InferenceService, _build_base_url
from tests.helpers.stubs import FailingChatClient, ScriptedChatClient, SlowChatClient, make_inference


class _Headline(BaseModel):
    headline: str


@pytest.mark.asyncio
async def test_generate_returns_stripped_text_with_system_prompt() -> None:
    client = ScriptedChatClient(["  Spend is stable.  "])
    service = make_inference(client)

    text = await service.generate("Summarise spend")

    assert text == "Spend is stable."
    messages = client.calls[0]
    assert messages[0].content == service.default_system_prompt
    assert messages[-1].content == "Summarise spend"


@pytest.mark.asyncio
async def test_failures_are_retried_then_raised() -> None:
    client = FailingChatClient()
    service = make_inference(client)

    with pytest.raises(InferenceUnavailable):
        await service.generate("hello")

    assert client.calls == 3


@pytest.mark.asyncio
async def test_each_attempt_is_bounded_by_the_timeout() -> None:
    client = SlowChatClient(delay=1.0)
    service = make_inference(client)

    with pytest.raises(InferenceTimeout):
        await service.generate("hello")

    assert client.calls == 3


@pytest.mark.asyncio
async def test_empty_output_is_retried() -> None:
    client = ScriptedChatClient(["", "   ", "finally"])
    service = make_inference(client)

    assert await service.generate("hello") == "finally"
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_generate_json_extracts_embedded_object() -> None:
    client = ScriptedChatClient(['Sure! {"headline": "Acme: built for you"} Hope that helps.'])
    service = make_inference(client)

    parsed = await service.generate_json("headline please", _Headline)

    assert parsed.headline == "Acme: built for you"


@pytest.mark.asyncio
async def test_generate_json_rejects_unusable_output() -> None:
    service = make_inference(ScriptedChatClient(["no json here"]))
    with pytest.raises(InferenceUnavailable):
        await service.generate_json("headline please", _Headline)

    service = make_inference(ScriptedChatClient(['{"title": 3}']))
    with pytest.raises(InferenceUnavailable):
        await service.generate_json("headline please", _Headline)


def test_base_url_keeps_explicit_port() -> None:
    assert _build_base_url("http://localhost", 11434) == "http://localhost:11434"
    assert _build_base_url("http://ollama:9000/", 11434) == "http://ollama:9000"


def test_from_settings_uses_supplied_client() -> None:
    client = ScriptedChatClient(["ok"])
    service = make_inference(client)

    assert isinstance(service, InferenceService)
    assert service.model == "llama3"
