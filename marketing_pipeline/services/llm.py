from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Sequence, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import InferenceSettings
from ..core.errors import InferenceError, InferenceTimeout, InferenceUnavailable
from ..core.logging import get_logger
from ..core.metrics import record_inference_attempt

logger = get_logger(name=__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _build_base_url(host: str, port: int) -> str:
    base = host.rstrip("/")
    if ":" in base.rsplit("/", maxsplit=1)[-1]:
        return base
    return f"{base}:{port}"


def _messages_from_text(
    prompt: str,
    system_prompt: str | None = None,
) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


@dataclass
class InferenceService:
    """Text-in/text-out client over a LangChain chat model with bounded retries.

    Each attempt is capped by ``settings.timeout_seconds``; after ``settings.max_retries``
    retries the last failure is raised as an :class:`InferenceError` subclass so callers
    can fall back to their heuristic path.
    """

    settings: InferenceSettings
    _client: Any
    model: str
    default_system_prompt: str = (
        "You are a marketing analyst for a performance advertising team. Be concise and factual."
    )

    @classmethod
    def from_settings(
        cls,
        settings: InferenceSettings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "InferenceService":
        model_name = model or settings.model
        if client is None:
            base_url = _build_base_url(settings.host, settings.port)
            client = ChatOllama(model=model_name, base_url=base_url, temperature=settings.temperature)
        return cls(settings=settings, _client=client, model=model_name)

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> str:
        messages = _messages_from_text(prompt, system_prompt or self.default_system_prompt)
        client = self._client
        if temperature is not None and hasattr(client, "with_options"):
            client = client.with_options(temperature=temperature)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_retries + 1),
                wait=wait_random_exponential(
                    multiplier=self.settings.base_backoff_seconds,
                    max=self.settings.max_backoff_seconds,
                ),
                retry=retry_if_exception_type(InferenceError),
                reraise=True,
            ):
                with attempt:
                    text = await self._invoke_once(client, messages, attempt.retry_state.attempt_number)
        except InferenceError as exc:
            logger.warning(
                "inference_failed",
                model=self.model,
                attempts=self.settings.max_retries + 1,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        return text

    async def generate_json(
        self,
        prompt: str,
        model: type[ModelT],
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> ModelT:
        """Generate text and parse the first JSON object in it into ``model``."""
        text = await self.generate(prompt, system_prompt=system_prompt, temperature=temperature)
        match = _JSON_OBJECT.search(text)
        if match is None:
            raise InferenceUnavailable("inference output did not contain a JSON object")
        try:
            return model.model_validate_json(match.group(0))
        except (ValidationError, json.JSONDecodeError) as exc:
            raise InferenceUnavailable(f"inference output failed validation: {exc}") from exc

    async def _invoke_once(self, client: Any, messages: Sequence[BaseMessage], attempt: int) -> str:
        try:
            result = await asyncio.wait_for(client.ainvoke(messages), timeout=self.settings.timeout_seconds)
        except asyncio.TimeoutError as exc:
            record_inference_attempt(outcome="timeout")
            logger.info("inference_attempt_timeout", model=self.model, attempt=attempt)
            raise InferenceTimeout(
                f"inference exceeded {self.settings.timeout_seconds:.2f}s"
            ) from exc
        except InferenceError:
            record_inference_attempt(outcome="error")
            raise
        except Exception as exc:
            record_inference_attempt(outcome="error")
            logger.info("inference_attempt_failed", model=self.model, attempt=attempt, error=str(exc))
            raise InferenceUnavailable(str(exc) or type(exc).__name__) from exc
        text = _extract_content(result).strip()
        if not text:
            record_inference_attempt(outcome="empty")
            raise InferenceUnavailable("inference returned empty output")
        record_inference_attempt(outcome="success")
        return text


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item.get("text", item)) if isinstance(item, dict) else str(item) for item in content)
    return str(content)
