"""Интеграция с OpenAI: структурированные ответы и поиск с источниками."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import APIStatusError, AsyncOpenAI, OpenAIError, RateLimitError

from .errors import (
    AdvisorError,
    MalformedResponse,
    RateLimited,
    ServiceUnavailable,
    looks_rate_limited,
)
from .schemas import Source

logger = logging.getLogger(__name__)


@dataclass
class GroundedAnswer:
    """Текст ответа и веб-источники, на которые он ссылается."""

    text: str
    sources: list[Source] = field(default_factory=list)


class GenerativeBackend(Protocol):
    """Интерфейс генеративного сервиса."""

    async def generate_json(
        self, prompt: str, *, system: str, schema_name: str, schema: dict[str, Any]
    ) -> dict[str, Any]:
        """Вернуть объект, сгенерированный по JSON-схеме."""

    async def grounded_search(self, prompt: str) -> GroundedAnswer:
        """Ответить на вопрос с поиском в интернете."""


def classify_openai_error(exc: Exception) -> AdvisorError:
    """Отличить исчерпание квоты от прочих ошибок OpenAI."""

    if isinstance(exc, RateLimitError):
        return RateLimited(str(exc))
    if isinstance(exc, APIStatusError) and exc.status_code == 429:
        return RateLimited(str(exc))
    if looks_rate_limited(str(exc)):
        return RateLimited(str(exc))
    return ServiceUnavailable(str(exc) or type(exc).__name__)


class UnconfiguredBackend:
    """Заглушка на случай отсутствия ключа API: любой вызов неуспешен."""

    _REASON = "OpenAI API key is not configured"

    async def generate_json(
        self, prompt: str, *, system: str, schema_name: str, schema: dict[str, Any]
    ) -> dict[str, Any]:
        raise ServiceUnavailable(self._REASON)

    async def grounded_search(self, prompt: str) -> GroundedAnswer:
        raise ServiceUnavailable(self._REASON)


class OpenAIBackend:
    """Клиент OpenAI для анализа улиц и сводок дорожной обстановки."""

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float,
        search_model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        # повторы при 429 выполняет call_with_retry
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self._model = model
        self._search_model = search_model or model
        self._temperature = temperature

    async def generate_json(
        self, prompt: str, *, system: str, schema_name: str, schema: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._temperature,
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": schema_name, "schema": schema},
                },
            )
        except OpenAIError as exc:
            raise classify_openai_error(exc) from exc
        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise MalformedResponse("OpenAI returned an empty response")
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise MalformedResponse("OpenAI returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedResponse("OpenAI returned a non-object payload")
        return payload

    async def grounded_search(self, prompt: str) -> GroundedAnswer:
        # поиск несовместим со строгой схемой ответа, поэтому результат текстовый
        try:
            response = await self._client.responses.create(
                model=self._search_model,
                input=prompt,
                tools=[{"type": "web_search_preview"}],
            )
        except OpenAIError as exc:
            raise classify_openai_error(exc) from exc
        sources: list[Source] = []
        for item in response.output:
            if getattr(item, "type", None) != "message":
                continue
            for part in item.content:
                for annotation in getattr(part, "annotations", None) or []:
                    if getattr(annotation, "type", None) != "url_citation":
                        continue
                    sources.append(
                        Source(title=annotation.title or "Source", uri=annotation.url)
                    )
        return GroundedAnswer(text=response.output_text or "", sources=sources)
