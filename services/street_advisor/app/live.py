"""Сводки текущей дорожной обстановки и погоды через поиск с источниками."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable

from src.common.metrics import ANALYSIS_RESULTS

from .errors import AdvisorError, RateLimited
from .llm import GenerativeBackend
from .resilience import RetryPolicy, Sleep, call_with_retry
from .schemas import LiveConditionsSnapshot, ResultStatus, Source, WeatherSnapshot

logger = logging.getLogger(__name__)

_TEMP_RE = re.compile(r"TEMP:\s*(.*)", re.IGNORECASE)
_COND_RE = re.compile(r"COND:\s*(.*)", re.IGNORECASE)
_IMPACT_RE = re.compile(r"IMPACT:\s*(.*)", re.IGNORECASE)
_SEVERE_RE = re.compile(r"SEVERE:\s*(.*)", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique_sources(sources: list[Source]) -> list[Source]:
    seen: set[str] = set()
    unique: list[Source] = []
    for source in sources:
        if source.uri in seen:
            continue
        seen.add(source.uri)
        unique.append(source)
    return unique


def _match(pattern: re.Pattern[str], text: str) -> str | None:
    found = pattern.search(text)
    if found is None:
        return None
    return found.group(1).strip() or None


class LiveConditionsFetcher:
    """Получение сводок; ошибки превращаются в заглушки и не пробрасываются."""

    def __init__(
        self,
        backend: GenerativeBackend,
        city: str,
        policy: RetryPolicy,
        background_policy: RetryPolicy,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend
        self._city = city
        self._policy = policy
        self._background_policy = background_policy
        self._sleep = sleep
        self._clock = clock

    async def fetch_live_conditions(self, context_query: str) -> LiveConditionsSnapshot:
        prompt = (
            "Find the latest real-time traffic reports, accidents, roadworks, or "
            f"congestion warnings for: {context_query}.\n\n"
            f"Focus on {self._city}.\n"
            "Summarize any active incidents or major jams in 2-3 concise bullet points.\n"
            'If there are no major incidents reported recently, say "No major live '
            'incidents reported."'
        )
        try:
            answer = await call_with_retry(
                lambda: self._backend.grounded_search(prompt),
                self._policy,
                upstream="openai.search",
                sleep=self._sleep,
            )
        except RateLimited:
            logger.warning("Live traffic fetch quota exceeded")
            snapshot = LiveConditionsSnapshot(
                summary=(
                    "Live traffic updates temporarily unavailable due to high "
                    "service demand. Please drive carefully."
                ),
                fetched_at=self._clock(),
                status=ResultStatus.DEGRADED,
            )
        except AdvisorError as exc:
            logger.error("Live traffic fetch failed: %s", exc)
            snapshot = self._unavailable_conditions()
        except Exception:
            logger.exception("Unexpected error during live traffic fetch")
            snapshot = self._unavailable_conditions()
        else:
            snapshot = LiveConditionsSnapshot(
                summary=answer.text.strip() or "No live data available.",
                sources=_unique_sources(answer.sources),
                fetched_at=self._clock(),
            )
        ANALYSIS_RESULTS.labels("live", snapshot.status.value).inc()
        return snapshot

    async def fetch_ambient_weather(self) -> WeatherSnapshot:
        """Фоновая погода: меньше повторов, ошибки только логируются."""

        prompt = (
            f"Find the current weather in {self._city}.\n"
            "Return a response that STRICTLY follows this format "
            "(do not use markdown blocks):\n"
            "TEMP: [Temperature e.g. 15°C]\n"
            "COND: [Condition e.g. Rainy]\n"
            "IMPACT: [1 short sentence on how this affects road safety/logistics]\n"
            "SEVERE: [YES or NO]"
        )
        try:
            answer = await call_with_retry(
                lambda: self._backend.grounded_search(prompt),
                self._background_policy,
                upstream="openai.weather",
                sleep=self._sleep,
            )
        except RateLimited:
            logger.warning("Weather fetch skipped due to quota limits")
            return self._unavailable_weather(ResultStatus.DEGRADED)
        except AdvisorError as exc:
            logger.error("Weather fetch failed: %s", exc)
            return self._unavailable_weather(ResultStatus.FAILED)
        except Exception:
            logger.exception("Unexpected error during weather fetch")
            return self._unavailable_weather(ResultStatus.FAILED)
        text = answer.text
        severe = _match(_SEVERE_RE, text)
        return WeatherSnapshot(
            temperature=_match(_TEMP_RE, text) or "N/A",
            condition=_match(_COND_RE, text) or "Unknown",
            impact=_match(_IMPACT_RE, text) or "Weather data unavailable.",
            is_severe=bool(severe and "YES" in severe.upper()),
            fetched_at=self._clock(),
        )

    def _unavailable_conditions(self) -> LiveConditionsSnapshot:
        return LiveConditionsSnapshot(
            summary="Unable to fetch live traffic data at this time.",
            fetched_at=self._clock(),
            status=ResultStatus.FAILED,
        )

    def _unavailable_weather(self, status: ResultStatus) -> WeatherSnapshot:
        return WeatherSnapshot(
            temperature="--",
            condition="Unavailable",
            impact="Could not fetch weather data.",
            fetched_at=self._clock(),
            status=status,
        )
