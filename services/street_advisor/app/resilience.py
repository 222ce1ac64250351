"""Повтор вызовов внешних сервисов с экспоненциальной задержкой."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.common.metrics import UPSTREAM_CALLS

from .errors import RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Политика повторов: число повторов и базовая задержка."""

    max_attempts: int
    base_delay_ms: int

    def wait(self) -> wait_exponential:
        """Задержка ``base * 2^n`` перед n-м повтором (с нуля), в секундах."""

        return wait_exponential(multiplier=self.base_delay_ms / 1000, exp_base=2)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    upstream: str = "remote",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Выполнить ``operation``, повторяя только при исчерпании квоты.

    Всего выполняется не более ``policy.max_attempts + 1`` попыток. Любая
    другая ошибка пробрасывается сразу, а после последнего повтора
    пробрасывается последняя ``RateLimited``.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s rate limited, retrying in %d ms (attempt %d/%d)",
            upstream,
            round(delay * 1000),
            retry_state.attempt_number,
            policy.max_attempts,
        )
        UPSTREAM_CALLS.labels(upstream, "retry").inc()

    retrying = AsyncRetrying(
        sleep=sleep,
        stop=stop_after_attempt(policy.max_attempts + 1),
        wait=policy.wait(),
        retry=retry_if_exception_type(RateLimited),
        before_sleep=_before_sleep,
        reraise=True,
    )
    try:
        result = await retrying(operation)
    except RateLimited:
        UPSTREAM_CALLS.labels(upstream, "rate_limited").inc()
        raise
    except Exception:
        UPSTREAM_CALLS.labels(upstream, "failed").inc()
        raise
    UPSTREAM_CALLS.labels(upstream, "ok").inc()
    return result
