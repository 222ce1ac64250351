"""Классификация ошибок внешних сервисов."""

from __future__ import annotations

import httpx

_RATE_LIMIT_MARKERS = ("429", "quota", "RESOURCE_EXHAUSTED")


class AdvisorError(Exception):
    """Базовая ошибка советника."""


class RateLimited(AdvisorError):
    """Квота исчерпана, вызов можно повторить с задержкой."""


class ServiceUnavailable(AdvisorError):
    """Внешний сервис недоступен, повтор не поможет."""


class InvalidInput(AdvisorError):
    """Некорректные входные данные (например, число точек маршрута)."""


class NoRouteFound(AdvisorError):
    """Маршрутизатор не нашёл пути между точками."""


class MalformedResponse(AdvisorError):
    """Ответ генератора не соответствует схеме."""


def looks_rate_limited(message: str) -> bool:
    lowered = message.lower()
    return any(marker.lower() in lowered for marker in _RATE_LIMIT_MARKERS)


def classify_http_error(exc: httpx.HTTPError, upstream: str) -> AdvisorError:
    """Преобразовать ошибку httpx в ошибку нашей таксономии."""

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return RateLimited(f"{upstream} rate limited the request")
        return ServiceUnavailable(f"{upstream} responded with HTTP {status}")
    return ServiceUnavailable(f"{upstream} is unreachable: {exc}")
