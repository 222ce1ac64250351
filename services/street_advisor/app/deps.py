import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

from src.common.settings import SettingsMeta

logger = logging.getLogger(__name__)


class Settings(BaseSettings, metaclass=SettingsMeta):
    city_name: str = "Köln"
    city_qualifier: str = "Köln, Germany"
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    osrm_url: str = "https://router.project-osrm.org/route/v1"
    osrm_profile: str = "driving"
    http_timeout: float = 10.0
    http_user_agent: str = "street-advisor/0.1"
    nearest_street_radius_m: int = 20
    street_outline_radius_m: int = 1000
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_search_model: str | None = None
    openai_temperature: float = 0.2
    analysis_retry_attempts: int = 4
    analysis_retry_base_delay_ms: int = 2500
    weather_retry_attempts: int = 2
    weather_retry_base_delay_ms: int = 2000
    geometry_retry_attempts: int = 2
    geometry_retry_base_delay_ms: int = 1000
    animation_cycle_seconds: float = 10.0
    max_waypoints: int = 10


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_generative_backend():
    """Вернуть клиент OpenAI либо заглушку, если ключ не задан."""

    from .llm import OpenAIBackend, UnconfiguredBackend

    settings = get_settings()
    if settings.openai_api_key:
        return OpenAIBackend(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            search_model=settings.openai_search_model,
            base_url=settings.openai_base_url,
        )
    logger.warning("OPENAI_API_KEY не задан, анализ будет недоступен")
    return UnconfiguredBackend()


@lru_cache
def get_orchestrator():
    """Собрать оркестратор сессии со всеми зависимостями."""

    from .analysis import SuitabilityAnalysisEngine
    from .animator import RouteAnimator
    from .geometry import GeometryResolver
    from .live import LiveConditionsFetcher
    from .resilience import RetryPolicy
    from .session import SessionOrchestrator

    settings = get_settings()
    backend = get_generative_backend()
    analysis_policy = RetryPolicy(
        settings.analysis_retry_attempts, settings.analysis_retry_base_delay_ms
    )
    weather_policy = RetryPolicy(
        settings.weather_retry_attempts, settings.weather_retry_base_delay_ms
    )
    return SessionOrchestrator(
        resolver=GeometryResolver(settings),
        engine=SuitabilityAnalysisEngine(backend, analysis_policy, settings.city_qualifier),
        live=LiveConditionsFetcher(
            backend, settings.city_qualifier, analysis_policy, weather_policy
        ),
        animator=RouteAnimator(settings.animation_cycle_seconds),
        city=settings.city_name,
        max_waypoints=settings.max_waypoints,
    )
