"""Оценка пригодности улиц и маршрутов для выбранного транспорта.

Генератор получает проверенные данные OpenStreetMap как истину в последней
инстанции. Ответ валидируется по фиксированной схеме, а затем сливается с
проверенными атрибутами. Ошибки никогда не доходят до вызывающего: при
исчерпании квоты возвращается оптимистичный «degraded» результат, при прочих
сбоях пессимистичный «failed».
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.common.metrics import ANALYSIS_RESULTS

from .errors import AdvisorError, MalformedResponse, RateLimited
from .llm import GenerativeBackend
from .resilience import RetryPolicy, Sleep, call_with_retry
from .schemas import (
    CURVE_BUCKETS,
    HEAVIEST_VEHICLE,
    Coordinate,
    ResultStatus,
    RouteSuitability,
    StreetSuitability,
    VehicleClass,
    VerifiedStreetContext,
)

logger = logging.getLogger(__name__)

HEAVY_MIN_WIDTH_M = 3.5

NEUTRAL_CURVE = (2, 2, 3, 7, 9, 6, 5, 8, 9, 5, 3, 2)
DEGRADED_CURVE = (2, 2, 2, 5, 5, 5, 5, 5, 5, 5, 2, 2)
FAILED_CURVE = (0,) * CURVE_BUCKETS

STREET_ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "streetName": {
            "type": "string",
            "description": "The name of the street or area identified by the coordinates.",
        },
        "isTruckSuitable": {
            "type": "boolean",
            "description": "Whether the street is suitable/legal for the vehicle type.",
        },
        "restrictionReason": {
            "type": ["string", "null"],
            "description": "Short reason for restriction, e.g. 'Width < 3m'.",
        },
        "maxWeight": {
            "type": ["string", "null"],
            "description": "Specific weight limit if known, e.g. '3.5t'.",
        },
        "streetWidth": {
            "type": ["string", "null"],
            "description": "Physical width of the street, e.g. 'approx. 4m'.",
        },
        "congestionScore": {
            "type": "integer",
            "minimum": 0,
            "maximum": 10,
            "description": "1 (clear) to 10 (gridlock) for typical conditions.",
        },
        "congestionCurve": {
            "type": "array",
            "items": {"type": "integer", "minimum": 0, "maximum": 10},
            "minItems": CURVE_BUCKETS,
            "maxItems": CURVE_BUCKETS,
            "description": "Typical congestion every 2 hours starting at 00:00.",
        },
        "rushHourTimes": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Time ranges when traffic is worst, e.g. '07:30 - 09:00'.",
        },
        "description": {
            "type": "string",
            "description": "A 2-3 sentence analysis of the logistics conditions.",
        },
        "alternativeRoutes": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Nearby streets better suited for this vehicle.",
        },
    },
    "required": [
        "streetName",
        "isTruckSuitable",
        "congestionScore",
        "congestionCurve",
        "rushHourTimes",
        "description",
    ],
}

ROUTE_ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "suitabilityScore": {"type": "integer", "minimum": 0, "maximum": 100},
        "isRouteSuitable": {"type": "boolean"},
        "majorWarnings": {"type": "array", "items": {"type": "string"}},
        "trafficPrediction": {"type": "string"},
        "problematicStreets": {"type": "array", "items": {"type": "string"}},
        "estimatedDurationAdjustment": {
            "type": "string",
            "description": "Estimated delay, e.g. '+15 mins'.",
        },
    },
    "required": [
        "suitabilityScore",
        "isRouteSuitable",
        "majorWarnings",
        "trafficPrediction",
        "problematicStreets",
    ],
}


class _GeneratedStreet(BaseModel):
    model_config = ConfigDict(strict=True, populate_by_name=True)

    street_name: str = Field(alias="streetName")
    is_suitable: bool = Field(alias="isTruckSuitable")
    restriction_reason: Optional[str] = Field(None, alias="restrictionReason")
    max_weight: Optional[str] = Field(None, alias="maxWeight")
    street_width: Optional[str] = Field(None, alias="streetWidth")
    congestion_score: int = Field(alias="congestionScore", ge=0, le=10)
    # длина кривой проверяется при слиянии
    congestion_curve: list[int] = Field(alias="congestionCurve")
    rush_hour_windows: list[str] = Field(alias="rushHourTimes")
    narrative: str = Field(alias="description")
    alternatives: list[str] = Field(default_factory=list, alias="alternativeRoutes")


class _GeneratedRoute(BaseModel):
    model_config = ConfigDict(strict=True, populate_by_name=True)

    score: int = Field(alias="suitabilityScore", ge=0, le=100)
    is_suitable: bool = Field(alias="isRouteSuitable")
    warnings: list[str] = Field(alias="majorWarnings")
    traffic_prediction: str = Field(alias="trafficPrediction")
    problematic_streets: list[str] = Field(alias="problematicStreets")
    duration_adjustment: str = Field("Unknown", alias="estimatedDurationAdjustment")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_width(context: VerifiedStreetContext | None) -> str | None:
    if context is None or context.width is None:
        return None
    return f"{context.width:g}m"


def _curve_is_valid(curve: Sequence[int]) -> bool:
    return len(curve) == CURVE_BUCKETS and all(0 <= v <= 10 for v in curve)


def build_street_prompt(
    coord: Coordinate,
    vehicle: VehicleClass,
    city: str,
    context: VerifiedStreetContext | None,
) -> str:
    """Промпт анализа улицы; проверенные данные OSM подаются как истина."""

    physical = ""
    if context is not None:
        width = f"{context.width:g} meters" if context.width is not None else "Not specified"
        lanes = str(context.lane_count) if context.lane_count is not None else "Not specified"
        physical = f"""
Verified Physical Data from OpenStreetMap:
- Street Name: {context.name}
- Highway Type: {context.road_class}
- Width: {width}
- Lanes: {lanes}

CRITICAL INSTRUCTION: Treat the verified data above as ground truth.
- Heavy LKW needs at least 3.0m width per lane or >5.5m total for two-way.
- If width is less than {HEAVY_MIN_WIDTH_M}m, mark isTruckSuitable as FALSE for "{HEAVIEST_VEHICLE.value}".
- If the highway type is pedestrian or footway, mark isTruckSuitable as FALSE for every LKW class.
- If lanes < 2 and type is residential, warn about passing difficulties.
"""
    return f"""
Analyze the traffic and logistical suitability for a vehicle of type "{vehicle.value}" at the coordinates: Latitude {coord.lat}, Longitude {coord.lon} in {city}.
{physical}
Consider:
1. Physical constraints (narrow streets, width limits, bridge heights).
2. Legal restrictions (low emission zones, weight limits).
3. Typical traffic patterns.
4. Alternative Routes: if the street is too narrow or restricted, suggest wider main roads nearby.

Provide a realistic assessment including a 24-hour congestion curve ({CURVE_BUCKETS} points).
"""


def build_route_prompt(vehicle: VehicleClass, street_names: Sequence[str], city: str) -> str:
    return f"""
Analyze the following route in {city} for a "{vehicle.value}".

Route includes these streets: {", ".join(street_names)}.

Identify:
1. Streets illegal or physically impossible for this vehicle (pedestrian zones, low bridges, weight limits).
2. Heavy congestion areas typical for {city}.
3. Give a suitability score (0-100).
"""


class SuitabilityAnalysisEngine:
    """Генерация и слияние оценок пригодности улиц и маршрутов."""

    def __init__(
        self,
        backend: GenerativeBackend,
        policy: RetryPolicy,
        city: str,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._backend = backend
        self._policy = policy
        self._city = city
        self._sleep = sleep
        self._clock = clock

    async def analyze_street(
        self,
        coord: Coordinate,
        vehicle: VehicleClass,
        context: VerifiedStreetContext | None = None,
    ) -> StreetSuitability:
        prompt = build_street_prompt(coord, vehicle, self._city, context)
        system = (
            f"You are an expert logistics coordinator for {self._city}. "
            "You strictly check street widths against vehicle requirements."
        )
        try:
            payload = await call_with_retry(
                lambda: self._backend.generate_json(
                    prompt,
                    system=system,
                    schema_name="street_analysis",
                    schema=STREET_ANALYSIS_SCHEMA,
                ),
                self._policy,
                upstream="openai.street",
                sleep=self._sleep,
            )
            try:
                generated = _GeneratedStreet.model_validate(payload)
            except ValidationError as exc:
                raise MalformedResponse(str(exc)) from exc
            result = self._merge_street(generated, context)
        except RateLimited:
            logger.warning("Street analysis quota exceeded, returning degraded result")
            result = self._degraded_street(context)
        except AdvisorError as exc:
            logger.error("Street analysis failed: %s", exc)
            result = self._failed_street(context)
        except Exception:
            logger.exception("Unexpected error during street analysis")
            result = self._failed_street(context)
        ANALYSIS_RESULTS.labels("street", result.status.value).inc()
        return result

    def _merge_street(
        self, generated: _GeneratedStreet, context: VerifiedStreetContext | None
    ) -> StreetSuitability:
        curve = generated.congestion_curve
        if not _curve_is_valid(curve):
            logger.warning(
                "Generated congestion curve has %d buckets, using neutral profile",
                len(curve),
            )
            curve = list(NEUTRAL_CURVE)
        # решение генератора о пригодности не перепроверяется
        return StreetSuitability(
            street_name=generated.street_name,
            is_suitable=generated.is_suitable,
            restriction_reason=generated.restriction_reason,
            max_weight=generated.max_weight,
            street_width=generated.street_width or _format_width(context),
            lane_count=context.lane_count if context else None,
            congestion_score=generated.congestion_score,
            congestion_curve=curve,
            rush_hour_windows=generated.rush_hour_windows,
            narrative=generated.narrative,
            alternatives=generated.alternatives,
            generated_at=self._clock(),
        )

    def _degraded_street(self, context: VerifiedStreetContext | None) -> StreetSuitability:
        return StreetSuitability(
            street_name=context.name if context else "Service Busy (High Traffic)",
            is_suitable=True,
            restriction_reason="AI Analysis unavailable. Check local signs.",
            street_width=_format_width(context) or "Unknown",
            lane_count=context.lane_count if context else None,
            congestion_score=5,
            congestion_curve=list(DEGRADED_CURVE),
            rush_hour_windows=["Unknown"],
            narrative=(
                "The AI analysis service is currently experiencing high demand. "
                "Please rely on standard physical street data and local signage. "
                "This street has not been fully verified for logistical constraints "
                "at this moment."
            ),
            generated_at=self._clock(),
            status=ResultStatus.DEGRADED,
        )

    def _failed_street(self, context: VerifiedStreetContext | None) -> StreetSuitability:
        return StreetSuitability(
            street_name=context.name if context else "Analysis Failed",
            is_suitable=False,
            restriction_reason="Suitability could not be verified.",
            lane_count=context.lane_count if context else None,
            congestion_score=0,
            congestion_curve=list(FAILED_CURVE),
            narrative=(
                "Could not retrieve data from AI service. "
                "Please check API key configuration."
            ),
            generated_at=self._clock(),
            status=ResultStatus.FAILED,
        )

    async def analyze_route(
        self, vehicle: VehicleClass, street_names: Sequence[str]
    ) -> RouteSuitability:
        prompt = build_route_prompt(vehicle, street_names, self._city)
        system = (
            f"You are an expert logistics router for {self._city}. Be strict about "
            "truck bans in the inner city and bridge heights."
        )
        try:
            payload = await call_with_retry(
                lambda: self._backend.generate_json(
                    prompt,
                    system=system,
                    schema_name="route_analysis",
                    schema=ROUTE_ANALYSIS_SCHEMA,
                ),
                self._policy,
                upstream="openai.route",
                sleep=self._sleep,
            )
            try:
                generated = _GeneratedRoute.model_validate(payload)
            except ValidationError as exc:
                raise MalformedResponse(str(exc)) from exc
            result = RouteSuitability(**generated.model_dump())
        except RateLimited:
            logger.warning("Route analysis quota exceeded, returning degraded result")
            result = RouteSuitability(
                score=50,
                is_suitable=True,
                warnings=["AI Service Busy - Verification Incomplete"],
                traffic_prediction="Unknown (Service Busy)",
                status=ResultStatus.DEGRADED,
            )
        except AdvisorError as exc:
            logger.error("Route analysis failed: %s", exc)
            result = self._failed_route()
        except Exception:
            logger.exception("Unexpected error during route analysis")
            result = self._failed_route()
        ANALYSIS_RESULTS.labels("route", result.status.value).inc()
        return result

    @staticmethod
    def _failed_route() -> RouteSuitability:
        return RouteSuitability(
            score=0,
            is_suitable=False,
            warnings=["AI Analysis Service Unavailable"],
            traffic_prediction="Unknown",
            status=ResultStatus.FAILED,
        )
