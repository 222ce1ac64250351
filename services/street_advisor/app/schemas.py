from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CURVE_BUCKETS = 12
UNNAMED_ROAD = "Unnamed Road"


class VehicleClass(str, Enum):
    CAR = "Car"
    LKW_LIGHT = "LKW (Light < 7.5t)"
    LKW_HEAVY = "LKW (Heavy > 7.5t)"


HEAVIEST_VEHICLE = VehicleClass.LKW_HEAVY


class ResultStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(ge=-180, le=180, allow_inf_nan=False)


class VerifiedStreetContext(BaseModel):
    """Атрибуты улицы из OpenStreetMap, считаются достоверными."""

    name: str = UNNAMED_ROAD
    road_class: str = "unknown"
    width: Optional[float] = None
    lane_count: Optional[int] = None
    speed_limit: Optional[str] = None
    surface: Optional[str] = None


class StreetSuitability(BaseModel):
    street_name: str
    is_suitable: bool
    restriction_reason: Optional[str] = None
    max_weight: Optional[str] = None
    street_width: Optional[str] = None
    lane_count: Optional[int] = None
    congestion_score: int = Field(ge=0, le=10)
    congestion_curve: list[int]
    rush_hour_windows: list[str] = Field(default_factory=list)
    narrative: str
    alternatives: list[str] = Field(default_factory=list)
    generated_at: datetime
    status: ResultStatus = ResultStatus.OK

    @field_validator("congestion_curve")
    @classmethod
    def _check_curve(cls, value: list[int]) -> list[int]:
        if len(value) != CURVE_BUCKETS:
            raise ValueError(f"congestion curve must have {CURVE_BUCKETS} buckets")
        if any(not 0 <= bucket <= 10 for bucket in value):
            raise ValueError("congestion curve values must be within [0, 10]")
        return value


class RouteSuitability(BaseModel):
    score: int = Field(ge=0, le=100)
    is_suitable: bool
    warnings: list[str] = Field(default_factory=list)
    traffic_prediction: str
    problematic_streets: list[str] = Field(default_factory=list)
    duration_adjustment: str = "Unknown"
    status: ResultStatus = ResultStatus.OK


class Source(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    uri: str


class LiveConditionsSnapshot(BaseModel):
    summary: str
    sources: list[Source] = Field(default_factory=list)
    fetched_at: datetime
    status: ResultStatus = ResultStatus.OK


class WeatherSnapshot(BaseModel):
    temperature: str
    condition: str
    impact: str
    is_severe: bool = False
    fetched_at: datetime
    status: ResultStatus = ResultStatus.OK


class RoutePlan(BaseModel):
    waypoints: list[Coordinate] = Field(min_length=2, max_length=10)
    polyline: list[Coordinate]
    street_names: list[str] = Field(default_factory=list)
    total_distance_m: float = Field(ge=0)
    total_duration_s: float = Field(ge=0)


class AnimationState(BaseModel):
    position: Coordinate
    heading_deg: float = Field(ge=0, lt=360)
    progress: float = Field(ge=0, lt=1)


# HTTP surface


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)


class ModeRequest(BaseModel):
    mode: Literal["explore", "route"]


class VehicleRequest(BaseModel):
    vehicle: VehicleClass


class ExploreView(BaseModel):
    selection: Optional[Coordinate] = None
    street: Optional[VerifiedStreetContext] = None
    analysis: Optional[StreetSuitability] = None
    outline: list[list[Coordinate]] = Field(default_factory=list)


class RouteView(BaseModel):
    waypoints: list[Coordinate] = Field(default_factory=list)
    plan: Optional[RoutePlan] = None
    analysis: Optional[RouteSuitability] = None


class SessionResponse(BaseModel):
    vehicle: VehicleClass
    mode: Literal["explore", "route"]
    explore: Optional[ExploreView] = None
    route: Optional[RouteView] = None
    live_conditions: Optional[LiveConditionsSnapshot] = None
    weather: Optional[WeatherSnapshot] = None
    message: Optional[str] = None
