"""Сессия оператора: режимы, точки маршрута и координация анализов.

Состояние хранится в неизменяемом контейнере ``SessionState``, а каждое
действие оператора описано чистой функцией перехода. Режим задаётся
вариантом ``ExploreMode`` или ``RouteMode``, поэтому переключение режима
гарантированно сбрасывает данные другого режима.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Literal, Union

from opentelemetry import trace

from src.common.logging import get_logger
from src.common.metrics import ACTION_DURATION

from .analysis import SuitabilityAnalysisEngine
from .animator import RouteAnimator
from .errors import AdvisorError
from .geometry import GeometryResolver
from .live import LiveConditionsFetcher
from .schemas import (
    HEAVIEST_VEHICLE,
    UNNAMED_ROAD,
    AnimationState,
    Coordinate,
    LiveConditionsSnapshot,
    ResultStatus,
    RoutePlan,
    RouteSuitability,
    StreetSuitability,
    VehicleClass,
    VerifiedStreetContext,
    WeatherSnapshot,
)

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

ModeName = Literal["explore", "route"]


@dataclass(frozen=True)
class ExploreMode:
    selection: Coordinate | None = None
    street: VerifiedStreetContext | None = None
    analysis: StreetSuitability | None = None
    outline: tuple[tuple[Coordinate, ...], ...] = ()


@dataclass(frozen=True)
class RouteMode:
    waypoints: tuple[Coordinate, ...] = ()
    plan: RoutePlan | None = None
    analysis: RouteSuitability | None = None


Mode = Union[ExploreMode, RouteMode]


@dataclass(frozen=True)
class SessionState:
    vehicle: VehicleClass = HEAVIEST_VEHICLE
    mode: Mode = field(default_factory=ExploreMode)
    live_conditions: LiveConditionsSnapshot | None = None
    weather: WeatherSnapshot | None = None
    message: str | None = None

    @property
    def mode_name(self) -> ModeName:
        return "route" if isinstance(self.mode, RouteMode) else "explore"


def switch_mode(state: SessionState, target: ModeName) -> SessionState:
    """Сменить режим, отбросив рабочие данные прежнего."""

    if state.mode_name == target:
        return replace(state, message=None)
    mode: Mode = RouteMode() if target == "route" else ExploreMode()
    return replace(state, mode=mode, live_conditions=None, message=None)


def change_vehicle(state: SessionState, vehicle: VehicleClass) -> SessionState:
    """Новый класс транспорта делает прежние оценки неактуальными."""

    mode = state.mode
    if isinstance(mode, ExploreMode):
        mode = ExploreMode(selection=mode.selection, street=mode.street)
    else:
        mode = replace(mode, analysis=None)
    return replace(state, vehicle=vehicle, mode=mode, live_conditions=None, message=None)


def append_waypoint(state: SessionState, coord: Coordinate, limit: int) -> SessionState:
    mode = state.mode
    if not isinstance(mode, RouteMode):
        return replace(state, message="Switch to route mode to add waypoints.")
    if len(mode.waypoints) >= limit:
        return replace(state, message=f"Max {limit} waypoints allowed.")
    return replace(
        state, mode=replace(mode, waypoints=mode.waypoints + (coord,)), message=None
    )


def clear_route(state: SessionState) -> SessionState:
    if not isinstance(state.mode, RouteMode):
        return state
    return replace(state, mode=RouteMode(), live_conditions=None, message=None)


class SessionOrchestrator:
    """Координирует геосервисы, анализ и живые сводки по действиям оператора.

    Каждое действие получает новый токен. Результаты запроса, чей токен уже
    устарел, отбрасываются и не перезаписывают более свежее состояние.
    """

    def __init__(
        self,
        resolver: GeometryResolver,
        engine: SuitabilityAnalysisEngine,
        live: LiveConditionsFetcher,
        animator: RouteAnimator,
        *,
        city: str,
        max_waypoints: int = 10,
    ) -> None:
        self.resolver = resolver
        self.engine = engine
        self.live = live
        self.animator = animator
        self._city = city
        self._max_waypoints = max_waypoints
        self._state = SessionState()
        self._token = 0
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> SessionState:
        return self._state

    def _next_token(self) -> int:
        self._token += 1
        return self._token

    def _is_current(self, token: int) -> bool:
        return token == self._token

    def _discard(self, action: str, token: int) -> SessionState:
        logger.info("session.result_discarded", action=action, token=token, current=self._token)
        return self._state

    def set_mode(self, target: ModeName) -> SessionState:
        if target == self._state.mode_name:
            # маршрут, анимация и текущий расчёт сохраняются
            self._state = switch_mode(self._state, target)
            return self._state
        self._next_token()
        self._state = switch_mode(self._state, target)
        self.animator.clear()
        logger.info("session.mode_switched", mode=target)
        return self._state

    def set_vehicle(self, vehicle: VehicleClass) -> SessionState:
        self._next_token()
        self._state = change_vehicle(self._state, vehicle)
        logger.info("session.vehicle_changed", vehicle=vehicle.value)
        return self._state

    def clear_route(self) -> SessionState:
        self._next_token()
        self._state = clear_route(self._state)
        self.animator.clear()
        return self._state

    def add_waypoint(self, coord: Coordinate) -> SessionState:
        before = self._state
        self._state = append_waypoint(before, coord, self._max_waypoints)
        if self._state.mode is not before.mode:
            # прежний расчёт маршрута больше не соответствует точкам
            self._next_token()
        return self._state

    async def select_location(self, coord: Coordinate) -> SessionState:
        """Выбор точки на карте: анализ улицы или новая точка маршрута."""

        if isinstance(self._state.mode, RouteMode):
            return self.add_waypoint(coord)
        start = time.monotonic()
        with tracer.start_as_current_span("session.explore"):
            state = await self._explore(coord)
        ACTION_DURATION.labels("street_advisor", "explore").observe(time.monotonic() - start)
        return state

    async def _explore(self, coord: Coordinate) -> SessionState:
        token = self._next_token()
        vehicle = self._state.vehicle
        self._state = replace(
            self._state,
            mode=ExploreMode(selection=coord),
            live_conditions=None,
            message=None,
        )
        street = await self.resolver.nearest_street(coord)
        if not self._is_current(token):
            return self._discard("explore", token)
        label = street.name if street else f"coordinates {coord.lat}, {coord.lon}"
        analysis, live = await asyncio.gather(
            self.engine.analyze_street(coord, vehicle, street),
            self.live.fetch_live_conditions(f"Traffic at {label} in {self._city}"),
        )
        if not self._is_current(token):
            return self._discard("explore", token)
        self._state = replace(
            self._state,
            mode=ExploreMode(selection=coord, street=street, analysis=analysis),
            live_conditions=live,
        )
        logger.info(
            "session.street_analysed",
            street=analysis.street_name,
            suitable=analysis.is_suitable,
            status=analysis.status.value,
        )

        outline_name = street.name if street else None
        if outline_name is None and analysis.status is ResultStatus.OK:
            outline_name = analysis.street_name
        if outline_name and outline_name != UNNAMED_ROAD:
            # контур необязателен и не задерживает ответ
            task = asyncio.create_task(self._highlight(token, outline_name, coord))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return self._state

    async def _highlight(self, token: int, name: str, coord: Coordinate) -> None:
        segments = await self.resolver.street_outline(name, coord)
        if not self._is_current(token):
            self._discard("outline", token)
            return
        mode = self._state.mode
        if isinstance(mode, ExploreMode):
            outline = tuple(tuple(segment) for segment in segments)
            self._state = replace(self._state, mode=replace(mode, outline=outline))

    async def wait_background(self) -> None:
        """Дождаться фоновых запросов контура (тесты, остановка сервиса)."""

        if self._background:
            await asyncio.gather(*self._background)

    async def search(self, text: str) -> SessionState:
        token = self._next_token()
        try:
            coord = await self.resolver.geocode(text)
        except AdvisorError as exc:
            logger.warning("session.search_failed", query=text, error=str(exc))
            if self._is_current(token):
                self._state = replace(self._state, message="Search failed.")
            return self._state
        if not self._is_current(token):
            return self._discard("search", token)
        if coord is None:
            self._state = replace(self._state, message=f"Location not found in {self._city}.")
            return self._state
        return await self.select_location(coord)

    async def compute_route(self) -> SessionState:
        """Построить маршрут по накопленным точкам и оценить его."""

        mode = self._state.mode
        if not isinstance(mode, RouteMode):
            self._state = replace(self._state, message="Switch to route mode to plan a route.")
            return self._state
        start = time.monotonic()
        token = self._next_token()
        vehicle = self._state.vehicle
        with tracer.start_as_current_span("session.route"):
            try:
                plan = await self.resolver.compute_route(mode.waypoints)
            except AdvisorError as exc:
                logger.warning("session.route_failed", error=str(exc))
                if self._is_current(token):
                    self._state = replace(
                        self._state, message="Failed to calculate or analyze route."
                    )
                return self._state
            if not self._is_current(token):
                return self._discard("route", token)
            self._state = replace(
                self._state,
                mode=replace(mode, plan=plan, analysis=None),
                live_conditions=None,
                message=None,
            )
            self.animator.load(plan.polyline)

            preview = ", ".join(plan.street_names[:5])
            analysis, live = await asyncio.gather(
                self.engine.analyze_route(vehicle, plan.street_names),
                self.live.fetch_live_conditions(
                    f"Traffic conditions on route: {preview}... in {self._city}"
                ),
            )
            if not self._is_current(token):
                return self._discard("route", token)
            current = self._state.mode
            if isinstance(current, RouteMode):
                self._state = replace(
                    self._state,
                    mode=replace(current, analysis=analysis),
                    live_conditions=live,
                )
        logger.info(
            "session.route_analysed",
            streets=len(plan.street_names),
            score=analysis.score,
            status=analysis.status.value,
        )
        ACTION_DURATION.labels("street_advisor", "route").observe(time.monotonic() - start)
        return self._state

    async def refresh_weather(self) -> WeatherSnapshot:
        weather = await self.live.fetch_ambient_weather()
        self._state = replace(self._state, weather=weather)
        return weather

    def animation_tick(self) -> AnimationState | None:
        return self.animator.tick()
