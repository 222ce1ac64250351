import asyncio
from typing import Any, Sequence

import pytest

from services.street_advisor.app.analysis import SuitabilityAnalysisEngine
from services.street_advisor.app.animator import AnimatorState, RouteAnimator
from services.street_advisor.app.errors import InvalidInput, NoRouteFound, ServiceUnavailable
from services.street_advisor.app.live import LiveConditionsFetcher
from services.street_advisor.app.llm import GroundedAnswer
from services.street_advisor.app.resilience import RetryPolicy
from services.street_advisor.app.schemas import (
    Coordinate,
    ResultStatus,
    RoutePlan,
    VehicleClass,
    VerifiedStreetContext,
)
from services.street_advisor.app.session import (
    ExploreMode,
    RouteMode,
    SessionOrchestrator,
    SessionState,
    append_waypoint,
    change_vehicle,
    switch_mode,
)

HOHE_STRASSE = Coordinate(lat=50.9385, lon=6.9575)
HEUMARKT = Coordinate(lat=50.9366, lon=6.9620)
PEDESTRIAN_ZONE = VerifiedStreetContext(name="Hohe Straße", road_class="pedestrian")


class FakeResolver:
    def __init__(self) -> None:
        self.streets: dict[Coordinate, VerifiedStreetContext] = {HOHE_STRASSE: PEDESTRIAN_ZONE}
        self.gates: dict[Coordinate, asyncio.Event] = {}
        self.route_error: Exception | None = None
        self.outline_requests: list[str] = []
        self.geocoded: dict[str, Coordinate] = {"Hohe Straße": HOHE_STRASSE}
        self.geocode_error: Exception | None = None
        self.outline_gate: asyncio.Event | None = None

    async def geocode(self, text: str) -> Coordinate | None:
        if self.geocode_error:
            raise self.geocode_error
        return self.geocoded.get(text)

    async def nearest_street(self, coord: Coordinate) -> VerifiedStreetContext | None:
        gate = self.gates.get(coord)
        if gate is not None:
            await gate.wait()
        return self.streets.get(coord)

    async def street_outline(self, name: str, near: Coordinate) -> list[list[Coordinate]]:
        self.outline_requests.append(name)
        if self.outline_gate is not None:
            await self.outline_gate.wait()
        return [[near, Coordinate(lat=near.lat + 0.001, lon=near.lon)]]

    async def compute_route(self, waypoints: Sequence[Coordinate]) -> RoutePlan:
        if len(waypoints) < 2:
            raise InvalidInput("At least two waypoints are required for a route.")
        if self.route_error:
            raise self.route_error
        return RoutePlan(
            waypoints=list(waypoints),
            polyline=list(waypoints),
            street_names=["Severinstraße", "Hohe Straße"],
            total_distance_m=850.0,
            total_duration_s=240.0,
        )


class RuleBackend:
    """Generator that honours the prompt hints, plus a canned search answer."""

    def __init__(self) -> None:
        self.search_prompts: list[str] = []

    async def generate_json(
        self, prompt: str, *, system: str, schema_name: str, schema: dict[str, Any]
    ) -> dict[str, Any]:
        if schema_name == "route_analysis":
            return {
                "suitabilityScore": 20,
                "isRouteSuitable": False,
                "majorWarnings": ["Pedestrian zone"],
                "trafficPrediction": "Slow",
                "problematicStreets": ["Hohe Straße"],
            }
        blocked = "Highway Type: pedestrian" in prompt and "LKW" in prompt
        return {
            "streetName": "Hohe Straße" if "Hohe Straße" in prompt else "Heumarkt",
            "isTruckSuitable": not blocked,
            "restrictionReason": "Pedestrian zone" if blocked else None,
            "congestionScore": 4,
            "congestionCurve": [1] * 12,
            "rushHourTimes": [],
            "description": "Generated.",
        }

    async def grounded_search(self, prompt: str) -> GroundedAnswer:
        self.search_prompts.append(prompt)
        return GroundedAnswer(text="No major live incidents reported.")


async def _no_sleep(seconds: float) -> None:
    return None


def make_orchestrator(resolver: FakeResolver, backend: RuleBackend | None = None) -> SessionOrchestrator:
    backend = backend or RuleBackend()
    policy = RetryPolicy(1, 1)
    return SessionOrchestrator(
        resolver,  # type: ignore[arg-type]
        SuitabilityAnalysisEngine(backend, policy, "Köln, Germany", sleep=_no_sleep),
        LiveConditionsFetcher(backend, "Köln, Germany", policy, policy, sleep=_no_sleep),
        RouteAnimator(clock=lambda: 0.0),
        city="Köln",
    )


def test_switching_mode_drops_other_working_set() -> None:
    state = SessionState(mode=ExploreMode(selection=HOHE_STRASSE))

    routed = switch_mode(state, "route")
    assert routed.mode == RouteMode()

    with_points = append_waypoint(routed, HEUMARKT, limit=10)
    back = switch_mode(with_points, "explore")
    assert back.mode == ExploreMode()
    assert switch_mode(back, "explore").mode is back.mode


def test_eleventh_waypoint_is_rejected() -> None:
    state = SessionState(mode=RouteMode())
    for i in range(10):
        state = append_waypoint(state, Coordinate(lat=50.9 + i / 1000, lon=6.9), limit=10)
    full = state.mode

    rejected = append_waypoint(state, HEUMARKT, limit=10)

    assert rejected.mode is full
    assert isinstance(full, RouteMode) and len(full.waypoints) == 10
    assert rejected.message == "Max 10 waypoints allowed."


def test_vehicle_change_clears_analysis_keeps_waypoints() -> None:
    state = SessionState(mode=RouteMode(waypoints=(HOHE_STRASSE, HEUMARKT)))

    changed = change_vehicle(state, VehicleClass.CAR)

    assert changed.vehicle is VehicleClass.CAR
    assert isinstance(changed.mode, RouteMode)
    assert changed.mode.waypoints == (HOHE_STRASSE, HEUMARKT)
    assert changed.mode.analysis is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_search_pedestrian_zone_for_heavy_truck(anyio_backend: str) -> None:
    resolver = FakeResolver()
    backend = RuleBackend()
    orchestrator = make_orchestrator(resolver, backend)

    await orchestrator.search("Hohe Straße")
    await orchestrator.wait_background()

    state = orchestrator.state
    mode = state.mode
    assert isinstance(mode, ExploreMode)
    assert mode.street == PEDESTRIAN_ZONE
    assert mode.analysis is not None
    assert mode.analysis.is_suitable is False
    assert mode.analysis.status is ResultStatus.OK
    assert mode.outline and mode.outline[0][0] == HOHE_STRASSE
    assert resolver.outline_requests == ["Hohe Straße"]
    assert state.live_conditions is not None
    assert "Traffic at Hohe Straße in Köln" in backend.search_prompts[0]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_unnamed_road_is_not_outlined(anyio_backend: str) -> None:
    resolver = FakeResolver()
    resolver.streets[HEUMARKT] = VerifiedStreetContext(road_class="service")
    orchestrator = make_orchestrator(resolver)

    state = await orchestrator.select_location(HEUMARKT)
    await orchestrator.wait_background()

    assert isinstance(state.mode, ExploreMode)
    assert state.mode.outline == ()
    assert resolver.outline_requests == []


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_missing_street_context_uses_coordinates(anyio_backend: str) -> None:
    resolver = FakeResolver()
    backend = RuleBackend()
    orchestrator = make_orchestrator(resolver, backend)

    state = await orchestrator.select_location(HEUMARKT)

    assert isinstance(state.mode, ExploreMode)
    assert state.mode.street is None
    assert state.mode.analysis is not None
    await orchestrator.wait_background()
    assert "coordinates 50.9366, 6.962" in backend.search_prompts[0]
    assert resolver.outline_requests == ["Heumarkt"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_search_messages(anyio_backend: str) -> None:
    resolver = FakeResolver()
    orchestrator = make_orchestrator(resolver)

    state = await orchestrator.search("Atlantis")
    assert state.message == "Location not found in Köln."

    resolver.geocode_error = ServiceUnavailable("nominatim down")
    state = await orchestrator.search("Hohe Straße")
    assert state.message == "Search failed."


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_superseded_selection_is_discarded(anyio_backend: str) -> None:
    resolver = FakeResolver()
    gate = asyncio.Event()
    resolver.gates[HOHE_STRASSE] = gate
    orchestrator = make_orchestrator(resolver)

    slow = asyncio.create_task(orchestrator.select_location(HOHE_STRASSE))
    await asyncio.sleep(0)
    fresh = await orchestrator.select_location(HEUMARKT)
    gate.set()
    await slow
    await orchestrator.wait_background()

    mode = orchestrator.state.mode
    assert isinstance(mode, ExploreMode)
    assert mode.selection == HEUMARKT
    assert mode.analysis is fresh.mode.analysis
    assert resolver.outline_requests == ["Heumarkt"]


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_route_flow_analyses_and_animates(anyio_backend: str) -> None:
    resolver = FakeResolver()
    backend = RuleBackend()
    orchestrator = make_orchestrator(resolver, backend)
    orchestrator.set_mode("route")

    await orchestrator.select_location(HOHE_STRASSE)
    state = await orchestrator.select_location(HEUMARKT)
    assert isinstance(state.mode, RouteMode)
    assert state.mode.waypoints == (HOHE_STRASSE, HEUMARKT)

    state = await orchestrator.compute_route()

    assert isinstance(state.mode, RouteMode)
    assert state.mode.plan is not None
    assert state.mode.analysis is not None
    assert state.mode.analysis.score == 20
    assert state.live_conditions is not None
    assert "Severinstraße, Hohe Straße..." in backend.search_prompts[-1]
    assert orchestrator.animator.state is AnimatorState.PLAYING
    frame = orchestrator.animation_tick()
    assert frame is not None and frame.position == HOHE_STRASSE

    orchestrator.clear_route()
    assert orchestrator.state.mode == RouteMode()
    assert orchestrator.animation_tick() is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
@pytest.mark.parametrize("error", [NoRouteFound("no path"), ServiceUnavailable("osrm down")])
async def test_route_failure_keeps_previous_state(anyio_backend: str, error: Exception) -> None:
    resolver = FakeResolver()
    orchestrator = make_orchestrator(resolver)
    orchestrator.set_mode("route")
    await orchestrator.select_location(HOHE_STRASSE)
    await orchestrator.select_location(HEUMARKT)
    first = await orchestrator.compute_route()

    resolver.route_error = error
    state = await orchestrator.compute_route()

    assert state.message == "Failed to calculate or analyze route."
    assert state.mode is first.mode


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_single_waypoint_route_is_rejected(anyio_backend: str) -> None:
    orchestrator = make_orchestrator(FakeResolver())
    orchestrator.set_mode("route")
    await orchestrator.select_location(HOHE_STRASSE)

    state = await orchestrator.compute_route()

    assert state.message == "Failed to calculate or analyze route."
    assert isinstance(state.mode, RouteMode)
    assert state.mode.plan is None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_mode_switch_clears_animation(anyio_backend: str) -> None:
    orchestrator = make_orchestrator(FakeResolver())
    orchestrator.set_mode("route")
    await orchestrator.select_location(HOHE_STRASSE)
    await orchestrator.select_location(HEUMARKT)
    await orchestrator.compute_route()

    state = orchestrator.set_mode("explore")

    assert state.mode == ExploreMode()
    assert state.live_conditions is None
    assert orchestrator.animator.state is AnimatorState.IDLE


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_reselecting_current_mode_keeps_route_playing(anyio_backend: str) -> None:
    orchestrator = make_orchestrator(FakeResolver())
    orchestrator.set_mode("route")
    await orchestrator.select_location(HOHE_STRASSE)
    await orchestrator.select_location(HEUMARKT)
    routed = await orchestrator.compute_route()

    state = orchestrator.set_mode("route")

    assert isinstance(state.mode, RouteMode)
    assert state.mode is routed.mode
    assert state.live_conditions is routed.live_conditions
    assert orchestrator.animator.state is AnimatorState.PLAYING
    assert orchestrator.animation_tick() is not None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_reselecting_current_mode_keeps_route_in_flight(anyio_backend: str) -> None:
    resolver = FakeResolver()
    orchestrator = make_orchestrator(resolver)
    orchestrator.set_mode("route")
    await orchestrator.select_location(HOHE_STRASSE)
    await orchestrator.select_location(HEUMARKT)
    gate = asyncio.Event()
    original = resolver.compute_route

    async def slow_route(waypoints: Sequence[Coordinate]) -> RoutePlan:
        await gate.wait()
        return await original(waypoints)

    resolver.compute_route = slow_route  # type: ignore[method-assign]
    pending = asyncio.create_task(orchestrator.compute_route())
    await asyncio.sleep(0)
    orchestrator.set_mode("route")
    gate.set()
    state = await pending

    assert isinstance(state.mode, RouteMode)
    assert state.mode.plan is not None
    assert state.mode.analysis is not None


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_outline_does_not_delay_street_result(anyio_backend: str) -> None:
    resolver = FakeResolver()
    resolver.outline_gate = asyncio.Event()
    orchestrator = make_orchestrator(resolver)

    state = await orchestrator.select_location(HOHE_STRASSE)

    assert isinstance(state.mode, ExploreMode)
    assert state.mode.analysis is not None
    assert state.mode.outline == ()

    resolver.outline_gate.set()
    await orchestrator.wait_background()

    mode = orchestrator.state.mode
    assert isinstance(mode, ExploreMode)
    assert mode.analysis is state.mode.analysis
    assert len(mode.outline) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_late_outline_is_dropped_after_new_action(anyio_backend: str) -> None:
    resolver = FakeResolver()
    resolver.outline_gate = asyncio.Event()
    orchestrator = make_orchestrator(resolver)

    await orchestrator.select_location(HOHE_STRASSE)
    orchestrator.set_mode("route")
    resolver.outline_gate.set()
    await orchestrator.wait_background()

    assert orchestrator.state.mode == RouteMode()
