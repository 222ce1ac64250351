from typing import Optional

from fastapi import APIRouter, HTTPException, status

from . import deps, schemas
from .errors import InvalidInput, NoRouteFound, ServiceUnavailable
from .session import ExploreMode, SessionState

router = APIRouter()


def _to_response(state: SessionState) -> schemas.SessionResponse:
    mode = state.mode
    explore: Optional[schemas.ExploreView] = None
    route: Optional[schemas.RouteView] = None
    if isinstance(mode, ExploreMode):
        explore = schemas.ExploreView(
            selection=mode.selection,
            street=mode.street,
            analysis=mode.analysis,
            outline=[list(segment) for segment in mode.outline],
        )
    else:
        route = schemas.RouteView(
            waypoints=list(mode.waypoints), plan=mode.plan, analysis=mode.analysis
        )
    return schemas.SessionResponse(
        vehicle=state.vehicle,
        mode=state.mode_name,
        explore=explore,
        route=route,
        live_conditions=state.live_conditions,
        weather=state.weather,
        message=state.message,
    )


@router.get("/session", response_model=schemas.SessionResponse)
async def get_session() -> schemas.SessionResponse:
    return _to_response(deps.get_orchestrator().state)


@router.post("/session/mode", response_model=schemas.SessionResponse)
async def set_mode(data: schemas.ModeRequest) -> schemas.SessionResponse:
    return _to_response(deps.get_orchestrator().set_mode(data.mode))


@router.post("/session/vehicle", response_model=schemas.SessionResponse)
async def set_vehicle(data: schemas.VehicleRequest) -> schemas.SessionResponse:
    return _to_response(deps.get_orchestrator().set_vehicle(data.vehicle))


@router.post("/session/select", response_model=schemas.SessionResponse)
async def select_location(data: schemas.Coordinate) -> schemas.SessionResponse:
    state = await deps.get_orchestrator().select_location(data)
    return _to_response(state)


@router.post("/session/search", response_model=schemas.SessionResponse)
async def search(data: schemas.SearchRequest) -> schemas.SessionResponse:
    state = await deps.get_orchestrator().search(data.query)
    return _to_response(state)


@router.post("/session/route", response_model=schemas.SessionResponse)
async def compute_route() -> schemas.SessionResponse:
    state = await deps.get_orchestrator().compute_route()
    return _to_response(state)


@router.delete("/session/route", response_model=schemas.SessionResponse)
async def clear_route() -> schemas.SessionResponse:
    return _to_response(deps.get_orchestrator().clear_route())


@router.get("/session/animation", response_model=Optional[schemas.AnimationState])
async def animation_frame() -> Optional[schemas.AnimationState]:
    return deps.get_orchestrator().animation_tick()


@router.post("/session/animation/{action}")
async def control_animation(action: str) -> dict[str, str]:
    animator = deps.get_orchestrator().animator
    handlers = {"start": animator.start, "stop": animator.stop, "reset": animator.reset}
    handler = handlers.get(action)
    if handler is None:
        raise HTTPException(status_code=400, detail="unsupported action")
    handler()
    return {"state": animator.state.value}


@router.post("/routes/preview", response_model=schemas.RoutePlan)
async def preview_route(waypoints: list[schemas.Coordinate]) -> schemas.RoutePlan:
    resolver = deps.get_orchestrator().resolver
    try:
        return await resolver.compute_route(waypoints)
    except InvalidInput as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except NoRouteFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ServiceUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


@router.post("/weather/refresh", response_model=schemas.WeatherSnapshot)
async def refresh_weather() -> schemas.WeatherSnapshot:
    return await deps.get_orchestrator().refresh_weather()
