"""Геокодирование, поиск ближайшей улицы, контуры улиц и маршруты.

Используются открытые сервисы OpenStreetMap: Nominatim для поиска адресов,
Overpass для тегов и геометрии дорог и OSRM для построения маршрутов.
Все координаты внутри системы хранятся в порядке (широта, долгота).
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Sequence

import httpx

from . import deps
from .errors import (
    AdvisorError,
    InvalidInput,
    NoRouteFound,
    RateLimited,
    ServiceUnavailable,
    classify_http_error,
)
from .geo import haversine
from .resilience import RetryPolicy, Sleep, call_with_retry
from .schemas import UNNAMED_ROAD, Coordinate, RoutePlan, VerifiedStreetContext

logger = logging.getLogger(__name__)

MIN_WAYPOINTS = 2
MAX_WAYPOINTS = 10

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")


def _parse_width(raw: str | None) -> float | None:
    """Ширина из тега OSM: '3.5', '3,5 m', '4 m' -> метры."""

    if not raw:
        return None
    match = _NUMBER_RE.search(raw)
    if match is None:
        return None
    return float(match.group(0).replace(",", "."))


def _parse_lanes(raw: str | None) -> int | None:
    if raw and raw.strip().isdigit():
        return int(raw.strip())
    return None


def _escape_overpass(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class GeometryResolver:
    """Клиент геосервисов OpenStreetMap с единым порядком координат."""

    def __init__(
        self,
        settings: deps.Settings,
        client: httpx.AsyncClient | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            timeout=settings.http_timeout,
            headers={"User-Agent": settings.http_user_agent},
        )
        self._policy = RetryPolicy(
            settings.geometry_retry_attempts, settings.geometry_retry_base_delay_ms
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        upstream: str,
        method: str,
        url: str,
        *,
        accept_client_errors: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Отправить запрос; 429 повторяется, остальные ошибки классифицируются."""

        async def attempt() -> httpx.Response:
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                raise classify_http_error(exc, upstream) from exc
            if response.status_code == 429:
                raise RateLimited(f"{upstream} rate limited the request")
            if response.status_code >= 500 or (
                response.is_error and not accept_client_errors
            ):
                raise ServiceUnavailable(
                    f"{upstream} responded with HTTP {response.status_code}"
                )
            return response

        return await call_with_retry(
            attempt, self._policy, upstream=upstream, sleep=self._sleep
        )

    async def _overpass(self, query: str) -> list[dict[str, Any]]:
        response = await self._send(
            "overpass", "POST", self._settings.overpass_url, data={"data": query}
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ServiceUnavailable("overpass returned invalid JSON") from exc
        return list(payload.get("elements") or [])

    async def geocode(self, text: str) -> Coordinate | None:
        """Найти координату по свободному тексту в пределах города.

        Пустой результат поиска не считается ошибкой и возвращает ``None``.
        """

        if not text.strip():
            return None
        params = {
            "q": f"{text.strip()}, {self._settings.city_qualifier}",
            "format": "json",
            "limit": "1",
        }
        response = await self._send(
            "nominatim", "GET", self._settings.nominatim_url, params=params
        )
        try:
            results = response.json()
        except ValueError as exc:
            raise ServiceUnavailable("nominatim returned invalid JSON") from exc
        if not results:
            logger.info("Geocoding found nothing for %r", text)
            return None
        best = results[0]
        return Coordinate(lat=float(best["lat"]), lon=float(best["lon"]))

    async def nearest_street(self, coord: Coordinate) -> VerifiedStreetContext | None:
        """Ближайшая дорога с тегом highway в малом радиусе вокруг точки."""

        radius = self._settings.nearest_street_radius_m
        query = (
            "[out:json][timeout:5];\n"
            f'way(around:{radius},{coord.lat},{coord.lon})["highway"];\n'
            "out tags center;"
        )
        try:
            elements = await self._overpass(query)
        except AdvisorError as exc:
            logger.warning("Nearest street lookup failed: %s", exc)
            return None
        ways = [el for el in elements if el.get("tags")]
        if not ways:
            return None
        nearest = min(ways, key=lambda el: self._distance_to_center(coord, el))
        tags = nearest["tags"]
        return VerifiedStreetContext(
            name=tags.get("name") or UNNAMED_ROAD,
            road_class=tags.get("highway") or "unknown",
            width=_parse_width(tags.get("width") or tags.get("est_width")),
            lane_count=_parse_lanes(tags.get("lanes")),
            speed_limit=tags.get("maxspeed"),
            surface=tags.get("surface"),
        )

    @staticmethod
    def _distance_to_center(coord: Coordinate, element: dict[str, Any]) -> float:
        center = element.get("center")
        if not center:
            return float("inf")
        return haversine(coord, Coordinate(lat=center["lat"], lon=center["lon"]))

    async def street_outline(
        self, name: str, near: Coordinate
    ) -> list[list[Coordinate]]:
        """Все сегменты улицы с данным именем в большом радиусе.

        Подсветка необязательна, поэтому при любой ошибке возвращается пустой
        список.
        """

        clean_name = name.split(",")[0].strip()
        if not clean_name:
            return []
        radius = self._settings.street_outline_radius_m
        query = (
            "[out:json][timeout:10];\n"
            f'(way["name"="{_escape_overpass(clean_name)}"]'
            f"(around:{radius},{near.lat},{near.lon}););\n"
            "out geom;"
        )
        try:
            elements = await self._overpass(query)
        except AdvisorError as exc:
            logger.warning("Street outline lookup for %r failed: %s", clean_name, exc)
            return []
        segments: list[list[Coordinate]] = []
        for element in elements:
            if element.get("type") != "way" or not element.get("geometry"):
                continue
            segments.append(
                [Coordinate(lat=pt["lat"], lon=pt["lon"]) for pt in element["geometry"]]
            )
        return segments

    async def compute_route(self, waypoints: Sequence[Coordinate]) -> RoutePlan:
        """Построить маршрут через точки в заданном порядке."""

        if len(waypoints) < MIN_WAYPOINTS:
            raise InvalidInput("At least two waypoints are required for a route.")
        if len(waypoints) > MAX_WAYPOINTS:
            raise InvalidInput(f"At most {MAX_WAYPOINTS} waypoints are allowed.")
        # OSRM ожидает порядок lon,lat
        coords = ";".join(f"{p.lon},{p.lat}" for p in waypoints)
        url = f"{self._settings.osrm_url}/{self._settings.osrm_profile}/{coords}"
        response = await self._send(
            "osrm",
            "GET",
            url,
            params={"overview": "full", "geometries": "geojson", "steps": "true"},
            accept_client_errors=True,
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise ServiceUnavailable("osrm returned invalid JSON") from exc
        routes = data.get("routes") or []
        if data.get("code") != "Ok" or not routes:
            raise NoRouteFound(data.get("message") or "No route found.")
        route = routes[0]
        polyline = [
            Coordinate(lat=lat, lon=lon)
            for lon, lat in route.get("geometry", {}).get("coordinates", [])
        ]
        street_names: list[str] = []
        for leg in route.get("legs", []):
            for step in leg.get("steps", []):
                step_name = step.get("name")
                if step_name and step_name not in street_names:
                    street_names.append(step_name)
        return RoutePlan(
            waypoints=list(waypoints),
            polyline=polyline,
            street_names=street_names,
            total_distance_m=float(route.get("distance", 0.0)),
            total_duration_s=float(route.get("duration", 0.0)),
        )
