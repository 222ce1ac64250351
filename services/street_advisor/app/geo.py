"""Сферическая геометрия: расстояния и азимуты между координатами."""

from __future__ import annotations

import math

from .schemas import Coordinate

EARTH_RADIUS_M = 6371000


def haversine(p1: Coordinate, p2: Coordinate) -> float:
    """Расстояние по большому кругу в метрах."""

    lat1, lon1 = math.radians(p1.lat), math.radians(p1.lon)
    lat2, lon2 = math.radians(p2.lat), math.radians(p2.lon)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_M * c


def initial_bearing(p1: Coordinate, p2: Coordinate) -> float:
    """Начальный азимут от ``p1`` к ``p2`` в градусах, диапазон [0, 360)."""

    lat1, lat2 = math.radians(p1.lat), math.radians(p2.lat)
    dlon = math.radians(p2.lon - p1.lon)
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(
        dlon
    )
    bearing = (math.degrees(math.atan2(y, x)) + 360) % 360
    # float rounding can land exactly on 360.0
    return 0.0 if bearing >= 360 else bearing
