"""Проигрывание маршрута: позиция и курс транспорта во времени."""

from __future__ import annotations

import time
from bisect import bisect_right
from enum import Enum
from typing import Callable, Sequence

from .geo import haversine, initial_bearing
from .schemas import AnimationState, Coordinate

Clock = Callable[[], float]


class AnimatorState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"


class RouteAnimator:
    """Детерминированно вычисляет положение на ломаной по прошедшему времени.

    Полный проход маршрута занимает ``cycle_seconds`` и повторяется
    бесконечно. Время берётся из переданных часов, поэтому аниматор можно
    тестировать без реальной задержки.
    """

    def __init__(self, cycle_seconds: float = 10.0, clock: Clock = time.monotonic) -> None:
        if cycle_seconds <= 0:
            raise ValueError("cycle_seconds must be positive")
        self._cycle = cycle_seconds
        self._clock = clock
        self._points: list[Coordinate] = []
        self._cumulative: list[float] = []
        self._state = AnimatorState.IDLE
        self._started_at = 0.0
        self._accumulated = 0.0

    @property
    def state(self) -> AnimatorState:
        return self._state

    @property
    def total_distance(self) -> float:
        return self._cumulative[-1] if self._cumulative else 0.0

    def load(self, polyline: Sequence[Coordinate]) -> None:
        """Заменить ломаную; прогресс начинается с начала маршрута."""

        points = list(polyline)
        if len(points) < 2:
            self.clear()
            return
        cumulative = [0.0]
        for p1, p2 in zip(points, points[1:]):
            cumulative.append(cumulative[-1] + haversine(p1, p2))
        self._points = points
        self._cumulative = cumulative
        self._accumulated = 0.0
        self._started_at = self._clock()
        self._state = AnimatorState.PLAYING

    def clear(self) -> None:
        self._points = []
        self._cumulative = []
        self._accumulated = 0.0
        self._state = AnimatorState.IDLE

    def start(self) -> None:
        if self._state is AnimatorState.PAUSED:
            self._started_at = self._clock()
            self._state = AnimatorState.PLAYING

    def stop(self) -> None:
        if self._state is AnimatorState.PLAYING:
            self._accumulated += self._clock() - self._started_at
            self._state = AnimatorState.PAUSED

    def reset(self) -> None:
        self._accumulated = 0.0
        self._started_at = self._clock()

    def elapsed(self) -> float:
        if self._state is AnimatorState.PLAYING:
            return self._accumulated + self._clock() - self._started_at
        return self._accumulated

    def tick(self) -> AnimationState | None:
        """Состояние на текущий кадр или ``None`` без маршрута."""

        if self._state is AnimatorState.IDLE:
            return None
        fraction = (self.elapsed() % self._cycle) / self._cycle
        return self.state_at(fraction)

    def state_at(self, fraction: float) -> AnimationState | None:
        if not self._points:
            return None
        if not 0 <= fraction < 1:
            raise ValueError("fraction must be within [0, 1)")
        total = self.total_distance
        if total == 0:
            return AnimationState(position=self._points[0], heading_deg=0.0, progress=fraction)
        distance = fraction * total
        # на стыке сегментов выбираем следующий сегмент
        eps = total * 1e-12
        index = bisect_right(self._cumulative, distance + eps) - 1
        index = min(max(index, 0), len(self._points) - 2)
        p1, p2 = self._points[index], self._points[index + 1]
        seg_len = self._cumulative[index + 1] - self._cumulative[index]
        ratio = (distance - self._cumulative[index]) / seg_len if seg_len > 0 else 0.0
        ratio = min(max(ratio, 0.0), 1.0)
        position = Coordinate(
            lat=p1.lat + (p2.lat - p1.lat) * ratio,
            lon=p1.lon + (p2.lon - p1.lon) * ratio,
        )
        return AnimationState(
            position=position,
            heading_deg=initial_bearing(p1, p2),
            progress=fraction,
        )
