"""
Distance decay curves.

A decay curve maps a network distance in meters to a weight, nominally in
[0, 1]. Curves are built once per configuration change by
create_decay_curve and are pure functions of distance afterwards, so one
instance can be shared across all origins of a scoring pass.
"""

import math
from abc import ABC, abstractmethod
from typing import Sequence

from accessmap.models.schemas import (
    BezierCurveConfig,
    ControlPoint,
    CurveConfig,
    ExponentialPowerCurveConfig,
    NegativeExponentialCurveConfig,
    PolylineCurveConfig,
)

BEZIER_BISECTION_STEPS = 30


def clamp_unit(value: float) -> float:
    """Clamp a weight into [0, 1]."""
    return max(0.0, min(1.0, value))


class DecayCurve(ABC):
    """Distance -> weight."""

    @abstractmethod
    def evaluate(self, distance: float) -> float:
        ...

    def __call__(self, distance: float) -> float:
        return self.evaluate(distance)


class PiecewiseLinearCurve(DecayCurve):
    """Linear interpolation between control points sorted by distance."""

    def __init__(self, points: Sequence[ControlPoint]):
        ordered = sorted(points, key=lambda p: p.x)
        self.xs = [float(p.x) for p in ordered]
        self.ys = [float(p.y) for p in ordered]

    def evaluate(self, distance: float) -> float:
        xs, ys = self.xs, self.ys
        if not xs:
            return 0.0
        if distance <= xs[0]:
            return ys[0]
        if distance >= xs[-1]:
            return ys[-1]

        for i in range(len(xs) - 1):
            if xs[i] <= distance <= xs[i + 1]:
                span = xs[i + 1] - xs[i]
                if span == 0:
                    return ys[i]
                t = (distance - xs[i]) / span
                return ys[i] + t * (ys[i + 1] - ys[i])

        return 0.0


class NegativeExponentialCurve(DecayCurve):
    """f(d) = e^(-alpha * d)"""

    def __init__(self, alpha: float):
        self.alpha = alpha

    def evaluate(self, distance: float) -> float:
        return math.exp(-self.alpha * distance)


class ExponentialPowerCurve(DecayCurve):
    """f(d) = e^(-(d / b)^c)"""

    def __init__(self, b: float, c: float):
        self.b = b
        self.c = c

    def evaluate(self, distance: float) -> float:
        if distance <= 0:
            return 1.0
        return math.exp(-((distance / self.b) ** self.c))


def _cubic_bezier(t: float, p0: float, p1: float, p2: float, p3: float) -> float:
    mt = 1 - t
    return mt * mt * mt * p0 + 3 * mt * mt * t * p1 + 3 * mt * t * t * p2 + t * t * t * p3


class BezierCurve(DecayCurve):
    """
    Cubic bezier from (0, 1) to (max_distance, 0).

    The parameter t for a given distance is found by bisection, which
    assumes the curve's x coordinate increases with t.
    """

    def __init__(self, handles: Sequence[Sequence[float]], max_distance: float):
        (self.c1x, self.c1y), (self.c2x, self.c2y) = handles
        self.max_distance = max_distance

    def evaluate(self, distance: float) -> float:
        if distance <= 0:
            return 1.0
        if distance >= self.max_distance:
            return 0.0

        lo, hi = 0.0, 1.0
        for _ in range(BEZIER_BISECTION_STEPS):
            mid = (lo + hi) / 2
            x = _cubic_bezier(mid, 0.0, self.c1x, self.c2x, self.max_distance)
            if x < distance:
                lo = mid
            else:
                hi = mid

        t = (lo + hi) / 2
        return clamp_unit(_cubic_bezier(t, 1.0, self.c1y, self.c2y, 0.0))


def create_decay_curve(config: CurveConfig) -> DecayCurve:
    """
    Build the evaluator for a curve configuration.

    Parameters are assumed valid; the configuration models reject
    non-positive scale/shape and negative decay rates.
    """
    if isinstance(config, PolylineCurveConfig):
        return PiecewiseLinearCurve(config.points)
    if isinstance(config, NegativeExponentialCurveConfig):
        return NegativeExponentialCurve(config.alpha)
    if isinstance(config, ExponentialPowerCurveConfig):
        return ExponentialPowerCurve(config.b, config.c)
    if isinstance(config, BezierCurveConfig):
        return BezierCurve(config.handles, config.max_distance)
    raise ValueError(f"Unsupported curve configuration: {type(config).__name__}")


def sample_curve(
    curve: DecayCurve,
    max_distance: float,
    steps: int = 100,
) -> list[tuple[float, float]]:
    """
    Evenly spaced (distance, weight) samples for plotting.

    Weights are clamped to [0, 1].
    """
    if steps < 1:
        raise ValueError("steps must be at least 1")

    return [
        (d, clamp_unit(curve.evaluate(d)))
        for d in (max_distance * i / steps for i in range(steps + 1))
    ]
