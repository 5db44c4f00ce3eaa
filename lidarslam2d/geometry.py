"""Planar rigid transforms and 2D laser scans."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterator, Sequence, Union

import numpy as np

_EPSILON = 1e-10


def normalize_angle(angle: float) -> float:
    """Wrap an angle into the interval (-pi, pi]."""
    wrapped = math.atan2(math.sin(angle), math.cos(angle))
    if wrapped == -math.pi:
        return math.pi
    return wrapped


@dataclass(frozen=True)
class SE2:
    """A rigid transform in the plane: rotation by ``theta`` then translation."""

    x: float = 0.0
    y: float = 0.0
    theta: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "y", float(self.y))
        object.__setattr__(self, "theta", normalize_angle(float(self.theta)))

    @classmethod
    def exp(cls, tangent: Sequence[float]) -> SE2:
        """Map a tangent vector (vx, vy, theta) onto the group."""
        vx, vy, theta = (float(v) for v in tangent)
        if abs(theta) < _EPSILON:
            theta_sq = theta * theta
            sin_by_theta = 1.0 - theta_sq / 6.0
            one_minus_cos_by_theta = 0.5 * theta - theta * theta_sq / 24.0
        else:
            sin_by_theta = math.sin(theta) / theta
            one_minus_cos_by_theta = (1.0 - math.cos(theta)) / theta
        x = sin_by_theta * vx - one_minus_cos_by_theta * vy
        y = one_minus_cos_by_theta * vx + sin_by_theta * vy
        return cls(x, y, theta)

    def log(self) -> np.ndarray:
        """Map the transform onto its tangent vector (vx, vy, theta)."""
        theta = self.theta
        half_theta = 0.5 * theta
        real, imag = math.cos(theta), math.sin(theta)
        if abs(real - 1.0) < _EPSILON:
            half_by_tan = 1.0 - theta * theta / 12.0
        else:
            half_by_tan = -(half_theta * imag) / (real - 1.0)
        vx = half_by_tan * self.x + half_theta * self.y
        vy = -half_theta * self.x + half_by_tan * self.y
        return np.array([vx, vy, theta])

    @property
    def rotation(self) -> np.ndarray:
        c, s = math.cos(self.theta), math.sin(self.theta)
        return np.array([[c, -s], [s, c]])

    @property
    def translation(self) -> np.ndarray:
        return np.array([self.x, self.y])

    def inverse(self) -> SE2:
        c, s = math.cos(self.theta), math.sin(self.theta)
        return SE2(-(c * self.x + s * self.y), -(-s * self.x + c * self.y), -self.theta)

    def transform(self, point) -> np.ndarray:
        """Apply the transform to one point of shape (2,) or to points of shape (N, 2)."""
        p = np.asarray(point, dtype=float)
        return p @ self.rotation.T + self.translation

    def __mul__(self, other: Union[SE2, Sequence[float], np.ndarray]):
        if isinstance(other, SE2):
            c, s = math.cos(self.theta), math.sin(self.theta)
            return SE2(
                c * other.x - s * other.y + self.x,
                s * other.x + c * other.y + self.y,
                self.theta + other.theta,
            )
        return self.transform(other)


@dataclass
class Scan2d:
    """A single-echo planar laser scan."""

    angle_min: float = 0.0
    angle_max: float = 0.0
    angle_increment: float = 0.0
    range_min: float = 0.0
    range_max: float = 0.0
    ranges: list[float] = field(default_factory=list)

    def valid_beams(self) -> Iterator[tuple[int, float, float]]:
        """Yield (index, range, angle) for every beam whose range lies within limits."""
        for index, r in enumerate(self.ranges):
            if r < self.range_min or r > self.range_max:
                continue
            yield index, float(r), self.angle_min + index * self.angle_increment