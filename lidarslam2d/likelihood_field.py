"""Likelihood-field scan matching against a single-resolution distance image."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import numpy as np

from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.optimizer import LikelihoodEdge, align_likelihood_edges

logger = logging.getLogger(__name__)

FIELD_SIZE = 1000
FIELD_MAX = 30.0
MODEL_RADIUS = 20
OCCUPANCY_BORDER = 25
OCCUPIED_BELOW = 127
RANGE_THRESHOLD = 15.0

_EDGE_MARGIN = math.radians(30.0)
_ITERATIONS = 10
_MIN_EFFECTIVE_POINTS = 20
_IMAGE_BORDER = 20


@dataclass(frozen=True)
class ModelPoint:
    """One pixel offset of the field template and its distance to the centre."""

    dx: int
    dy: int
    residual: float


def build_model(radius: int = MODEL_RADIUS) -> list[ModelPoint]:
    """Square template of pixel offsets within ``radius``, with Euclidean residuals."""
    return [
        ModelPoint(x, y, math.sqrt(x * x + y * y))
        for x in range(-radius, radius + 1)
        for y in range(-radius, radius + 1)
    ]


def _blank_field(size: int) -> np.ndarray:
    return np.full((size, size), FIELD_MAX, dtype=np.float32)


def _splat(field: np.ndarray, xs: np.ndarray, ys: np.ndarray, model: Sequence[ModelPoint]) -> None:
    """Lower the field to the template residual around every (x, y) centre."""
    if len(xs) == 0:
        return
    rows, cols = field.shape
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    for pt in model:
        xx = np.trunc(xs + pt.dx).astype(np.int64)
        yy = np.trunc(ys + pt.dy).astype(np.int64)
        mask = (xx >= 0) & (xx < cols) & (yy >= 0) & (yy < rows)
        if not mask.any():
            continue
        yy, xx = yy[mask], xx[mask]
        field[yy, xx] = np.minimum(field[yy, xx], np.float32(pt.residual))


def _occupied_pixels(occu_map: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Columns and rows of occupied pixels, leaving out a border of the map."""
    grid = np.asarray(occu_map)
    if grid.ndim == 3:
        grid = grid[:, :, 0]
    rows, cols = grid.shape
    b = OCCUPANCY_BORDER
    if rows <= 2 * b or cols <= 2 * b:
        return np.empty(0), np.empty(0)
    ys, xs = np.nonzero(grid[b:rows - b, b:cols - b] < OCCUPIED_BELOW)
    return xs + b, ys + b


def _field_to_image(field: np.ndarray) -> np.ndarray:
    gray = np.trunc(field.astype(np.float64) * 255.0 / FIELD_MAX).astype(np.uint8)
    return np.repeat(gray[:, :, None], 3, axis=2)


def _matchable_beams(scan: Scan2d, max_range: Optional[float] = None) -> Iterator[tuple[float, float]]:
    """Valid beams away from both ends of the scan, optionally not farther than ``max_range``."""
    for _, r, angle in scan.valid_beams():
        if max_range is not None and r > max_range:
            continue
        if angle < scan.angle_min + _EDGE_MARGIN or angle > scan.angle_max - _EDGE_MARGIN:
            continue
        yield r, angle


class LikelihoodField:
    """Distance field built from a target scan or an occupancy grid, used to align a source scan."""

    RESOLUTION = 20.0
    ROBUST_DELTA = 0.8

    def __init__(self) -> None:
        self.model = build_model()
        self.field = _blank_field(FIELD_SIZE)
        self.pose = SE2()
        self.target: Optional[Scan2d] = None
        self.source: Optional[Scan2d] = None
        self._has_outside = False

    def set_target_scan(self, scan: Scan2d) -> None:
        """Rebuild the field around the end points of ``scan``."""
        self.target = scan
        self.field = _blank_field(FIELD_SIZE)
        beams = list(scan.valid_beams())
        ranges = np.array([b[1] for b in beams], dtype=float)
        angles = np.array([b[2] for b in beams], dtype=float)
        center = FIELD_SIZE // 2
        xs = ranges * np.cos(angles) * self.RESOLUTION + center
        ys = ranges * np.sin(angles) * self.RESOLUTION + center
        _splat(self.field, xs, ys, self.model)

    def set_source_scan(self, scan: Scan2d) -> None:
        self.source = scan

    def set_field_image_from_occu_map(self, occu_map: np.ndarray) -> None:
        """Rebuild the field from the occupied pixels of an occupancy grid."""
        self.field = _blank_field(FIELD_SIZE)
        xs, ys = _occupied_pixels(occu_map)
        _splat(self.field, xs, ys, self.model)

    def has_outside_points(self) -> bool:
        """Whether the last alignment saw beams falling outside the field."""
        return self._has_outside

    def _require_source(self) -> Scan2d:
        if self.source is None:
            raise ValueError("source scan is not set")
        return self.source

    def align_gauss_newton(self, init_pose: Optional[SE2] = None) -> Optional[SE2]:
        """Gauss-Newton alignment; returns the pose, or None when too few beams fall inside."""
        source = self._require_source()
        beams = list(_matchable_beams(source))
        ranges = np.array([b[0] for b in beams], dtype=float)
        angles = np.array([b[1] for b in beams], dtype=float)
        local = np.column_stack([ranges * np.cos(angles), ranges * np.sin(angles)]).reshape(-1, 2)

        field = self.field
        rows, cols = field.shape
        res = self.RESOLUTION
        center = FIELD_SIZE // 2
        border = _IMAGE_BORDER
        current = init_pose if init_pose is not None else SE2()
        last_cost = 0.0
        self._has_outside = False

        for iteration in range(_ITERATIONS):
            world = current.transform(local).reshape(-1, 2)
            pf = np.trunc(world * res + center).astype(np.int64)
            inside = (
                (pf[:, 0] >= border) & (pf[:, 0] < cols - border)
                & (pf[:, 1] >= border) & (pf[:, 1] < rows - border)
            )
            if not inside.all():
                self._has_outside = True
            effective = int(np.count_nonzero(inside))
            if effective < _MIN_EFFECTIVE_POINTS:
                return None

            px, py = pf[inside, 0], pf[inside, 1]
            dx = 0.5 * (field[py, px + 1].astype(float) - field[py, px - 1])
            dy = 0.5 * (field[py + 1, px].astype(float) - field[py - 1, px])
            a = angles[inside] + current.theta
            r = ranges[inside]
            jac = np.column_stack([
                res * dx,
                res * dy,
                -res * dx * r * np.sin(a) + res * dy * r * np.cos(a),
            ])
            err = field[py, px].astype(float)
            hessian = jac.T @ jac
            b = -jac.T @ err
            cost = float(err @ err)

            try:
                step = np.linalg.solve(hessian, b)
            except np.linalg.LinAlgError:
                break
            if math.isnan(step[0]):
                break
            cost /= effective
            if iteration > 0 and cost >= last_cost:
                break
            logger.info("iter %d cost = %g, effect num: %d", iteration, cost, effective)
            current = SE2(current.x + step[0], current.y + step[1], current.theta + step[2])
            last_cost = cost

        return current

    def align_g2o(self, init_pose: Optional[SE2] = None) -> SE2:
        """Robust least-squares alignment over per-beam field edges; returns the pose."""
        source = self._require_source()
        pose = init_pose if init_pose is not None else SE2()
        self._has_outside = False
        edges = []
        for r, angle in _matchable_beams(source, RANGE_THRESHOLD):
            edge = LikelihoodEdge(self.field, r, angle, self.RESOLUTION)
            if edge.is_outside(pose):
                self._has_outside = True
                continue
            edges.append(edge)
        if not edges:
            return pose
        return align_likelihood_edges(pose, edges, delta=self.ROBUST_DELTA, iterations=_ITERATIONS)

    def get_field_image(self) -> np.ndarray:
        """The field as a grey RGB image, 255 where the field is at its maximum."""
        return _field_to_image(self.field)