"""Point-to-point and point-to-line ICP for 2D laser scans."""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional

import numpy as np
from scipy.spatial import cKDTree

from lidarslam2d.geometry import SE2, Scan2d

logger = logging.getLogger(__name__)

_ITERATIONS = 10
_MIN_EFFECTIVE_POINTS = 20


def fit_line_2d(points) -> Optional[np.ndarray]:
    """Fit a*x + b*y + c = 0 to points, with a^2 + b^2 = 1; None if impossible."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(pts) < 2:
        return None
    design = np.column_stack([pts, np.ones(len(pts))])
    _, _, vt = np.linalg.svd(design)
    coeffs = vt[-1]
    norm = math.hypot(coeffs[0], coeffs[1])
    if norm < 1e-12:
        return None
    return coeffs / norm


def _beam_arrays(scan: Scan2d) -> tuple[np.ndarray, np.ndarray]:
    beams = list(scan.valid_beams())
    ranges = np.array([b[1] for b in beams], dtype=float)
    angles = np.array([b[2] for b in beams], dtype=float)
    return ranges, angles


Accumulator = Callable[[SE2], "tuple[np.ndarray, np.ndarray, float, int]"]


def _gauss_newton(init_pose: SE2, accumulate: Accumulator) -> Optional[SE2]:
    current = init_pose
    last_cost = 0.0
    for iteration in range(_ITERATIONS):
        hessian, b, cost, effective = accumulate(current)
        if effective < _MIN_EFFECTIVE_POINTS:
            return None
        try:
            dx = np.linalg.solve(hessian, b)
        except np.linalg.LinAlgError:
            break
        if math.isnan(dx[0]):
            break
        cost /= effective
        if iteration > 0 and cost >= last_cost:
            break
        logger.info("iter %d cost = %g, effect num: %d", iteration, cost, effective)
        current = SE2(current.x + dx[0], current.y + dx[1], current.theta + dx[2])
        last_cost = cost
    logger.info("estimated pose: %g %g, theta: %g", current.x, current.y, current.theta)
    return current


class Icp2d:
    """Scan-to-scan ICP. Set a target, then a source, then call an align method."""

    MAX_DIS2_POINT = 0.01
    MAX_DIS2_LINE = 0.3
    LINE_NEIGHBOURS = 5

    def __init__(self) -> None:
        self._target: Optional[Scan2d] = None
        self._source: Optional[Scan2d] = None
        self._target_points = np.empty((0, 2))
        self._tree: Optional[cKDTree] = None

    def set_target(self, target: Scan2d) -> None:
        """Set the target scan and index its points."""
        self._target = target
        ranges, angles = _beam_arrays(target)
        self._target_points = np.column_stack([ranges * np.cos(angles), ranges * np.sin(angles)])
        self._tree = cKDTree(self._target_points) if len(self._target_points) else None

    def set_source(self, source: Scan2d) -> None:
        self._source = source

    def _prepared(self) -> tuple[np.ndarray, np.ndarray]:
        if self._target is None:
            raise ValueError("target is not set")
        if self._source is None:
            raise ValueError("source is not set")
        return _beam_arrays(self._source)

    def align_gauss_newton(self, init_pose: Optional[SE2] = None) -> Optional[SE2]:
        """Point-to-point alignment; returns the pose or None when too few matches."""
        ranges, angles = self._prepared()
        local = np.column_stack([ranges * np.cos(angles), ranges * np.sin(angles)])

        def accumulate(pose: SE2):
            hessian, b = np.zeros((3, 3)), np.zeros(3)
            if self._tree is None or len(local) == 0:
                return hessian, b, 0.0, 0
            world = pose.transform(local)
            dist, idx = self._tree.query(world, k=1)
            mask = dist * dist < self.MAX_DIS2_POINT
            n = int(np.count_nonzero(mask))
            if n == 0:
                return hessian, b, 0.0, 0
            err = world[mask] - self._target_points[idx[mask]]
            a = angles[mask] + pose.theta
            r = ranges[mask]
            jac = np.zeros((n, 2, 3))
            jac[:, 0, 0] = 1.0
            jac[:, 1, 1] = 1.0
            jac[:, 0, 2] = -r * np.sin(a)
            jac[:, 1, 2] = r * np.cos(a)
            hessian = np.einsum("nij,nik->jk", jac, jac)
            b = -np.einsum("nij,ni->j", jac, err)
            return hessian, b, float(np.sum(err * err)), n

        return _gauss_newton(init_pose if init_pose is not None else SE2(), accumulate)

    def align_gauss_newton_point_to_plane(self, init_pose: Optional[SE2] = None) -> Optional[SE2]:
        """Point-to-line alignment; returns the pose or None when too few matches."""
        ranges, angles = self._prepared()
        local = np.column_stack([ranges * np.cos(angles), ranges * np.sin(angles)])

        def accumulate(pose: SE2):
            hessian, b = np.zeros((3, 3)), np.zeros(3)
            cost, effective = 0.0, 0
            if self._tree is None or len(local) == 0:
                return hessian, b, cost, effective
            world = pose.transform(local)
            k = min(self.LINE_NEIGHBOURS, len(self._target_points))
            dist, idx = self._tree.query(world, k=k)
            dist = np.asarray(dist).reshape(len(world), k)
            idx = np.asarray(idx).reshape(len(world), k)
            for pw, r, angle, d_row, i_row in zip(world, ranges, angles, dist, idx):
                near = self._target_points[i_row[d_row * d_row < self.MAX_DIS2_LINE]]
                if len(near) < 3:
                    continue
                line = fit_line_2d(near)
                if line is None:
                    continue
                effective += 1
                a = angle + pose.theta
                jac = np.array([line[0], line[1],
                                -line[0] * r * math.sin(a) + line[1] * r * math.cos(a)])
                hessian += np.outer(jac, jac)
                err = line[0] * pw[0] + line[1] * pw[1] + line[2]
                b -= jac * err
                cost += err * err
            return hessian, b, cost, effective

        return _gauss_newton(init_pose if init_pose is not None else SE2(), accumulate)