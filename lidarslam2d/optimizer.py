"""Least-squares edges and solvers for scan matching and pose graphs."""

from __future__ import annotations

import math
from typing import Callable, Iterable, Mapping, Optional, Sequence, TypeVar

import numpy as np

from lidarslam2d.geometry import SE2

State = TypeVar("State")


def get_pixel_value(image: np.ndarray, x: float, y: float) -> float:
    """Bilinearly interpolate a single-channel image at column ``x``, row ``y``."""
    rows, cols = image.shape[:2]
    x = min(max(float(x), 0.0), cols - 1.0)
    y = min(max(float(y), 0.0), rows - 1.0)
    x0, y0 = int(math.floor(x)), int(math.floor(y))
    x1, y1 = min(x0 + 1, cols - 1), min(y0 + 1, rows - 1)
    xx, yy = x - x0, y - y0
    return float(
        (1 - xx) * (1 - yy) * image[y0, x0]
        + xx * (1 - yy) * image[y0, x1]
        + (1 - xx) * yy * image[y1, x0]
        + xx * yy * image[y1, x1]
    )


def _huber(e2: float, delta: float) -> tuple[float, float]:
    d2 = delta * delta
    if e2 <= d2:
        return e2, 1.0
    s = math.sqrt(e2)
    return 2.0 * delta * s - d2, delta / s


def _cauchy(e2: float, delta: float) -> tuple[float, float]:
    d2 = delta * delta
    aux = 1.0 + e2 / d2
    return d2 * math.log(aux), 1.0 / aux


def _oplus(pose: SE2, dx: Sequence[float]) -> SE2:
    return SE2(pose.x + dx[0], pose.y + dx[1], pose.theta + dx[2])


class LikelihoodEdge:
    """Unary edge: one laser beam evaluated on a likelihood field image."""

    IMAGE_BORDER = 10

    def __init__(self, field: np.ndarray, range_: float, angle: float, resolution: float = 10.0):
        self.field = field
        self.range = float(range_)
        self.angle = float(angle)
        self.resolution = float(resolution)
        self.level = 0
        self._point = np.array([self.range * math.cos(self.angle), self.range * math.sin(self.angle)])

    def _image_coords(self, pose: SE2) -> np.ndarray:
        rows, cols = self.field.shape[:2]
        return pose.transform(self._point) * self.resolution + np.array([rows // 2, cols // 2], dtype=float)

    def _inside(self, px: float, py: float) -> bool:
        rows, cols = self.field.shape[:2]
        b = self.IMAGE_BORDER
        return b <= px < cols - b and b <= py < rows - b

    def is_outside(self, pose: SE2) -> bool:
        """Whether the beam end lands outside the usable part of the field."""
        pf = self._image_coords(pose)
        return not self._inside(int(pf[0]), int(pf[1]))

    def compute_error(self, pose: SE2) -> float:
        """Field value at the beam end; 0 and deactivation when it falls outside."""
        pf = self._image_coords(pose) - 0.5
        if self._inside(pf[0], pf[1]):
            return get_pixel_value(self.field, pf[0], pf[1])
        self.level = 1
        return 0.0

    def linearize(self, pose: SE2) -> np.ndarray:
        """Jacobian of the error with respect to (x, y, theta)."""
        pf = self._image_coords(pose) - 0.5
        if not self._inside(pf[0], pf[1]):
            self.level = 1
            return np.zeros(3)
        x, y = pf
        dx = 0.5 * (get_pixel_value(self.field, x + 1, y) - get_pixel_value(self.field, x - 1, y))
        dy = 0.5 * (get_pixel_value(self.field, x, y + 1) - get_pixel_value(self.field, x, y - 1))
        a = self.angle + pose.theta
        res = self.resolution
        return np.array([
            res * dx,
            res * dy,
            -res * dx * self.range * math.sin(a) + res * dy * self.range * math.cos(a),
        ])


class PoseGraphEdge:
    """Binary edge between two poses: error = log(T1^-1 * T2 * Z^-1)."""

    def __init__(self, id1, id2, measurement: SE2, information=1.0, robust_delta: Optional[float] = None):
        self.id1 = id1
        self.id2 = id2
        self.measurement = measurement
        info = np.asarray(information, dtype=float)
        self.information = info * np.eye(3) if info.ndim == 0 else info
        self.robust_delta = robust_delta
        self.level = 0

    def error(self, pose1: SE2, pose2: SE2) -> np.ndarray:
        return (pose1.inverse() * pose2 * self.measurement.inverse()).log()

    def chi2(self, pose1: SE2, pose2: SE2) -> float:
        e = self.error(pose1, pose2)
        return float(e @ self.information @ e)

    def _robust(self, e2: float) -> tuple[float, float]:
        if self.robust_delta is None:
            return e2, 1.0
        return _cauchy(e2, self.robust_delta)


def _levenberg_marquardt(
    state: State,
    build: Callable[[State], tuple[np.ndarray, np.ndarray]],
    cost: Callable[[State], float],
    apply_update: Callable[[State, np.ndarray], State],
    iterations: int,
) -> State:
    current_cost = cost(state)
    lam: Optional[float] = None
    ni = 2.0
    for _ in range(iterations):
        hessian, b = build(state)
        if lam is None:
            lam = 1e-5 * max(float(np.max(np.abs(np.diag(hessian)))), 1e-12)
        eye = np.eye(len(b))
        for _attempt in range(10):
            try:
                dx = np.linalg.solve(hessian + lam * eye, b)
            except np.linalg.LinAlgError:
                lam *= ni
                ni *= 2.0
                continue
            if not np.all(np.isfinite(dx)):
                return state
            candidate = apply_update(state, dx)
            new_cost = cost(candidate)
            scale = float(dx @ (lam * dx + b)) + 1e-3
            rho = (current_cost - new_cost) / scale
            if rho > 0 and math.isfinite(new_cost):
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                ni = 2.0
                state, current_cost = candidate, new_cost
                break
            lam *= ni
            ni *= 2.0
        else:
            break
    return state


def align_likelihood_edges(pose: SE2, edges: Sequence[LikelihoodEdge], delta: float = 0.8,
                           iterations: int = 10) -> SE2:
    """Optimise a single pose against likelihood edges with a Huber kernel."""

    def cost(p: SE2) -> float:
        return sum(_huber(e.compute_error(p) ** 2, delta)[0] for e in edges)

    def build(p: SE2):
        hessian = np.zeros((3, 3))
        b = np.zeros(3)
        for edge in edges:
            err = edge.compute_error(p)
            jac = edge.linearize(p)
            _, w = _huber(err * err, delta)
            hessian += w * np.outer(jac, jac)
            b -= w * jac * err
        return hessian, b

    return _levenberg_marquardt(pose, build, cost, _oplus, iterations)


def _numeric_jacobians(edge: PoseGraphEdge, p1: SE2, p2: SE2, step: float = 1e-7):
    j1 = np.zeros((3, 3))
    j2 = np.zeros((3, 3))
    for k in range(3):
        d = np.zeros(3)
        d[k] = step
        j1[:, k] = (edge.error(_oplus(p1, d), p2) - edge.error(_oplus(p1, -d), p2)) / (2 * step)
        j2[:, k] = (edge.error(p1, _oplus(p2, d)) - edge.error(p1, _oplus(p2, -d))) / (2 * step)
    return j1, j2


def optimize_pose_graph(poses: Mapping, edges: Iterable[PoseGraphEdge], iterations: int = 10) -> dict:
    """Optimise a pose graph; edges with a non-zero level are ignored."""
    ids = sorted(poses)
    index = {vid: i for i, vid in enumerate(ids)}
    active = [e for e in edges if e.level == 0]
    for edge in active:
        if edge.id1 not in index or edge.id2 not in index:
            raise ValueError(f"edge refers to unknown vertex: {edge.id1}, {edge.id2}")

    def cost(state: list) -> float:
        total = 0.0
        for edge in active:
            total += edge._robust(edge.chi2(state[index[edge.id1]], state[index[edge.id2]]))[0]
        return total

    def build(state: list):
        n = 3 * len(ids)
        hessian = np.zeros((n, n))
        b = np.zeros(n)
        for edge in active:
            i, j = index[edge.id1], index[edge.id2]
            p1, p2 = state[i], state[j]
            err = edge.error(p1, p2)
            omega = edge.information
            _, w = edge._robust(float(err @ omega @ err))
            j1, j2 = _numeric_jacobians(edge, p1, p2)
            blocks = ((i, j1), (j, j2))
            for a, ja in blocks:
                b[3 * a:3 * a + 3] -= w * ja.T @ omega @ err
                for c, jc in blocks:
                    hessian[3 * a:3 * a + 3, 3 * c:3 * c + 3] += w * ja.T @ omega @ jc
        return hessian, b

    def apply_update(state: list, dx: np.ndarray) -> list:
        return [_oplus(p, dx[3 * k:3 * k + 3]) for k, p in enumerate(state)]

    result = _levenberg_marquardt([poses[v] for v in ids], build, cost, apply_update, iterations)
    return dict(zip(ids, result))