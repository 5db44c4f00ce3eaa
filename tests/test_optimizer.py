import math

import numpy as np
import pytest
from scipy.spatial import cKDTree

from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.optimizer import (
    LikelihoodEdge,
    PoseGraphEdge,
    align_likelihood_edges,
    get_pixel_value,
    optimize_pose_graph,
)

RES = 10.0
SIZE = 200
HALF_W, HALF_H = 4.0, 3.0


def _wall_points(step=0.02):
    xs = np.arange(-HALF_W, HALF_W + step, step)
    ys = np.arange(-HALF_H, HALF_H + step, step)
    return np.vstack([
        np.column_stack([xs, np.full_like(xs, HALF_H)]),
        np.column_stack([xs, np.full_like(xs, -HALF_H)]),
        np.column_stack([np.full_like(ys, HALF_W), ys]),
        np.column_stack([np.full_like(ys, -HALF_W), ys]),
    ])


def _field():
    cols, rows = np.meshgrid(np.arange(SIZE), np.arange(SIZE))
    world = np.column_stack([cols.ravel(), rows.ravel()]).astype(float)
    world = (world + 0.5 - SIZE // 2) / RES
    dist, _ = cKDTree(_wall_points()).query(world)
    return np.minimum(dist * RES, 30.0).reshape(SIZE, SIZE).astype(np.float32)


def _room_scan(pose, n=720):
    inc = 2 * math.pi / n
    ranges = []
    for k in range(n):
        a = pose.theta + (-math.pi + k * inc)
        dx, dy = math.cos(a), math.sin(a)
        tx = ((HALF_W if dx > 0 else -HALF_W) - pose.x) / dx if abs(dx) > 1e-12 else math.inf
        ty = ((HALF_H if dy > 0 else -HALF_H) - pose.y) / dy if abs(dy) > 1e-12 else math.inf
        ranges.append(min(tx, ty))
    return Scan2d(-math.pi, -math.pi + (n - 1) * inc, inc, 0.1, 30.0, ranges)


def test_pixel_value_at_integer_coordinates():
    image = np.arange(12, dtype=np.float32).reshape(3, 4)
    assert get_pixel_value(image, 2, 1) == image[1, 2]
    assert get_pixel_value(image, 3, 2) == image[2, 3]


def test_pixel_value_interpolates():
    image = np.array([[0.0, 10.0], [20.0, 30.0]], dtype=np.float32)
    assert get_pixel_value(image, 0.5, 0.5) == pytest.approx(15.0)


def test_pixel_value_clamps_outside():
    image = np.array([[1.0, 2.0], [3.0, 4.0]], dtype=np.float32)
    assert get_pixel_value(image, -5, -5) == image[0, 0]
    assert get_pixel_value(image, 9, 9) == image[1, 1]


def test_edge_outside_field_is_deactivated():
    field = _field()
    edge = LikelihoodEdge(field, 50.0, 0.0, RES)
    assert edge.is_outside(SE2())
    assert edge.compute_error(SE2()) == 0.0
    assert edge.level == 1
    assert np.array_equal(edge.linearize(SE2()), np.zeros(3))


def test_edge_on_wall_has_small_error():
    field = _field()
    edge = LikelihoodEdge(field, HALF_W, 0.0, RES)
    assert not edge.is_outside(SE2())
    assert edge.compute_error(SE2()) < 1.0
    assert edge.level == 0


def test_align_recovers_pose():
    field = _field()
    truth = SE2(0.1, -0.05, 0.02)
    scan = _room_scan(truth)
    edges = [LikelihoodEdge(field, r, a, RES) for _, r, a in scan.valid_beams()]
    estimate = align_likelihood_edges(SE2(), edges, 0.8, 10)
    assert abs(estimate.x - truth.x) < 0.03
    assert abs(estimate.y - truth.y) < 0.03
    assert abs(estimate.theta - truth.theta) < 0.01


def test_pose_graph_edge_error_and_chi2():
    p1, p2 = SE2(1.0, 0.0, 0.1), SE2(2.0, 0.5, 0.4)
    exact = PoseGraphEdge(0, 1, p1.inverse() * p2, 1.0)
    assert np.allclose(exact.error(p1, p2), 0.0, atol=1e-12)
    off = PoseGraphEdge(0, 1, SE2(1.0, 0.0, 0.0), 2.0)
    e = off.error(p1, p2)
    assert off.chi2(p1, p2) == pytest.approx(2.0 * float(e @ e))


def test_optimize_pose_graph_restores_consistency():
    truth = {0: SE2(), 1: SE2(1.0, 0.0, 0.1), 2: SE2(2.0, 0.2, 0.2)}
    edges = [
        PoseGraphEdge(0, 1, truth[0].inverse() * truth[1], 1e4),
        PoseGraphEdge(1, 2, truth[1].inverse() * truth[2], 1e4),
        PoseGraphEdge(0, 2, truth[0].inverse() * truth[2], 1.0, robust_delta=1.0),
    ]
    start = dict(truth)
    start[2] = SE2(2.3, 0.0, 0.3)
    result = optimize_pose_graph(start, edges, 10)
    assert set(result) == {0, 1, 2}
    for edge in edges:
        assert np.linalg.norm(edge.error(result[edge.id1], result[edge.id2])) < 1e-3


def test_optimize_pose_graph_rejects_unknown_vertex():
    with pytest.raises(ValueError):
        optimize_pose_graph({0: SE2()}, [PoseGraphEdge(0, 5, SE2())])