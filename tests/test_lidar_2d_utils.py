import math

import numpy as np

from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.lidar_2d_utils import visualize_2d_scan

RED = (0, 0, 255)
WHITE = (255, 255, 255)


def _three_beam_scan(r=2.0, range_max=30.0):
    return Scan2d(angle_min=-math.pi / 2, angle_max=math.pi / 2, angle_increment=math.pi / 2,
                  range_min=0.1, range_max=range_max, ranges=[r, r, r])


def test_creates_white_image_of_requested_size():
    image = visualize_2d_scan(_three_beam_scan(), SE2(), None, RED, 800)
    assert image.shape == (800, 800, 3)
    assert image.dtype == np.uint8
    assert tuple(image[0, 0]) == WHITE


def test_draws_beam_endpoint():
    image = visualize_2d_scan(_three_beam_scan(2.0), SE2(), None, RED, 800, 20.0)
    assert tuple(image[400, 440]) == RED


def test_beams_near_scan_edges_are_skipped():
    image = visualize_2d_scan(_three_beam_scan(2.0), SE2(), None, RED, 800, 20.0)
    assert tuple(image[360, 400]) == WHITE
    assert tuple(image[440, 400]) == WHITE


def test_pose_is_drawn_as_ring():
    image = visualize_2d_scan(_three_beam_scan(), SE2(), None, RED, 800, 20.0)
    assert tuple(image[400, 405]) == RED
    assert tuple(image[400, 400]) == WHITE


def test_existing_image_is_drawn_in_place():
    canvas = np.zeros((100, 100, 3), dtype=np.uint8)
    result = visualize_2d_scan(_three_beam_scan(1.0), SE2(), canvas, RED, 100, 20.0)
    assert result is canvas
    assert tuple(canvas[50, 70]) == RED


def test_submap_pose_shifts_drawing():
    pose = SE2(3.0, 1.0, 0.0)
    shifted = visualize_2d_scan(_three_beam_scan(2.0), pose, None, RED, 800, 20.0, pose_submap=pose)
    plain = visualize_2d_scan(_three_beam_scan(2.0), SE2(), None, RED, 800, 20.0)
    assert np.array_equal(shifted, plain)


def test_out_of_range_beams_not_drawn():
    scan = _three_beam_scan(2.0, range_max=1.5)
    image = visualize_2d_scan(scan, SE2(), None, RED, 800, 20.0)
    assert tuple(image[400, 440]) == WHITE
    assert tuple(image[400, 405]) == RED