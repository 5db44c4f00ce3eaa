import math

import numpy as np
import pytest

from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.likelihood_field import LikelihoodField, ModelPoint, build_model


def room_scan(half=5.0, step_deg=0.5, ranges=None):
    inc = math.radians(step_deg)
    n = int(round(2 * math.pi / inc))
    angle_min = -math.pi
    if ranges is None:
        ranges = [
            half / max(abs(math.cos(a)), abs(math.sin(a)))
            for a in (angle_min + i * inc for i in range(n))
        ]
    return Scan2d(angle_min, angle_min + (n - 1) * inc, inc, 0.1, 30.0, list(ranges))


@pytest.fixture(scope="module")
def room_field():
    lf = LikelihoodField()
    lf.set_target_scan(room_scan())
    return lf


def test_build_model_covers_square_with_euclidean_residuals():
    model = build_model(20)
    assert len(model) == 41 * 41
    assert ModelPoint(0, 0, 0.0) in model
    assert all(pt.residual == pytest.approx(math.hypot(pt.dx, pt.dy)) for pt in model)
    assert max(pt.residual for pt in model) == pytest.approx(math.sqrt(800))


def test_blank_field_image_is_white():
    image = LikelihoodField().get_field_image()
    assert image.shape == (1000, 1000, 3)
    assert image.dtype == np.uint8
    assert np.all(image == 255)


def test_target_scan_field_is_low_near_walls(room_field):
    field = room_field.field
    assert field.min() == 0.0
    assert field.max() <= 30.0
    assert field[500, 500] == 30.0
    assert field[500, 600] <= 1.0


def test_field_image_is_darker_where_field_is_low(room_field):
    image = room_field.get_field_image()
    assert image[500, 500, 0] == 255
    assert image[500, 600, 0] < image[500, 500, 0]
    assert np.array_equal(image[:, :, 0], image[:, :, 2])


def test_field_from_occupancy_map():
    occu = np.full((1000, 1000), 127, dtype=np.uint8)
    occu[400, 600] = 0
    lf = LikelihoodField()
    lf.set_field_image_from_occu_map(occu)
    assert lf.field[400, 600] == 0.0
    assert lf.field[400, 603] == pytest.approx(3.0)
    assert lf.field[420, 620] == pytest.approx(math.sqrt(800), rel=1e-6)
    assert lf.field[400, 621] == 30.0


def test_occupancy_border_is_ignored():
    occu = np.full((1000, 1000), 127, dtype=np.uint8)
    occu[10, 10] = 0
    lf = LikelihoodField()
    lf.set_field_image_from_occu_map(occu)
    assert lf.field[10, 10] == 30.0
    assert float(lf.field.min()) == 30.0


def test_field_from_occupancy_map_is_rebuilt_each_time():
    first = np.full((1000, 1000), 127, dtype=np.uint8)
    first[400, 600] = 0
    second = np.full((1000, 1000), 127, dtype=np.uint8)
    second[700, 300] = 0
    lf = LikelihoodField()
    lf.set_field_image_from_occu_map(first)
    lf.set_field_image_from_occu_map(second)
    assert lf.field[700, 300] == 0.0
    assert lf.field[400, 600] == 30.0


def test_align_without_source_raises(room_field):
    lf = LikelihoodField()
    with pytest.raises(ValueError):
        lf.align_gauss_newton(SE2())
    with pytest.raises(ValueError):
        lf.align_g2o(SE2())


def test_gauss_newton_reduces_pose_error(room_field):
    room_field.set_source_scan(room_scan())
    init = SE2(0.15, -0.1, 0.03)
    result = room_field.align_gauss_newton(init)
    assert result is not None
    assert math.hypot(result.x, result.y) < 0.5 * math.hypot(init.x, init.y)
    assert abs(result.theta) < abs(init.theta)
    assert room_field.has_outside_points() is False


def test_g2o_reduces_pose_error(room_field):
    room_field.set_source_scan(room_scan())
    init = SE2(0.15, -0.1, 0.03)
    result = room_field.align_g2o(init)
    assert math.hypot(result.x, result.y) < 0.5 * math.hypot(init.x, init.y)
    assert abs(result.theta) < abs(init.theta)


def test_gauss_newton_fails_with_too_few_beams(room_field):
    full = room_scan()
    ranges = [0.0] * len(full.ranges)
    middle = len(ranges) // 2
    ranges[middle:middle + 10] = full.ranges[middle:middle + 10]
    room_field.set_source_scan(room_scan(ranges=ranges))
    assert room_field.align_gauss_newton(SE2()) is None


def test_far_beams_are_outside_the_field(room_field):
    far = room_scan(ranges=[26.0] * 720)
    room_field.set_source_scan(far)
    assert room_field.align_gauss_newton(SE2()) is None
    assert room_field.has_outside_points() is True


def test_g2o_skips_far_beams_and_keeps_pose(room_field):
    far = room_scan(ranges=[26.0] * 720)
    room_field.set_source_scan(far)
    init = SE2(0.3, 0.2, 0.1)
    assert room_field.align_g2o(init) == init
    assert room_field.has_outside_points() is False