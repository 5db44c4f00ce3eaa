import math

import pytest

from lidarslam2d.frame import Frame
from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.loop_closing import LoopClosing, LoopConstraint
from lidarslam2d.submap import Submap


def room_scan(half=5.0):
    inc = math.radians(1.5)
    amin = -math.radians(135.0)
    n = 181
    ranges = []
    for i in range(n):
        a = amin + i * inc
        c, s = math.cos(a), math.sin(a)
        ts = []
        if abs(c) > 1e-9:
            ts += [half / c, -half / c]
        if abs(s) > 1e-9:
            ts += [half / s, -half / s]
        ranges.append(min(t for t in ts if t > 0))
    return Scan2d(amin, amin + (n - 1) * inc, inc, 0.1, 30.0, ranges)


def make_submap(submap_id, pose):
    submap = Submap(pose)
    submap.id = submap_id
    return submap


def three_submaps():
    return [
        make_submap(0, SE2(0.0, 0.0, 0.0)),
        make_submap(1, SE2(5.0, 0.0, 0.1)),
        make_submap(2, SE2(10.0, 1.0, 0.2)),
    ]


def test_no_candidates_with_single_submap(tmp_path):
    debug = tmp_path / "loops.txt"
    lc = LoopClosing(debug)
    lc.add_new_submap(make_submap(0, SE2()))
    lc.add_new_frame(Frame(scan=room_scan(), id=3))
    assert lc.has_new_loops() is False
    assert lc.loops() == {}
    assert debug.read_text() == ""


def test_debug_file_is_truncated(tmp_path):
    debug = tmp_path / "loops.txt"
    debug.write_text("stale contents\n")
    LoopClosing(debug)
    assert debug.read_text() == ""


def test_failed_match_writes_debug_line(tmp_path):
    debug = tmp_path / "loops.txt"
    lc = LoopClosing(debug)
    submaps = three_submaps()
    for submap in submaps:
        lc.add_new_submap(submap)
    lc.add_finished_submap(submaps[0])

    frame = Frame(scan=room_scan(), id=7, pose=SE2(1.0, 0.0, 0.0))
    lc.add_new_frame(frame)

    assert lc.has_new_loops() is False
    assert lc.loops() == {}
    lines = debug.read_text().splitlines()
    assert len(lines) == 1
    tokens = lines[0].split()
    assert int(tokens[0]) == 7
    assert int(tokens[1]) == 0
    assert [float(t) for t in tokens[2:]] == pytest.approx([0.0, 0.0, 0.0])


def test_far_frame_is_not_a_candidate(tmp_path):
    debug = tmp_path / "loops.txt"
    lc = LoopClosing(debug)
    submaps = three_submaps()
    for submap in submaps:
        lc.add_new_submap(submap)
    lc.add_finished_submap(submaps[0])
    lc.add_new_frame(Frame(scan=room_scan(), id=1, pose=SE2(40.0, 0.0, 0.0)))
    assert debug.read_text() == ""
    assert lc.has_new_loops() is False


def test_missing_field_for_candidate_raises():
    lc = LoopClosing()
    for submap in three_submaps():
        lc.add_new_submap(submap)
    with pytest.raises(KeyError):
        lc.add_new_frame(Frame(scan=room_scan(), pose=SE2(0.5, 0.0, 0.0)))


def test_consistent_loop_is_kept_and_frames_updated():
    lc = LoopClosing()
    submaps = three_submaps()
    for submap in submaps:
        lc.add_new_submap(submap)
    frame = Frame(scan=room_scan(), pose_submap=SE2(1.0, 0.0, 0.0))
    submaps[2].add_keyframe(frame)
    original = [s.pose for s in submaps]

    relative = submaps[0].pose.inverse() * submaps[2].pose
    lc._loop_constraints[(0, 2)] = LoopConstraint(0, 2, relative)
    lc._optimize()

    loops = lc.loops()
    assert list(loops) == [(0, 2)]
    assert loops[(0, 2)].valid is True
    for before, submap in zip(original, submaps):
        assert submap.pose.x == pytest.approx(before.x, abs=1e-6)
        assert submap.pose.y == pytest.approx(before.y, abs=1e-6)
        assert submap.pose.theta == pytest.approx(before.theta, abs=1e-6)
    expected = submaps[2].pose * frame.pose_submap
    assert frame.pose.x == pytest.approx(expected.x)
    assert frame.pose.y == pytest.approx(expected.y)
    assert frame.pose.theta == pytest.approx(expected.theta)


def test_inconsistent_loop_is_rejected():
    lc = LoopClosing()
    submaps = three_submaps()
    for submap in submaps:
        lc.add_new_submap(submap)
    before = submaps[0].pose.inverse() * submaps[2].pose

    lc._loop_constraints[(0, 2)] = LoopConstraint(0, 2, SE2(20.0, 15.0, 1.0))
    lc._optimize()

    assert lc.loops() == {}
    after = submaps[0].pose.inverse() * submaps[2].pose
    assert after.x == pytest.approx(before.x, abs=0.1)
    assert after.y == pytest.approx(before.y, abs=0.1)
    assert after.theta == pytest.approx(before.theta, abs=0.05)