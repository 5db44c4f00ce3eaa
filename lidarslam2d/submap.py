"""Submaps: keyframes sharing one occupancy grid and likelihood field."""

from __future__ import annotations

from typing import Optional

from lidarslam2d.frame import Frame
from lidarslam2d.geometry import SE2
from lidarslam2d.likelihood_field import LikelihoodField
from lidarslam2d.occupancy_map import GridMethod, OccupancyMap

_FRAMES_FROM_PREVIOUS = 10


class Submap:
    """A local map with pose T_w_s; frame world poses are pose * frame.pose_submap."""

    def __init__(self, pose: Optional[SE2] = None) -> None:
        self.pose = pose if pose is not None else SE2()
        self.id = 0
        self.frames: list[Frame] = []
        self.likelihood = LikelihoodField()
        self.occu_map = OccupancyMap()
        self.occu_map.pose = self.pose
        self.likelihood.pose = self.pose

    def set_occu_from_other_submap(self, other: Submap) -> None:
        """Seed the grid with the last frames of another submap."""
        frames = other.frames
        count = len(frames)
        # Nothing is copied when the other submap holds fewer frames than that.
        if count >= _FRAMES_FROM_PREVIOUS:
            for i in range(count - _FRAMES_FROM_PREVIOUS, count):
                if i > 0:
                    self.occu_map.add_lidar_frame(frames[i])
        self.likelihood.set_field_image_from_occu_map(self.occu_map.occupancy_grid)

    def match_scan(self, frame: Frame) -> bool:
        """Align the frame against this submap and update its poses."""
        self.likelihood.set_source_scan(frame.scan)
        frame.pose_submap = self.likelihood.align_g2o(frame.pose_submap)
        frame.pose = self.pose * frame.pose_submap
        return True

    def has_outside_points(self) -> bool:
        return self.occu_map.has_outside_points()

    def add_scan_in_occupancy_map(self, frame: Frame) -> None:
        """Add the frame to the grid and rebuild the likelihood field."""
        self.occu_map.add_lidar_frame(frame, GridMethod.MODEL_POINTS)
        self.likelihood.set_field_image_from_occu_map(self.occu_map.occupancy_grid)

    def add_keyframe(self, frame: Frame) -> None:
        self.frames.append(frame)

    def update_frame_pose_world(self) -> None:
        """Recompute every frame's world pose from the submap pose."""
        for frame in self.frames:
            frame.pose = self.pose * frame.pose_submap

    def set_pose(self, pose: SE2) -> None:
        self.pose = pose
        self.occu_map.pose = pose
        self.likelihood.pose = pose

    def num_frames(self) -> int:
        return len(self.frames)