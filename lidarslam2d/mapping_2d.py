"""Incremental 2D laser mapping with submaps and optional loop closing."""

from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Optional, Union

import numpy as np
from PIL import Image, ImageDraw

from lidarslam2d.frame import Frame
from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.loop_closing import LoopClosing
from lidarslam2d.submap import Submap

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

KEYFRAME_POS_TH = 0.3
KEYFRAME_ANG_TH = math.radians(15.0)
MAX_KEYFRAMES_PER_SUBMAP = 50

SUBMAP_RESOLUTION = 20.0
SUBMAP_SIZE = 50.0
SUBMAP_IMAGE_SIZE = 1000
UNKNOWN = 127

_CURRENT_FREE = (235, 250, 230)
_OTHER_FREE = (255, 255, 255)
_CURRENT_OCCUPIED = (230, 20, 30)
_OTHER_OCCUPIED = (0, 0, 0)


class Mapping2D:
    """Builds submaps from a stream of scans, matching each scan to the current submap."""

    def __init__(self, with_loop_closing: bool = True, output_dir: Optional[PathLike] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir is not None else None
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)

        self._frame_id = 0
        self._keyframe_id = 0
        self._submap_id = 0
        self._first_scan = True
        self._motion_guess = SE2()

        self.current_frame: Optional[Frame] = None
        self.last_frame: Optional[Frame] = None
        self.last_keyframe: Optional[Frame] = None
        self.current_submap = Submap(SE2())
        self.all_submaps: list[Submap] = [self.current_submap]

        self.loop_closing: Optional[LoopClosing] = None
        if with_loop_closing:
            debug = self.output_dir / "loops.txt" if self.output_dir is not None else None
            self.loop_closing = LoopClosing(debug)
            self.loop_closing.add_new_submap(self.current_submap)

    def process_scan(self, scan: Scan2d) -> bool:
        """Add one single-echo scan to the map."""
        frame = Frame(scan=scan, id=self._frame_id)
        self._frame_id += 1
        self.current_frame = frame

        if self.last_frame is not None:
            frame.pose = self.last_frame.pose * self._motion_guess
            frame.pose_submap = self.last_frame.pose_submap

        if not self._first_scan:
            self.current_submap.match_scan(frame)
        self._first_scan = False

        if self._is_keyframe():
            self._add_keyframe()
            self.current_submap.add_scan_in_occupancy_map(frame)

            if self.loop_closing is not None:
                self.loop_closing.add_new_frame(frame)

            if (self.current_submap.has_outside_points()
                    or self.current_submap.num_frames() > MAX_KEYFRAMES_PER_SUBMAP):
                self._expand_submap()

        if self.last_frame is not None:
            self._motion_guess = self.last_frame.pose.inverse() * frame.pose
        self.last_frame = frame
        return True

    def _is_keyframe(self) -> bool:
        if self.last_keyframe is None:
            return True
        delta = self.last_keyframe.pose.inverse() * self.current_frame.pose
        return (float(np.linalg.norm(delta.translation)) > KEYFRAME_POS_TH
                or abs(delta.theta) > KEYFRAME_ANG_TH)

    def _add_keyframe(self) -> None:
        logger.info("add keyframe %d", self._keyframe_id)
        self.current_frame.keyframe_id = self._keyframe_id
        self._keyframe_id += 1
        self.current_submap.add_keyframe(self.current_frame)
        self.last_keyframe = self.current_frame

    def _expand_submap(self) -> None:
        if self.loop_closing is not None:
            self.loop_closing.add_finished_submap(self.current_submap)

        last_submap = self.current_submap
        self._write_image(f"submap_{last_submap.id}.png",
                          last_submap.occu_map.occupancy_grid_black_white())

        frame = self.current_frame
        self.current_submap = Submap(frame.pose)
        frame.pose_submap = SE2()

        self._submap_id += 1
        self.current_submap.id = self._submap_id
        self.current_submap.add_keyframe(frame)
        self.current_submap.set_occu_from_other_submap(last_submap)
        self.current_submap.add_scan_in_occupancy_map(frame)
        self.all_submaps.append(self.current_submap)

        if self.loop_closing is not None:
            self.loop_closing.add_new_submap(self.current_submap)

        pose = self.current_submap.pose
        logger.info("create submap %d with pose: %g %g, %g",
                    self.current_submap.id, pose.x, pose.y, pose.theta)

    def _write_image(self, name: str, image: np.ndarray) -> None:
        if self.output_dir is None:
            return
        Image.fromarray(np.ascontiguousarray(image[:, :, ::-1])).save(self.output_dir / name)

    def show_global_map(self, max_size: int = 500) -> np.ndarray:
        """Render all submaps, their axes, trajectories and loops into one image."""
        half = SUBMAP_SIZE / 2
        centers = np.array([m.pose.translation for m in self.all_submaps])
        top_left = centers.min(axis=0) - half
        bottom_right = centers.max(axis=0) + half
        if top_left[0] > bottom_right[0] or top_left[1] > bottom_right[1]:
            return np.zeros((0, 0, 3), dtype=np.uint8)

        center = (top_left + bottom_right) / 2.0
        phy_width = bottom_right[0] - top_left[0]
        phy_height = bottom_right[1] - top_left[1]
        resolution = max_size / phy_width if phy_width > phy_height else max_size / phy_height

        global_center = np.array([int(center[0] * resolution) / resolution,
                                  int(center[1] * resolution) / resolution])
        width = int(phy_width * resolution + 0.5)
        height = int(phy_height * resolution + 0.5)
        center_image = np.array([width // 2, height // 2], dtype=float)

        colors = np.full((height * width, 3), UNKNOWN, dtype=np.uint8)
        xs, ys = np.meshgrid(np.arange(width), np.arange(height))
        pixels = np.column_stack([xs.ravel(), ys.ravel()]).astype(float)
        world = (pixels - center_image) / resolution + center
        pending = np.ones(len(world), dtype=bool)

        for submap in self.all_submaps:
            idx = np.nonzero(pending)[0]
            if idx.size == 0:
                break
            local = submap.pose.inverse().transform(world[idx]).reshape(-1, 2)
            pt = np.trunc(local * SUBMAP_RESOLUTION + SUBMAP_IMAGE_SIZE / 2).astype(np.int64)
            inside = ((pt[:, 0] >= 0) & (pt[:, 0] < SUBMAP_IMAGE_SIZE)
                      & (pt[:, 1] >= 0) & (pt[:, 1] < SUBMAP_IMAGE_SIZE))
            idx, pt = idx[inside], pt[inside]
            values = submap.occu_map.occupancy_grid[pt[:, 1], pt[:, 0]]
            free = values > UNKNOWN
            occupied = values < UNKNOWN
            is_current = submap is self.current_submap
            colors[idx[free]] = _CURRENT_FREE if is_current else _OTHER_FREE
            colors[idx[occupied]] = _CURRENT_OCCUPIED if is_current else _OTHER_OCCUPIED
            pending[idx[free | occupied]] = False

        image = Image.fromarray(colors.reshape(height, width, 3))
        draw = ImageDraw.Draw(image)

        def to_map(p) -> tuple[float, float]:
            q = (np.asarray(p, dtype=float) - global_center) * resolution + center_image
            return float(q[0]), float(q[1])

        for submap in self.all_submaps:
            c = to_map(submap.pose.translation)
            x_axis = to_map(submap.pose.transform((1.0, 0.0)))
            y_axis = to_map(submap.pose.transform((0.0, 1.0)))
            draw.line([c, x_axis], fill=(0, 0, 255), width=2)
            draw.line([c, y_axis], fill=(0, 255, 0), width=2)
            draw.text((c[0] + 10, c[1] - 10), str(submap.id), fill=(255, 0, 0))
            for frame in submap.frames:
                px, py = to_map(frame.pose.translation)
                draw.ellipse([px - 1, py - 1, px + 1, py + 1], outline=(0, 0, 255), width=1)

        if self.loop_closing is not None:
            for first_id, second_id in self.loop_closing.loops():
                c1 = to_map(self.all_submaps[first_id].pose.translation)
                c2 = to_map(self.all_submaps[second_id].pose.translation)
                draw.line([c1, c2], fill=(255, 0, 0), width=2)

        return np.array(image)