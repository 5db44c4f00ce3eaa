"""Occupancy grid built from 2D laser frames."""

from __future__ import annotations

import math
from enum import Enum
from typing import Sequence

import numpy as np

from lidarslam2d.frame import Frame
from lidarslam2d.geometry import SE2, Scan2d

IMAGE_SIZE = 1000
RESOLUTION = 20.0
INV_RESOLUTION = float(np.float32(0.05))
MODEL_SIZE = 400
CLOSEST_TH = 0.2
ENDPOINT_CLOSE_TH = 0.1
JUMP_TH = 0.3

UNKNOWN = 127
OCCUPIED_LIMIT = 117
FREE_LIMIT = 137


class GridMethod(Enum):
    """How free space between the sensor and the beam ends is filled."""

    MODEL_POINTS = "model_points"
    BRESENHAM = "bresenham"


def _pixel_keys(xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    return np.asarray(xs, dtype=np.int64) * (1 << 32) + np.asarray(ys, dtype=np.int64)


class OccupancyMap:
    """An 8-bit occupancy grid: 127 unknown, lower occupied, higher free."""

    def __init__(self) -> None:
        self.pose = SE2()
        self.occupancy_grid = np.full((IMAGE_SIZE, IMAGE_SIZE), UNKNOWN, dtype=np.uint8)
        self._center = np.array([IMAGE_SIZE // 2, IMAGE_SIZE // 2], dtype=float)
        self._has_outside = False
        self._build_model()

    def _build_model(self) -> None:
        offsets = np.arange(-MODEL_SIZE, MODEL_SIZE + 1, dtype=np.int64)
        dx, dy = np.meshgrid(offsets, offsets, indexing="ij")
        self._model_dx = dx.ravel()
        self._model_dy = dy.ravel()
        dist = np.sqrt((self._model_dx ** 2 + self._model_dy ** 2).astype(np.float64))
        self._model_range = (dist * INV_RESOLUTION).astype(np.float32).astype(np.float64)
        self._model_angle = np.arctan2(self._model_dy.astype(float), self._model_dx.astype(float))

    @property
    def resolution(self) -> float:
        """Pixels per metre."""
        return RESOLUTION

    def has_outside_points(self) -> bool:
        """Whether the last frame had occupied end points outside the grid."""
        return self._has_outside

    def world_to_image(self, pt):
        """Pixel of a world point; a tuple for one point, an (N, 2) array for many."""
        p = np.asarray(pt, dtype=float)
        mapped = self.pose.inverse().transform(p) * RESOLUTION + self._center
        pix = np.trunc(mapped).astype(np.int64)
        if pix.ndim == 1:
            return int(pix[0]), int(pix[1])
        return pix

    def _ranges_in_angles(self, angles, scan: Scan2d) -> np.ndarray:
        a = np.asarray(angles, dtype=float)
        a = np.where(np.abs(a) > math.pi, np.mod(a + math.pi, 2 * math.pi) - math.pi, a)
        ranges = np.asarray(scan.ranges, dtype=float)
        n = len(ranges)
        out = np.zeros(a.shape)
        if n == 0 or scan.angle_increment == 0:
            return out

        pos = (a - scan.angle_min) / scan.angle_increment
        inside = (a >= scan.angle_min) & (a <= scan.angle_max) & np.isfinite(pos)
        idx = np.zeros(a.shape, dtype=np.int64)
        idx[inside] = np.trunc(pos[inside]).astype(np.int64)
        inside &= (idx >= 0) & (idx < n)
        if not inside.any():
            return out

        i = idx[inside]
        s = pos[inside] - i
        last = i + 1 >= n
        r1 = ranges[i]
        r2 = ranges[np.minimum(i + 1, n - 1)]

        def bad(r: np.ndarray) -> np.ndarray:
            return (r < scan.range_min) | (r > scan.range_max)

        result = np.where(np.abs(r1 - r2) > JUMP_TH, np.where(s > 0.5, r2, r1), r1 * (1 - s) + r2 * s)
        result = np.where(bad(r1), r2, result)
        result = np.where(bad(r2), r1, result)
        result = np.where(last, r1, result)
        out[inside] = result
        return out

    def find_range_in_angle(self, angle: float, scan: Scan2d) -> float:
        """Range the scan measures in ``angle`` (sensor frame); 0 outside the scan."""
        return float(self._ranges_in_angles(np.array([angle], dtype=float), scan)[0])

    def _in_bounds(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        rows, cols = self.occupancy_grid.shape
        return (xs >= 0) & (ys >= 0) & (xs < cols) & (ys < rows)

    def set_point(self, pt: Sequence[int], occupy: bool) -> None:
        """Step one cell towards occupied or free, within the grid's limits."""
        x, y = int(pt[0]), int(pt[1])
        rows, cols = self.occupancy_grid.shape
        if x < 0 or y < 0 or x >= cols or y >= rows:
            if occupy:
                self._has_outside = True
            return
        value = int(self.occupancy_grid[y, x])
        if occupy:
            if value > OCCUPIED_LIMIT:
                self.occupancy_grid[y, x] = value - 1
        elif value < FREE_LIMIT:
            self.occupancy_grid[y, x] = value + 1

    def _mark_free(self, xs: np.ndarray, ys: np.ndarray) -> None:
        """Free distinct pixels at once."""
        inb = self._in_bounds(xs, ys)
        xs, ys = xs[inb], ys[inb]
        values = self.occupancy_grid[ys, xs]
        self.occupancy_grid[ys, xs] = np.where(values < FREE_LIMIT, values + 1, values)

    def _mark_occupied(self, endpoints: np.ndarray) -> None:
        xs, ys = endpoints[:, 0], endpoints[:, 1]
        inb = self._in_bounds(xs, ys)
        if not inb.all():
            self._has_outside = True
        xs, ys = xs[inb], ys[inb]
        values = self.occupancy_grid[ys, xs]
        self.occupancy_grid[ys, xs] = np.where(values > OCCUPIED_LIMIT, values - 1, values)

    def add_lidar_frame(self, frame: Frame, method: GridMethod = GridMethod.BRESENHAM) -> None:
        """Mark the frame's beam ends occupied and the space before them free."""
        scan = frame.scan
        if scan is None:
            raise ValueError("frame has no scan")
        # The frame may come from a previous submap, so its submap pose is not used.
        theta = (self.pose.inverse() * frame.pose).theta
        self._has_outside = False

        beams = list(scan.valid_beams())
        if beams:
            r = np.array([b[1] for b in beams], dtype=float)
            ang = np.array([b[2] for b in beams], dtype=float)
            local = np.column_stack([r * np.cos(ang), r * np.sin(ang)])
            pixels = np.asarray(self.world_to_image(frame.pose.transform(local))).reshape(-1, 2)
            endpoints = np.unique(pixels, axis=0)
        else:
            endpoints = np.empty((0, 2), dtype=np.int64)

        start = self.world_to_image(frame.pose.translation)
        if method is GridMethod.MODEL_POINTS:
            self._fill_with_model(start, theta, scan, endpoints)
        else:
            for ep in endpoints:
                self.bresenham_filling(start, (int(ep[0]), int(ep[1])))

        self._mark_occupied(endpoints)

    def _fill_with_model(self, start, theta: float, scan: Scan2d, endpoints: np.ndarray) -> None:
        px = start[0] + self._model_dx
        py = start[1] + self._model_dy
        model_range = self._model_range
        close = model_range < CLOSEST_TH

        ranges = self._ranges_in_angles(self._model_angle - theta, scan)
        invalid = (ranges < scan.range_min) | (ranges > scan.range_max)
        not_endpoint = ~np.isin(_pixel_keys(px, py), _pixel_keys(endpoints[:, 0], endpoints[:, 1]))

        free = close | (
            ~close & invalid & (model_range < ENDPOINT_CLOSE_TH)
        ) | (
            ~close & ~invalid & (ranges > model_range) & not_endpoint
        )
        self._mark_free(px[free], py[free])

    def bresenham_filling(self, p1: Sequence[int], p2: Sequence[int]) -> None:
        """Free the cells on the line from ``p1`` to ``p2``, leaving both ends alone."""
        x, y = int(p1[0]), int(p1[1])
        end = (int(p2[0]), int(p2[1]))
        dx = end[0] - x
        dy = end[1] - y
        ux = 1 if dx > 0 else -1
        uy = 1 if dy > 0 else -1
        dx, dy = abs(dx), abs(dy)

        if dx > dy:
            e = -dx
            for _ in range(dx):
                x += ux
                e += 2 * dy
                if e >= 0:
                    y += uy
                    e -= 2 * dx
                if (x, y) != end:
                    self.set_point((x, y), False)
        else:
            e = -dy
            for _ in range(dy):
                y += uy
                e += 2 * dx
                if e >= 0:
                    x += ux
                    e -= 2 * dy
                if (x, y) != end:
                    self.set_point((x, y), False)

    def occupancy_grid_black_white(self) -> np.ndarray:
        """Three-channel view: grey unknown, black occupied, white free."""
        grid = self.occupancy_grid
        image = np.full(grid.shape + (3,), UNKNOWN, dtype=np.uint8)
        image[grid < UNKNOWN] = 0
        image[grid > UNKNOWN] = 255
        return image