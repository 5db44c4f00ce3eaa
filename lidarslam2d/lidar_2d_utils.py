"""Drawing helpers for 2D laser scans."""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from lidarslam2d.geometry import SE2, Scan2d

_EDGE_MARGIN = math.radians(30.0)


def _draw_circle(image: np.ndarray, center, radius: int, color, thickness: int) -> None:
    cx, cy = (int(round(c)) for c in center)
    rows, cols = image.shape[:2]
    reach = radius + thickness
    x0, x1 = max(cx - reach, 0), min(cx + reach + 1, cols)
    y0, y1 = max(cy - reach, 0), min(cy + reach + 1, rows)
    if x0 >= x1 or y0 >= y1:
        return
    ys, xs = np.mgrid[y0:y1, x0:x1]
    dist = np.hypot(xs - cx, ys - cy)
    ring = np.abs(dist - radius) <= thickness / 2.0
    image[ys[ring], xs[ring]] = color


def visualize_2d_scan(
    scan: Scan2d,
    pose: SE2,
    image: Optional[np.ndarray] = None,
    color: Sequence[int] = (255, 0, 0),
    image_size: int = 800,
    resolution: float = 20.0,
    pose_submap: Optional[SE2] = None,
) -> np.ndarray:
    """Draw a scan seen from ``pose`` onto an image and return the image.

    A white ``image_size`` square image is created when ``image`` is None.
    ``resolution`` is pixels per metre; ``pose_submap`` is the image origin.
    Beams within 30 degrees of either end of the scan are left out.
    """
    if image is None:
        image = np.full((image_size, image_size, 3), 255, dtype=np.uint8)
    if pose_submap is None:
        pose_submap = SE2()

    to_image_frame = pose_submap.inverse() * pose
    half = image_size // 2
    rows, cols = image.shape[:2]
    pixel = np.asarray(color, dtype=image.dtype)

    for _, r, angle in scan.valid_beams():
        if angle < scan.angle_min + _EDGE_MARGIN or angle > scan.angle_max - _EDGE_MARGIN:
            continue
        px, py = to_image_frame.transform((r * math.cos(angle), r * math.sin(angle)))
        ix = int(px * resolution + half)
        iy = int(py * resolution + half)
        if 0 <= ix < cols and 0 <= iy < rows:
            image[iy, ix] = pixel

    center = pose_submap.inverse().transform(pose.translation) * resolution + half
    _draw_circle(image, center, 5, pixel, 2)
    return image