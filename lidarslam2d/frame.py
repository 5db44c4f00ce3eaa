"""A single laser frame together with its poses."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Union

from lidarslam2d.geometry import SE2, Scan2d

PathLike = Union[str, os.PathLike]


@dataclass
class Frame:
    """One 2D lidar scan with its world pose and its pose inside a submap."""

    scan: Optional[Scan2d] = None
    id: int = 0
    keyframe_id: int = 0
    timestamp: float = 0.0
    pose: SE2 = field(default_factory=SE2)
    pose_submap: SE2 = field(default_factory=SE2)

    def dump(self, filename: PathLike) -> None:
        """Write the frame to a text file for offline use."""
        if self.scan is None:
            raise ValueError("frame has no scan to dump")
        scan = self.scan
        with open(filename, "w", encoding="utf-8") as out:
            out.write(f"{self.id} {self.keyframe_id} {float(self.timestamp)!r}\n")
            out.write(f"{self.pose.x!r} {self.pose.y!r} {self.pose.theta!r}\n")
            out.write(
                f"{float(scan.angle_min)!r} {float(scan.angle_max)!r} {float(scan.angle_increment)!r} "
                f"{float(scan.range_min)!r} {float(scan.range_max)!r} {len(scan.ranges)}\n"
            )
            out.write("".join(f"{float(r)!r} " for r in scan.ranges))

    @classmethod
    def load(cls, filename: PathLike) -> Frame:
        """Read a frame written by :meth:`dump`."""
        with open(filename, encoding="utf-8") as src:
            tokens = iter(src.read().split())
        try:
            frame_id = int(next(tokens))
            keyframe_id = int(next(tokens))
            timestamp = float(next(tokens))
            x, y, theta = (float(next(tokens)) for _ in range(3))
            limits = [float(next(tokens)) for _ in range(5)]
            count = int(next(tokens))
            ranges = [float(next(tokens)) for _ in range(count)]
        except StopIteration as exc:
            raise ValueError(f"truncated frame file: {filename}") from exc
        scan = Scan2d(*limits, ranges=ranges)
        return cls(scan=scan, id=frame_id, keyframe_id=keyframe_id, timestamp=timestamp,
                   pose=SE2(x, y, theta))