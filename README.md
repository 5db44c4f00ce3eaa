# lidarslam2d

A 2D lidar SLAM library built on NumPy, SciPy and Pillow. It contains these modules:

- `lidarslam2d.geometry` holds planar rigid transforms (`SE2`, with `exp`, `log`, `inverse`, `transform` and composition via `*`), single-echo laser scans (`Scan2d`, with `valid_beams()`) and `normalize_angle`.
- `lidarslam2d.frame` provides `Frame`, which is a scan together with its world pose and its pose in a submap. It can be saved to a text file and read back.
- `lidarslam2d.icp_2d` provides scan-to-scan ICP through `Icp2d`, both point-to-point and point-to-line. It also provides `fit_line_2d`.
- `lidarslam2d.likelihood_field` provides likelihood-field matching through `LikelihoodField`. It offers Gauss-Newton (`align_gauss_newton`) and a robust Levenberg-Marquardt solve (`align_g2o`).
- `lidarslam2d.multi_resolution_likelihood_field` provides coarse-to-fine matching over a four-level pyramid through `MRLikelihoodField`.
- `lidarslam2d.occupancy_map` provides an 8-bit occupancy grid through `OccupancyMap`. Free space is filled with either template model points or Bresenham rays, chosen with `GridMethod`.
- `lidarslam2d.submap` provides `Submap`, which holds keyframes sharing one occupancy grid and one likelihood field.
- `lidarslam2d.optimizer` holds the least-squares edges (`LikelihoodEdge`, `PoseGraphEdge`), `align_likelihood_edges`, `optimize_pose_graph` and `get_pixel_value`.
- `lidarslam2d.loop_closing` provides loop detection between keyframes and finished submaps through `LoopClosing`. It uses pose-graph optimisation and rejects outliers.
- `lidarslam2d.mapping_2d` provides the incremental mapping front end, `Mapping2D`.
- `lidarslam2d.lidar_2d_utils` provides `visualize_2d_scan`, which draws a scan onto an image array.

## Installation

```
pip install .
```

To include the test tools:

```
pip install .[test]
```

## Usage

### Matching two scans

```python
import numpy as np
from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.icp_2d import Icp2d

ranges = [5.0] * 360
target = Scan2d(angle_min=-np.pi, angle_max=np.pi,
                angle_increment=2 * np.pi / 360,
                range_min=0.1, range_max=30.0, ranges=ranges)

icp = Icp2d()
icp.set_target(target)
icp.set_source(target)
pose = icp.align_gauss_newton(SE2(0.0, 0.0, 0.0))
```

The alignment methods return a new `SE2`. They do not modify their argument.

- `Icp2d.align_gauss_newton`, `Icp2d.align_gauss_newton_point_to_plane` and `LikelihoodField.align_gauss_newton` return `None` when fewer than 20 beams find a match.
- `LikelihoodField.align_g2o` always returns a pose.
- `MRLikelihoodField.align_g2o` returns `None` when any pyramid level has too few inliers.
- Calling an alignment method before a source scan is set raises `ValueError`.

### Building a map

```python
from lidarslam2d.mapping_2d import Mapping2D

mapping = Mapping2D(with_loop_closing=True, output_dir="./out")
for scan in scans:          # an iterable of Scan2d
    mapping.process_scan(scan)

image = mapping.show_global_map(2000)   # H x W x 3 uint8 array
```

A scan becomes a keyframe when either of these holds:

- it has moved more than 0.3 m since the last keyframe, or
- it has turned more than 15 degrees since the last keyframe.

A new submap is started in either of these cases:

- a keyframe has beam ends outside the current grid, or
- the current submap holds more than 50 keyframes.

When `output_dir` is given, it receives two kinds of file:

- each finished submap's grid, as `submap_<id>.png`
- when loop closing is on, a `loops.txt` log of the loop candidates that were tried.

`LoopClosing.loops()` returns the accepted constraints, keyed by the pair of submap ids.

### Occupancy grids

```python
from lidarslam2d.frame import Frame
from lidarslam2d.occupancy_map import GridMethod, OccupancyMap

grid = OccupancyMap()
grid.add_lidar_frame(Frame(scan=target), GridMethod.MODEL_POINTS)
bw = grid.occupancy_grid_black_white()   # grey unknown, black occupied, white free
```

### Saving and loading frames

`Frame.dump(path)` writes a frame's id, keyframe id, timestamp, pose and scan to a text file. `Frame.load(path)` reads the file back into a new `Frame`. It raises `ValueError` when the file is truncated.

## What it does not do

- The package has no command-line program.
- It has no reader for recorded sensor logs, so scans must be built as `Scan2d` objects by the caller.
- It opens no display windows. Images are returned as NumPy arrays, and are written to disk only through `Mapping2D`'s `output_dir`.
- Multi-echo scans are not supported.

## Testing

```
pytest
```