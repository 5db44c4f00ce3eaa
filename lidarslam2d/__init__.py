"""2D lidar SLAM: ICP and likelihood-field matching, occupancy grids, submaps and loop closure."""

__version__ = "0.1.0"