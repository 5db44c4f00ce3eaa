[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lidarslam2d"
version = "0.1.0"
description = "2D lidar SLAM: scan matching, likelihood fields, occupancy grids, submaps and loop closure"
requires-python = ">=3.10"
keywords = ["slam", "lidar", "icp", "occupancy-grid", "likelihood-field", "robotics", "pose-graph"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]
dependencies = [
    "numpy",
    "scipy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["lidarslam2d"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
