"""Coarse-to-fine likelihood-field matching over an image pyramid."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from lidarslam2d.geometry import SE2, Scan2d
from lidarslam2d.likelihood_field import (
    RANGE_THRESHOLD,
    _blank_field,
    _field_to_image,
    _matchable_beams,
    _occupied_pixels,
    _splat,
    build_model,
)
from lidarslam2d.optimizer import LikelihoodEdge, align_likelihood_edges

logger = logging.getLogger(__name__)


class MRLikelihoodField:
    """Likelihood field at four resolutions, aligned coarse level first."""

    LEVELS = 4
    SIZES = (125, 250, 500, 1000)
    RESOLUTIONS = (2.5, 5.0, 10.0, 20.0)
    RATIOS = (0.125, 0.25, 0.5, 1.0)
    ROBUST_DELTAS = (0.2, 0.3, 0.6, 0.8)
    MIN_INLIERS = 100
    INLIER_RATIO_THRESHOLD = 0.4
    ITERATIONS = 10

    def __init__(self) -> None:
        self.model = build_model()
        self.fields = [_blank_field(size) for size in self.SIZES]
        self.pose = SE2()
        self.source: Optional[Scan2d] = None
        self.num_inliers: list[int] = []
        self.inlier_ratio: list[float] = []

    def set_field_image_from_occu_map(self, occu_map: np.ndarray) -> None:
        """Lower every pyramid level around the occupied pixels of an occupancy grid."""
        xs, ys = _occupied_pixels(occu_map)
        for field, ratio in zip(self.fields, self.RATIOS):
            _splat(field, xs * ratio, ys * ratio, self.model)

    def set_source_scan(self, scan: Scan2d) -> None:
        self.source = scan

    def resolution(self, level: int = 0) -> float:
        """Pixels per metre at ``level``."""
        return self.RESOLUTIONS[level]

    def levels(self) -> int:
        return self.LEVELS

    def align_g2o(self, init_pose: Optional[SE2] = None) -> Optional[SE2]:
        """Align level by level; returns the pose, or None if any level is rejected."""
        if self.source is None:
            raise ValueError("source scan is not set")
        self.num_inliers = []
        self.inlier_ratio = []
        pose = init_pose if init_pose is not None else SE2()
        for level in range(self.LEVELS):
            aligned = self._align_in_level(level, pose)
            if aligned is None:
                return None
            pose = aligned
        for level in range(self.LEVELS):
            logger.info("level %d inliers: %d, ratio: %g",
                        level, self.num_inliers[level], self.inlier_ratio[level])
        return pose

    def _align_in_level(self, level: int, pose: SE2) -> Optional[SE2]:
        field = self.fields[level]
        resolution = self.RESOLUTIONS[level]
        delta = self.ROBUST_DELTAS[level]
        edges = []
        for r, angle in _matchable_beams(self.source, RANGE_THRESHOLD):
            edge = LikelihoodEdge(field, r, angle, resolution)
            if edge.is_outside(pose):
                continue
            edges.append(edge)
        if not edges:
            return None

        estimate = align_likelihood_edges(pose, edges, delta=delta, iterations=self.ITERATIONS)

        inliers = 0
        for edge in edges:
            chi2 = edge.compute_error(estimate) ** 2
            if edge.level == 0 and chi2 < delta:
                inliers += 1
        ratio = inliers / len(edges)
        self.num_inliers.append(inliers)
        self.inlier_ratio.append(ratio)

        if inliers > self.MIN_INLIERS and ratio > self.INLIER_RATIO_THRESHOLD:
            return estimate
        return None

    def get_field_image(self) -> list[np.ndarray]:
        """Each pyramid level as a grey RGB image."""
        return [_field_to_image(field) for field in self.fields]