"""Single-threaded loop detection and submap pose-graph correction."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from lidarslam2d.frame import Frame
from lidarslam2d.geometry import SE2
from lidarslam2d.multi_resolution_likelihood_field import MRLikelihoodField
from lidarslam2d.optimizer import PoseGraphEdge, optimize_pose_graph
from lidarslam2d.submap import Submap

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

CANDIDATE_DISTANCE_TH = 15.0
SUBMAP_GAP = 1
LOOP_RK_DELTA = 1.0
CONSECUTIVE_INFORMATION = 1e4
FIRST_ITERATIONS = 10
SECOND_ITERATIONS = 5


@dataclass
class LoopConstraint:
    """A relative pose between two submaps found by loop detection."""

    id_submap1: int
    id_submap2: int
    relative_pose: SE2
    valid: bool = True


class LoopClosing:
    """Detects loops between the current frame and older submaps and corrects submap poses.

    Candidates are older submaps whose centre lies near the current frame; each is
    matched with a multi-resolution likelihood field, and accepted matches enter a
    pose graph whose optimisation may reject them again.
    """

    def __init__(self, debug_path: Optional[PathLike] = None) -> None:
        self._debug_path = Path(debug_path) if debug_path is not None else None
        if self._debug_path is not None:
            self._debug_path.write_text("", encoding="utf-8")
        self._current_frame: Optional[Frame] = None
        self._last_submap_id = 0
        self._submaps: dict[int, Submap] = {}
        self._fields: dict[int, MRLikelihoodField] = {}
        self._candidates: list[int] = []
        self._loop_constraints: dict[tuple[int, int], LoopConstraint] = {}
        self._has_new_loops = False

    def add_new_submap(self, submap: Submap) -> None:
        """Register the newest submap, which may still be under construction."""
        self._submaps[submap.id] = submap
        self._last_submap_id = submap.id

    def add_finished_submap(self, submap: Submap) -> None:
        """Build the matching field of a completed submap."""
        field = MRLikelihoodField()
        field.pose = submap.pose
        field.set_field_image_from_occu_map(submap.occu_map.occupancy_grid)
        self._fields[submap.id] = field

    def add_new_frame(self, frame: Frame) -> None:
        """Look for loops from ``frame`` and optimise the submaps when one is found."""
        self._current_frame = frame
        if not self._detect_loop_candidates():
            return
        self._match_in_history_submaps()
        if self._has_new_loops:
            self._optimize()

    def loops(self) -> dict[tuple[int, int], LoopConstraint]:
        """The loop constraints, keyed by the pair of submap ids they connect."""
        return dict(self._loop_constraints)

    def has_new_loops(self) -> bool:
        return self._has_new_loops

    def _detect_loop_candidates(self) -> bool:
        self._has_new_loops = False
        if self._last_submap_id < SUBMAP_GAP:
            return False

        self._candidates.clear()
        frame = self._current_frame
        for submap_id, submap in sorted(self._submaps.items()):
            if self._last_submap_id - submap_id <= SUBMAP_GAP:
                continue
            existing = self._loop_constraints.get((submap_id, self._last_submap_id))
            if existing is not None and existing.valid:
                continue
            dist = float(np.linalg.norm(submap.pose.translation - frame.pose.translation))
            if dist < CANDIDATE_DISTANCE_TH:
                logger.info("taking %d with %d, last submap id: %d",
                            frame.keyframe_id, submap_id, self._last_submap_id)
                self._candidates.append(submap_id)

        return bool(self._candidates)

    def _match_in_history_submaps(self) -> None:
        frame = self._current_frame
        for candidate in self._candidates:
            field = self._fields[candidate]
            field.set_source_scan(frame.scan)
            submap = self._submaps[candidate]
            pose_in_target = submap.pose.inverse() * frame.pose

            aligned = field.align_g2o(pose_in_target)
            if aligned is not None:
                # T_S1_S2 = T_S1_C * T_C_W * T_W_S2
                relative = aligned * frame.pose.inverse() * self._submaps[self._last_submap_id].pose
                key = (candidate, self._last_submap_id)
                self._loop_constraints.setdefault(
                    key, LoopConstraint(candidate, self._last_submap_id, relative))
                logger.info("adding loop from submap %d to %d", candidate, self._last_submap_id)
                self._has_new_loops = True

            self._write_debug(frame, candidate, submap.pose)

        self._candidates.clear()

    def _write_debug(self, frame: Frame, candidate: int, pose: SE2) -> None:
        if self._debug_path is None:
            return
        with open(self._debug_path, "a", encoding="utf-8") as out:
            out.write(f"{frame.id} {candidate} {pose.x:g} {pose.y:g} {pose.theta:g}\n")

    def _optimize(self) -> None:
        poses = {submap_id: submap.pose for submap_id, submap in self._submaps.items()}

        edges: list[PoseGraphEdge] = []
        for i in range(self._last_submap_id):
            first = self._submaps[i]
            following = self._submaps[i + 1]
            edges.append(PoseGraphEdge(i, i + 1, first.pose.inverse() * following.pose,
                                       CONSECUTIVE_INFORMATION, None))

        loop_edges: dict[tuple[int, int], PoseGraphEdge] = {}
        for key, constraint in self._loop_constraints.items():
            if not constraint.valid:
                continue
            first_id = self._submaps[key[0]].id
            second_id = self._submaps[key[1]].id
            edge = PoseGraphEdge(first_id, second_id, constraint.relative_pose, 1.0, LOOP_RK_DELTA)
            edges.append(edge)
            loop_edges[key] = edge

        optimized = optimize_pose_graph(poses, edges, FIRST_ITERATIONS)

        inliers = 0
        for key, edge in loop_edges.items():
            chi2 = edge.chi2(optimized[edge.id1], optimized[edge.id2])
            if chi2 < LOOP_RK_DELTA:
                logger.info("loop from %d to %d is correct, chi2: %g", key[0], key[1], chi2)
                edge.robust_delta = None
                self._loop_constraints[key].valid = True
                inliers += 1
            else:
                edge.level = 1
                logger.info("loop from %d to %d is invalid, chi2: %g", key[0], key[1], chi2)
                self._loop_constraints[key].valid = False

        optimized = optimize_pose_graph(optimized, edges, SECOND_ITERATIONS)

        for submap_id, submap in self._submaps.items():
            submap.set_pose(optimized[submap_id])
            submap.update_frame_pose_world()

        logger.info("loop inliers: %d/%d", inliers, len(self._loop_constraints))

        self._loop_constraints = {
            key: constraint for key, constraint in self._loop_constraints.items() if constraint.valid
        }