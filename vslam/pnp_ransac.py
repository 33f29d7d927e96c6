"""RANSAC camera pose estimation from 3D-2D correspondences.

Minimal sets of correspondences are drawn at random and solved with EPnP.
Each hypothesis is scored by counting correspondences whose squared
reprojection error stays under a per-point threshold. When a hypothesis has
enough inliers, the pose is recomputed from all the best inliers.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from vslam.epnp import EPnP
from vslam.matchutil import CameraIntrinsics


@dataclass
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is the 4x4 world-to-camera transform, or ``None`` when no pose
    was found. ``inliers`` has one flag per original match and is empty when
    no pose was found. ``no_more`` tells that the iteration budget is spent.
    """

    pose: Optional[np.ndarray]
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False


def _ransac_iterations(probability: float, epsilon: float, max_iterations: int) -> int:
    if epsilon >= 1.0:
        return 1
    if probability >= 1.0 or epsilon <= 0.0:
        return max_iterations
    if probability <= 0.0:
        return 0
    return math.ceil(math.log(1.0 - probability) / math.log(1.0 - epsilon ** 3))


class PnPSolver:
    """Robust pose of a calibrated camera from matched map points."""

    def __init__(self, points3d: Any, points2d: Any, sigma2: Any, keypoint_indices: Any,
                 n_matches: int, camera: CameraIntrinsics,
                 rng: Optional[random.Random] = None):
        self._points3d = np.asarray(points3d, dtype=float).reshape(-1, 3)
        self._points2d = np.asarray(points2d, dtype=float).reshape(-1, 2)
        self._sigma2 = np.asarray(sigma2, dtype=float).reshape(-1)
        self._keypoint_indices = [int(i) for i in keypoint_indices]
        n = len(self._points3d)
        if not (len(self._points2d) == len(self._sigma2) == len(self._keypoint_indices) == n):
            raise ValueError("correspondence arrays differ in length")
        self._n_matches = int(n_matches)
        if any(not 0 <= i < self._n_matches for i in self._keypoint_indices):
            raise ValueError("keypoint index outside the range of matches")

        self._epnp = EPnP(camera.fx, camera.fy, camera.cx, camera.cy)
        self._rng = rng if rng is not None else random.Random()

        self.iterations = 0
        self._best_inliers = np.zeros(n, dtype=bool)
        self._best_count = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    @property
    def n(self) -> int:
        """Number of correspondences."""
        return len(self._points3d)

    def set_ransac_parameters(self, probability: float = 0.99, min_inliers: int = 8,
                              max_iterations: int = 300, min_set: int = 4,
                              epsilon: float = 0.4, th2: float = 5.991) -> None:
        """Configure RANSAC, adapting the limits to the number of correspondences."""
        n = self.n
        self.probability = probability
        self.min_set = int(min_set)

        needed = max(int(n * epsilon), int(min_inliers), self.min_set)
        self.min_inliers = needed
        if n > 0 and epsilon < needed / n:
            epsilon = needed / n
        self.epsilon = epsilon

        if needed == n:
            iterations = 1
        else:
            iterations = _ransac_iterations(probability, epsilon, max_iterations)
        self.max_iterations = max(1, min(iterations, int(max_iterations)))

        self._max_error = self._sigma2 * th2

    def find(self) -> PnPResult:
        """Run RANSAC until the iteration budget is used or a pose is refined."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations: int) -> PnPResult:
        """Run at least ``n_iterations`` more hypotheses, keeping earlier state."""
        if self.n < self.min_inliers:
            return PnPResult(None, [], 0, True)

        current = 0
        while self.iterations < self.max_iterations or current < n_iterations:
            current += 1
            self.iterations += 1

            sample = self._rng.sample(range(self.n), self.min_set)
            inliers = self._hypothesis_inliers(sample)
            count = int(inliers.sum())

            if count >= self.min_inliers:
                if count > self._best_count:
                    self._best_inliers = inliers
                    self._best_count = count
                    self._best_pose = self._last_pose

                refined = self._refine()
                if refined is not None:
                    return refined

        no_more = self.iterations >= self.max_iterations
        if no_more and self._best_count >= self.min_inliers and self._best_pose is not None:
            return PnPResult(self._best_pose.copy(), self._expand(self._best_inliers),
                             self._best_count, True)
        return PnPResult(None, [], 0, no_more)

    def _solve(self, indices: Any) -> Optional[tuple[np.ndarray, np.ndarray]]:
        try:
            with np.errstate(all="ignore"):
                r, t, _ = self._epnp.compute_pose(self._points3d[indices], self._points2d[indices])
        except np.linalg.LinAlgError:
            return None
        return r, t

    def _hypothesis_inliers(self, indices: Any) -> np.ndarray:
        solved = self._solve(indices)
        if solved is None:
            self._last_pose = None
            return np.zeros(self.n, dtype=bool)
        r, t = solved
        self._last_pose = self._pose_matrix(r, t)
        return self._check_inliers(r, t)

    def _refine(self) -> Optional[PnPResult]:
        indices = np.flatnonzero(self._best_inliers)
        solved = self._solve(indices)
        if solved is None:
            return None
        r, t = solved
        inliers = self._check_inliers(r, t)
        count = int(inliers.sum())
        if count > self.min_inliers:
            return PnPResult(self._pose_matrix(r, t), self._expand(inliers), count, False)
        return None

    def _check_inliers(self, r: np.ndarray, t: np.ndarray) -> np.ndarray:
        with np.errstate(all="ignore"):
            pc = self._points3d @ r.T + t
            inv_z = 1.0 / pc[:, 2]
            ue = self._epnp.uc + self._epnp.fu * pc[:, 0] * inv_z
            ve = self._epnp.vc + self._epnp.fv * pc[:, 1] * inv_z
            error2 = (self._points2d[:, 0] - ue) ** 2 + (self._points2d[:, 1] - ve) ** 2
            return error2 < self._max_error

    @staticmethod
    def _pose_matrix(r: np.ndarray, t: np.ndarray) -> np.ndarray:
        pose = np.eye(4, dtype=np.float32)
        pose[:3, :3] = r
        pose[:3, 3] = t
        return pose

    def _expand(self, mask: np.ndarray) -> list[bool]:
        flags = [False] * self._n_matches
        for index, inlier in zip(self._keypoint_indices, mask):
            if inlier:
                flags[index] = True
        return flags