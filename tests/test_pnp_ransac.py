import random

import numpy as np
import pytest

from vslam.matchutil import CameraIntrinsics
from vslam.pnp_ransac import PnPSolver

CAMERA = CameraIntrinsics(500.0, 500.0, 320.0, 240.0)


def _rotation(ax, ay, az):
    cx, sx = np.cos(ax), np.sin(ax)
    cy, sy = np.cos(ay), np.sin(ay)
    cz, sz = np.cos(az), np.sin(az)
    rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return rz @ ry @ rx


R_TRUE = _rotation(0.1, -0.2, 0.05)
T_TRUE = np.array([0.1, -0.05, 0.3])


def _scene(n_in, n_out, seed=1):
    rs = np.random.default_rng(seed)
    pts = rs.uniform([-1.0, -1.0, 4.0], [1.0, 1.0, 8.0], (n_in + n_out, 3))
    pc = pts @ R_TRUE.T + T_TRUE
    uv = np.column_stack([
        CAMERA.fx * pc[:, 0] / pc[:, 2] + CAMERA.cx,
        CAMERA.fy * pc[:, 1] / pc[:, 2] + CAMERA.cy,
    ])
    uv[n_in:] += 60.0
    return pts, uv


def _solver(pts, uv, seed=0, n_matches=None, indices=None):
    n = len(pts)
    if indices is None:
        indices = list(range(n))
    if n_matches is None:
        n_matches = n
    return PnPSolver(pts, uv, np.ones(n), indices, n_matches, CAMERA, random.Random(seed))


def test_find_recovers_pose_and_inliers():
    pts, uv = _scene(20, 10)
    solver = _solver(pts, uv, n_matches=60, indices=[2 * i for i in range(30)])
    result = solver.find()
    assert result.pose is not None
    assert np.allclose(result.pose[:3, :3], R_TRUE, atol=1e-4)
    assert np.allclose(result.pose[:3, 3], T_TRUE, atol=1e-4)
    assert np.allclose(result.pose[3], [0, 0, 0, 1])
    assert result.n_inliers == 20
    assert len(result.inliers) == 60
    assert all(result.inliers[2 * i] for i in range(20))
    assert sum(result.inliers) == 20
    assert result.no_more is False


def test_exact_minimum_returns_best_after_single_iteration():
    pts, uv = _scene(8, 0)
    solver = _solver(pts, uv)
    assert solver.min_inliers == 8
    assert solver.max_iterations == 1
    result = solver.find()
    assert result.no_more is True
    assert result.n_inliers == 8
    assert result.inliers == [True] * 8
    assert np.allclose(result.pose[:3, :3], R_TRUE, atol=1e-4)


def test_too_few_correspondences():
    pts, uv = _scene(5, 0)
    result = _solver(pts, uv).find()
    assert result.pose is None
    assert result.no_more is True
    assert result.inliers == []
    assert result.n_inliers == 0


def test_all_outliers_uses_whole_budget():
    rs = np.random.default_rng(3)
    pts = rs.uniform([-1.0, -1.0, 4.0], [1.0, 1.0, 8.0], (30, 3))
    uv = rs.uniform([0.0, 0.0], [640.0, 480.0], (30, 2))
    solver = _solver(pts, uv)
    result = solver.find()
    assert result.pose is None
    assert result.no_more is True
    assert solver.iterations == solver.max_iterations

    budget = solver.iterations
    again = solver.iterate(3)
    assert again.pose is None
    assert solver.iterations == budget + 3


def test_parameters_adapt_to_minimal_set():
    pts, uv = _scene(30, 0)
    solver = _solver(pts, uv)
    solver.set_ransac_parameters(probability=0.99, min_inliers=2, max_iterations=50,
                                 min_set=4, epsilon=0.0, th2=5.991)
    assert solver.min_inliers == 4
    assert solver.epsilon == pytest.approx(4 / 30)
    assert 1 <= solver.max_iterations <= 50


def test_seeded_runs_are_reproducible():
    pts, uv = _scene(20, 10)
    first = _solver(pts, uv, seed=7).find()
    second = _solver(pts, uv, seed=7).find()
    assert np.array_equal(first.pose, second.pose)
    assert first.inliers == second.inliers


def test_mismatched_lengths_rejected():
    pts, uv = _scene(10, 0)
    with pytest.raises(ValueError):
        PnPSolver(pts, uv[:9], np.ones(10), range(10), 10, CAMERA)


def test_keypoint_index_out_of_range_rejected():
    pts, uv = _scene(10, 0)
    with pytest.raises(ValueError):
        PnPSolver(pts, uv, np.ones(10), range(10), 5, CAMERA)