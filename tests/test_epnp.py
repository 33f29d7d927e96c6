import math

import numpy as np
import pytest

from vslam.epnp import EPnP, mat_to_quat, qr_solve, relative_error


def _rotation(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + math.sin(angle) * k + (1 - math.cos(angle)) * (k @ k)


def _scene(n=12, seed=0):
    rng = np.random.default_rng(seed)
    r = _rotation([0.3, -0.5, 0.8], 0.4)
    t = np.array([0.1, -0.2, 6.0])
    pws = rng.uniform(-1.0, 1.0, size=(n, 3))
    solver = EPnP(500.0, 510.0, 320.0, 240.0)
    pc = pws @ r.T + t
    us = np.column_stack([
        solver.uc + solver.fu * pc[:, 0] / pc[:, 2],
        solver.vc + solver.fv * pc[:, 1] / pc[:, 2],
    ])
    return solver, r, t, pws, us


def test_compute_pose_recovers_true_pose():
    solver, r, t, pws, us = _scene()
    r_est, t_est, err = solver.compute_pose(pws, us)
    assert np.allclose(r_est, r, atol=1e-6)
    assert np.allclose(t_est, t, atol=1e-5)
    assert err < 1e-4


def test_compute_pose_rotation_is_proper():
    solver, _, _, pws, us = _scene(n=20, seed=3)
    r_est, _, _ = solver.compute_pose(pws, us)
    assert np.allclose(r_est @ r_est.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(r_est) == pytest.approx(1.0)


def test_returned_error_matches_reprojection_error():
    solver, _, _, pws, us = _scene(n=15, seed=7)
    noisy = us + np.random.default_rng(1).normal(scale=0.5, size=us.shape)
    r_est, t_est, err = solver.compute_pose(pws, noisy)
    assert err == pytest.approx(solver.reprojection_error(r_est, t_est, pws, noisy))


def test_relative_error_of_estimate_is_small():
    solver, r, t, pws, us = _scene(n=10, seed=11)
    r_est, t_est, _ = solver.compute_pose(pws, us)
    rot_err, transl_err = relative_error(r, t, r_est, t_est)
    assert rot_err < 1e-6
    assert transl_err < 1e-6


def test_reprojection_error_zero_for_true_pose():
    solver, r, t, pws, us = _scene()
    assert solver.reprojection_error(r, t, pws, us) == pytest.approx(0.0, abs=1e-9)


def test_reprojection_error_grows_with_offset():
    solver, r, t, pws, us = _scene()
    shifted = us + np.array([3.0, 4.0])
    assert solver.reprojection_error(r, t, pws, shifted) == pytest.approx(5.0)


def test_compute_pose_rejects_mismatched_lengths():
    solver, _, _, pws, us = _scene()
    with pytest.raises(ValueError):
        solver.compute_pose(pws, us[:-1])


def test_compute_pose_rejects_empty():
    solver = EPnP(1.0, 1.0, 0.0, 0.0)
    with pytest.raises(ValueError):
        solver.compute_pose(np.zeros((0, 3)), np.zeros((0, 2)))


def test_qr_solve_matches_least_squares():
    rng = np.random.default_rng(5)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    expected = np.linalg.lstsq(a, b, rcond=None)[0]
    assert np.allclose(qr_solve(a, b), expected)


def test_qr_solve_exact_square_system():
    a = np.array([[2.0, 1.0], [1.0, 3.0]])
    x = np.array([1.5, -0.5])
    assert np.allclose(qr_solve(a, a @ x), x)


def test_qr_solve_does_not_modify_inputs():
    a = np.array([[2.0, 1.0], [1.0, 3.0], [0.0, 1.0]])
    b = np.array([1.0, 2.0, 3.0])
    a_copy, b_copy = a.copy(), b.copy()
    qr_solve(a, b)
    assert np.array_equal(a, a_copy)
    assert np.array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    a = np.array([[1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
    with pytest.raises(np.linalg.LinAlgError):
        qr_solve(a, np.ones(3))


def test_qr_solve_underdetermined_raises():
    with pytest.raises(ValueError):
        qr_solve(np.ones((2, 3)), np.ones(2))


def test_mat_to_quat_identity():
    assert np.allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("axis,angle", [
    ([1, 0, 0], 0.3),
    ([0, 1, 0], 2.9),
    ([0, 0, 1], 3.1),
    ([1, 1, 1], 2.5),
    ([-1, 2, 0.5], 1.0),
])
def test_mat_to_quat_unit_norm(axis, angle):
    q = mat_to_quat(_rotation(axis, angle))
    assert np.linalg.norm(q) == pytest.approx(1.0)


def test_mat_to_quat_rejects_bad_shape():
    with pytest.raises(ValueError):
        mat_to_quat(np.eye(2))


def test_relative_error_identical_pose_is_zero():
    r = _rotation([0, 1, 1], 0.7)
    t = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(r, t, r, t)
    assert rot_err == pytest.approx(0.0)
    assert transl_err == pytest.approx(0.0)


def test_relative_error_translation_scale():
    r = np.eye(3)
    t = np.array([0.0, 0.0, 2.0])
    _, transl_err = relative_error(r, t, r, 2 * t)
    assert transl_err == pytest.approx(1.0)