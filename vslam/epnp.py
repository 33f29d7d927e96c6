"""Efficient Perspective-n-Point camera pose estimation.

The pose is recovered by expressing the reference points as weighted sums of
four virtual control points. The control point coordinates in the camera
frame are then found from the null space of a linear system. Three
approximations of the null-space combination are each refined by
Gauss-Newton, and the one with the smallest reprojection error is kept.
"""

from __future__ import annotations

import math
from typing import Any

import numpy as np

_GAUSS_NEWTON_ITERATIONS = 5

# Pairs of control points, in the order used by the distance constraints.
_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))


def qr_solve(a: Any, b: Any) -> np.ndarray:
    """Solve the overdetermined system ``a @ x = b`` by Householder QR.

    Raises ``numpy.linalg.LinAlgError`` when a column of ``a`` is all zeros.
    """
    mat = np.array(a, dtype=float)
    rhs = np.array(b, dtype=float).reshape(-1)
    if mat.ndim != 2:
        raise ValueError("a must be a two-dimensional matrix")
    nr, nc = mat.shape
    if rhs.shape[0] != nr:
        raise ValueError(f"b has {rhs.shape[0]} rows, expected {nr}")
    if nr < nc:
        raise ValueError("system must have at least as many rows as columns")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        column = mat[k:, k]
        eta = float(np.max(np.abs(column)))
        if eta == 0.0:
            raise np.linalg.LinAlgError("matrix is singular")
        mat[k:, k] *= 1.0 / eta
        sigma = math.sqrt(float(mat[k:, k] @ mat[k:, k]))
        if mat[k, k] < 0:
            sigma = -sigma
        mat[k, k] += sigma
        a1[k] = sigma * mat[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = float(mat[k:, k] @ mat[k:, j]) / a1[k]
            mat[k:, j] -= tau * mat[k:, k]

    # rhs <- Q^T rhs
    for j in range(nc):
        tau = float(mat[j:, j] @ rhs[j:]) / a1[j]
        rhs[j:] -= tau * mat[j:, j]

    # x = R^-1 rhs
    x = np.zeros(nc)
    x[nc - 1] = rhs[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        total = float(mat[i, i + 1:] @ x[i + 1:])
        x[i] = (rhs[i] - total) / a2[i]
    return x


def mat_to_quat(rotation: Any) -> np.ndarray:
    """Quaternion ``(x, y, z, w)`` of a 3x3 rotation matrix."""
    r = np.asarray(rotation, dtype=float)
    if r.shape != (3, 3):
        raise ValueError("rotation must be a 3x3 matrix")
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / math.sqrt(n4))


def relative_error(r_true: Any, t_true: Any, r_est: Any, t_est: Any) -> tuple[float, float]:
    """Relative rotation and translation errors of an estimated pose."""
    q_true = mat_to_quat(r_true)
    q_est = mat_to_quat(r_est)
    norm_q = float(np.linalg.norm(q_true))
    rot_err1 = float(np.linalg.norm(q_true - q_est)) / norm_q
    rot_err2 = float(np.linalg.norm(q_true + q_est)) / norm_q
    tt = np.asarray(t_true, dtype=float).reshape(3)
    te = np.asarray(t_est, dtype=float).reshape(3)
    transl_err = float(np.linalg.norm(tt - te)) / float(np.linalg.norm(tt))
    return min(rot_err1, rot_err2), transl_err


def _as_points(points: Any, dim: int, name: str) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != dim:
        raise ValueError(f"{name} must have shape (n, {dim})")
    return arr


class EPnP:
    """Camera pose from 3D-2D correspondences for a pinhole camera."""

    def __init__(self, fu: float, fv: float, uc: float, vc: float):
        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)

    def compute_pose(self, points3d: Any, points2d: Any) -> tuple[np.ndarray, np.ndarray, float]:
        """Estimate ``(R, t, mean reprojection error)`` mapping world to camera."""
        pws = _as_points(points3d, 3, "points3d")
        us = _as_points(points2d, 2, "points2d")
        if len(pws) != len(us):
            raise ValueError("points3d and points2d differ in length")
        if len(pws) == 0:
            raise ValueError("at least one correspondence is required")

        cws = self._choose_control_points(pws)
        alphas = self._barycentric_coordinates(pws, cws)

        m = self._fill_m(alphas, us)
        mtm = m.T @ m
        u, _, _ = np.linalg.svd(mtm)
        ut = u.T

        l_6x10 = self._compute_l_6x10(ut)
        rho = np.array([float(np.sum((cws[a] - cws[b]) ** 2)) for a, b in _PAIRS])

        candidates = []
        for approx in (self._betas_approx_1, self._betas_approx_2, self._betas_approx_3):
            betas = approx(l_6x10, rho)
            betas = self._gauss_newton(l_6x10, rho, betas)
            candidates.append(self._compute_r_and_t(ut, betas, alphas, pws, us))

        best = 0
        if candidates[1][2] < candidates[0][2]:
            best = 1
        if candidates[2][2] < candidates[best][2]:
            best = 2
        return candidates[best]

    def reprojection_error(self, rotation: Any, translation: Any,
                           points3d: Any, points2d: Any) -> float:
        """Mean pixel distance between observed and reprojected points."""
        r = np.asarray(rotation, dtype=float).reshape(3, 3)
        t = np.asarray(translation, dtype=float).reshape(3)
        pws = _as_points(points3d, 3, "points3d")
        us = _as_points(points2d, 2, "points2d")
        if len(pws) != len(us):
            raise ValueError("points3d and points2d differ in length")
        if len(pws) == 0:
            raise ValueError("at least one correspondence is required")
        pc = pws @ r.T + t
        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z = 1.0 / pc[:, 2]
        ue = self.uc + self.fu * pc[:, 0] * inv_z
        ve = self.vc + self.fv * pc[:, 1] * inv_z
        dist = np.sqrt((us[:, 0] - ue) ** 2 + (us[:, 1] - ve) ** 2)
        return float(np.sum(dist) / len(pws))

    @staticmethod
    def _choose_control_points(pws: np.ndarray) -> np.ndarray:
        n = len(pws)
        c0 = pws.mean(axis=0)
        pw0 = pws - c0
        u, dc, _ = np.linalg.svd(pw0.T @ pw0)
        uct = u.T
        cws = np.empty((4, 3))
        cws[0] = c0
        for i in range(1, 4):
            k = math.sqrt(dc[i - 1] / n)
            cws[i] = c0 + k * uct[i - 1]
        return cws

    @staticmethod
    def _barycentric_coordinates(pws: np.ndarray, cws: np.ndarray) -> np.ndarray:
        cc = (cws[1:] - cws[0]).T
        cc_inv = np.linalg.pinv(cc)
        alphas = np.empty((len(pws), 4))
        alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
        alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
        return alphas

    def _fill_m(self, alphas: np.ndarray, us: np.ndarray) -> np.ndarray:
        n = len(alphas)
        m = np.zeros((2 * n, 12))
        for i in range(4):
            m[0::2, 3 * i] = alphas[:, i] * self.fu
            m[0::2, 3 * i + 2] = alphas[:, i] * (self.uc - us[:, 0])
            m[1::2, 3 * i + 1] = alphas[:, i] * self.fv
            m[1::2, 3 * i + 2] = alphas[:, i] * (self.vc - us[:, 1])
        return m

    @staticmethod
    def _compute_l_6x10(ut: np.ndarray) -> np.ndarray:
        vs = [ut[11 - i].reshape(4, 3) for i in range(4)]
        dv = [[v[a] - v[b] for a, b in _PAIRS] for v in vs]
        l = np.empty((6, 10))
        for i in range(6):
            d0, d1, d2, d3 = dv[0][i], dv[1][i], dv[2][i], dv[3][i]
            l[i] = [
                d0 @ d0,
                2.0 * (d0 @ d1),
                d1 @ d1,
                2.0 * (d0 @ d2),
                2.0 * (d1 @ d2),
                d2 @ d2,
                2.0 * (d0 @ d3),
                2.0 * (d1 @ d3),
                2.0 * (d2 @ d3),
                d3 @ d3,
            ]
        return l

    @staticmethod
    def _lstsq(a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return np.linalg.lstsq(a, b, rcond=None)[0]

    def _betas_approx_1(self, l: np.ndarray, rho: np.ndarray) -> np.ndarray:
        b4 = self._lstsq(l[:, [0, 1, 3, 6]], rho)
        betas = np.zeros(4)
        with np.errstate(divide="ignore", invalid="ignore"):
            if b4[0] < 0:
                betas[0] = math.sqrt(-b4[0])
                betas[1:] = -b4[1:] / np.float64(betas[0])
            else:
                betas[0] = math.sqrt(b4[0])
                betas[1:] = b4[1:] / np.float64(betas[0])
        return betas

    def _betas_approx_2(self, l: np.ndarray, rho: np.ndarray) -> np.ndarray:
        b3 = self._lstsq(l[:, [0, 1, 2]], rho)
        betas = np.zeros(4)
        if b3[0] < 0:
            betas[0] = math.sqrt(-b3[0])
            betas[1] = math.sqrt(-b3[2]) if b3[2] < 0 else 0.0
        else:
            betas[0] = math.sqrt(b3[0])
            betas[1] = math.sqrt(b3[2]) if b3[2] > 0 else 0.0
        if b3[1] < 0:
            betas[0] = -betas[0]
        return betas

    def _betas_approx_3(self, l: np.ndarray, rho: np.ndarray) -> np.ndarray:
        b5 = self._lstsq(l[:, [0, 1, 2, 3, 4]], rho)
        betas = np.zeros(4)
        if b5[0] < 0:
            betas[0] = math.sqrt(-b5[0])
            betas[1] = math.sqrt(-b5[2]) if b5[2] < 0 else 0.0
        else:
            betas[0] = math.sqrt(b5[0])
            betas[1] = math.sqrt(b5[2]) if b5[2] > 0 else 0.0
        if b5[1] < 0:
            betas[0] = -betas[0]
        with np.errstate(divide="ignore", invalid="ignore"):
            betas[2] = np.float64(b5[3]) / np.float64(betas[0])
        return betas

    @staticmethod
    def _gauss_newton_system(l: np.ndarray, rho: np.ndarray,
                             betas: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        b0, b1, b2, b3 = betas
        a = np.empty((6, 4))
        a[:, 0] = 2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3
        a[:, 1] = l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3
        a[:, 2] = l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3
        a[:, 3] = l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3
        products = np.array([
            b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
            b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
        ])
        return a, rho - l @ products

    def _gauss_newton(self, l: np.ndarray, rho: np.ndarray, betas: np.ndarray) -> np.ndarray:
        betas = betas.copy()
        with np.errstate(all="ignore"):
            for _ in range(_GAUSS_NEWTON_ITERATIONS):
                a, b = self._gauss_newton_system(l, rho, betas)
                try:
                    betas += qr_solve(a, b)
                except np.linalg.LinAlgError:
                    break
        return betas

    def _compute_r_and_t(self, ut: np.ndarray, betas: np.ndarray, alphas: np.ndarray,
                         pws: np.ndarray, us: np.ndarray) -> tuple[np.ndarray, np.ndarray, float]:
        ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
        pcs = alphas @ ccs
        if pcs[0, 2] < 0.0:
            pcs = -pcs
        r, t = self._estimate_r_and_t(pcs, pws)
        return r, t, self.reprojection_error(r, t, pws, us)

    @staticmethod
    def _estimate_r_and_t(pcs: np.ndarray, pws: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        pc0 = pcs.mean(axis=0)
        pw0 = pws.mean(axis=0)
        abt = (pcs - pc0).T @ (pws - pw0)
        if not np.all(np.isfinite(abt)):
            return np.full((3, 3), np.nan), np.full(3, np.nan)
        u, _, vt = np.linalg.svd(abt)
        r = u @ vt
        if np.linalg.det(r) < 0:
            r[2] = -r[2]
        t = pc0 - r @ pw0
        return r, t