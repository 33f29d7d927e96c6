"""Matching of map points to keypoints by projecting them into a view.

The frames, keyframes and map points handed to these searches are plain
objects with the following members.

Map point:
    ``world_pos`` (3 floats), ``descriptor`` (32 bytes), ``normal`` (3 floats),
    ``min_distance_invariance``, ``max_distance_invariance``,
    ``n_observations``, ``is_bad()``, ``predict_scale(dist, log_scale_factor)``,
    ``is_in_keyframe(keyframe)``, ``add_observation(keyframe, index)``,
    ``replace(other)``; for local tracking also ``track_in_view``,
    ``track_proj_x``, ``track_proj_y``, ``track_proj_xr``,
    ``track_scale_level`` and ``track_view_cos``.

Frame or keyframe:
    ``tcw`` (4x4 world-to-camera pose), ``keys`` and ``keys_un`` (keypoints
    with ``pt``, ``octave`` and ``angle``), ``u_right``, ``descriptors``
    (one 32-byte row per keypoint), ``map_points`` (one slot per keypoint,
    ``None`` when empty), ``scale_factors``, ``log_scale_factor`` and
    ``features_in_area(x, y, r, min_level=-1, max_level=-1)``.
    Frames also carry ``outlier`` and the image bounds ``min_x``, ``max_x``,
    ``min_y``, ``max_y``; keyframes carry ``inv_level_sigma2``,
    ``is_in_image(u, v)`` and ``add_map_point(map_point, index)``.
"""

from __future__ import annotations

import math
from typing import Any, Optional, Sequence

import numpy as np

from vslam.matchutil import (
    TH_HIGH,
    TH_LOW,
    CameraIntrinsics,
    RotationHistogram,
    descriptor_distance,
    radius_by_viewing_cos,
)


def _pose(tcw: Any) -> tuple[np.ndarray, np.ndarray]:
    t = np.asarray(tcw, dtype=float)
    if t.shape[0] < 3 or t.shape[1] < 4:
        raise ValueError("pose must be at least a 3x4 matrix")
    return t[:3, :3], t[:3, 3]


def _decompose_sim3(scw: Any) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Rotation, translation and camera centre of a similarity transform."""
    s = np.asarray(scw, dtype=float)
    if s.shape != (4, 4):
        raise ValueError("similarity transform must be a 4x4 matrix")
    s_rcw = s[:3, :3]
    scale = math.sqrt(float(s_rcw[0] @ s_rcw[0]))
    if scale == 0.0:
        raise ValueError("similarity transform has zero scale")
    rcw = s_rcw / scale
    tcw = s[:3, 3] / scale
    return rcw, tcw, -rcw.T @ tcw


def _level_in_range(level: int, predicted: int) -> bool:
    return predicted - 1 <= level <= predicted


class ProjectionMatcher:
    """Finds keypoints that match map points projected into a view."""

    def __init__(self, camera: CameraIntrinsics, nn_ratio: float = 0.6,
                 check_orientation: bool = True):
        self.camera = camera
        self.nn_ratio = nn_ratio
        self.check_orientation = check_orientation

    def _project(self, p3dc: np.ndarray) -> Optional[tuple[float, float, float]]:
        z = float(p3dc[2])
        if z <= 0.0:
            return None
        invz = 1.0 / z
        u = self.camera.fx * float(p3dc[0]) * invz + self.camera.cx
        v = self.camera.fy * float(p3dc[1]) * invz + self.camera.cy
        return u, v, invz

    def search_by_projection_local(self, frame: Any, map_points: Sequence[Any],
                                   th: float = 3.0) -> int:
        """Match local map points whose projection was predicted by tracking."""
        nmatches = 0
        for mp in map_points:
            if mp is None or not mp.track_in_view or mp.is_bad():
                continue
            level = mp.track_scale_level
            r = radius_by_viewing_cos(mp.track_view_cos)
            if th != 1.0:
                r *= th
            window = r * frame.scale_factors[level]
            indices = frame.features_in_area(mp.track_proj_x, mp.track_proj_y,
                                             window, level - 1, level)
            if not indices:
                continue

            best_dist = best_dist2 = 256
            best_level = best_level2 = -1
            best_idx = -1
            for idx in indices:
                existing = frame.map_points[idx]
                if existing is not None and existing.n_observations > 0:
                    continue
                if frame.u_right[idx] > 0:
                    if abs(mp.track_proj_xr - frame.u_right[idx]) > window:
                        continue
                dist = descriptor_distance(mp.descriptor, frame.descriptors[idx])
                if dist < best_dist:
                    best_dist2, best_dist = best_dist, dist
                    best_level2, best_level = best_level, frame.keys_un[idx].octave
                    best_idx = idx
                elif dist < best_dist2:
                    best_level2 = frame.keys_un[idx].octave
                    best_dist2 = dist

            if best_dist <= TH_HIGH:
                if best_level == best_level2 and best_dist > self.nn_ratio * best_dist2:
                    continue
                frame.map_points[best_idx] = mp
                nmatches += 1
        return nmatches

    def _apply_rotation_check(self, histogram: RotationHistogram, slots: list,
                              nmatches: int) -> int:
        if self.check_orientation:
            for idx in histogram.rejected():
                slots[idx] = None
                nmatches -= 1
        return nmatches

    def search_by_projection_frame(self, current: Any, last: Any, th: float,
                                   monocular: bool) -> int:
        """Track the map points of the previous frame into the current one."""
        nmatches = 0
        histogram = RotationHistogram()

        rcw, tcw = _pose(current.tcw)
        twc = -rcw.T @ tcw
        rlw, tlw = _pose(last.tcw)
        tlc = rlw @ twc + tlw

        forward = float(tlc[2]) > self.camera.b and not monocular
        backward = -float(tlc[2]) > self.camera.b and not monocular

        for i, mp in enumerate(last.map_points):
            if mp is None or last.outlier[i]:
                continue
            x3dw = np.asarray(mp.world_pos, dtype=float).reshape(3)
            projected = self._project(rcw @ x3dw + tcw)
            if projected is None:
                continue
            u, v, invzc = projected
            if u < current.min_x or u > current.max_x:
                continue
            if v < current.min_y or v > current.max_y:
                continue

            last_octave = last.keys[i].octave
            radius = th * current.scale_factors[last_octave]
            if forward:
                indices = current.features_in_area(u, v, radius, last_octave)
            elif backward:
                indices = current.features_in_area(u, v, radius, 0, last_octave)
            else:
                indices = current.features_in_area(u, v, radius, last_octave - 1,
                                                   last_octave + 1)
            if not indices:
                continue

            best_dist = 256
            best_idx = -1
            for i2 in indices:
                existing = current.map_points[i2]
                if existing is not None and existing.n_observations > 0:
                    continue
                if current.u_right[i2] > 0:
                    ur = u - self.camera.bf * invzc
                    if abs(ur - current.u_right[i2]) > radius:
                        continue
                dist = descriptor_distance(mp.descriptor, current.descriptors[i2])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = i2

            if best_dist <= TH_HIGH:
                current.map_points[best_idx] = mp
                nmatches += 1
                if self.check_orientation:
                    rot = last.keys_un[i].angle - current.keys_un[best_idx].angle
                    histogram.add(rot, best_idx)

        return self._apply_rotation_check(histogram, current.map_points, nmatches)

    def search_by_projection_keyframe(self, current: Any, keyframe: Any, already_found: Any,
                                      th: float, orb_dist: int) -> int:
        """Project the map points of a keyframe into the current frame."""
        nmatches = 0
        histogram = RotationHistogram()

        rcw, tcw = _pose(current.tcw)
        ow = -rcw.T @ tcw

        for i, mp in enumerate(list(keyframe.map_points)):
            if mp is None or mp.is_bad() or mp in already_found:
                continue
            x3dw = np.asarray(mp.world_pos, dtype=float).reshape(3)
            x3dc = rcw @ x3dw + tcw
            z = float(x3dc[2])
            if z == 0.0:
                continue
            invzc = 1.0 / z
            u = self.camera.fx * float(x3dc[0]) * invzc + self.camera.cx
            v = self.camera.fy * float(x3dc[1]) * invzc + self.camera.cy
            if u < current.min_x or u > current.max_x:
                continue
            if v < current.min_y or v > current.max_y:
                continue

            dist3d = float(np.linalg.norm(x3dw - ow))
            if dist3d < mp.min_distance_invariance or dist3d > mp.max_distance_invariance:
                continue

            level = mp.predict_scale(dist3d, current.log_scale_factor)
            radius = th * current.scale_factors[level]
            indices = current.features_in_area(u, v, radius, level - 1, level + 1)
            if not indices:
                continue

            best_dist = 256
            best_idx = -1
            for i2 in indices:
                if current.map_points[i2] is not None:
                    continue
                dist = descriptor_distance(mp.descriptor, current.descriptors[i2])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = i2

            if best_dist <= orb_dist:
                current.map_points[best_idx] = mp
                nmatches += 1
                if self.check_orientation:
                    rot = keyframe.keys_un[i].angle - current.keys_un[best_idx].angle
                    histogram.add(rot, best_idx)

        return self._apply_rotation_check(histogram, current.map_points, nmatches)

    def _visible_candidate(self, keyframe: Any, mp: Any, rcw: np.ndarray, tcw: np.ndarray,
                           ow: np.ndarray) -> Optional[tuple[float, float, float, float]]:
        """Projection ``(u, v, invz, dist3d)`` if the point passes the view checks."""
        p3dw = np.asarray(mp.world_pos, dtype=float).reshape(3)
        projected = self._project(rcw @ p3dw + tcw)
        if projected is None:
            return None
        u, v, invz = projected
        if not keyframe.is_in_image(u, v):
            return None
        po = p3dw - ow
        dist3d = float(np.linalg.norm(po))
        if dist3d < mp.min_distance_invariance or dist3d > mp.max_distance_invariance:
            return None
        normal = np.asarray(mp.normal, dtype=float).reshape(3)
        if float(po @ normal) < 0.5 * dist3d:
            return None
        return u, v, invz, dist3d

    def search_by_projection_sim3(self, keyframe: Any, scw: Any, points: Sequence[Any],
                                  matched: list, th: float) -> int:
        """Project points through a similarity transform into a keyframe.

        New matches are written into ``matched``, which has one slot per
        keypoint of the keyframe. Returns the number of new matches.
        """
        rcw, tcw, ow = _decompose_sim3(scw)
        already_found = {mp for mp in matched if mp is not None}
        nmatches = 0

        for mp in points:
            if mp is None or mp.is_bad() or mp in already_found:
                continue
            candidate = self._visible_candidate(keyframe, mp, rcw, tcw, ow)
            if candidate is None:
                continue
            u, v, _, dist3d = candidate

            level = mp.predict_scale(dist3d, keyframe.log_scale_factor)
            radius = th * keyframe.scale_factors[level]
            indices = keyframe.features_in_area(u, v, radius)
            if not indices:
                continue

            best_dist = 256
            best_idx = -1
            for idx in indices:
                if matched[idx] is not None:
                    continue
                if not _level_in_range(keyframe.keys_un[idx].octave, level):
                    continue
                dist = descriptor_distance(mp.descriptor, keyframe.descriptors[idx])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = idx

            if best_dist <= TH_LOW:
                matched[best_idx] = mp
                nmatches += 1
        return nmatches

    def fuse(self, keyframe: Any, map_points: Sequence[Any], th: float = 3.0) -> int:
        """Merge map points into a keyframe, replacing duplicates."""
        rcw, tcw = _pose(keyframe.tcw)
        ow = -rcw.T @ tcw
        n_fused = 0

        for mp in map_points:
            if mp is None or mp.is_bad() or mp.is_in_keyframe(keyframe):
                continue
            candidate = self._visible_candidate(keyframe, mp, rcw, tcw, ow)
            if candidate is None:
                continue
            u, v, invz, dist3d = candidate
            ur = u - self.camera.bf * invz

            level = mp.predict_scale(dist3d, keyframe.log_scale_factor)
            radius = th * keyframe.scale_factors[level]
            indices = keyframe.features_in_area(u, v, radius)
            if not indices:
                continue

            best_dist = 256
            best_idx = -1
            for idx in indices:
                kp = keyframe.keys_un[idx]
                kp_level = kp.octave
                if not _level_in_range(kp_level, level):
                    continue
                kpx, kpy = kp.pt
                ex = u - kpx
                ey = v - kpy
                kpr = keyframe.u_right[idx]
                if kpr >= 0:
                    er = ur - kpr
                    e2 = ex * ex + ey * ey + er * er
                    if e2 * keyframe.inv_level_sigma2[kp_level] > 7.8:
                        continue
                else:
                    e2 = ex * ex + ey * ey
                    if e2 * keyframe.inv_level_sigma2[kp_level] > 5.99:
                        continue
                dist = descriptor_distance(mp.descriptor, keyframe.descriptors[idx])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = idx

            if best_dist <= TH_LOW:
                existing = keyframe.map_points[best_idx]
                if existing is not None:
                    if not existing.is_bad():
                        if existing.n_observations > mp.n_observations:
                            mp.replace(existing)
                        else:
                            existing.replace(mp)
                else:
                    mp.add_observation(keyframe, best_idx)
                    keyframe.add_map_point(mp, best_idx)
                n_fused += 1
        return n_fused

    def fuse_sim3(self, keyframe: Any, scw: Any, points: Sequence[Any],
                  th: float) -> tuple[int, list]:
        """Fuse points projected through a similarity transform into a keyframe.

        Returns the number of fused points and, per input point, the map
        point of the keyframe that should replace it, or ``None``.
        """
        rcw, tcw, ow = _decompose_sim3(scw)
        already_found = {
            mp for mp in keyframe.map_points if mp is not None and not mp.is_bad()
        }
        replacements: list = [None] * len(points)
        n_fused = 0

        for i, mp in enumerate(points):
            if mp is None or mp.is_bad() or mp in already_found:
                continue
            candidate = self._visible_candidate(keyframe, mp, rcw, tcw, ow)
            if candidate is None:
                continue
            u, v, _, dist3d = candidate

            level = mp.predict_scale(dist3d, keyframe.log_scale_factor)
            radius = th * keyframe.scale_factors[level]
            indices = keyframe.features_in_area(u, v, radius)
            if not indices:
                continue

            best_dist: Optional[int] = None
            best_idx = -1
            for idx in indices:
                if not _level_in_range(keyframe.keys_un[idx].octave, level):
                    continue
                dist = descriptor_distance(mp.descriptor, keyframe.descriptors[idx])
                if best_dist is None or dist < best_dist:
                    best_dist = dist
                    best_idx = idx

            if best_dist is not None and best_dist <= TH_LOW:
                existing = keyframe.map_points[best_idx]
                if existing is not None:
                    if not existing.is_bad():
                        replacements[i] = existing
                else:
                    mp.add_observation(keyframe, best_idx)
                    keyframe.add_map_point(mp, best_idx)
                n_fused += 1
        return n_fused, replacements