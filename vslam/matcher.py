"""Feature matching between frames and keyframes.

This covers vocabulary-guided matching, matching for map initialization,
matching for triangulation of new points and matching under a similarity
transform. The projection searches are inherited from ``ProjectionMatcher``.

Besides the members described in ``vslam.projection``, the views used here
carry ``feat_vec``. This is a mapping from vocabulary node id to the indices
of the keypoints in that node. Keyframes also carry ``level_sigma2``. Map
points carry ``index_in_keyframe(keyframe)``, which returns -1 when the point
is not observed there.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import numpy as np

from vslam.matchutil import (
    HISTO_LENGTH,
    TH_HIGH,
    TH_LOW,
    CameraIntrinsics,
    RotationHistogram,
    check_dist_epipolar_line,
    descriptor_distance,
)
from vslam.projection import ProjectionMatcher

_INT_MAX = 2**31 - 1


def _common_nodes(fv1: Mapping[Any, Sequence[int]], fv2: Mapping[Any, Sequence[int]]) -> list:
    return sorted(set(fv1).intersection(fv2))


def _rotation_translation(tcw: Any) -> tuple[np.ndarray, np.ndarray]:
    t = np.asarray(tcw, dtype=float)
    if t.shape[0] < 3 or t.shape[1] < 4:
        raise ValueError("pose must be at least a 3x4 matrix")
    return t[:3, :3], t[:3, 3]


class ORBMatcher(ProjectionMatcher):
    """Matches ORB features between views by descriptor distance."""

    def __init__(self, camera: CameraIntrinsics, nn_ratio: float = 0.6,
                 check_orientation: bool = True):
        super().__init__(camera, nn_ratio, check_orientation)

    def search_by_bow_frame(self, keyframe: Any, frame: Any) -> tuple[int, list]:
        """Match keyframe map points to frame keypoints sharing vocabulary nodes.

        Returns the number of matches and one slot per frame keypoint holding
        the matched map point or ``None``.
        """
        kf_points = list(keyframe.map_points)
        matches: list = [None] * len(frame.keys_un)
        histogram = RotationHistogram()
        nmatches = 0

        for node in _common_nodes(keyframe.feat_vec, frame.feat_vec):
            frame_indices = frame.feat_vec[node]
            for idx_kf in keyframe.feat_vec[node]:
                mp = kf_points[idx_kf]
                if mp is None or mp.is_bad():
                    continue
                d_kf = keyframe.descriptors[idx_kf]

                best1 = best2 = 256
                best_idx = -1
                for idx_f in frame_indices:
                    if matches[idx_f] is not None:
                        continue
                    dist = descriptor_distance(d_kf, frame.descriptors[idx_f])
                    if dist < best1:
                        best2, best1 = best1, dist
                        best_idx = idx_f
                    elif dist < best2:
                        best2 = dist

                if best1 <= TH_LOW and float(best1) < self.nn_ratio * float(best2):
                    matches[best_idx] = mp
                    if self.check_orientation:
                        rot = keyframe.keys_un[idx_kf].angle - frame.keys[best_idx].angle
                        histogram.add(rot, best_idx)
                    nmatches += 1

        return self._apply_rotation_check(histogram, matches, nmatches), matches

    def search_by_bow_keyframes(self, kf1: Any, kf2: Any) -> tuple[int, list]:
        """Match map points of two keyframes sharing vocabulary nodes.

        Returns the number of matches and, per keypoint of ``kf1``, the map
        point of ``kf2`` it was matched to or ``None``.
        """
        points1 = list(kf1.map_points)
        points2 = list(kf2.map_points)
        matches12: list = [None] * len(points1)
        matched2 = [False] * len(points2)
        histogram = RotationHistogram()
        nmatches = 0

        for node in _common_nodes(kf1.feat_vec, kf2.feat_vec):
            indices2 = kf2.feat_vec[node]
            for idx1 in kf1.feat_vec[node]:
                mp1 = points1[idx1]
                if mp1 is None or mp1.is_bad():
                    continue
                d1 = kf1.descriptors[idx1]

                best1 = best2 = 256
                best_idx2 = -1
                for idx2 in indices2:
                    mp2 = points2[idx2]
                    if matched2[idx2] or mp2 is None or mp2.is_bad():
                        continue
                    dist = descriptor_distance(d1, kf2.descriptors[idx2])
                    if dist < best1:
                        best2, best1 = best1, dist
                        best_idx2 = idx2
                    elif dist < best2:
                        best2 = dist

                if best1 < TH_LOW and float(best1) < self.nn_ratio * float(best2):
                    matches12[idx1] = points2[best_idx2]
                    matched2[best_idx2] = True
                    if self.check_orientation:
                        rot = kf1.keys_un[idx1].angle - kf2.keys_un[best_idx2].angle
                        histogram.add(rot, idx1)
                    nmatches += 1

        return self._apply_rotation_check(histogram, matches12, nmatches), matches12

    def search_for_initialization(self, f1: Any, f2: Any, prev_matched: Sequence[Any],
                                  window_size: int = 10) -> tuple[int, list[int], list]:
        """Match finest-level keypoints of ``f1`` to ``f2`` near previous positions.

        Returns the number of matches, the index in ``f2`` for each keypoint
        of ``f1`` (-1 when unmatched), and the previous positions with the
        matched ones moved to their new keypoint.
        """
        n1 = len(f1.keys_un)
        n2 = len(f2.keys_un)
        matches12 = [-1] * n1
        matches21 = [-1] * n2
        matched_distance = [_INT_MAX] * n2
        histogram = RotationHistogram(bin_scale=HISTO_LENGTH / 360.0)
        nmatches = 0

        for i1, kp1 in enumerate(f1.keys_un):
            level1 = kp1.octave
            if level1 > 0:
                continue
            x, y = prev_matched[i1]
            indices2 = f2.features_in_area(x, y, window_size, level1, level1)
            if not indices2:
                continue
            d1 = f1.descriptors[i1]

            best_dist = best_dist2 = _INT_MAX
            best_idx2 = -1
            for i2 in indices2:
                dist = descriptor_distance(d1, f2.descriptors[i2])
                if matched_distance[i2] <= dist:
                    continue
                if dist < best_dist:
                    best_dist2, best_dist = best_dist, dist
                    best_idx2 = i2
                elif dist < best_dist2:
                    best_dist2 = dist

            if best_dist <= TH_LOW and best_dist < float(best_dist2) * self.nn_ratio:
                previous = matches21[best_idx2]
                if previous >= 0:
                    matches12[previous] = -1
                    nmatches -= 1
                matches12[i1] = best_idx2
                matches21[best_idx2] = i1
                matched_distance[best_idx2] = best_dist
                nmatches += 1
                if self.check_orientation:
                    rot = kp1.angle - f2.keys_un[best_idx2].angle
                    histogram.add(rot, i1)

        if self.check_orientation:
            for idx1 in histogram.rejected():
                if matches12[idx1] >= 0:
                    matches12[idx1] = -1
                    nmatches -= 1

        updated = [
            tuple(f2.keys_un[m].pt) if m >= 0 else prev
            for prev, m in zip(prev_matched, matches12)
        ]
        return nmatches, matches12, updated

    def search_for_triangulation(self, kf1: Any, kf2: Any, f12: Any,
                                 only_stereo: bool = False) -> list[tuple[int, int]]:
        """Pairs of keypoints without map points that satisfy the epipolar constraint.

        Returns ``(index in kf1, index in kf2)`` pairs ordered by the first index.
        """
        r1w, t1w = _rotation_translation(kf1.tcw)
        cw = -r1w.T @ t1w
        r2w, t2w = _rotation_translation(kf2.tcw)
        c2 = r2w @ cw + t2w
        with np.errstate(divide="ignore", invalid="ignore"):
            invz = np.float64(1.0) / np.float64(c2[2])
            ex = float(self.camera.fx * c2[0] * invz + self.camera.cx)
            ey = float(self.camera.fy * c2[1] * invz + self.camera.cy)

        matches12 = [-1] * len(kf1.keys_un)
        histogram = RotationHistogram()

        for node in _common_nodes(kf1.feat_vec, kf2.feat_vec):
            indices2 = kf2.feat_vec[node]
            for idx1 in kf1.feat_vec[node]:
                if kf1.map_points[idx1] is not None:
                    continue
                stereo1 = kf1.u_right[idx1] >= 0
                if only_stereo and not stereo1:
                    continue
                kp1 = kf1.keys_un[idx1]
                d1 = kf1.descriptors[idx1]

                best_dist = TH_LOW
                best_idx2 = -1
                for idx2 in indices2:
                    if kf2.map_points[idx2] is not None:
                        continue
                    stereo2 = kf2.u_right[idx2] >= 0
                    if only_stereo and not stereo2:
                        continue
                    dist = descriptor_distance(d1, kf2.descriptors[idx2])
                    if dist > TH_LOW or dist > best_dist:
                        continue
                    kp2 = kf2.keys_un[idx2]
                    if not stereo1 and not stereo2:
                        dx = ex - kp2.pt[0]
                        dy = ey - kp2.pt[1]
                        if dx * dx + dy * dy < 100 * kf2.scale_factors[kp2.octave]:
                            continue
                    if check_dist_epipolar_line(kp1, kp2, f12,
                                                kf2.level_sigma2[kp2.octave]):
                        best_idx2 = idx2
                        best_dist = dist

                if best_idx2 >= 0:
                    matches12[idx1] = best_idx2
                    if self.check_orientation:
                        rot = kp1.angle - kf2.keys_un[best_idx2].angle
                        histogram.add(rot, idx1)

        if self.check_orientation:
            for idx1 in histogram.rejected():
                matches12[idx1] = -1

        return [(i1, i2) for i1, i2 in enumerate(matches12) if i2 >= 0]

    def _best_in_view(self, mp: Any, p3dc: np.ndarray, target: Any,
                      th: float) -> int:
        z = float(p3dc[2])
        if z <= 0.0:
            return -1
        invz = 1.0 / z
        u = self.camera.fx * float(p3dc[0]) * invz + self.camera.cx
        v = self.camera.fy * float(p3dc[1]) * invz + self.camera.cy
        if not target.is_in_image(u, v):
            return -1
        dist3d = float(np.linalg.norm(p3dc))
        if dist3d < mp.min_distance_invariance or dist3d > mp.max_distance_invariance:
            return -1
        level = mp.predict_scale(dist3d, target.log_scale_factor)
        radius = th * target.scale_factors[level]
        indices = target.features_in_area(u, v, radius)
        if not indices:
            return -1

        best_dist = _INT_MAX
        best_idx = -1
        for idx in indices:
            octave = target.keys_un[idx].octave
            if octave < level - 1 or octave > level:
                continue
            dist = descriptor_distance(mp.descriptor, target.descriptors[idx])
            if dist < best_dist:
                best_dist = dist
                best_idx = idx
        return best_idx if best_dist <= TH_HIGH else -1

    def search_by_sim3(self, kf1: Any, kf2: Any, matches12: Sequence[Any], s12: float,
                       r12: Any, t12: Any, th: float = 7.5) -> tuple[int, list]:
        """Find further matches between two keyframes related by a similarity.

        Points are projected both ways and only mutual best matches are kept.
        Returns the number of new matches and the updated match list, one
        slot per keypoint of ``kf1``.
        """
        r1w, t1w = _rotation_translation(kf1.tcw)
        r2w, t2w = _rotation_translation(kf2.tcw)
        r12 = np.asarray(r12, dtype=float).reshape(3, 3)
        t12 = np.asarray(t12, dtype=float).reshape(3)
        sr12 = s12 * r12
        sr21 = (1.0 / s12) * r12.T
        t21 = -sr21 @ t12

        points1 = list(kf1.map_points)
        points2 = list(kf2.map_points)
        n1, n2 = len(points1), len(points2)
        result = list(matches12)
        if len(result) != n1:
            raise ValueError("matches12 needs one slot per keypoint of kf1")

        already1 = [False] * n1
        already2 = [False] * n2
        for i, mp in enumerate(result):
            if mp is not None:
                already1[i] = True
                idx2 = mp.index_in_keyframe(kf2)
                if 0 <= idx2 < n2:
                    already2[idx2] = True

        match1 = [-1] * n1
        for i1, mp in enumerate(points1):
            if mp is None or already1[i1] or mp.is_bad():
                continue
            p3dw = np.asarray(mp.world_pos, dtype=float).reshape(3)
            p3dc2 = sr21 @ (r1w @ p3dw + t1w) + t21
            match1[i1] = self._best_in_view(mp, p3dc2, kf2, th)

        match2 = [-1] * n2
        for i2, mp in enumerate(points2):
            if mp is None or already2[i2] or mp.is_bad():
                continue
            p3dw = np.asarray(mp.world_pos, dtype=float).reshape(3)
            p3dc1 = sr12 @ (r2w @ p3dw + t2w) + t12
            match2[i2] = self._best_in_view(mp, p3dc1, kf1, th)

        found = 0
        for i1, idx2 in enumerate(match1):
            if idx2 >= 0 and match2[idx2] == i1:
                result[i1] = points2[idx2]
                found += 1
        return found, result