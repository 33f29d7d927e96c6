"""Shared helpers for ORB feature matching: descriptor distance, orientation
consistency histograms and epipolar checks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30
DESCRIPTOR_BYTES = 32

# A point seen almost head-on gets a narrower search window.
_FRONTAL_VIEW_COS = 0.998
_NARROW_RADIUS = 2.5
_WIDE_RADIUS = 4.0


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole calibration, with the stereo baseline times focal length."""

    fx: float
    fy: float
    cx: float
    cy: float
    bf: float = 0.0

    @property
    def b(self) -> float:
        """Stereo baseline in metric units."""
        return self.bf / self.fx

    @property
    def matrix(self) -> np.ndarray:
        """The 3x3 calibration matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]]
        )

    def project(self, point: Sequence[float]) -> tuple[float, float]:
        """Project a point given in camera coordinates to pixel coordinates."""
        x, y, z = (float(c) for c in point)
        invz = 1.0 / z
        return self.fx * x * invz + self.cx, self.fy * y * invz + self.cy


def _descriptor_bytes(descriptor: Any) -> bytes:
    data = bytes(np.asarray(descriptor, dtype=np.uint8).reshape(-1))
    if len(data) < DESCRIPTOR_BYTES:
        raise ValueError(
            f"descriptor needs {DESCRIPTOR_BYTES} bytes, got {len(data)}"
        )
    return data[:DESCRIPTOR_BYTES]


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two 256-bit ORB descriptors."""
    xa = int.from_bytes(_descriptor_bytes(a), "little")
    xb = int.from_bytes(_descriptor_bytes(b), "little")
    return bin(xa ^ xb).count("1")


def radius_by_viewing_cos(view_cos: float) -> float:
    """Search window radius depending on the viewing angle cosine."""
    cosine = float(view_cos)
    if cosine > _FRONTAL_VIEW_COS:
        return _NARROW_RADIUS
    return _WIDE_RADIUS


def compute_three_maxima(counts: Iterable[int]) -> tuple[int, int, int]:
    """Indices of the three fullest bins; -1 for bins far below the top one."""
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for i, s in enumerate(counts):
        if s > max1:
            max3, max2, max1 = max2, max1, s
            ind3, ind2, ind1 = ind2, ind1, i
        elif s > max2:
            max3, max2 = max2, s
            ind3, ind2 = ind2, i
        elif s > max3:
            max3 = s
            ind3 = i
    if max2 < 0.1 * max1:
        ind2 = ind3 = -1
    elif max3 < 0.1 * max1:
        ind3 = -1
    return ind1, ind2, ind3


def _point(kp: Any) -> tuple[float, float]:
    pt = getattr(kp, "pt", kp)
    x, y = pt
    return float(x), float(y)


def check_dist_epipolar_line(kp1: Any, kp2: Any, f12: Any, sigma2: float) -> bool:
    """Whether kp2 lies close enough to the epipolar line of kp1.

    ``sigma2`` is the level variance of kp2's octave.
    """
    f = np.asarray(f12, dtype=float)
    x1, y1 = _point(kp1)
    x2, y2 = _point(kp2)
    a = x1 * f[0, 0] + y1 * f[1, 0] + f[2, 0]
    b = x1 * f[0, 1] + y1 * f[1, 1] + f[2, 1]
    c = x1 * f[0, 2] + y1 * f[1, 2] + f[2, 2]
    num = a * x2 + b * y2 + c
    den = a * a + b * b
    if den == 0:
        return False
    return num * num / den < 3.84 * sigma2


def _round_half_away(x: float) -> int:
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


class RotationHistogram:
    """Histogram of keypoint rotation differences used to reject matches
    whose orientation change disagrees with the dominant ones."""

    def __init__(self, bin_scale: float = 1.0 / HISTO_LENGTH, length: int = HISTO_LENGTH):
        self.bin_scale = bin_scale
        self.length = length
        self._bins: list[list[int]] = [[] for _ in range(length)]

    def add(self, rotation: float, index: int) -> None:
        """Record a match by its rotation difference in degrees."""
        if rotation < 0.0:
            rotation += 360.0
        bin_ = _round_half_away(rotation * self.bin_scale)
        if bin_ == self.length:
            bin_ = 0
        if not 0 <= bin_ < self.length:
            raise ValueError(f"rotation {rotation} falls outside the histogram")
        self._bins[bin_].append(index)

    def rejected(self) -> list[int]:
        """Indices of matches outside the up to three dominant bins."""
        keep = set(compute_three_maxima(len(b) for b in self._bins))
        return [
            index
            for i, entries in enumerate(self._bins)
            if i not in keep
            for index in entries
        ]