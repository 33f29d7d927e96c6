# vslam

This package holds the geometry and matching routines of a feature-based visual SLAM system:

- **`vslam.matchutil`** provides:
  - `descriptor_distance`, the Hamming distance between two 32-byte ORB descriptors.
  - `radius_by_viewing_cos`, which gives a search radius of 2.5 for near-frontal views and 4.0 otherwise.
  - `check_dist_epipolar_line`.
  - `compute_three_maxima` and `RotationHistogram`, which reject matches whose orientation change disagrees with the dominant ones.
  - `CameraIntrinsics`, a pinhole calibration with `fx`, `fy`, `cx`, `cy` and `bf`, plus `b`, `matrix` and `project`.
  - The thresholds `TH_HIGH` (100), `TH_LOW` (50) and `HISTO_LENGTH` (30).
- **`vslam.epnp`** provides `EPnP`, which computes a camera pose from 3D–2D correspondences through `compute_pose` and `reprojection_error`. It also has the helpers `qr_solve`, `mat_to_quat` and `relative_error`.
- **`vslam.pnp_ransac`** provides `PnPSolver`, which runs RANSAC around EPnP and refines the pose on the best inliers. Its `find()` and `iterate(n)` return a `PnPResult` with these fields:
  - `pose`, a 4×4 array, or `None` when no pose was found.
  - `inliers`, with one flag per original match.
  - `n_inliers`.
  - `no_more`.
- **`vslam.projection`** provides `ProjectionMatcher`, which matches map points to the keypoints of frames and keyframes by projecting them into the view. Its methods are:
  - `search_by_projection_local`
  - `search_by_projection_frame`
  - `search_by_projection_keyframe`
  - `search_by_projection_sim3`
  - `fuse`
  - `fuse_sim3`
- **`vslam.matcher`** provides `ORBMatcher`, a `ProjectionMatcher` that adds these methods:
  - `search_by_bow_frame` and `search_by_bow_keyframes`, which match within shared vocabulary nodes.
  - `search_for_initialization`.
  - `search_for_triangulation`.
  - `search_by_sim3`, which keeps only mutual best matches.
- **`vslam.segment`** provides `Segment`, a worker loop that runs a caller-supplied classifier on submitted images. Its label and colour images are resized with nearest-neighbour sampling. The worker swaps the latest result into `img_segment_latest` and sets `new_seg_img_flag` on the tracker.

## Installation

```
pip install .
```

The only runtime dependency is numpy.

## Example: pose from correspondences

```python
from vslam.epnp import EPnP

solver = EPnP(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
rotation, translation, error = solver.compute_pose(points3d, points2d)
```

`points3d` has shape `(n, 3)` and `points2d` has shape `(n, 2)`. The result maps world coordinates to camera coordinates. `error` is the mean reprojection error in pixels.

## Example: RANSAC pose

```python
import random
from vslam.matchutil import CameraIntrinsics
from vslam.pnp_ransac import PnPSolver

camera = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0)
solver = PnPSolver(points3d, points2d, sigma2, keypoint_indices,
                   n_matches, camera, random.Random(0))
solver.set_ransac_parameters(probability=0.99, min_inliers=10, max_iterations=300)
result = solver.find()
if result.pose is not None:
    print(result.n_inliers, result.pose)
```

The constructor arguments are:

- `sigma2`: one level variance per correspondence. A point counts as an inlier when its squared reprojection error is below `sigma2 * th2`.
- `keypoint_indices`: for each correspondence, the index of its match among the `n_matches` original matches.
- The random generator: any `random.Random`. When it is omitted, a fresh one is used.

## Data the matchers expect

The matchers work on plain objects that the caller supplies. They do not build frames, keyframes or map points themselves. The members they read and call are listed in the docstrings of `vslam.projection` and `vslam.matcher`. Some examples:

- `tcw`, `keys_un`, `descriptors`, `map_points`, `scale_factors` and `features_in_area(...)` on frames and keyframes.
- `feat_vec`, a mapping from vocabulary node id to keypoint indices.
- `world_pos`, `descriptor`, `is_bad()` and `predict_scale(...)` on map points.

## What this package does not do

This package does not do the following:

- Extract ORB features or undistort keypoints.
- Build a bag-of-words vocabulary or keep a map database.
- Run bundle adjustment or graph optimisation.
- Draw a viewer.
- Ship a segmentation network. `Segment` needs a classifier callable and a 256-colour palette from the caller.
- Provide a command-line program.

## Running the tests

```
pip install .[test]
pytest
```