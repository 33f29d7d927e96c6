"""ORB feature matching, EPnP pose estimation with RANSAC, and a semantic segmentation worker for visual SLAM."""

__version__ = "0.1.0"