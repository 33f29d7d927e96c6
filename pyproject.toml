[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vslam"
version = "0.1.0"
description = "ORB feature matching, EPnP pose estimation with RANSAC, and a semantic segmentation worker for visual SLAM"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["slam", "orb", "epnp", "pnp", "ransac", "computer-vision", "feature-matching"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["vslam"]

[tool.pytest.ini_options]
addopts = "-ra"
