"""Semantic segmentation worker that labels incoming images in the background."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Optional

import numpy as np

_POLL_SECONDS = 0.0005
_PALETTE_SIZE = 256


def _resize_nearest(image: np.ndarray, width: int, height: int) -> np.ndarray:
    src_h, src_w = image.shape[:2]
    rows = np.minimum(np.arange(height) * src_h // height, src_h - 1)
    cols = np.minimum(np.arange(width) * src_w // width, src_w - 1)
    return image[rows][:, cols]


class Segment:
    """Runs a classifier on submitted images and hands label images to a tracker.

    ``classifier(image, label_colours)`` returns a 2-D array of labels.
    ``label_colours`` is a palette of 256 colour rows indexed by label.
    Every ``skip_number``-th image is classified; the results are resized to
    ``width`` x ``height`` with nearest-neighbour sampling.
    """

    def __init__(self, classifier: Callable[[Any, np.ndarray], Any], label_colours: Any,
                 width: int, height: int, skip_number: int = 1):
        palette = np.asarray(label_colours, dtype=np.uint8).reshape(-1, 3)
        if len(palette) != _PALETTE_SIZE:
            raise ValueError(f"palette needs {_PALETTE_SIZE} colours, got {len(palette)}")
        if skip_number < 1:
            raise ValueError("skip_number must be at least 1")
        if width < 1 or height < 1:
            raise ValueError("image size must be positive")

        self.classifier = classifier
        self.label_colours = palette
        self.width = int(width)
        self.height = int(height)
        self.skip_number = int(skip_number)
        self.skip_index = self.skip_number

        self.segment_time = 0.0
        self.img_index = 0

        self.img_segment = np.zeros((self.height, self.width), dtype=np.uint8)
        self.img_segment_latest = np.zeros((self.height, self.width), dtype=np.uint8)
        self.img_segment_color = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        self.segment_lock = threading.Lock()

        self.tracker: Any = None

        self._image: Optional[Any] = None
        self._new_image = False
        self._image_lock = threading.Lock()

        self._finish_requested = False
        self._finish_lock = threading.Lock()

    def set_tracker(self, tracker: Any) -> None:
        """Set the object whose ``new_seg_img_flag`` is raised on new results."""
        self.tracker = tracker

    def submit(self, image: Any) -> None:
        """Hand a new image to the worker."""
        with self._image_lock:
            self._image = image
            self._new_image = True

    def is_new_img_arrived(self) -> bool:
        """Whether an image arrived since the last call; clears the flag."""
        with self._image_lock:
            if self._new_image:
                self._new_image = False
                return True
            return False

    def run(self) -> None:
        """Process images until a finish request is seen."""
        while True:
            time.sleep(_POLL_SECONDS)
            if not self.is_new_img_arrived():
                if self.check_finish():
                    break
                continue

            if self.skip_index == self.skip_number:
                start = time.perf_counter()
                with self._image_lock:
                    image = self._image
                labels = np.asarray(self.classifier(image, self.label_colours), dtype=np.uint8)
                if labels.ndim != 2:
                    raise ValueError("classifier must return a two-dimensional label image")
                colour = self.label_colours[labels]
                self.img_segment = _resize_nearest(labels, self.width, self.height)
                self.img_segment_color = _resize_nearest(colour, self.width, self.height)
                self.segment_time += time.perf_counter() - start
                self.skip_index = 0
                self.img_index += 1

            self.skip_index += 1
            self.produce_img_segment()
            if self.check_finish():
                break

    def check_finish(self) -> bool:
        """Whether finishing was requested."""
        with self._finish_lock:
            return self._finish_requested

    def request_finish(self) -> None:
        """Ask the worker loop to stop."""
        with self._finish_lock:
            self._finish_requested = True

    def produce_img_segment(self) -> None:
        """Publish the working label image and tell the tracker about it."""
        if self.tracker is None:
            raise RuntimeError("no tracker set")
        with self.segment_lock:
            self.img_segment_latest, self.img_segment = self.img_segment, self.img_segment_latest
            self.tracker.new_seg_img_flag = True