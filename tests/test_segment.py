import threading
import time

import numpy as np
import pytest

from vslam.segment import Segment

WIDTH, HEIGHT = 8, 6
PALETTE = np.stack(
    [np.arange(256), (np.arange(256) * 2) % 256, 255 - np.arange(256)], axis=1
).astype(np.uint8)


class _Tracker:
    def __init__(self):
        self.new_seg_img_flag = False


class _Classifier:
    def __init__(self):
        self.calls = 0

    def __call__(self, image, palette):
        self.calls += 1
        return (np.asarray(image)[::2, ::2, 0] % 4).astype(np.uint8)


def _image(offset=0):
    return (np.arange(HEIGHT * WIDTH * 3).reshape(HEIGHT, WIDTH, 3) + offset).astype(np.uint8)


def _wait(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.001)


def _start(segment):
    thread = threading.Thread(target=segment.run, daemon=True)
    thread.start()
    return thread


def test_run_segments_and_publishes():
    classifier = _Classifier()
    tracker = _Tracker()
    seg = Segment(classifier, PALETTE, WIDTH, HEIGHT)
    seg.set_tracker(tracker)
    thread = _start(seg)
    image = _image()
    seg.submit(image)
    _wait(lambda: tracker.new_seg_img_flag)
    seg.request_finish()
    thread.join(timeout=5)
    assert not thread.is_alive()

    labels = image[::2, ::2, 0] % 4
    latest = seg.img_segment_latest
    assert latest.shape == (HEIGHT, WIDTH)
    assert latest[0, 0] == labels[0, 0]
    assert latest[HEIGHT - 1, WIDTH - 1] == labels[-1, -1]
    assert set(np.unique(latest)) <= set(np.unique(labels))
    assert seg.img_segment_color.shape == (HEIGHT, WIDTH, 3)
    assert np.array_equal(seg.img_segment_color, PALETTE[latest])
    assert seg.img_index == 1
    assert classifier.calls == 1
    assert seg.segment_time >= 0.0


def test_skip_number_classifies_every_other_image():
    classifier = _Classifier()
    tracker = _Tracker()
    seg = Segment(classifier, PALETTE, WIDTH, HEIGHT, skip_number=2)
    seg.set_tracker(tracker)
    thread = _start(seg)
    for offset in (0, 1):
        tracker.new_seg_img_flag = False
        seg.submit(_image(offset))
        _wait(lambda: tracker.new_seg_img_flag)
    seg.request_finish()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert classifier.calls == 1
    assert seg.img_index == 1


def test_run_stops_without_images():
    seg = Segment(_Classifier(), PALETTE, WIDTH, HEIGHT)
    seg.set_tracker(_Tracker())
    thread = _start(seg)
    seg.request_finish()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert seg.img_index == 0


def test_new_image_flag_is_consumed():
    seg = Segment(_Classifier(), PALETTE, WIDTH, HEIGHT)
    assert seg.is_new_img_arrived() is False
    seg.submit(_image())
    assert seg.is_new_img_arrived() is True
    assert seg.is_new_img_arrived() is False


def test_finish_request():
    seg = Segment(_Classifier(), PALETTE, WIDTH, HEIGHT)
    assert seg.check_finish() is False
    seg.request_finish()
    assert seg.check_finish() is True


def test_produce_without_tracker_raises():
    seg = Segment(_Classifier(), PALETTE, WIDTH, HEIGHT)
    with pytest.raises(RuntimeError):
        seg.produce_img_segment()


def test_produce_swaps_buffers():
    tracker = _Tracker()
    seg = Segment(_Classifier(), PALETTE, WIDTH, HEIGHT)
    seg.set_tracker(tracker)
    working = np.full((HEIGHT, WIDTH), 3, dtype=np.uint8)
    previous = seg.img_segment_latest
    seg.img_segment = working
    seg.produce_img_segment()
    assert tracker.new_seg_img_flag is True
    assert seg.img_segment_latest is working
    assert seg.img_segment is previous
    seg.produce_img_segment()
    assert seg.img_segment_latest is previous


def test_palette_size_checked():
    with pytest.raises(ValueError):
        Segment(_Classifier(), PALETTE[:10], WIDTH, HEIGHT)


def test_skip_number_must_be_positive():
    with pytest.raises(ValueError):
        Segment(_Classifier(), PALETTE, WIDTH, HEIGHT, skip_number=0)