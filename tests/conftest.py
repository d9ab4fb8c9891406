"""Shared fixtures: synthetic pages drawn with OpenCV and a fake model backend."""

import time

import cv2
import numpy as np
import pytest

from mangavision.detector.ml import DetectionBackend


def draw_frame(img, x1, y1, x2, y2, thickness=10):
    """Black rectangular border covering [x1, x2) x [y1, y2)."""
    img[y1:y1 + thickness, x1:x2] = 0
    img[y2 - thickness:y2, x1:x2] = 0
    img[y1:y2, x1:x1 + thickness] = 0
    img[y1:y2, x2 - thickness:x2] = 0


class FakeBackend(DetectionBackend):
    """Model backend returning canned detections, optionally after a delay."""

    def __init__(self, detections=(), delay=0.0):
        self.detections = list(detections)
        self.delay = delay
        self.calls = 0
        self.closed = False

    @property
    def signature(self):
        return "fake"

    @property
    def available(self):
        return True

    def try_detect(self, buffer):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return list(self.detections)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def ellipse_page():
    """800x1200 white page with a filled black 200x150 ellipse centred at (400, 600)."""
    img = np.full((1200, 800), 255, dtype=np.uint8)
    cv2.ellipse(img, (400, 600), (100, 75), 0, 0, 360, 0, -1)
    return img


@pytest.fixture
def white_page():
    return np.full((500, 500), 255, dtype=np.uint8)


@pytest.fixture
def panel_page():
    """Two stacked 720 px wide frames, the upper one holding a bubble."""
    img = np.full((1200, 800), 255, dtype=np.uint8)
    draw_frame(img, 40, 40, 760, 560)
    draw_frame(img, 40, 600, 760, 1160)
    cv2.ellipse(img, (400, 300), (100, 75), 0, 0, 360, 0, -1)
    return img


@pytest.fixture
def lined_page():
    """600x600 page of horizontal text-like strokes."""
    img = np.full((600, 600), 255, dtype=np.uint8)
    for y in range(60, 560, 30):
        img[y:y + 4, 60:540] = 0
    return img
