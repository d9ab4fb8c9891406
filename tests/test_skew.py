import numpy as np
import pytest

from mangavision.image_utils import PixelBuffer
from mangavision.preprocess.skew import (
    SkewEstimator,
    rotate_buffer,
    rotate_gray,
    rotation_matrix,
)


def test_candidate_angles_start_at_zero():
    angles = SkewEstimator(max_angle=1.0, step=0.5).candidate_angles()
    assert angles.tolist() == [0.0, -0.5, 0.5, -1.0, 1.0]


def test_straight_page_has_no_skew(lined_page):
    assert SkewEstimator().estimate(lined_page) == 0.0


def test_aligned_lines_beat_neighbouring_angles(lined_page):
    estimator = SkewEstimator()
    straight = estimator.projection_variance(lined_page, 0.0)
    assert straight > estimator.projection_variance(lined_page, -0.5)
    assert straight > estimator.projection_variance(lined_page, 0.5)


@pytest.mark.parametrize("angle", [5.0, -3.0, 8.5])
def test_rotated_lines_are_detected(lined_page, angle):
    rotated = rotate_gray(lined_page, angle)
    assert SkewEstimator().estimate(rotated) == pytest.approx(angle, abs=1.0)


def test_correction_increases_projection_variance(lined_page):
    estimator = SkewEstimator()
    rotated = rotate_gray(lined_page, 5.0)
    angle = estimator.estimate(rotated)
    corrected = rotate_gray(rotated, -angle)
    assert estimator.projection_variance(corrected, 0.0) >= estimator.projection_variance(rotated, 0.0)


def test_blank_page_estimate():
    assert SkewEstimator().estimate(np.full((50, 50), 255, dtype=np.uint8)) == 0.0


def test_rotation_matrix_keeps_center_fixed():
    m = rotation_matrix(101, 51, 30.0)
    center = np.array([50.0, 25.0, 1.0])
    assert m @ center == pytest.approx([50.0, 25.0])


def test_rotate_buffer_fills_with_opaque_white():
    rgba = np.zeros((40, 40, 4), dtype=np.uint8)
    rgba[..., 3] = 255
    out = rotate_buffer(PixelBuffer.from_array(rgba), 45.0)
    assert (out.width, out.height) == (40, 40)
    assert out.rgba[0, 0].tolist() == [255, 255, 255, 255]
    assert out.rgba[20, 20].tolist() == [0, 0, 0, 255]


def test_rotate_buffer_by_zero_is_identity():
    buf = PixelBuffer.from_array(np.arange(64, dtype=np.uint8).reshape(8, 8))
    assert rotate_buffer(buf, 0.0) == buf
