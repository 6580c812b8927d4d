import math

import pytest

from magcalib.magcal import MagCalibration, Point
from magcalib.quality import SphereQuality
from magcalib.visualize import (
    DrawPoint,
    Quaternion,
    ViewSettings,
    aspect_frustum,
    quaternion_to_rotation,
    rotate,
    scene_points,
)


def _calibration(*raws, valid=None):
    mc = MagCalibration(buffer_size=max(len(raws), 1) + 2)
    mc.hard_iron = [0.0, 0.0, 0.0]
    for i, raw in enumerate(raws):
        mc.raw[i] = raw
        mc.valid[i] = True if valid is None else valid[i]
    return mc


def test_identity_quaternion_gives_identity_matrix():
    assert quaternion_to_rotation(Quaternion()) == pytest.approx(
        (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)
    )


def test_rotation_matrix_is_orthonormal():
    n = math.sqrt(0.3**2 + 0.5**2 + 0.1**2 + 0.8**2)
    q = Quaternion(0.3 / n, 0.5 / n, -0.1 / n, 0.8 / n)
    r = quaternion_to_rotation(q)
    rows = [r[0:3], r[3:6], r[6:9]]
    for i in range(3):
        for j in range(3):
            dot = sum(a * b for a, b in zip(rows[i], rows[j]))
            assert dot == pytest.approx(1.0 if i == j else 0.0, abs=1e-12)


def test_quarter_turn_about_z():
    h = math.sqrt(0.5)
    p = rotate(Point(1.0, 0.0, 0.0), quaternion_to_rotation(Quaternion(h, 0.0, 0.0, h)))
    assert (p.x, p.y, p.z) == pytest.approx((0.0, 1.0, 0.0))


def test_rotation_preserves_length():
    q = Quaternion(0.5, 0.5, 0.5, 0.5)
    p = rotate(Point(3.0, -4.0, 12.0), quaternion_to_rotation(q))
    assert math.sqrt(p.x**2 + p.y**2 + p.z**2) == pytest.approx(13.0)


def test_rotate_rejects_bad_matrix():
    with pytest.raises(ValueError):
        rotate(Point(1.0, 2.0, 3.0), (1.0, 0.0, 0.0))


def test_scene_point_position():
    mc = _calibration((100, 0, 0))
    points = scene_points(mc, Quaternion())
    assert points == [DrawPoint(pytest.approx(0.5), 0.0, -7.0, True)]


def test_scene_skips_invalid_and_feeds_quality():
    mc = _calibration((100, 0, 0), (0, 0, 100), valid=[True, False])
    quality = SphereQuality()
    quality.update(Point(5.0, 5.0, 5.0))
    points = scene_points(mc, Quaternion(), quality=quality)
    assert len(points) == 1
    assert quality.count == 1
    assert quality.magnitudes[0] == pytest.approx(10.0)


def test_invert_y_switches_to_low_resolution():
    mc = _calibration((0, 100, 0))
    normal = scene_points(mc, Quaternion())
    flipped = scene_points(mc, Quaternion(), ViewSettings(invert_y=True))
    assert normal[0].high_res is True
    assert flipped[0].high_res is False
    assert normal[0].z - (-7.0) == pytest.approx(-(flipped[0].z - (-7.0)))


def test_aspect_frustum():
    assert aspect_frustum(200, 100) == (-2.0, 2.0, -1.0, 1.0, 2.0, 100.0)


def test_aspect_frustum_zero_height():
    with pytest.raises(ValueError):
        aspect_frustum(640, 0)