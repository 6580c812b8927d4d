"""Scene preparation for displaying calibrated magnetometer readings.

The readings are calibrated, rotated by the current orientation and turned
into translation coordinates for a renderer that draws a small sphere at
each point.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .magcal import MagCalibration, Point
from .quality import SphereQuality

Rotation = tuple[float, float, float, float, float, float, float, float, float]

#: Perspective frustum depth limits used by the display.
NEAR_PLANE = 2.0
FAR_PLANE = 100.0


@dataclass(frozen=True)
class Quaternion:
    """An orientation quaternion, scalar part first."""

    q0: float = 1.0
    q1: float = 0.0
    q2: float = 0.0
    q3: float = 0.0


@dataclass
class ViewSettings:
    """Axis inversions, scales and offsets applied when drawing."""

    invert_q0: bool = False
    invert_q1: bool = False
    invert_q2: bool = False
    invert_q3: bool = True
    invert_x: bool = False
    invert_y: bool = False
    invert_z: bool = False
    x_scale: float = 0.05
    y_scale: float = 0.05
    z_scale: float = 0.05
    x_offset: float = 0.0
    y_offset: float = 0.0
    z_offset: float = -7.0


@dataclass(frozen=True)
class DrawPoint:
    """Where to draw one reading, and whether to draw it in high resolution."""

    x: float
    y: float
    z: float
    high_res: bool


def quaternion_to_rotation(q: Quaternion) -> Rotation:
    """Return the row-major 3x3 rotation matrix of a unit quaternion."""
    qw, qx, qy, qz = q.q0, q.q1, q.q2, q.q3
    return (
        1.0 - 2.0 * qy * qy - 2.0 * qz * qz,
        2.0 * qx * qy - 2.0 * qz * qw,
        2.0 * qx * qz + 2.0 * qy * qw,
        2.0 * qx * qy + 2.0 * qz * qw,
        1.0 - 2.0 * qx * qx - 2.0 * qz * qz,
        2.0 * qy * qz - 2.0 * qx * qw,
        2.0 * qx * qz - 2.0 * qy * qw,
        2.0 * qy * qz + 2.0 * qx * qw,
        1.0 - 2.0 * qx * qx - 2.0 * qy * qy,
    )


def rotate(point: Point, rmatrix: Sequence[float]) -> Point:
    """Return ``point`` multiplied by a row-major 3x3 matrix."""
    if len(rmatrix) != 9:
        raise ValueError("rotation matrix must have 9 elements")
    x, y, z = point.x, point.y, point.z
    r = rmatrix
    return Point(
        x * r[0] + y * r[1] + z * r[2],
        x * r[3] + y * r[4] + z * r[5],
        x * r[6] + y * r[7] + z * r[8],
    )


def scene_points(
    magcal: MagCalibration,
    orientation: Quaternion,
    settings: ViewSettings | None = None,
    quality: SphereQuality | None = None,
) -> list[DrawPoint]:
    """Return the draw positions of every buffered reading.

    When ``quality`` is given it is reset and fed each calibrated point.
    """
    if settings is None:
        settings = ViewSettings()
    if quality is not None:
        quality.reset()

    oriented = Quaternion(
        -orientation.q0 if settings.invert_q0 else orientation.q0,
        -orientation.q1 if settings.invert_q1 else orientation.q1,
        -orientation.q2 if settings.invert_q2 else orientation.q2,
        -orientation.q3 if settings.invert_q3 else orientation.q3,
    )
    rotation = quaternion_to_rotation(oriented)

    drawn = []
    for raw in magcal.samples():
        point = magcal.apply_calibration(*raw)
        if quality is not None:
            quality.update(point)
        d = rotate(point, rotation)
        dx = -d.x if settings.invert_x else d.x
        dy = -d.y if settings.invert_y else d.y
        dz = -d.z if settings.invert_z else d.z
        drawn.append(
            DrawPoint(
                dx * settings.x_scale + settings.x_offset,
                dz * settings.y_scale + settings.y_offset,
                dy * settings.z_scale + settings.z_offset,
                dy >= 0.0,
            )
        )
    return drawn


def aspect_frustum(
    width: int, height: int
) -> tuple[float, float, float, float, float, float]:
    """Return (left, right, bottom, top, near, far) of the display frustum."""
    if height == 0:
        raise ValueError("height must not be zero")
    ar = width / height
    return (-ar, ar, -1.0, 1.0, NEAR_PLANE, FAR_PLANE)