"""Quality metrics for the spread of calibrated magnetometer readings.

The unit sphere is divided into 100 regions of equal area: a polar cap at
each pole, two temperate bands of 15 regions and two tropical bands of 34.
How evenly the readings cover those regions, and how far they sit from an
ideal sphere, tells the user whether enough data has been gathered.
"""

from __future__ import annotations

import math
from functools import lru_cache
from typing import Protocol

from .magcal import MagCalibration, Point

REGION_COUNT = 100

_ARCTIC_LATITUDE = 1.37046  # 78.52 degrees
_TEMPERATE_LATITUDE = 0.74776  # 42.84 degrees
_TEMPERATE_CENTRE = 1.05911
_TROPIC_CENTRE = 0.37388
_TWO_PI = 2.0 * math.pi


class _HasXYZ(Protocol):
    x: float
    y: float
    z: float


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0.0:
        if numerator == 0.0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator)
    return numerator / denominator


def _band_index(longitude: float, cells: int) -> int:
    index = math.floor(longitude * cells / _TWO_PI)
    return min(max(index, 0), cells - 1)


def sphere_region(x: float, y: float, z: float) -> int:
    """Return which of the 100 equal-area sphere regions (0 to 99) holds a direction."""
    longitude = math.atan2(y, x) + math.pi
    latitude = math.pi / 2.0 - math.atan2(math.sqrt(x * x + y * y), z)

    if latitude > _ARCTIC_LATITUDE:
        return 0
    if latitude < -_ARCTIC_LATITUDE:
        return 99
    if latitude > _TEMPERATE_LATITUDE or latitude < -_TEMPERATE_LATITUDE:
        region = _band_index(longitude, 15)
        return region + (1 if latitude > 0.0 else 84)
    region = _band_index(longitude, 34)
    return region + (16 if latitude >= 0.0 else 50)


def _ring(longitudes: range, offset: int, cells: int, latitude: float) -> list[Point]:
    points = []
    for i in longitudes:
        longitude = ((i - offset) + 0.5) * (_TWO_PI / cells)
        points.append(
            Point(
                -math.cos(longitude) * math.cos(latitude),
                -math.sin(longitude) * math.cos(latitude),
                math.sin(latitude),
            )
        )
    return points


@lru_cache(maxsize=1)
def ideal_sphere_points() -> tuple[Point, ...]:
    """Return the ideal unit-sphere point of each of the 100 regions."""
    points = [Point(0.0, 0.0, 1.0)]
    points += _ring(range(1, 16), 1, 15, _TEMPERATE_CENTRE)
    points += _ring(range(16, 50), 16, 34, _TROPIC_CENTRE)
    points += _ring(range(50, 84), 50, 34, -_TROPIC_CENTRE)
    # The southern temperate ring keeps the longitude numbering of its
    # original definition, which counts from region 1.
    points += _ring(range(84, 99), 1, 15, -_TEMPERATE_CENTRE)
    points.append(Point(0.0, 0.0, -1.0))
    return tuple(points)


class SphereQuality:
    """Accumulates calibrated points and reports coverage and shape errors."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Forget all points."""
        self.magnitudes: list[float] = []
        self.distribution: list[int] = [0] * REGION_COUNT
        self._sums: list[list[float]] = [[0.0, 0.0, 0.0] for _ in range(REGION_COUNT)]
        self._invalidate()

    def _invalidate(self) -> None:
        self._gaps: float | None = None
        self._variance: float | None = None
        self._wobble: float | None = None

    @property
    def count(self) -> int:
        """Number of points added since the last reset."""
        return len(self.magnitudes)

    def update(self, point: _HasXYZ) -> None:
        """Add one calibrated point."""
        x, y, z = point.x, point.y, point.z
        self.magnitudes.append(math.sqrt(x * x + y * y + z * z))
        region = sphere_region(x, y, z)
        self.distribution[region] += 1
        total = self._sums[region]
        total[0] += x
        total[1] += y
        total[2] += z
        self._invalidate()

    def surface_gap_error(self) -> float:
        """Score the regions with few or no points: 1 per empty region, less for sparse ones."""
        if self._gaps is None:
            penalty = {0: 1.0, 1: 0.2, 2: 0.01}
            self._gaps = sum(penalty.get(n, 0.0) for n in self.distribution)
        return self._gaps

    def _mean_magnitude(self) -> float:
        if not self.magnitudes:
            return math.nan
        return sum(self.magnitudes) / len(self.magnitudes)

    def magnitude_variance_error(self) -> float:
        """Return the standard deviation of the magnitudes as a percentage of their mean."""
        if self._variance is None:
            if not self.magnitudes:
                return math.nan
            mean = self._mean_magnitude()
            variance = sum((m - mean) ** 2 for m in self.magnitudes) / len(self.magnitudes)
            self._variance = _ratio(math.sqrt(variance), mean) * 100.0
        return self._variance

    def wobble_error(self) -> float:
        """Return the offset of the region averages from an ideal sphere, in percent of its radius."""
        if self._wobble is not None:
            return self._wobble
        radius = self._mean_magnitude()
        ideal = ideal_sphere_points()
        offsets = [0.0, 0.0, 0.0]
        filled = 0
        for n, total, target in zip(self.distribution, self._sums, ideal):
            if n <= 0:
                continue
            for axis, (s, t) in enumerate(zip(total, target)):
                offsets[axis] += s / n - t * radius
            filled += 1
        if filled == 0:
            return 100.0
        xoff, yoff, zoff = (o / filled for o in offsets)
        self._wobble = (
            _ratio(math.sqrt(xoff * xoff + yoff * yoff + zoff * zoff), radius) * 100.0
        )
        return self._wobble


def spherical_fit_error(magcal: MagCalibration) -> float:
    """Return the fit error of the calibration currently in use."""
    return magcal.fit_error