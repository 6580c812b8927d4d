"""Magnetometer hard- and soft-iron calibration.

Three least-squares solvers fit an ellipsoid to raw magnetometer readings:

* a 4 element fit (hard-iron offset and field strength only),
* a 7 element fit (adds a diagonal soft-iron correction),
* a 10 element fit (full symmetric soft-iron correction).

:class:`MagCalibration` keeps a buffer of readings, picks the best solver for
the amount of data collected and decides whether a new fit replaces the
current calibration.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, replace

from .matrix import determinant3, eigencompute, identity, inverse_symmetric3, invert

#: Field strength in microtesla of one magnetometer count used by the solvers.
SOLVER_UT_PER_COUNT = 0.1
#: Default geomagnetic field (uT); also the scaling used inside the solvers.
DEFAULT_B = 50.0
#: Default number of readings the calibration buffer holds.
DEFAULT_BUFFER_SIZE = 650

MIN_MEASUREMENTS_4CAL = 40
MIN_MEASUREMENTS_7CAL = 100
MIN_MEASUREMENTS_10CAL = 150
MIN_B_FIT_UT = 22.0
MAX_B_FIT_UT = 67.0

# Number of run() calls between calibration attempts.
_RUN_INTERVAL = 20
_SCALE = SOLVER_UT_PER_COUNT / DEFAULT_B

RawSample = Sequence[int]


@dataclass(frozen=True)
class Point:
    """A point or vector in three dimensions."""

    x: float
    y: float
    z: float

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z


@dataclass(frozen=True)
class TrialCalibration:
    """The result of one calibration solver."""

    solver: int
    hard_iron: tuple[float, float, float]
    inv_soft_iron: tuple[tuple[float, ...], ...]
    field: float
    fit_error: float
    count: int


def _sqrt(x: float) -> float:
    return math.sqrt(x) if x >= 0.0 else math.nan


def _div(n: float, d: float) -> float:
    try:
        return n / d
    except ZeroDivisionError:
        if n == 0.0 or math.isnan(n):
            return math.nan
        return math.copysign(math.inf, n) * math.copysign(1.0, d)


def _pow(base: float, exponent: float) -> float:
    if base == 0.0 and exponent < 0.0:
        return math.inf
    return base**exponent


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def _matvec(m: Sequence[Sequence[float]], v: Sequence[float]) -> list[float]:
    return [_dot(row, v) for row in m]


def _accumulate(m: list[list[float]], v: Sequence[float]) -> None:
    for row, vi in zip(m, v):
        for j, vj in enumerate(v):
            row[j] += vi * vj


def _prepare(
    samples: Sequence[RawSample],
) -> tuple[tuple[int, int, int], list[tuple[float, float, float]]]:
    """Return the first sample as offset and all samples offset and scaled."""
    if not samples:
        raise ValueError("at least one sample is required")
    ox, oy, oz = (int(v) for v in samples[0])
    scaled = [
        ((int(x) - ox) * _SCALE, (int(y) - oy) * _SCALE, (int(z) - oz) * _SCALE)
        for x, y, z in samples
    ]
    return (ox, oy, oz), scaled


def _to_ut(
    tr_v: Sequence[float], offset: Sequence[int]
) -> tuple[float, float, float]:
    x, y, z = (v * DEFAULT_B + o * SOLVER_UT_PER_COUNT for v, o in zip(tr_v, offset))
    return (x, y, z)


def calibrate4(samples: Sequence[RawSample]) -> TrialCalibration:
    """Fit hard-iron offset and field strength by 4x4 matrix inversion."""
    offset, scaled = _prepare(samples)
    count = len(scaled)

    xtx = [[0.0] * 4 for _ in range(4)]
    xty = [0.0] * 4
    sum_bp4 = 0.0
    for x, y, z in scaled:
        row = (x, y, z, 1.0)
        bp2 = x * x + y * y + z * z
        sum_bp4 += bp2 * bp2
        for i, ri in enumerate(row):
            xty[i] += ri * bp2
        _accumulate(xtx, row)

    beta = _matvec(invert(xtx), xty)
    residual = sum_bp4 - 2.0 * _dot(beta, xty) + _dot(beta, _matvec(xtx, beta))

    tr_v = [0.5 * b for b in beta[:3]]
    tr_b = _sqrt(beta[3] + _dot(tr_v, tr_v))
    fit_error = _div(_sqrt(max(residual, 0.0) / count) * 100.0, 2.0 * tr_b * tr_b)

    return TrialCalibration(
        solver=4,
        hard_iron=_to_ut(tr_v, offset),
        inv_soft_iron=tuple(tuple(row) for row in identity(3)),
        field=tr_b * DEFAULT_B,
        fit_error=fit_error,
        count=count,
    )


def calibrate7(samples: Sequence[RawSample]) -> TrialCalibration:
    """Fit offset, field strength and a diagonal soft-iron matrix."""
    offset, scaled = _prepare(samples)
    count = len(scaled)

    m = [[0.0] * 7 for _ in range(7)]
    for x, y, z in scaled:
        _accumulate(m, (x * x, y * y, z * z, x, y, z, 1.0))

    values, vectors = eigencompute(m, 7)
    j = min(range(7), key=values.__getitem__)
    solution = [row[j] for row in vectors]

    diag = solution[0:3]
    det = math.prod(diag)
    tr_v = [_div(-0.5 * b, a) for a, b in zip(diag, solution[3:6])]
    constant = solution[6]
    if det < 0.0:
        diag = [-a for a in diag]
        constant = -constant
        det = -det

    ftmp = -constant + sum(a * v * v for a, v in zip(diag, tr_v))
    fit_error = 50.0 * _div(_sqrt(abs(values[j]) / count), abs(ftmp))

    diag = [a * _pow(det, -1.0 / 3.0) for a in diag]
    field = _sqrt(abs(ftmp)) * DEFAULT_B * _pow(det, -1.0 / 6.0)

    inv_w = identity(3)
    for k, a in enumerate(diag):
        inv_w[k][k] = _sqrt(abs(a))

    return TrialCalibration(
        solver=7,
        hard_iron=_to_ut(tr_v, offset),
        inv_soft_iron=tuple(tuple(row) for row in inv_w),
        field=field,
        fit_error=fit_error,
        count=count,
    )


def calibrate10(samples: Sequence[RawSample]) -> TrialCalibration:
    """Fit offset, field strength and a full symmetric soft-iron matrix."""
    offset, scaled = _prepare(samples)
    count = len(scaled)

    m = [[0.0] * 10 for _ in range(10)]
    for x, y, z in scaled:
        _accumulate(
            m,
            (x * x, 2.0 * x * y, 2.0 * x * z, y * y, 2.0 * y * z, z * z, x, y, z, 1.0),
        )

    values, vectors = eigencompute(m, 10)
    j = min(range(10), key=values.__getitem__)
    s = [row[j] for row in vectors]

    a = [
        [s[0], s[1], s[2]],
        [s[1], s[3], s[4]],
        [s[2], s[4], s[5]],
    ]
    linear = s[6:9]
    constant = s[9]
    det = determinant3(a)
    if det < 0.0:
        a = [[-v for v in row] for row in a]
        linear = [-v for v in linear]
        constant = -constant
        det = -det

    inv_a = inverse_symmetric3(a)
    tr_v = [-0.5 * v for v in _matvec(inv_a, linear)]

    quadratic = _dot(tr_v, _matvec(a, tr_v))
    tr_b = _sqrt(abs(quadratic - constant))
    fit_error = 50.0 * _div(_sqrt(abs(values[j]) / count), tr_b * tr_b)

    factor = _pow(det, -1.0 / 3.0)
    field = tr_b * DEFAULT_B * _pow(det, -1.0 / 6.0)
    a = [[v * factor for v in row] for row in a]

    eig_values, eig_vectors = eigencompute(a, 3)
    roots = [_sqrt(_sqrt(abs(v))) for v in eig_values]
    weighted = [[v * r for v, r in zip(row, roots)] for row in eig_vectors]
    inv_w = tuple(tuple(_dot(ri, rj) for rj in weighted) for ri in weighted)

    return TrialCalibration(
        solver=10,
        hard_iron=_to_ut(tr_v, offset),
        inv_soft_iron=inv_w,
        field=field,
        fit_error=fit_error,
        count=count,
    )


class MagCalibration:
    """A buffer of raw magnetometer readings and the calibration fitted to them."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        ut_per_count: float = SOLVER_UT_PER_COUNT,
    ) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.buffer_size = buffer_size
        self.ut_per_count = ut_per_count
        self._wait = 0
        self.reset()

    def reset(self) -> None:
        """Empty the buffer and return to the initial calibration guess."""
        self.raw: list[tuple[int, int, int]] = [(0, 0, 0)] * self.buffer_size
        self.valid: list[bool] = [False] * self.buffer_size
        self.hard_iron: list[float] = [0.0, 0.0, 80.0]
        self.inv_soft_iron: list[list[float]] = identity(3)
        self.field = 50.0
        self.four_b_sq = 0.0
        self.fit_error = 100.0
        self.fit_error_age = 100.0
        self.solver = 0
        self.buffer_count = 0
        self.trial: TrialCalibration | None = None

    def valid_count(self) -> int:
        """Return the number of filled buffer slots."""
        return sum(self.valid)

    def samples(self) -> list[tuple[int, int, int]]:
        """Return the filled buffer entries in buffer order."""
        return [raw for raw, ok in zip(self.raw, self.valid) if ok]

    def apply_calibration(self, rawx: int, rawy: int, rawz: int) -> Point:
        """Return the calibrated field (uT) for a raw reading."""
        centred = [
            r * self.ut_per_count - v
            for r, v in zip((rawx, rawy, rawz), self.hard_iron)
        ]
        x, y, z = _matvec(self.inv_soft_iron, centred)
        return Point(x, y, z)

    def run(self) -> bool:
        """Attempt a calibration; return True if a new one was applied.

        Only every twentieth call does any work.
        """
        self._wait += 1
        if self._wait < _RUN_INTERVAL:
            return False
        self._wait = 0

        samples = self.samples()
        count = len(samples)
        if count < MIN_MEASUREMENTS_4CAL:
            return False

        if self.solver:
            self.fit_error_age *= 1.02

        if count < MIN_MEASUREMENTS_7CAL:
            trial = calibrate4(samples)
            if trial.fit_error < 12.0:
                trial = replace(trial, fit_error=12.0)
        elif count < MIN_MEASUREMENTS_10CAL:
            trial = calibrate7(samples)
            if trial.fit_error < 7.5:
                trial = replace(trial, fit_error=7.5)
        else:
            trial = calibrate10(samples)

        self.trial = trial
        self.buffer_count = trial.count

        if not MIN_B_FIT_UT <= trial.field <= MAX_B_FIT_UT:
            return False
        if not (
            self.solver == 0
            or trial.fit_error <= self.fit_error_age
            or (trial.solver > self.solver and trial.fit_error <= 4.0)
        ):
            return False

        self.solver = trial.solver
        self.fit_error = trial.fit_error
        self.fit_error_age = trial.fit_error if trial.fit_error > 2.0 else 2.0
        self.field = trial.field
        self.four_b_sq = 4.0 * trial.field * trial.field
        self.hard_iron = list(trial.hard_iron)
        self.inv_soft_iron = [list(row) for row in trial.inv_soft_iron]
        return True