"""Processing of raw motion-sensor readings.

Raw readings feed the magnetometer calibration buffer and, after oversampled
averaging, the orientation filter.  This module also builds the packet that
sends a calibration to the sensor and checks the values the sensor echoes
back.
"""

from __future__ import annotations

import math
import random
import struct
from collections.abc import Callable, Sequence
from functools import reduce
from itertools import combinations
from typing import Protocol

from .magcal import MagCalibration
from .quality import SphereQuality
from .visualize import Quaternion

#: Two byte signature that starts a calibration packet.
CAL_SIGNATURE = bytes((117, 84))
#: Total length of a calibration packet, CRC included.
CAL_PACKET_LENGTH = 68

# Raw updates to wait before forcing an orientation reset after a large
# hard-iron change.
_FORCE_ORIENTATION_DELAY = 240
_MAGDIFF_LIMIT = 0.8


class Fusion(Protocol):
    def reset(self) -> None: ...

    def update(
        self,
        accel: Sequence[float],
        mag: Sequence[float],
        gyro_samples: Sequence[Sequence[float]],
    ) -> None: ...

    def orientation(self) -> Quaternion: ...


def crc16(crc: int, data: int) -> int:
    """Return ``crc`` updated with one byte (reflected polynomial 0xA001)."""
    crc = (crc ^ data) & 0xFFFF
    for _ in range(8):
        crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
    return crc


def is_float_ok(actual: float, expected: float) -> bool:
    """Return True if ``actual`` matches ``expected`` within the echo tolerance."""
    return abs(actual - expected) <= 0.0001 + abs(expected) * 0.00003


def _f32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


class RawDataProcessor:
    """Routes raw sensor readings into the calibration buffer and the fusion filter."""

    def __init__(
        self,
        magcal: MagCalibration,
        fusion: Fusion,
        quality: SphereQuality,
        oversample_ratio: int,
        g_per_count: float,
        deg_per_sec_per_count: float,
        on_confirmed: Callable[[], None] | None = None,
    ) -> None:
        if oversample_ratio <= 0:
            raise ValueError("oversample_ratio must be positive")
        self.magcal = magcal
        self.fusion = fusion
        self.quality = quality
        self.oversample_ratio = oversample_ratio
        self.g_per_count = g_per_count
        self.deg_per_sec_per_count = deg_per_sec_per_count
        self.on_confirmed = on_confirmed
        self.rng = random.Random()
        self.orientation = Quaternion()
        self._rawcount = oversample_ratio
        self._runcount = 0
        self._force_orientation_counter = 0
        self._cal_data_sent = [0.0] * 19
        self._cal_confirm_needed = 0
        self._clear_sums()

    @property
    def calibration_pending(self) -> bool:
        """True while a sent calibration has not been fully echoed back."""
        return self._cal_confirm_needed != 0

    def _clear_sums(self) -> None:
        self._accel = [0.0, 0.0, 0.0]
        self._gyro = [0.0, 0.0, 0.0]
        self._mag = [0.0, 0.0, 0.0]
        self._gyro_fast: list[tuple[float, float, float]] = [
            (0.0, 0.0, 0.0)
        ] * self.oversample_ratio

    def reset(self) -> None:
        """Restart the fusion filter and return the calibration to its initial guess."""
        self._rawcount = self.oversample_ratio
        self.fusion.reset()
        self.magcal.reset()

    def _choose_discard(self) -> int:
        mc = self.magcal
        gaps = self.quality.surface_gap_error()
        if gaps < 25.0:
            # Rate-limit the purge of outliers; the rate rises as coverage improves.
            gaps = max(gaps, 1.0)
            self._runcount += 1
            if self._runcount > int(gaps * 10.0):
                self._runcount = 0
                worst = None
                errormax = 0.0
                for i, raw in enumerate(mc.raw):
                    p = mc.apply_calibration(*raw)
                    field = math.sqrt(p.x * p.x + p.y * p.y + p.z * p.z)
                    error = abs(field - mc.field)
                    if error > errormax:
                        errormax = error
                        worst = i
                if worst is not None:
                    return worst
        else:
            self._runcount = 0

        # Drop one of the two closest readings, chosen at random.
        minsum = None
        minindex = 0
        for (i, a), (j, b) in combinations(enumerate(mc.raw), 2):
            dx = a[0] - b[0]
            dy = a[1] - b[1]
            dz = a[2] - b[2]
            distsq = dx * dx + dy * dy + dz * dz
            if minsum is None or distsq < minsum:
                minsum = distsq
                minindex = i if self.rng.getrandbits(1) else j
        return minindex

    def _add_magcal_data(self, data: Sequence[int]) -> None:
        mc = self.magcal
        try:
            i = mc.valid.index(False)
        except ValueError:
            i = self._choose_discard()
            if not 0 <= i < mc.buffer_size:
                i = self.rng.randrange(mc.buffer_size)
        mc.raw[i] = (int(data[6]), int(data[7]), int(data[8]))
        mc.valid[i] = True

    def raw_data(self, data: Sequence[int]) -> bool:
        """Process one raw reading of nine counts: accel, gyro and mag x, y, z.

        Returns True when the reading completed an oversampling period and
        the orientation was updated.
        """
        if len(data) != 9:
            raise ValueError("a raw reading has exactly 9 values")
        mc = self.magcal
        self._add_magcal_data(data)

        before = list(mc.hard_iron)
        if mc.run():
            if math.dist(before, mc.hard_iron) > _MAGDIFF_LIMIT:
                self.fusion.reset()
                self._rawcount = self.oversample_ratio
                self._force_orientation_counter = _FORCE_ORIENTATION_DELAY

        if self._force_orientation_counter > 0:
            self._force_orientation_counter -= 1
            if self._force_orientation_counter == 0:
                self.fusion.reset()
                self._rawcount = self.oversample_ratio

        if self._rawcount >= self.oversample_ratio:
            self._clear_sums()
            self._rawcount = 0

        accel = [v * self.g_per_count for v in data[0:3]]
        gyro = tuple(v * self.deg_per_sec_per_count for v in data[3:6])
        point = mc.apply_calibration(data[6], data[7], data[8])

        self._accel = [s + v for s, v in zip(self._accel, accel)]
        self._gyro = [s + v for s, v in zip(self._gyro, gyro)]
        self._gyro_fast[self._rawcount] = gyro
        self._mag = [s + v for s, v in zip(self._mag, point)]

        self._rawcount += 1
        if self._rawcount < self.oversample_ratio:
            return False

        ratio = 1.0 / self.oversample_ratio
        self._accel = [v * ratio for v in self._accel]
        self._gyro = [v * ratio for v in self._gyro]
        self._mag = [v * ratio for v in self._mag]
        self.fusion.update(
            tuple(self._accel), tuple(self._mag), list(self._gyro_fast)
        )
        self.orientation = self.fusion.orientation()
        return True

    def _confirm(self, data: Sequence[float], sent: Sequence[float], bit: int) -> None:
        if len(data) < len(sent):
            raise ValueError(f"expected at least {len(sent)} values")
        if not self._cal_confirm_needed:
            return
        if all(is_float_ok(a, e) for a, e in zip(data, sent)):
            self._cal_confirm_needed &= ~bit
            if self._cal_confirm_needed == 0 and self.on_confirmed is not None:
                self.on_confirmed()

    def cal1_data(self, data: Sequence[float]) -> None:
        """Check the echoed offsets and field strength (10 values)."""
        self._confirm(data, self._cal_data_sent[0:10], 1)

    def cal2_data(self, data: Sequence[float]) -> None:
        """Check the echoed soft-iron matrix (9 values, row major)."""
        self._confirm(data, self._cal_data_sent[10:19], 2)

    def calibration_packet(self) -> bytes:
        """Return the 68-byte packet that sends the current calibration.

        The values sent are remembered so the sensor's echo can confirm them.
        """
        mc = self.magcal
        w = mc.inv_soft_iron
        values = (
            [0.0] * 6
            + list(mc.hard_iron)
            + [mc.field, w[0][0], w[1][1], w[2][2], w[0][1], w[0][2], w[1][2]]
        )
        body = CAL_SIGNATURE + struct.pack("<16f", *values)
        crc = reduce(crc16, body, 0xFFFF)

        sent = [0.0] * 6 + list(mc.hard_iron) + [mc.field]
        sent += [v for row in w for v in row]
        self._cal_data_sent = [_f32(v) for v in sent]
        self._cal_confirm_needed = 3
        return body + struct.pack("<H", crc)