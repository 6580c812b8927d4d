"""Mahony attitude filter fusing gyroscope, accelerometer and magnetometer data.

The filter keeps an orientation quaternion of the sensor frame relative to
the earth frame.  Gyroscope rates are integrated and the drift is corrected
by proportional (and optionally integral) feedback from the directions of
gravity and of the magnetic field.
"""

from __future__ import annotations

import math
import struct
from collections.abc import Iterable, Sequence

from .visualize import Quaternion

#: Twice the proportional feedback gain.
TWO_KP = 2.0 * 0.02
#: Twice the integral feedback gain.
TWO_KI = 2.0 * 0.0
#: Proportional gain used for the first update after a reset.
_RESET_GAIN = 2.0
_MAGIC = 0x5F375A86


def inv_sqrt(x: float) -> float:
    """Return an approximation of 1/sqrt(x) by the bit-level estimate and Newton steps."""
    try:
        bits = struct.unpack("<i", struct.pack("<f", x))[0]
    except OverflowError:
        return 1.0 / math.sqrt(x) if x > 0.0 else math.nan
    guess_bits = (_MAGIC - (bits >> 1)) & 0xFFFFFFFF
    y = struct.unpack("<f", struct.pack("<I", guess_bits))[0]
    half = 0.5 * x
    for _ in range(3):
        y = y * (1.5 - half * y * y)
    return y


class MahonyFilter:
    """Orientation estimator using Mahony's complementary filter."""

    def __init__(self, sample_rate: float) -> None:
        if not sample_rate > 0.0:
            raise ValueError("sample_rate must be positive")
        self.sample_rate = float(sample_rate)
        self._q: tuple[float, float, float, float] = (1.0, 0.0, 0.0, 0.0)
        self.reset()

    def reset(self) -> None:
        """Restore the gains and clear the integral terms.

        The orientation is kept; the next magnetic update applies a strong
        correction so the filter quickly settles on the measured attitude.
        """
        self.two_kp = TWO_KP
        self.two_ki = TWO_KI
        self._reset_next_update = True
        self._integral = (0.0, 0.0, 0.0)

    def orientation(self) -> Quaternion:
        """Return the current orientation quaternion."""
        return Quaternion(*self._q)

    def update(
        self,
        accel: Sequence[float],
        mag: Sequence[float],
        gyro_samples: Iterable[Sequence[float]],
    ) -> None:
        """Run one filter step per gyroscope sample (degrees per second)."""
        ax, ay, az = accel
        mx, my, mz = mag
        factor = math.pi / 180.0
        for gx, gy, gz in gyro_samples:
            self.update_marg(
                gx * factor, gy * factor, gz * factor, ax, ay, az, mx, my, mz
            )

    def _integral_feedback(
        self, ex: float, ey: float, ez: float, gx: float, gy: float, gz: float
    ) -> tuple[float, float, float]:
        if self.two_ki > 0.0:
            dt = 1.0 / self.sample_rate
            ix, iy, iz = self._integral
            self._integral = (
                ix + self.two_ki * ex * dt,
                iy + self.two_ki * ey * dt,
                iz + self.two_ki * ez * dt,
            )
            ix, iy, iz = self._integral
            return gx + ix, gy + iy, gz + iz
        self._integral = (0.0, 0.0, 0.0)
        return gx, gy, gz

    def _integrate(self, gx: float, gy: float, gz: float) -> None:
        f = 0.5 / self.sample_rate
        gx *= f
        gy *= f
        gz *= f
        qa, qb, qc, qd = self._q
        q0 = qa + (-qb * gx - qc * gy - qd * gz)
        q1 = qb + (qa * gx + qc * gz - qd * gy)
        q2 = qc + (qa * gy - qb * gz + qd * gx)
        q3 = qd + (qa * gz + qb * gy - qc * gx)
        r = inv_sqrt(q0 * q0 + q1 * q1 + q2 * q2 + q3 * q3)
        self._q = (q0 * r, q1 * r, q2 * r, q3 * r)

    def update_marg(
        self,
        gx: float,
        gy: float,
        gz: float,
        ax: float,
        ay: float,
        az: float,
        mx: float,
        my: float,
        mz: float,
    ) -> None:
        """Run one step with gyro rates (rad/s), acceleration and magnetic field."""
        if mx == 0.0 and my == 0.0 and mz == 0.0:
            self.update_imu(gx, gy, gz, ax, ay, az)
            return

        if not (ax == 0.0 and ay == 0.0 and az == 0.0):
            r = inv_sqrt(ax * ax + ay * ay + az * az)
            ax, ay, az = ax * r, ay * r, az * r
            r = inv_sqrt(mx * mx + my * my + mz * mz)
            mx, my, mz = mx * r, my * r, mz * r

            q0, q1, q2, q3 = self._q
            q0q0, q0q1, q0q2, q0q3 = q0 * q0, q0 * q1, q0 * q2, q0 * q3
            q1q1, q1q2, q1q3 = q1 * q1, q1 * q2, q1 * q3
            q2q2, q2q3, q3q3 = q2 * q2, q2 * q3, q3 * q3

            hx = 2.0 * (mx * (0.5 - q2q2 - q3q3) + my * (q1q2 - q0q3) + mz * (q1q3 + q0q2))
            hy = 2.0 * (mx * (q1q2 + q0q3) + my * (0.5 - q1q1 - q3q3) + mz * (q2q3 - q0q1))
            bx = math.sqrt(hx * hx + hy * hy)
            bz = 2.0 * (mx * (q1q3 - q0q2) + my * (q2q3 + q0q1) + mz * (0.5 - q1q1 - q2q2))

            halfvx = q1q3 - q0q2
            halfvy = q0q1 + q2q3
            halfvz = q0q0 - 0.5 + q3q3
            halfwx = bx * (0.5 - q2q2 - q3q3) + bz * (q1q3 - q0q2)
            halfwy = bx * (q1q2 - q0q3) + bz * (q0q1 + q2q3)
            halfwz = bx * (q0q2 + q1q3) + bz * (0.5 - q1q1 - q2q2)

            halfex = (ay * halfvz - az * halfvy) + (my * halfwz - mz * halfwy)
            halfey = (az * halfvx - ax * halfvz) + (mz * halfwx - mx * halfwz)
            halfez = (ax * halfvy - ay * halfvx) + (mx * halfwy - my * halfwx)

            gx, gy, gz = self._integral_feedback(halfex, halfey, halfez, gx, gy, gz)

            gain = _RESET_GAIN if self._reset_next_update else self.two_kp
            self._reset_next_update = False
            gx += gain * halfex
            gy += gain * halfey
            gz += gain * halfez

        self._integrate(gx, gy, gz)

    def update_imu(
        self, gx: float, gy: float, gz: float, ax: float, ay: float, az: float
    ) -> None:
        """Run one step with gyro rates (rad/s) and acceleration only."""
        if not (ax == 0.0 and ay == 0.0 and az == 0.0):
            r = inv_sqrt(ax * ax + ay * ay + az * az)
            ax, ay, az = ax * r, ay * r, az * r

            q0, q1, q2, q3 = self._q
            halfvx = q1 * q3 - q0 * q2
            halfvy = q0 * q1 + q2 * q3
            halfvz = q0 * q0 - 0.5 + q3 * q3

            halfex = ay * halfvz - az * halfvy
            halfey = az * halfvx - ax * halfvz
            halfez = ax * halfvy - ay * halfvx

            gx, gy, gz = self._integral_feedback(halfex, halfey, halfez, gx, gy, gz)

            gx += self.two_kp * halfex
            gy += self.two_kp * halfey
            gz += self.two_kp * halfez

        self._integrate(gx, gy, gz)